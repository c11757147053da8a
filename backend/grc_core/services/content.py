"""
Content processing: HTML sanitization for policy text, word/character
counts, file-name and MIME checks for evidence uploads.
"""
from __future__ import annotations

import re

import bleach
from bleach.css_sanitizer import CSSSanitizer

MAX_POLICY_CONTENT_BYTES = 1024 * 1024
MAX_FILE_SIZE = 100 * 1024 * 1024
MAX_FILE_NAME_BYTES = 255

ALLOWED_TAGS = frozenset({
    "p", "br", "hr", "h1", "h2", "h3", "h4", "h5", "h6",
    "ul", "ol", "li", "dl", "dt", "dd", "blockquote", "pre", "code",
    "b", "strong", "i", "em", "u", "s", "strike", "sub", "sup", "mark", "small",
    "span", "div", "a", "img",
    "table", "thead", "tbody", "tfoot", "tr", "th", "td", "caption", "colgroup", "col",
})

ALLOWED_ATTRIBUTES = {
    "*": ["class", "id", "style"],
    "a": ["href", "title", "rel", "target"],
    "img": ["src", "alt", "title", "width", "height"],
    "th": ["colspan", "rowspan", "scope"],
    "td": ["colspan", "rowspan"],
    "col": ["span"],
    "ol": ["start", "type"],
}

ALLOWED_PROTOCOLS = frozenset({"http", "https", "mailto"})

ALLOWED_CSS_PROPERTIES = frozenset({
    "color", "background-color", "font-weight", "font-style", "font-size", "font-family",
    "text-align", "text-decoration", "vertical-align", "line-height",
    "margin", "margin-left", "margin-right", "margin-top", "margin-bottom",
    "padding", "padding-left", "padding-right", "padding-top", "padding-bottom",
    "border", "border-collapse", "border-color", "border-style", "border-width",
    "width", "height", "list-style-type", "white-space",
})

# Elements whose content is dropped together with the tag
_BLOCKED_ELEMENTS = re.compile(
    r"<(script|style|iframe|object|embed|form|noscript|template)\b[^>]*>.*?</\1\s*>",
    re.IGNORECASE | re.DOTALL,
)
_TAG_RE = re.compile(r"<[^>]*>")

_css_sanitizer = CSSSanitizer(allowed_css_properties=ALLOWED_CSS_PROPERTIES)

ALLOWED_MIME_TYPES = frozenset({
    "application/pdf",
    "image/png",
    "image/jpeg",
    "image/gif",
    "application/json",
    "text/csv",
    "text/plain",
    "application/xml",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
})

CHECKSUM_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def sanitize_html(content: str) -> str:
    """Keep formatting markup, drop scripts, embeds, forms, event handlers and unsafe CSS."""
    cleaned = _BLOCKED_ELEMENTS.sub("", content)
    return bleach.clean(
        cleaned,
        tags=ALLOWED_TAGS,
        attributes=ALLOWED_ATTRIBUTES,
        protocols=ALLOWED_PROTOCOLS,
        css_sanitizer=_css_sanitizer,
        strip=True,
        strip_comments=True,
    )


def prepare_content(content: str, content_format: str) -> str:
    if content_format == "html":
        return sanitize_html(content)
    return content


def count_words(content: str) -> int:
    return len(_TAG_RE.sub(" ", content).split())


def count_characters(content: str) -> int:
    return len(content)


def content_too_large(content: str) -> bool:
    return len(content.encode("utf-8")) > MAX_POLICY_CONTENT_BYTES


def sanitize_file_name(name: str) -> str:
    cleaned = name.replace("/", "_").replace("\\", "_").replace("\x00", "_")
    encoded = cleaned.encode("utf-8")
    if len(encoded) <= MAX_FILE_NAME_BYTES:
        return cleaned
    # Cut on a code-point boundary
    return encoded[:MAX_FILE_NAME_BYTES].decode("utf-8", errors="ignore")


def is_allowed_mime(mime_type: str) -> bool:
    return mime_type.split(";")[0].strip().lower() in ALLOWED_MIME_TYPES


def is_valid_checksum(value: str) -> bool:
    return bool(CHECKSUM_RE.match(value))
