"""List paging helpers: query parsing and the {data, pagination} envelope."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable

from fastapi import Query

from grc_core.config import settings


@dataclass(frozen=True)
class Page:
    page: int
    per_page: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


def pagination(default_per_page: int | None = None, max_per_page: int | None = None) -> Callable[..., Page]:
    """Build a dependency reading ``page`` / ``per_page``.

    Out-of-range values are clamped instead of rejected: page < 1 becomes 1,
    per_page < 1 falls back to the default, per_page above the cap is capped.
    """
    default = default_per_page or settings.DEFAULT_PER_PAGE
    cap = max_per_page or settings.MAX_PER_PAGE

    def _page_params(
        page: int | None = Query(None),
        per_page: int | None = Query(None),
    ) -> Page:
        p = page if page and page > 0 else 1
        pp = per_page if per_page and per_page > 0 else default
        return Page(page=p, per_page=min(pp, cap))

    return _page_params


def paginated(data: list[Any], page: Page, total: int) -> dict:
    return {
        "data": data,
        "pagination": {
            "page": page.page,
            "per_page": page.per_page,
            "total": total,
            "total_pages": math.ceil(total / page.per_page) if page.per_page else 0,
        },
    }


def pick_sort(requested: str | None, allowed: dict, default: str) -> Any:
    """Resolve a sort key against an allow-list; unknown keys use the default."""
    if requested and requested in allowed:
        return allowed[requested]
    return allowed[default]


def order_clause(column, direction: str | None, default_desc: bool = True):
    if direction is None:
        return column.desc() if default_desc else column.asc()
    return column.asc() if direction.lower() == "asc" else column.desc()
