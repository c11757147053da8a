"""
Evidence store: artifact lifecycle, version chains, control/requirement
links, evaluations and freshness.

Files never pass through the API. Creating an artifact (or a new version)
stages the row in ``draft`` and hands back a presigned PUT descriptor; the
client uploads directly and then confirms.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta

from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_core.config import settings
from grc_core.errors import Conflict, NotFound, ServiceUnavailable, Unprocessable, ValidationFailed
from grc_core.middleware.audit import AuditTrail
from grc_core.models.base import new_id, utcnow
from grc_core.models.catalog import Control, Requirement
from grc_core.models.evidence import EvidenceArtifact, EvidenceEvaluation, EvidenceLink
from grc_core.schemas.evidence import EvidenceLinkItem, EvidenceOut, UploadDescriptor
from grc_core.services import authz, content
from grc_core.services.authz import Principal
from grc_core.services.state_machine import EVIDENCE
from grc_core.services.storage import S3Storage

logger = logging.getLogger(__name__)

FRESHNESS_BUCKETS = ("fresh", "expiring_soon", "expired")


# ─── Freshness ────────────────────────────────────────────────


def compute_expires_at(collection_date: date, freshness_period_days: int | None) -> datetime | None:
    if not freshness_period_days:
        return None
    return datetime.combine(collection_date, time()) + timedelta(days=freshness_period_days)


def freshness_status(expires_at: datetime | None, now: datetime | None = None) -> str:
    """expired / expiring_soon / fresh. No expiry is always fresh."""
    if expires_at is None:
        return "fresh"
    now = now or utcnow()
    if expires_at <= now:
        return "expired"
    if expires_at <= now + timedelta(days=settings.FRESHNESS_WARNING_DAYS):
        return "expiring_soon"
    return "fresh"


def days_until_expiry(expires_at: datetime | None, now: datetime | None = None) -> int | None:
    if expires_at is None:
        return None
    now = now or utcnow()
    return (expires_at.date() - now.date()).days


def freshness_filter(bucket: str, now: datetime | None = None):
    """SQL predicate matching one freshness bucket."""
    now = now or utcnow()
    soon = now + timedelta(days=settings.FRESHNESS_WARNING_DAYS)
    col = EvidenceArtifact.expires_at
    if bucket == "expired":
        return col <= now
    if bucket == "expiring_soon":
        return (col > now) & (col <= soon)
    if bucket == "fresh":
        return or_(col.is_(None), col > soon)
    raise ValidationFailed(f"Unknown freshness filter '{bucket}'")


def object_key(org_id: str, root_id: str, version: int, file_name: str) -> str:
    return f"{org_id}/{root_id}/{version}/{file_name}"


# ─── Loading & output ─────────────────────────────────────────


async def load_artifact(s: AsyncSession, org_id: str, artifact_id: str) -> EvidenceArtifact:
    a = (await s.execute(
        select(EvidenceArtifact).where(EvidenceArtifact.id == artifact_id, EvidenceArtifact.org_id == org_id)
    )).scalar_one_or_none()
    if not a:
        raise NotFound("Evidence artifact not found")
    return a


async def artifact_outs(s: AsyncSession, artifacts) -> list[EvidenceOut]:
    """Serialize artifacts with link/evaluation counts and the latest evaluation."""
    artifacts = list(artifacts)
    if not artifacts:
        return []
    ids = [a.id for a in artifacts]
    link_counts = dict((await s.execute(
        select(EvidenceLink.artifact_id, func.count())
        .where(EvidenceLink.artifact_id.in_(ids))
        .group_by(EvidenceLink.artifact_id)
    )).all())
    eval_counts = dict((await s.execute(
        select(EvidenceEvaluation.artifact_id, func.count())
        .where(EvidenceEvaluation.artifact_id.in_(ids))
        .group_by(EvidenceEvaluation.artifact_id)
    )).all())
    latest: dict[str, EvidenceEvaluation] = {}
    evals = (await s.execute(
        select(EvidenceEvaluation)
        .where(EvidenceEvaluation.artifact_id.in_(ids))
        .order_by(EvidenceEvaluation.created_at.desc(), EvidenceEvaluation.id.desc())
    )).scalars().all()
    for ev in evals:
        latest.setdefault(ev.artifact_id, ev)

    now = utcnow()
    outs = []
    for a in artifacts:
        out = EvidenceOut.model_validate(a)
        out.freshness_status = freshness_status(a.expires_at, now)
        out.days_until_expiry = days_until_expiry(a.expires_at, now)
        out.links_count = link_counts.get(a.id, 0)
        out.evaluations_count = eval_counts.get(a.id, 0)
        ev = latest.get(a.id)
        if ev:
            out.latest_evaluation = {
                "id": ev.id,
                "verdict": ev.verdict,
                "confidence": ev.confidence,
                "evaluated_by": ev.evaluated_by,
                "created_at": ev.created_at,
            }
        outs.append(out)
    return outs


def _upload_descriptor(storage: S3Storage | None, a: EvidenceArtifact) -> UploadDescriptor | None:
    if storage is None:
        return None
    try:
        url, ttl = storage.generate_upload_url(a.object_key, a.mime_type)
    except (BotoCoreError, ClientError):
        logger.warning("Could not sign upload URL for artifact %s", a.id, exc_info=True)
        return None
    return UploadDescriptor(
        presigned_url=url, method="PUT", expires_in=ttl,
        max_size=content.MAX_FILE_SIZE, content_type=a.mime_type,
    )


def _check_file(file_name: str, mime_type: str, collection_date: date) -> str:
    if not content.is_allowed_mime(mime_type):
        raise ValidationFailed(f"File type '{mime_type}' is not allowed")
    if collection_date > utcnow().date():
        raise Unprocessable("collection_date cannot be in the future")
    name = content.sanitize_file_name(file_name).strip()
    if not name:
        raise ValidationFailed("file_name is empty after sanitization")
    return name


# ═══ Artifacts ═══


async def create_artifact(
    s: AsyncSession,
    principal: Principal,
    data: dict,
    storage: S3Storage | None,
    trail: AuditTrail,
) -> tuple[EvidenceArtifact, UploadDescriptor | None]:
    file_name = _check_file(data["file_name"], data["mime_type"], data["collection_date"])
    artifact_id = new_id()
    a = EvidenceArtifact(
        id=artifact_id,
        org_id=principal.org_id,
        title=data["title"].strip(),
        description=data.get("description"),
        evidence_type=data["evidence_type"],
        status="draft",
        collection_method=data.get("collection_method") or "manual_upload",
        file_name=file_name,
        file_size=data["file_size"],
        mime_type=data["mime_type"],
        object_key=object_key(principal.org_id, artifact_id, 1, file_name),
        version=1,
        is_current=True,
        collection_date=data["collection_date"],
        freshness_period_days=data.get("freshness_period_days"),
        expires_at=compute_expires_at(data["collection_date"], data.get("freshness_period_days")),
        source_system=data.get("source_system"),
        uploaded_by=principal.user_id,
        tags=data.get("tags") or [],
    )
    s.add(a)
    await s.flush()
    trail.record(
        "evidence.uploaded", "evidence_artifact", a.id,
        title=a.title, evidence_type=a.evidence_type, file_name=a.file_name, file_size=a.file_size,
    )
    return a, _upload_descriptor(storage, a)


async def confirm_upload(
    principal: Principal,
    a: EvidenceArtifact,
    checksum: str | None,
    storage: S3Storage | None,
    trail: AuditTrail,
) -> dict:
    authz.require_owner_or_roles(
        principal, [a.uploaded_by], authz.EVIDENCE_UPLOAD_ROLES,
        "Only the uploader can confirm this upload",
    )
    if a.status != "draft" or a.upload_confirmed_at is not None:
        raise Conflict("Upload already confirmed")
    if checksum is not None and not content.is_valid_checksum(checksum):
        raise ValidationFailed("checksum_sha256 must be 64 hexadecimal characters")

    actual_size = a.file_size
    if storage is not None:
        size = await storage.verify_object_exists(a.object_key)
        if size is None:
            raise Unprocessable("File not found in storage; upload it before confirming")
        actual_size = size
        a.file_size = size
    if checksum:
        a.checksum_sha256 = checksum.lower()
    a.upload_confirmed_at = utcnow()
    trail.record(
        "evidence.upload_confirmed", "evidence_artifact", a.id,
        file_size=actual_size, checksum_sha256=a.checksum_sha256,
    )
    return {
        "id": a.id,
        "file_verified": storage is not None,
        "file_size_actual": actual_size,
        "checksum_sha256": a.checksum_sha256,
    }


async def update_artifact(principal: Principal, a: EvidenceArtifact, data: dict, trail: AuditTrail) -> None:
    authz.require_owner_or_roles(
        principal, [a.uploaded_by], authz.EVIDENCE_EDIT_ROLES,
        "Only the uploader or an evidence manager can edit this artifact",
    )
    if not data:
        raise ValidationFailed("No fields to update")
    if a.status == "superseded":
        raise Unprocessable("Superseded artifacts cannot be edited")
    if data.get("collection_date") and data["collection_date"] > utcnow().date():
        raise Unprocessable("collection_date cannot be in the future")
    for key in ("title", "description", "evidence_type", "collection_method",
                "collection_date", "freshness_period_days", "source_system", "tags"):
        if key in data:
            value = data[key]
            if key in ("title", "evidence_type", "collection_method", "collection_date", "tags") and value is None:
                continue
            setattr(a, key, value)
    a.expires_at = compute_expires_at(a.collection_date, a.freshness_period_days)
    trail.record("evidence.updated", "evidence_artifact", a.id, fields=sorted(data))


def change_status(a: EvidenceArtifact, target: str, notes: str | None, trail: AuditTrail, **extra) -> str:
    EVIDENCE.check(a.status, target, status_code=422)
    previous = a.status
    a.status = target
    trail.record(
        "evidence.status_changed", "evidence_artifact", a.id,
        **{"from": previous, "to": target, "notes": notes, **extra},
    )
    return previous


def soft_delete(a: EvidenceArtifact, trail: AuditTrail) -> None:
    previous = a.status
    a.status = "superseded"
    a.is_current = False
    trail.record("evidence.deleted", "evidence_artifact", a.id, previous_status=previous)


# ═══ Versions ═══


async def chain(s: AsyncSession, a: EvidenceArtifact) -> list[EvidenceArtifact]:
    """Every version sharing ``a``'s root, newest first."""
    root = a.root_id
    return list((await s.execute(
        select(EvidenceArtifact)
        .where(
            EvidenceArtifact.org_id == a.org_id,
            or_(EvidenceArtifact.id == root, EvidenceArtifact.parent_artifact_id == root),
        )
        .order_by(EvidenceArtifact.version.desc())
    )).scalars().all())


async def create_version(
    s: AsyncSession,
    principal: Principal,
    parent: EvidenceArtifact,
    data: dict,
    storage: S3Storage | None,
    trail: AuditTrail,
) -> tuple[EvidenceArtifact, UploadDescriptor | None]:
    if not parent.is_current:
        raise Unprocessable("New versions can only be created from the current version")
    file_name = _check_file(data["file_name"], data["mime_type"], data["collection_date"])
    root = parent.root_id
    top = (await s.execute(
        select(func.max(EvidenceArtifact.version)).where(
            EvidenceArtifact.org_id == parent.org_id,
            or_(EvidenceArtifact.id == root, EvidenceArtifact.parent_artifact_id == root),
        )
    )).scalar() or parent.version
    number = top + 1

    parent.is_current = False
    parent.status = "superseded"
    await s.flush()

    freshness = data.get("freshness_period_days") or parent.freshness_period_days
    new = EvidenceArtifact(
        org_id=parent.org_id,
        title=(data.get("title") or parent.title).strip(),
        description=data.get("description") if data.get("description") is not None else parent.description,
        evidence_type=data.get("evidence_type") or parent.evidence_type,
        status="draft",
        collection_method=data.get("collection_method") or parent.collection_method,
        file_name=file_name,
        file_size=data["file_size"],
        mime_type=data["mime_type"],
        object_key=object_key(parent.org_id, root, number, file_name),
        parent_artifact_id=root,
        version=number,
        is_current=True,
        collection_date=data["collection_date"],
        freshness_period_days=freshness,
        expires_at=compute_expires_at(data["collection_date"], freshness),
        source_system=data.get("source_system") or parent.source_system,
        uploaded_by=principal.user_id,
        tags=data["tags"] if data.get("tags") is not None else list(parent.tags or []),
    )
    s.add(new)
    await s.flush()

    links = (await s.execute(
        select(EvidenceLink).where(EvidenceLink.artifact_id == parent.id, EvidenceLink.org_id == parent.org_id)
    )).scalars().all()
    for link in links:
        s.add(EvidenceLink(
            org_id=link.org_id,
            artifact_id=new.id,
            target_type=link.target_type,
            control_id=link.control_id,
            requirement_id=link.requirement_id,
            strength=link.strength,
            notes=link.notes,
            linked_by=link.linked_by,
        ))
    await s.flush()
    trail.record(
        "evidence.version_created", "evidence_artifact", new.id,
        previous_version_id=parent.id, version=number, root_id=root, links_copied=len(links),
    )
    return new, _upload_descriptor(storage, new)


async def reissue_upload(s: AsyncSession, a: EvidenceArtifact, storage: S3Storage | None) -> UploadDescriptor:
    if storage is None:
        raise ServiceUnavailable("Object storage is not configured")
    if a.status == "superseded":
        raise Unprocessable("Superseded artifacts cannot receive uploads")
    if await storage.verify_object_exists(a.object_key) is not None:
        raise Conflict("File already uploaded for this artifact")
    url, ttl = storage.generate_upload_url(a.object_key, a.mime_type)
    return UploadDescriptor(
        presigned_url=url, method="PUT", expires_in=ttl,
        max_size=content.MAX_FILE_SIZE, content_type=a.mime_type,
    )


async def download_url(
    s: AsyncSession, a: EvidenceArtifact, version: int | None, storage: S3Storage | None,
) -> dict:
    if storage is None:
        raise ServiceUnavailable("Object storage is not configured")
    target = a
    if version is not None and version != a.version:
        target = next((v for v in await chain(s, a) if v.version == version), None)
        if target is None:
            raise NotFound(f"Version {version} not found")
    if target.status == "draft" and await storage.verify_object_exists(target.object_key) is None:
        raise Unprocessable("File has not been uploaded yet")
    url, ttl = storage.generate_download_url(target.object_key, target.file_name)
    return {
        "id": target.id,
        "version": target.version,
        "file_name": target.file_name,
        "presigned_url": url,
        "method": "GET",
        "expires_in": ttl,
    }


# ═══ Links ═══


async def _target_exists(s: AsyncSession, org_id: str, item: EvidenceLinkItem) -> bool:
    if item.target_type == "control":
        q = select(Control.id).where(Control.id == item.target_id, Control.org_id == org_id)
    else:
        q = select(Requirement.id).where(Requirement.id == item.target_id)
    return (await s.execute(q)).scalar_one_or_none() is not None


async def link_artifact(
    s: AsyncSession,
    principal: Principal,
    a: EvidenceArtifact,
    items: list[EvidenceLinkItem],
    trail: AuditTrail,
) -> list[EvidenceLink]:
    """All-or-nothing: every item is validated before any row is written."""
    existing = (await s.execute(
        select(EvidenceLink).where(EvidenceLink.artifact_id == a.id, EvidenceLink.org_id == a.org_id)
    )).scalars().all()
    taken = {(l.target_type, l.target_id) for l in existing}
    seen: set[tuple[str, str]] = set()
    for item in items:
        key = (item.target_type, item.target_id)
        if key in taken or key in seen:
            raise Conflict(f"Artifact is already linked to {item.target_type} {item.target_id}")
        seen.add(key)
        if not await _target_exists(s, a.org_id, item):
            raise NotFound(f"{item.target_type.capitalize()} {item.target_id} not found")

    created = []
    for item in items:
        link = EvidenceLink(
            org_id=a.org_id,
            artifact_id=a.id,
            target_type=item.target_type,
            control_id=item.target_id if item.target_type == "control" else None,
            requirement_id=item.target_id if item.target_type == "requirement" else None,
            strength=item.strength,
            notes=item.notes,
            linked_by=principal.user_id,
        )
        s.add(link)
        created.append(link)
    await s.flush()
    for link in created:
        trail.record(
            "evidence.linked", "evidence_link", link.id,
            artifact_id=a.id, target_type=link.target_type, target_id=link.target_id, strength=link.strength,
        )
    return created


async def unlink(s: AsyncSession, a: EvidenceArtifact, link_id: str, trail: AuditTrail) -> None:
    link = (await s.execute(
        select(EvidenceLink).where(
            EvidenceLink.id == link_id, EvidenceLink.artifact_id == a.id, EvidenceLink.org_id == a.org_id,
        )
    )).scalar_one_or_none()
    if not link:
        raise NotFound("Evidence link not found")
    trail.record(
        "evidence.unlinked", "evidence_link", link.id,
        artifact_id=a.id, target_type=link.target_type, target_id=link.target_id,
    )
    await s.delete(link)
    await s.flush()


# ═══ Evaluations ═══

_AUTO_STATUS = {"sufficient": "approved", "insufficient": "rejected"}


async def evaluate(
    s: AsyncSession,
    principal: Principal,
    a: EvidenceArtifact,
    data: dict,
    trail: AuditTrail,
) -> tuple[EvidenceEvaluation, str | None]:
    """Record a verdict. Returns the evaluation and the new status if it moved."""
    link_id = data.get("evidence_link_id")
    if link_id:
        found = (await s.execute(
            select(EvidenceLink.id).where(
                EvidenceLink.id == link_id, EvidenceLink.artifact_id == a.id, EvidenceLink.org_id == a.org_id,
            )
        )).scalar_one_or_none()
        if not found:
            raise Unprocessable("evidence_link_id does not belong to this artifact")

    ev = EvidenceEvaluation(
        org_id=a.org_id,
        artifact_id=a.id,
        evidence_link_id=link_id,
        verdict=data["verdict"],
        confidence=data.get("confidence") or "medium",
        comments=data["comments"],
        missing_elements=data.get("missing_elements") or [],
        remediation_notes=data.get("remediation_notes"),
        evaluated_by=principal.user_id,
    )
    s.add(ev)
    await s.flush()
    trail.record(
        "evidence.evaluated", "evidence_evaluation", ev.id,
        artifact_id=a.id, verdict=ev.verdict, confidence=ev.confidence,
    )

    new_status = None
    if a.status == "pending_review" and ev.verdict in _AUTO_STATUS:
        new_status = _AUTO_STATUS[ev.verdict]
        change_status(a, new_status, None, trail, trigger="evaluation", evaluation_id=ev.id)
    return ev, new_status
