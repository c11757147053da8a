"""
Evidence Store: /api/v1/evidence
Artifacts, versions, links to controls/requirements, evaluations,
presigned upload/download URLs and freshness reporting.
"""
from datetime import date, timedelta

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_core.database import get_session
from grc_core.middleware.audit import AuditTrail, get_audit_trail
from grc_core.models.base import utcnow
from grc_core.models.catalog import Control, ControlMapping, FrameworkVersion, Requirement
from grc_core.models.evidence import EvidenceArtifact, EvidenceEvaluation, EvidenceLink
from grc_core.pagination import Page, order_clause, paginated, pagination, pick_sort
from grc_core.schemas.evidence import (
    EvaluationCreate,
    EvaluationOut,
    EvidenceCreate,
    EvidenceLinkOut,
    EvidenceLinkRequest,
    EvidenceOut,
    EvidenceStatusChange,
    EvidenceUpdate,
    EvidenceVersionCreate,
    UploadConfirm,
    UploadDescriptor,
)
from grc_core.services import authz, evidence
from grc_core.services.authz import Principal, get_principal
from grc_core.services.lookups import json_contains, load_control, load_requirement, users_by_id
from grc_core.services.storage import S3Storage, get_storage

router = APIRouter(prefix="/api/v1/evidence", tags=["Evidence"])
lookup_router = APIRouter(prefix="/api/v1", tags=["Evidence"])

_LIST_SORTS = {
    "title": EvidenceArtifact.title,
    "evidence_type": EvidenceArtifact.evidence_type,
    "status": EvidenceArtifact.status,
    "collection_date": EvidenceArtifact.collection_date,
    "expires_at": EvidenceArtifact.expires_at,
    "created_at": EvidenceArtifact.created_at,
    "file_size": EvidenceArtifact.file_size,
}
_SEARCH_SORTS = {
    "collection_date": EvidenceArtifact.collection_date,
    "expires_at": EvidenceArtifact.expires_at,
    "created_at": EvidenceArtifact.created_at,
    "title": EvidenceArtifact.title,
}


# ─── Helpers ──────────────────────────────────────────────────


def _csv(value: str | None) -> list[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _linked_to_control(control_id: str):
    return exists().where(
        EvidenceLink.artifact_id == EvidenceArtifact.id,
        EvidenceLink.control_id == control_id,
    )


def _linked_to_requirement(requirement_id: str):
    return exists().where(
        EvidenceLink.artifact_id == EvidenceArtifact.id,
        EvidenceLink.requirement_id == requirement_id,
    )


def _linked_to_framework(framework_id: str):
    """Linked to a requirement of the framework, or to a control mapped to one."""
    req_ids = (
        select(Requirement.id)
        .join(FrameworkVersion, FrameworkVersion.id == Requirement.framework_version_id)
        .where(FrameworkVersion.framework_id == framework_id)
    )
    mapped_controls = select(ControlMapping.control_id).where(ControlMapping.requirement_id.in_(req_ids))
    return exists().where(
        EvidenceLink.artifact_id == EvidenceArtifact.id,
        or_(EvidenceLink.requirement_id.in_(req_ids), EvidenceLink.control_id.in_(mapped_controls)),
    )


def _has_rows(model, flag: bool):
    clause = exists().where(model.artifact_id == EvidenceArtifact.id)
    return clause if flag else ~clause


def _tags_any(tags: list[str]):
    return or_(*[json_contains(EvidenceArtifact.tags, t) for t in tags])


async def _one_out(s: AsyncSession, a: EvidenceArtifact, upload: UploadDescriptor | None = None) -> EvidenceOut:
    out = (await evidence.artifact_outs(s, [a]))[0]
    out.upload = upload
    return out


async def _link_outs(s: AsyncSession, org_id: str, links) -> list[EvidenceLinkOut]:
    control_ids = [l.control_id for l in links if l.control_id]
    requirement_ids = [l.requirement_id for l in links if l.requirement_id]
    controls = {}
    if control_ids:
        controls = {c.id: c for c in (await s.execute(
            select(Control).where(Control.id.in_(control_ids), Control.org_id == org_id)
        )).scalars().all()}
    requirements = {}
    if requirement_ids:
        requirements = {r.id: r for r in (await s.execute(
            select(Requirement).where(Requirement.id.in_(requirement_ids))
        )).scalars().all()}
    outs = []
    for l in links:
        out = EvidenceLinkOut.model_validate(l)
        t = controls.get(l.control_id) if l.target_type == "control" else requirements.get(l.requirement_id)
        if t is not None:
            out.target = {"id": t.id, "identifier": t.identifier, "title": t.title}
        outs.append(out)
    return outs


# ═══ Lists & reports ═══


@router.get("", summary="List evidence artifacts")
async def list_evidence(
    status: str | None = Query(None),
    evidence_type: str | None = Query(None),
    collection_method: str | None = Query(None),
    uploaded_by: str | None = Query(None),
    control_id: str | None = Query(None),
    requirement_id: str | None = Query(None),
    freshness: str | None = Query(None),
    tags: str | None = Query(None, description="Comma-separated; any match"),
    search: str | None = Query(None, max_length=200),
    include_versions: bool = Query(False),
    sort: str | None = Query(None),
    order: str | None = Query(None),
    page: Page = Depends(pagination()),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    q = select(EvidenceArtifact).where(EvidenceArtifact.org_id == principal.org_id)
    if not include_versions:
        q = q.where(EvidenceArtifact.is_current.is_(True))
    if status:
        q = q.where(EvidenceArtifact.status == status)
    if evidence_type:
        q = q.where(EvidenceArtifact.evidence_type == evidence_type)
    if collection_method:
        q = q.where(EvidenceArtifact.collection_method == collection_method)
    if uploaded_by:
        q = q.where(EvidenceArtifact.uploaded_by == uploaded_by)
    if control_id:
        q = q.where(_linked_to_control(control_id))
    if requirement_id:
        q = q.where(_linked_to_requirement(requirement_id))
    if freshness:
        q = q.where(evidence.freshness_filter(freshness))
    if _csv(tags):
        q = q.where(_tags_any(_csv(tags)))
    if search:
        like = f"%{search}%"
        q = q.where(or_(EvidenceArtifact.title.ilike(like), EvidenceArtifact.description.ilike(like)))

    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    col = pick_sort(sort, _LIST_SORTS, "created_at")
    q = q.order_by(order_clause(col, order), EvidenceArtifact.id)
    rows = (await s.execute(q.offset(page.offset).limit(page.per_page))).scalars().all()
    return paginated(await evidence.artifact_outs(s, rows), page, total)


@router.get("/search", summary="Full-text evidence search")
async def search_evidence(
    q: str = Query(..., min_length=1, max_length=200),
    evidence_type: str | None = Query(None, description="Comma-separated"),
    status: str | None = Query(None, description="Comma-separated"),
    freshness: str | None = Query(None),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    uploaded_by: str | None = Query(None),
    has_links: bool | None = Query(None),
    has_evaluations: bool | None = Query(None),
    control_id: str | None = Query(None),
    framework_id: str | None = Query(None),
    tags: str | None = Query(None),
    sort: str | None = Query(None),
    order: str | None = Query(None),
    page: Page = Depends(pagination()),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    like = f"%{q}%"
    query = select(EvidenceArtifact).where(
        EvidenceArtifact.org_id == principal.org_id,
        EvidenceArtifact.is_current.is_(True),
        or_(
            EvidenceArtifact.title.ilike(like),
            EvidenceArtifact.description.ilike(like),
            EvidenceArtifact.source_system.ilike(like),
            json_contains(EvidenceArtifact.tags, q),
        ),
    )
    if _csv(evidence_type):
        query = query.where(EvidenceArtifact.evidence_type.in_(_csv(evidence_type)))
    if _csv(status):
        query = query.where(EvidenceArtifact.status.in_(_csv(status)))
    if freshness:
        query = query.where(evidence.freshness_filter(freshness))
    if date_from:
        query = query.where(EvidenceArtifact.collection_date >= date_from)
    if date_to:
        query = query.where(EvidenceArtifact.collection_date <= date_to)
    if uploaded_by:
        query = query.where(EvidenceArtifact.uploaded_by == uploaded_by)
    if has_links is not None:
        query = query.where(_has_rows(EvidenceLink, has_links))
    if has_evaluations is not None:
        query = query.where(_has_rows(EvidenceEvaluation, has_evaluations))
    if control_id:
        query = query.where(_linked_to_control(control_id))
    if framework_id:
        query = query.where(_linked_to_framework(framework_id))
    if _csv(tags):
        query = query.where(_tags_any(_csv(tags)))

    total = (await s.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0
    col = pick_sort(sort, _SEARCH_SORTS, "created_at")
    query = query.order_by(order_clause(col, order), EvidenceArtifact.id)
    rows = (await s.execute(query.offset(page.offset).limit(page.per_page))).scalars().all()
    result = paginated(await evidence.artifact_outs(s, rows), page, total)
    result["search_meta"] = {"query": q, "total_results": total}
    return result


@router.get("/staleness", summary="Expired and soon-to-expire evidence")
async def staleness_alerts(
    days_ahead: int = Query(30, ge=1, le=365),
    page: Page = Depends(pagination()),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    now = utcnow()
    q = select(EvidenceArtifact).where(
        EvidenceArtifact.org_id == principal.org_id,
        EvidenceArtifact.is_current.is_(True),
        EvidenceArtifact.status.notin_(("draft", "superseded")),
        EvidenceArtifact.expires_at.is_not(None),
        EvidenceArtifact.expires_at <= now + timedelta(days=days_ahead),
    )
    all_ids = select(q.subquery().c.id)
    expired = (await s.execute(
        select(func.count()).select_from(q.where(EvidenceArtifact.expires_at <= now).subquery())
    )).scalar() or 0
    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    affected_controls = (await s.execute(
        select(func.count(func.distinct(EvidenceLink.control_id))).where(
            EvidenceLink.artifact_id.in_(all_ids), EvidenceLink.control_id.is_not(None),
        )
    )).scalar() or 0

    rows = (await s.execute(
        q.order_by(EvidenceArtifact.expires_at.asc(), EvidenceArtifact.id)
        .offset(page.offset).limit(page.per_page)
    )).scalars().all()
    data = []
    for out in await evidence.artifact_outs(s, rows):
        item = out.model_dump()
        item["alert_level"] = "expired" if out.freshness_status == "expired" else "expiring_soon"
        data.append(item)
    result = paginated(data, page, total)
    result["summary"] = {
        "total": total,
        "expired": expired,
        "expiring_soon": total - expired,
        "affected_controls": affected_controls,
        "days_ahead": days_ahead,
    }
    return result


@router.get("/freshness-summary", summary="Counts per freshness bucket and status")
async def freshness_summary(
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    base = [EvidenceArtifact.org_id == principal.org_id, EvidenceArtifact.is_current.is_(True)]
    now = utcnow()
    buckets = {}
    for bucket in evidence.FRESHNESS_BUCKETS:
        buckets[bucket] = (await s.execute(
            select(func.count()).select_from(EvidenceArtifact)
            .where(*base, evidence.freshness_filter(bucket, now))
        )).scalar() or 0
    by_status = dict((await s.execute(
        select(EvidenceArtifact.status, func.count())
        .where(*base)
        .group_by(EvidenceArtifact.status)
    )).all())
    return {
        "total": sum(buckets.values()),
        "freshness": buckets,
        "by_status": by_status,
    }


# ═══ Artifact CRUD ═══


@router.post("", response_model=EvidenceOut, status_code=201, summary="Create artifact and get upload URL")
async def create_evidence(
    body: EvidenceCreate,
    principal: Principal = Depends(get_principal),
    storage: S3Storage | None = Depends(get_storage),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.EVIDENCE_UPLOAD_ROLES, "Insufficient permissions to upload evidence")
    a, upload = await evidence.create_artifact(s, principal, body.model_dump(), storage, trail)
    await s.commit()
    await trail.emit()
    await s.refresh(a)
    return await _one_out(s, a, upload)


@router.get("/{artifact_id}", response_model=EvidenceOut, summary="Artifact details")
async def get_evidence(
    artifact_id: str,
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    a = await evidence.load_artifact(s, principal.org_id, artifact_id)
    return await _one_out(s, a)


@router.put("/{artifact_id}", response_model=EvidenceOut, summary="Update artifact metadata")
async def update_evidence(
    artifact_id: str,
    body: EvidenceUpdate,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    a = await evidence.load_artifact(s, principal.org_id, artifact_id)
    await evidence.update_artifact(principal, a, body.model_dump(exclude_unset=True), trail)
    await s.commit()
    await trail.emit()
    await s.refresh(a)
    return await _one_out(s, a)


@router.delete("/{artifact_id}", status_code=204, summary="Soft-delete artifact")
async def delete_evidence(
    artifact_id: str,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.EVIDENCE_STATUS_ROLES)
    a = await evidence.load_artifact(s, principal.org_id, artifact_id)
    evidence.soft_delete(a, trail)
    await s.commit()
    await trail.emit()
    return Response(status_code=204)


@router.put("/{artifact_id}/status", response_model=EvidenceOut, summary="Change artifact status")
async def change_evidence_status(
    artifact_id: str,
    body: EvidenceStatusChange,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.EVIDENCE_STATUS_ROLES)
    a = await evidence.load_artifact(s, principal.org_id, artifact_id)
    evidence.change_status(a, body.status, body.notes, trail)
    await s.commit()
    await trail.emit()
    await s.refresh(a)
    return await _one_out(s, a)


# ═══ Files ═══


@router.post("/{artifact_id}/confirm", summary="Confirm the direct upload finished")
async def confirm_upload(
    artifact_id: str,
    body: UploadConfirm | None = None,
    principal: Principal = Depends(get_principal),
    storage: S3Storage | None = Depends(get_storage),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    a = await evidence.load_artifact(s, principal.org_id, artifact_id)
    checksum = body.checksum_sha256 if body else None
    result = await evidence.confirm_upload(principal, a, checksum, storage, trail)
    await s.commit()
    await trail.emit()
    return result


@router.post("/{artifact_id}/upload", response_model=UploadDescriptor, summary="Reissue upload URL")
async def reissue_upload_url(
    artifact_id: str,
    principal: Principal = Depends(get_principal),
    storage: S3Storage | None = Depends(get_storage),
    s: AsyncSession = Depends(get_session),
):
    a = await evidence.load_artifact(s, principal.org_id, artifact_id)
    authz.require_owner_or_roles(principal, [a.uploaded_by], authz.EVIDENCE_UPLOAD_ROLES)
    return await evidence.reissue_upload(s, a, storage)


@router.get("/{artifact_id}/download", summary="Presigned download URL")
async def download_evidence(
    artifact_id: str,
    version: int | None = Query(None, ge=1),
    principal: Principal = Depends(get_principal),
    storage: S3Storage | None = Depends(get_storage),
    s: AsyncSession = Depends(get_session),
):
    a = await evidence.load_artifact(s, principal.org_id, artifact_id)
    return await evidence.download_url(s, a, version, storage)


# ═══ Versions ═══


@router.get("/{artifact_id}/versions", summary="Version chain, newest first")
async def list_versions(
    artifact_id: str,
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    a = await evidence.load_artifact(s, principal.org_id, artifact_id)
    versions = await evidence.chain(s, a)
    return {"data": await evidence.artifact_outs(s, versions), "root_id": a.root_id}


@router.post("/{artifact_id}/versions", response_model=EvidenceOut, status_code=201, summary="Upload new version")
async def create_version(
    artifact_id: str,
    body: EvidenceVersionCreate,
    principal: Principal = Depends(get_principal),
    storage: S3Storage | None = Depends(get_storage),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.EVIDENCE_UPLOAD_ROLES, "Insufficient permissions to upload evidence")
    parent = await evidence.load_artifact(s, principal.org_id, artifact_id)
    new, upload = await evidence.create_version(
        s, principal, parent, body.model_dump(exclude_unset=True), storage, trail,
    )
    await s.commit()
    await trail.emit()
    await s.refresh(new)
    return await _one_out(s, new, upload)


# ═══ Links ═══


@router.get("/{artifact_id}/links", summary="Controls and requirements this artifact supports")
async def list_links(
    artifact_id: str,
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    a = await evidence.load_artifact(s, principal.org_id, artifact_id)
    links = (await s.execute(
        select(EvidenceLink)
        .where(EvidenceLink.artifact_id == a.id, EvidenceLink.org_id == a.org_id)
        .order_by(EvidenceLink.created_at, EvidenceLink.id)
    )).scalars().all()
    return {"data": await _link_outs(s, a.org_id, links)}


@router.post("/{artifact_id}/links", status_code=201, summary="Link artifact to controls/requirements")
async def create_links(
    artifact_id: str,
    body: EvidenceLinkRequest,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.EVIDENCE_LINK_ROLES)
    a = await evidence.load_artifact(s, principal.org_id, artifact_id)
    links = await evidence.link_artifact(s, principal, a, body.items(), trail)
    await s.commit()
    await trail.emit()
    return {"data": await _link_outs(s, a.org_id, links), "created": len(links)}


@router.delete("/{artifact_id}/links/{link_id}", status_code=204, summary="Remove link")
async def delete_link(
    artifact_id: str,
    link_id: str,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.EVIDENCE_LINK_ROLES)
    a = await evidence.load_artifact(s, principal.org_id, artifact_id)
    await evidence.unlink(s, a, link_id, trail)
    await s.commit()
    await trail.emit()
    return Response(status_code=204)


# ═══ Evaluations ═══


@router.get("/{artifact_id}/evaluations", summary="Evaluation history")
async def list_evaluations(
    artifact_id: str,
    page: Page = Depends(pagination(default_per_page=20, max_per_page=50)),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    a = await evidence.load_artifact(s, principal.org_id, artifact_id)
    q = select(EvidenceEvaluation).where(
        EvidenceEvaluation.artifact_id == a.id, EvidenceEvaluation.org_id == a.org_id,
    )
    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    rows = (await s.execute(
        q.order_by(EvidenceEvaluation.created_at.desc(), EvidenceEvaluation.id.desc())
        .offset(page.offset).limit(page.per_page)
    )).scalars().all()
    users = await users_by_id(s, a.org_id, [r.evaluated_by for r in rows])
    data = []
    for r in rows:
        out = EvaluationOut.model_validate(r)
        u = users.get(r.evaluated_by)
        out.evaluator_name = u.display_name if u else None
        data.append(out)
    return paginated(data, page, total)


@router.post("/{artifact_id}/evaluations", status_code=201, summary="Record evaluation")
async def create_evaluation(
    artifact_id: str,
    body: EvaluationCreate,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.EVIDENCE_EVAL_ROLES, "Insufficient permissions to evaluate evidence")
    a = await evidence.load_artifact(s, principal.org_id, artifact_id)
    ev, new_status = await evidence.evaluate(s, principal, a, body.model_dump(), trail)
    await s.commit()
    await trail.emit()
    return {
        "evaluation": EvaluationOut.model_validate(ev),
        "artifact_status": a.status,
        "status_changed": new_status is not None,
    }


# ═══ Reverse lookups ═══


async def _linked_artifacts(s: AsyncSession, org_id: str, link_clause) -> list[dict]:
    rows = (await s.execute(
        select(EvidenceArtifact, EvidenceLink)
        .join(EvidenceLink, EvidenceLink.artifact_id == EvidenceArtifact.id)
        .where(
            EvidenceArtifact.org_id == org_id,
            EvidenceArtifact.is_current.is_(True),
            link_clause,
        )
        .order_by(EvidenceArtifact.collection_date.desc(), EvidenceArtifact.id)
    )).all()
    outs = await evidence.artifact_outs(s, [a for a, _ in rows])
    data = []
    for out, (_, link) in zip(outs, rows):
        item = out.model_dump()
        item["link_id"] = link.id
        item["strength"] = link.strength
        data.append(item)
    return data


@lookup_router.get("/controls/{control_id}/evidence", summary="Current evidence linked to a control")
async def control_evidence(
    control_id: str,
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    c = await load_control(s, principal.org_id, control_id)
    data = await _linked_artifacts(s, principal.org_id, EvidenceLink.control_id == c.id)
    return {"control": {"id": c.id, "identifier": c.identifier, "title": c.title}, "data": data}


@lookup_router.get("/requirements/{requirement_id}/evidence", summary="Current evidence linked to a requirement")
async def requirement_evidence(
    requirement_id: str,
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    r = await load_requirement(s, requirement_id)
    data = await _linked_artifacts(
        s, principal.org_id,
        and_(EvidenceLink.requirement_id == r.id, EvidenceLink.org_id == principal.org_id),
    )
    return {"requirement": {"id": r.id, "identifier": r.identifier, "title": r.title}, "data": data}
