"""
Audit Hub: PBC requests and evidence submissions
/api/v1/audits/{audit_id}/requests, /api/v1/audit-request-templates
"""
from datetime import date

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_core.database import get_session
from grc_core.middleware.audit import AuditTrail, get_audit_trail
from grc_core.models.audit import AuditComment, AuditEvidenceLink, AuditRequest, AuditRequestTemplate
from grc_core.models.evidence import EvidenceArtifact
from grc_core.pagination import Page, order_clause, paginated, pagination, pick_sort
from grc_core.schemas.audit import (
    AuditEvidenceLinkOut,
    AuditEvidenceReview,
    AuditEvidenceSubmit,
    AuditRequestAssign,
    AuditRequestBulkCreate,
    AuditRequestCreate,
    AuditRequestFromTemplate,
    AuditRequestOut,
    AuditRequestReview,
    AuditRequestSubmit,
    AuditRequestTemplateOut,
    AuditRequestUpdate,
    BulkResultOut,
)
from grc_core.services import audit_engine, authz, counters
from grc_core.services.authz import Principal, get_principal
from grc_core.services.state_machine import REQUEST_CLOSED

router = APIRouter(prefix="/api/v1/audits/{audit_id}/requests", tags=["Audit Hub: requests"])
templates_router = APIRouter(prefix="/api/v1/audit-request-templates", tags=["Audit Hub: requests"])

_PRIORITY_RANK = case(
    {"critical": 0, "high": 1, "medium": 2, "low": 3},
    value=AuditRequest.priority,
    else_=4,
)
_SORTS = {
    "due_date": AuditRequest.due_date,
    "created_at": AuditRequest.created_at,
    "priority": _PRIORITY_RANK,
    "status": AuditRequest.status,
}


# ─── Helpers ──────────────────────────────────────────────────


async def _request_out(s: AsyncSession, principal: Principal, r: AuditRequest) -> AuditRequestOut:
    out = AuditRequestOut.model_validate(r)
    out.evidence_count = await audit_engine.evidence_count(s, r)
    q = select(func.count()).select_from(AuditComment).where(
        AuditComment.org_id == r.org_id,
        AuditComment.target_type == "request",
        AuditComment.target_id == r.id,
    )
    # Auditors never see internal comments, not even as a count
    if principal.is_auditor:
        q = q.where(AuditComment.is_internal.is_(False))
    out.comment_count = (await s.execute(q)).scalar() or 0
    out.is_overdue = bool(
        r.due_date and r.due_date < date.today() and r.status not in (*REQUEST_CLOSED, "submitted")
    )
    return out


async def _link_out(s: AsyncSession, link: AuditEvidenceLink) -> AuditEvidenceLinkOut:
    out = AuditEvidenceLinkOut.model_validate(link)
    art = (await s.execute(
        select(EvidenceArtifact).where(
            EvidenceArtifact.id == link.artifact_id, EvidenceArtifact.org_id == link.org_id,
        )
    )).scalar_one_or_none()
    if art:
        out.artifact_title = art.title
        out.artifact_file_name = art.file_name
        out.artifact_evidence_type = art.evidence_type
        out.artifact_status = art.status
    return out


# ═══════════════════ REQUESTS ═══════════════════


@router.get("", summary="List audit requests")
async def list_requests(
    audit_id: str,
    status: str | None = Query(None),
    priority: str | None = Query(None),
    assigned_to: str | None = Query(None),
    control_id: str | None = Query(None),
    requirement_id: str | None = Query(None),
    overdue: bool | None = Query(None),
    search: str | None = Query(None, max_length=200),
    sort: str | None = Query(None),
    order: str | None = Query(None),
    page: Page = Depends(pagination()),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_VIEW_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    q = select(AuditRequest).where(AuditRequest.audit_id == a.id, AuditRequest.org_id == a.org_id)
    if status:
        q = q.where(AuditRequest.status == status)
    if priority:
        q = q.where(AuditRequest.priority == priority)
    if assigned_to:
        q = q.where(AuditRequest.assigned_to == assigned_to)
    if control_id:
        q = q.where(AuditRequest.control_id == control_id)
    if requirement_id:
        q = q.where(AuditRequest.requirement_id == requirement_id)
    if overdue:
        q = q.where(
            AuditRequest.due_date < date.today(),
            AuditRequest.status.not_in((*REQUEST_CLOSED, "submitted")),
        )
    if search:
        like = f"%{search}%"
        q = q.where(or_(
            AuditRequest.title.ilike(like),
            AuditRequest.description.ilike(like),
            AuditRequest.reference_number.ilike(like),
        ))

    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    col = pick_sort(sort, _SORTS, "due_date")
    q = (
        q.order_by(order_clause(col, order, default_desc=False), AuditRequest.created_at)
        .offset(page.offset).limit(page.per_page)
    )
    rows = (await s.execute(q)).scalars().all()
    return paginated([await _request_out(s, principal, r) for r in rows], page, total)


@router.post("", response_model=AuditRequestOut, status_code=201, summary="Create audit request")
async def create_request(
    audit_id: str,
    body: AuditRequestCreate,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_REQUEST_CREATE_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    audit_engine.ensure_active(a)
    r = await audit_engine.build_request(s, principal, a, **body.model_dump())
    await counters.recompute_request_counters(s, a)
    trail.record("audit_request.created", "audit_request", r.id, audit_id=a.id, title=r.title)
    await s.commit()
    await trail.emit()
    return await _request_out(s, principal, r)


@router.post("/bulk", response_model=BulkResultOut, status_code=201, summary="Create requests in bulk")
async def bulk_create_requests(
    audit_id: str,
    body: AuditRequestBulkCreate,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_REQUEST_CREATE_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    created, errors = await audit_engine.create_requests(
        s, principal, a, [item.model_dump() for item in body.requests], trail,
    )
    await s.commit()
    await trail.emit()
    return BulkResultOut(
        created=len(created),
        skipped=len(errors),
        data=[await _request_out(s, principal, r) for r in created],
        errors=errors,
    )


@router.post("/from-template", response_model=BulkResultOut, status_code=201, summary="Create requests from templates")
async def create_from_templates(
    audit_id: str,
    body: AuditRequestFromTemplate,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_REQUEST_CREATE_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    created, skipped = await audit_engine.create_from_templates(
        s, principal, a, body.template_ids, trail,
        auto_number=body.auto_number,
        prefix=body.number_prefix,
        due_date=body.due_date,
        assigned_to=body.assigned_to,
    )
    await s.commit()
    await trail.emit()
    return BulkResultOut(
        created=len(created),
        skipped=len(skipped),
        data=[await _request_out(s, principal, r) for r in created],
        errors=[{"template_id": tid, "code": "NOT_FOUND", "message": "Template not found"} for tid in skipped],
    )


@router.get("/{request_id}", response_model=AuditRequestOut, summary="Audit request details")
async def get_request(
    audit_id: str,
    request_id: str,
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_VIEW_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    r = await audit_engine.load_request(s, a, request_id)
    return await _request_out(s, principal, r)


@router.put("/{request_id}", response_model=AuditRequestOut, summary="Update audit request")
async def update_request(
    audit_id: str,
    request_id: str,
    body: AuditRequestUpdate,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_REQUEST_CREATE_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    r = await audit_engine.load_request(s, a, request_id)
    await audit_engine.update_request(s, a, r, body.model_dump(exclude_unset=True), trail)
    await s.commit()
    await trail.emit()
    await s.refresh(r)
    return await _request_out(s, principal, r)


@router.put("/{request_id}/assign", response_model=AuditRequestOut, summary="Assign audit request")
async def assign_request(
    audit_id: str,
    request_id: str,
    body: AuditRequestAssign,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_REQUEST_ASSIGN_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    r = await audit_engine.load_request(s, a, request_id)
    await audit_engine.assign_request(s, a, r, body.assigned_to, trail)
    await s.commit()
    await trail.emit()
    return await _request_out(s, principal, r)


@router.put("/{request_id}/submit", response_model=AuditRequestOut, summary="Submit request for review")
async def submit_request(
    audit_id: str,
    request_id: str,
    body: AuditRequestSubmit | None = None,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_EVIDENCE_SUBMIT_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    r = await audit_engine.load_request(s, a, request_id)
    await audit_engine.submit_request(s, a, r, body.notes if body else None, trail)
    await s.commit()
    await trail.emit()
    return await _request_out(s, principal, r)


@router.put("/{request_id}/review", response_model=AuditRequestOut, summary="Review submitted request")
async def review_request(
    audit_id: str,
    request_id: str,
    body: AuditRequestReview,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_EVIDENCE_REVIEW_ROLES, "Only auditors can review requests")
    a = await audit_engine.load_audit(s, principal, audit_id)
    r = await audit_engine.load_request(s, a, request_id)
    await audit_engine.review_request(s, a, r, body.status, body.reviewer_notes, trail)
    await s.commit()
    await trail.emit()
    return await _request_out(s, principal, r)


@router.put("/{request_id}/close", response_model=AuditRequestOut, summary="Close audit request")
async def close_request(
    audit_id: str,
    request_id: str,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_CREATE_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    r = await audit_engine.load_request(s, a, request_id)
    await audit_engine.close_request(s, a, r, trail)
    await s.commit()
    await trail.emit()
    return await _request_out(s, principal, r)


# ═══════════════════ EVIDENCE SUBMISSIONS ═══════════════════


@router.get("/{request_id}/evidence", response_model=list[AuditEvidenceLinkOut], summary="Evidence submitted for a request")
async def list_request_evidence(
    audit_id: str,
    request_id: str,
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_VIEW_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    r = await audit_engine.load_request(s, a, request_id)
    links = (await s.execute(
        select(AuditEvidenceLink)
        .where(AuditEvidenceLink.audit_request_id == r.id, AuditEvidenceLink.org_id == a.org_id)
        .order_by(AuditEvidenceLink.submitted_at)
    )).scalars().all()
    return [await _link_out(s, link) for link in links]


@router.post("/{request_id}/evidence", response_model=AuditEvidenceLinkOut, status_code=201, summary="Submit evidence")
async def submit_evidence(
    audit_id: str,
    request_id: str,
    body: AuditEvidenceSubmit,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_EVIDENCE_SUBMIT_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    r = await audit_engine.load_request(s, a, request_id)
    link = await audit_engine.submit_evidence(s, principal, a, r, body.artifact_id, body.submission_notes, trail)
    await s.commit()
    await trail.emit()
    return await _link_out(s, link)


@router.put(
    "/{request_id}/evidence/{link_id}/review",
    response_model=AuditEvidenceLinkOut,
    summary="Review submitted evidence",
)
async def review_evidence(
    audit_id: str,
    request_id: str,
    link_id: str,
    body: AuditEvidenceReview,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_EVIDENCE_REVIEW_ROLES, "Only auditors can review evidence")
    a = await audit_engine.load_audit(s, principal, audit_id)
    r = await audit_engine.load_request(s, a, request_id)
    link = await audit_engine.load_evidence_link(s, r, link_id)
    await audit_engine.review_evidence(principal, a, link, body.status, body.review_notes, trail)
    await s.commit()
    await trail.emit()
    return await _link_out(s, link)


@router.delete("/{request_id}/evidence/{link_id}", status_code=204, summary="Remove submitted evidence")
async def remove_evidence(
    audit_id: str,
    request_id: str,
    link_id: str,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_VIEW_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    r = await audit_engine.load_request(s, a, request_id)
    link = await audit_engine.load_evidence_link(s, r, link_id)
    await audit_engine.remove_evidence(s, principal, a, r, link, trail)
    await s.commit()
    await trail.emit()
    return Response(status_code=204)


# ═══════════════════ TEMPLATES ═══════════════════


@templates_router.get("", summary="Audit request templates")
async def list_request_templates(
    audit_type: str | None = Query(None),
    framework: str | None = Query(None),
    category: str | None = Query(None),
    search: str | None = Query(None, max_length=200),
    page: Page = Depends(pagination(default_per_page=50)),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_VIEW_ROLES)
    q = select(AuditRequestTemplate)
    if audit_type:
        q = q.where(AuditRequestTemplate.audit_type == audit_type)
    if framework:
        q = q.where(AuditRequestTemplate.framework == framework)
    if category:
        q = q.where(AuditRequestTemplate.category == category)
    if search:
        like = f"%{search}%"
        q = q.where(or_(AuditRequestTemplate.title.ilike(like), AuditRequestTemplate.description.ilike(like)))
    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    rows = (await s.execute(
        q.order_by(AuditRequestTemplate.title).offset(page.offset).limit(page.per_page)
    )).scalars().all()
    return paginated([AuditRequestTemplateOut.model_validate(t) for t in rows], page, total)
