"""
Audit Hub: findings and their remediation lifecycle
/api/v1/audits/{audit_id}/findings
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_core.database import get_session
from grc_core.middleware.audit import AuditTrail, get_audit_trail
from grc_core.models.audit import AuditFinding
from grc_core.pagination import Page, order_clause, paginated, pagination, pick_sort
from grc_core.schemas.audit import (
    AuditFindingCreate,
    AuditFindingOut,
    AuditFindingStatusChange,
    AuditFindingUpdate,
    ManagementResponse,
)
from grc_core.services import audit_engine, authz
from grc_core.services.authz import Principal, get_principal

router = APIRouter(prefix="/api/v1/audits/{audit_id}/findings", tags=["Audit Hub: findings"])

_SEVERITY_RANK = case(
    {"critical": 0, "high": 1, "medium": 2, "low": 3, "informational": 4},
    value=AuditFinding.severity,
    else_=5,
)
_SORTS = {
    "created_at": AuditFinding.created_at,
    "severity": _SEVERITY_RANK,
    "status": AuditFinding.status,
    "remediation_due_date": AuditFinding.remediation_due_date,
}

_FINDING_EDIT_ROLES = authz.AUDIT_FINDING_CREATE_ROLES | authz.AUDIT_CREATE_ROLES


@router.get("", summary="List findings")
async def list_findings(
    audit_id: str,
    severity: str | None = Query(None),
    status: str | None = Query(None),
    category: str | None = Query(None),
    remediation_owner_id: str | None = Query(None),
    search: str | None = Query(None, max_length=200),
    sort: str | None = Query(None),
    order: str | None = Query(None),
    page: Page = Depends(pagination()),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_VIEW_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    q = select(AuditFinding).where(AuditFinding.audit_id == a.id, AuditFinding.org_id == a.org_id)
    if severity:
        q = q.where(AuditFinding.severity == severity)
    if status:
        q = q.where(AuditFinding.status == status)
    if category:
        q = q.where(AuditFinding.category == category)
    if remediation_owner_id:
        q = q.where(AuditFinding.remediation_owner_id == remediation_owner_id)
    if search:
        like = f"%{search}%"
        q = q.where(or_(
            AuditFinding.title.ilike(like),
            AuditFinding.description.ilike(like),
            AuditFinding.reference_number.ilike(like),
        ))
    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    col = pick_sort(sort, _SORTS, "created_at")
    default_desc = col is AuditFinding.created_at
    q = q.order_by(order_clause(col, order, default_desc=default_desc), AuditFinding.id)
    rows = (await s.execute(q.offset(page.offset).limit(page.per_page))).scalars().all()
    return paginated([AuditFindingOut.model_validate(f) for f in rows], page, total)


@router.post("", response_model=AuditFindingOut, status_code=201, summary="Record finding")
async def create_finding(
    audit_id: str,
    body: AuditFindingCreate,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_FINDING_CREATE_ROLES, "Only auditors can record findings")
    a = await audit_engine.load_audit(s, principal, audit_id)
    f = await audit_engine.create_finding(s, principal, a, body.model_dump(), trail)
    await s.commit()
    await trail.emit()
    return AuditFindingOut.model_validate(f)


@router.get("/{finding_id}", response_model=AuditFindingOut, summary="Finding details")
async def get_finding(
    audit_id: str,
    finding_id: str,
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_VIEW_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    return AuditFindingOut.model_validate(await audit_engine.load_finding(s, a, finding_id))


@router.put("/{finding_id}", response_model=AuditFindingOut, summary="Update finding")
async def update_finding(
    audit_id: str,
    finding_id: str,
    body: AuditFindingUpdate,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, _FINDING_EDIT_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    f = await audit_engine.load_finding(s, a, finding_id)
    await audit_engine.update_finding(s, a, f, body.model_dump(exclude_unset=True), trail)
    await s.commit()
    await trail.emit()
    await s.refresh(f)
    return AuditFindingOut.model_validate(f)


@router.put("/{finding_id}/status", response_model=AuditFindingOut, summary="Change finding status")
async def change_finding_status(
    audit_id: str,
    finding_id: str,
    body: AuditFindingStatusChange,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_FINDING_STATUS_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    f = await audit_engine.load_finding(s, a, finding_id)
    await audit_engine.change_finding_status(s, principal, a, f, body.status, body, trail)
    await s.commit()
    await trail.emit()
    await s.refresh(f)
    return AuditFindingOut.model_validate(f)


@router.put("/{finding_id}/management-response", response_model=AuditFindingOut, summary="Management response")
async def set_management_response(
    audit_id: str,
    finding_id: str,
    body: ManagementResponse,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_MANAGEMENT_RESPONSE_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    f = await audit_engine.load_finding(s, a, finding_id)
    await audit_engine.set_management_response(principal, a, f, body.management_response, trail)
    await s.commit()
    await trail.emit()
    await s.refresh(f)
    return AuditFindingOut.model_validate(f)
