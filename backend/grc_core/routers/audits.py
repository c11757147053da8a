"""
Audit Hub: /api/v1/audits
Audit engagements: CRUD, lifecycle, auditor assignment, dashboard, readiness.
"""
from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_core.database import get_session
from grc_core.errors import ValidationFailed
from grc_core.middleware.audit import AuditTrail, get_audit_trail
from grc_core.models.audit import Audit, AuditFinding, AuditRequest
from grc_core.models.catalog import Control, Framework, OrgFramework, Requirement
from grc_core.pagination import Page, paginated, pagination, order_clause, pick_sort
from grc_core.schemas.audit import (
    AuditCreate,
    AuditCreatedOut,
    AuditorAdd,
    AuditOut,
    AuditStatusChange,
    AuditUpdate,
)
from grc_core.services import audit_engine, authz
from grc_core.services.authz import Principal, get_principal
from grc_core.services.lookups import json_contains, require_org_user
from grc_core.services.state_machine import AUDIT_TERMINAL, FINDING_CLOSED, REQUEST_CLOSED

router = APIRouter(prefix="/api/v1/audits", tags=["Audit Hub"])

_SORTS = {
    "created_at": Audit.created_at,
    "planned_end": Audit.planned_end,
    "title": Audit.title,
    "status": Audit.status,
}


# ─── Helpers ──────────────────────────────────────────────────


async def _audit_out(s: AsyncSession, a: Audit) -> AuditOut:
    out = AuditOut.model_validate(a)
    if a.org_framework_id:
        row = (await s.execute(
            select(Framework.id, Framework.name)
            .join(OrgFramework, OrgFramework.framework_id == Framework.id)
            .where(OrgFramework.id == a.org_framework_id, OrgFramework.org_id == a.org_id)
        )).first()
        if row:
            out.framework_id, out.framework_name = row.id, row.name
    return out


async def _check_org_framework(s: AsyncSession, org_id: str, org_framework_id: str | None) -> None:
    if not org_framework_id:
        return
    found = (await s.execute(
        select(OrgFramework.id).where(OrgFramework.id == org_framework_id, OrgFramework.org_id == org_id)
    )).scalar_one_or_none()
    if not found:
        raise ValidationFailed("Framework is not activated for this organization")


# ═══════════════════ LIST / DASHBOARD ═══════════════════


@router.get("", summary="List audits")
async def list_audits(
    status: str | None = Query(None),
    audit_type: str | None = Query(None),
    framework_id: str | None = Query(None),
    search: str | None = Query(None, max_length=200),
    sort: str | None = Query(None),
    order: str | None = Query(None),
    page: Page = Depends(pagination()),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_VIEW_ROLES)
    q = select(Audit).where(Audit.org_id == principal.org_id)
    if principal.is_auditor:
        q = q.where(json_contains(Audit.auditor_ids, principal.user_id))
    if status:
        q = q.where(Audit.status == status)
    if audit_type:
        q = q.where(Audit.audit_type == audit_type)
    if framework_id:
        q = q.join(OrgFramework, OrgFramework.id == Audit.org_framework_id).where(
            OrgFramework.framework_id == framework_id,
        )
    if search:
        like = f"%{search}%"
        q = q.where(or_(Audit.title.ilike(like), Audit.description.ilike(like)))

    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    col = pick_sort(sort, _SORTS, "created_at")
    q = q.order_by(order_clause(col, order, default_desc=True), Audit.id).offset(page.offset).limit(page.per_page)
    audits = (await s.execute(q)).scalars().all()
    return paginated([await _audit_out(s, a) for a in audits], page, total)


@router.get("/dashboard", summary="Audit dashboard")
async def audit_dashboard(
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_DASHBOARD_ROLES)
    org = principal.org_id
    today = date.today()

    active = (await s.execute(
        select(Audit).where(Audit.org_id == org, Audit.status.not_in(AUDIT_TERMINAL))
        .order_by(Audit.planned_end.is_(None), Audit.planned_end, Audit.created_at)
    )).scalars().all()
    completed = (await s.execute(
        select(func.count()).select_from(Audit).where(Audit.org_id == org, Audit.status == "completed")
    )).scalar() or 0
    active_ids = [a.id for a in active]

    open_requests = overdue_requests = open_findings = critical = high = 0
    overdue_list: list[dict] = []
    severe_list: list[dict] = []
    if active_ids:
        open_req = (
            AuditRequest.org_id == org,
            AuditRequest.audit_id.in_(active_ids),
            AuditRequest.status.not_in(REQUEST_CLOSED),
        )
        open_requests = (await s.execute(
            select(func.count()).select_from(AuditRequest).where(*open_req)
        )).scalar() or 0
        overdue_q = select(AuditRequest).where(
            *open_req, AuditRequest.status != "submitted", AuditRequest.due_date < today,
        )
        overdue_requests = (await s.execute(
            select(func.count()).select_from(overdue_q.subquery())
        )).scalar() or 0
        for r in (await s.execute(overdue_q.order_by(AuditRequest.due_date).limit(10))).scalars().all():
            overdue_list.append({
                "id": r.id, "audit_id": r.audit_id, "title": r.title, "priority": r.priority,
                "status": r.status, "due_date": r.due_date, "assigned_to": r.assigned_to,
                "days_overdue": (today - r.due_date).days,
            })

        open_find = (
            AuditFinding.org_id == org,
            AuditFinding.audit_id.in_(active_ids),
            AuditFinding.status.not_in(FINDING_CLOSED),
        )
        rows = (await s.execute(
            select(AuditFinding.severity, func.count()).where(*open_find).group_by(AuditFinding.severity)
        )).all()
        by_sev = {sev: n for sev, n in rows}
        open_findings = sum(by_sev.values())
        critical, high = by_sev.get("critical", 0), by_sev.get("high", 0)
        severe = (await s.execute(
            select(AuditFinding).where(*open_find, AuditFinding.severity.in_(("critical", "high")))
            .order_by(AuditFinding.severity, AuditFinding.created_at.desc()).limit(10)
        )).scalars().all()
        severe_list = [
            {"id": f.id, "audit_id": f.audit_id, "title": f.title, "severity": f.severity,
             "status": f.status, "remediation_due_date": f.remediation_due_date}
            for f in severe
        ]

    return {
        "summary": {
            "active_audits": len(active),
            "completed_audits": completed,
            "open_requests": open_requests,
            "overdue_requests": overdue_requests,
            "open_findings": open_findings,
            "critical_findings": critical,
            "high_findings": high,
        },
        "active_audits": [
            {
                "id": a.id, "title": a.title, "audit_type": a.audit_type, "status": a.status,
                "planned_end": a.planned_end,
                "total_requests": a.total_requests, "open_requests": a.open_requests,
                "total_findings": a.total_findings, "open_findings": a.open_findings,
                "readiness_pct": audit_engine.readiness_pct(a.total_requests - a.open_requests, a.total_requests),
            }
            for a in active
        ],
        "overdue_requests": overdue_list,
        "critical_findings": severe_list,
    }


# ═══════════════════ CRUD ═══════════════════


@router.post("", response_model=AuditCreatedOut, status_code=201, summary="Create audit")
async def create_audit(
    body: AuditCreate,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_CREATE_ROLES)
    org = principal.org_id
    await _check_org_framework(s, org, body.org_framework_id)
    for uid, label in ((body.lead_auditor_id, "Lead auditor"), (body.internal_lead_id, "Internal lead")):
        if uid:
            await require_org_user(s, org, uid, label)
    auditor_ids: list[str] = []
    for uid in body.auditor_ids:
        u = await require_org_user(s, org, uid, "Auditor")
        if u.role != authz.AUDITOR:
            raise ValidationFailed("Every assigned auditor must have the auditor role")
        if uid not in auditor_ids:
            auditor_ids.append(uid)

    data = body.model_dump(exclude={"auditor_ids", "milestones"})
    a = Audit(
        org_id=org,
        status="planning",
        auditor_ids=auditor_ids,
        milestones=[m.model_dump(mode="json") for m in body.milestones] if body.milestones else None,
        created_by=principal.user_id,
        **data,
    )
    s.add(a)
    await s.flush()
    trail.record("audit.created", "audit", a.id, title=a.title, audit_type=a.audit_type)
    await s.commit()
    await trail.emit()
    return a


@router.get("/{audit_id}", response_model=AuditOut, summary="Audit details")
async def get_audit(
    audit_id: str,
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_VIEW_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    return await _audit_out(s, a)


@router.put("/{audit_id}", response_model=AuditOut, summary="Update audit")
async def update_audit(
    audit_id: str,
    body: AuditUpdate,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_CREATE_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    audit_engine.ensure_active(a)
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationFailed("No fields to update")
    if "org_framework_id" in changes:
        await _check_org_framework(s, a.org_id, changes["org_framework_id"])
    for key, label in (("lead_auditor_id", "Lead auditor"), ("internal_lead_id", "Internal lead")):
        if changes.get(key):
            await require_org_user(s, a.org_id, changes[key], label)
    if "milestones" in changes:
        changes["milestones"] = (
            [m.model_dump(mode="json") for m in body.milestones] if body.milestones else None
        )
    for k, v in changes.items():
        setattr(a, k, v)
    trail.record("audit.updated", "audit", a.id, fields=sorted(changes))
    await s.commit()
    await trail.emit()
    await s.refresh(a)
    return await _audit_out(s, a)


@router.put("/{audit_id}/status", summary="Change audit status")
async def change_audit_status(
    audit_id: str,
    body: AuditStatusChange,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_CREATE_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    previous = await audit_engine.change_audit_status(a, body.status, body.notes, trail)
    await s.commit()
    await trail.emit()
    return {
        "id": a.id,
        "status": a.status,
        "previous_status": previous,
        "actual_start": a.actual_start,
        "actual_end": a.actual_end,
    }


# ═══════════════════ AUDITORS ═══════════════════


@router.post("/{audit_id}/auditors", response_model=AuditOut, summary="Assign auditor")
async def add_auditor(
    audit_id: str,
    body: AuditorAdd,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_CREATE_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    await audit_engine.add_auditor(s, a, body.user_id, trail)
    await s.commit()
    await trail.emit()
    await s.refresh(a)
    return await _audit_out(s, a)


@router.delete("/{audit_id}/auditors/{user_id}", response_model=AuditOut, summary="Unassign auditor")
async def remove_auditor(
    audit_id: str,
    user_id: str,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_CREATE_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    await audit_engine.remove_auditor(s, a, user_id, trail)
    await s.commit()
    await trail.emit()
    await s.refresh(a)
    return await _audit_out(s, a)


# ═══════════════════ READINESS ═══════════════════


@router.get("/{audit_id}/readiness", summary="Audit readiness")
async def audit_readiness(
    audit_id: str,
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    """Share of PBC requests accepted, overall and per control / requirement."""
    authz.require_roles(principal, authz.AUDIT_VIEW_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    requests = (await s.execute(
        select(AuditRequest).where(AuditRequest.audit_id == a.id, AuditRequest.org_id == a.org_id)
    )).scalars().all()

    by_status: dict[str, int] = {}
    by_control: dict[str, list[int]] = {}
    by_requirement: dict[str, list[int]] = {}
    for r in requests:
        by_status[r.status] = by_status.get(r.status, 0) + 1
        done = 1 if r.status in REQUEST_CLOSED else 0
        if r.control_id:
            by_control.setdefault(r.control_id, [0, 0])
            by_control[r.control_id][0] += 1
            by_control[r.control_id][1] += done
        if r.requirement_id:
            by_requirement.setdefault(r.requirement_id, [0, 0])
            by_requirement[r.requirement_id][0] += 1
            by_requirement[r.requirement_id][1] += done

    controls = {}
    if by_control:
        controls = {c.id: c for c in (await s.execute(
            select(Control).where(Control.org_id == a.org_id, Control.id.in_(by_control))
        )).scalars().all()}
    requirements = {}
    if by_requirement:
        requirements = {r.id: r for r in (await s.execute(
            select(Requirement).where(Requirement.id.in_(by_requirement))
        )).scalars().all()}

    total = len(requests)
    accepted = sum(1 for r in requests if r.status in REQUEST_CLOSED)
    return {
        "audit_id": a.id,
        "status": a.status,
        "total_requests": total,
        "accepted_requests": accepted,
        "readiness_pct": audit_engine.readiness_pct(accepted, total),
        "by_status": by_status,
        "by_control": [
            {
                "control_id": cid,
                "identifier": controls[cid].identifier if cid in controls else None,
                "title": controls[cid].title if cid in controls else None,
                "total": n, "accepted": done,
                "readiness_pct": audit_engine.readiness_pct(done, n),
            }
            for cid, (n, done) in by_control.items()
        ],
        "by_requirement": [
            {
                "requirement_id": rid,
                "identifier": requirements[rid].identifier if rid in requirements else None,
                "title": requirements[rid].title if rid in requirements else None,
                "total": n, "accepted": done,
                "readiness_pct": audit_engine.readiness_pct(done, n),
            }
            for rid, (n, done) in by_requirement.items()
        ],
    }
