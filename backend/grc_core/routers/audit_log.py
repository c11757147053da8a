"""
Audit trail viewer: /api/v1/audit-log
Read-only access to the caller's organization change log.
"""
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_core.database import get_session
from grc_core.models.audit import Audit, AuditComment
from grc_core.models.audit_log import AuditLog
from grc_core.pagination import Page, paginated, pagination
from grc_core.schemas.audit_log import AuditLogOut
from grc_core.services import authz
from grc_core.services.authz import Principal, get_principal
from grc_core.services.lookups import json_contains, users_by_id

router = APIRouter(prefix="/api/v1/audit-log", tags=["Audit Trail"])

# Records about an audit's children carry the owning audit in metadata.audit_id
_AUDIT_CHILD_TYPES = ("audit_request", "audit_finding", "audit_comment", "audit_evidence_link")


def _auditor_scope(principal: Principal):
    """Auditors only see engagements naming them; internal comments stay hidden."""
    assigned = select(Audit.id).where(
        Audit.org_id == principal.org_id, json_contains(Audit.auditor_ids, principal.user_id),
    )
    visible_comments = select(AuditComment.id).where(
        AuditComment.org_id == principal.org_id, AuditComment.is_internal.is_(False),
    )
    owning_audit = AuditLog.extra["audit_id"].as_string()
    return or_(
        AuditLog.resource_type.not_in(("audit", *_AUDIT_CHILD_TYPES)),
        and_(AuditLog.resource_type == "audit", AuditLog.resource_id.in_(assigned)),
        and_(
            AuditLog.resource_type.in_(("audit_request", "audit_finding", "audit_evidence_link")),
            owning_audit.in_(assigned),
        ),
        and_(
            AuditLog.resource_type == "audit_comment",
            owning_audit.in_(assigned),
            AuditLog.resource_id.in_(visible_comments),
        ),
    )


@router.get("", summary="Browse the change log")
async def list_audit_log(
    action: str | None = Query(None, description="e.g. policy.created, audit.status_changed"),
    actor_id: str | None = Query(None),
    resource_type: str | None = Query(None),
    resource_id: str | None = Query(None),
    date_from: datetime | None = Query(None, alias="from"),
    date_to: datetime | None = Query(None, alias="to"),
    page: Page = Depends(pagination(default_per_page=50, max_per_page=100)),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_LOG_VIEW_ROLES)
    q = select(AuditLog).where(AuditLog.org_id == principal.org_id)
    if principal.is_auditor:
        q = q.where(_auditor_scope(principal))
    if action:
        q = q.where(AuditLog.action == action)
    if actor_id:
        q = q.where(AuditLog.actor_id == actor_id)
    if resource_type:
        q = q.where(AuditLog.resource_type == resource_type)
    if resource_id:
        q = q.where(AuditLog.resource_id == resource_id)
    if date_from:
        q = q.where(AuditLog.created_at >= date_from)
    if date_to:
        q = q.where(AuditLog.created_at <= date_to)

    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    rows = (await s.execute(
        q.order_by(AuditLog.created_at.desc(), AuditLog.id).offset(page.offset).limit(page.per_page)
    )).scalars().all()

    users = await users_by_id(s, principal.org_id, [r.actor_id for r in rows])
    items = []
    for r in rows:
        out = AuditLogOut.model_validate(r)
        u = users.get(r.actor_id)
        out.actor_name = u.display_name if u else None
        items.append(out)
    return paginated(items, page, total)
