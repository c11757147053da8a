"""
Counter reconciler: recompute the denormalized request/finding counters on
an audit from the rows themselves. Always a full count, never a delta.
"""
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_core.models.audit import Audit, AuditFinding, AuditRequest
from grc_core.services.state_machine import FINDING_CLOSED, REQUEST_CLOSED


async def _count(s: AsyncSession, model, audit: Audit, *conditions) -> int:
    q = select(func.count()).select_from(model).where(
        model.org_id == audit.org_id, model.audit_id == audit.id, *conditions,
    )
    return (await s.execute(q)).scalar() or 0


async def recompute_request_counters(s: AsyncSession, audit: Audit) -> None:
    await s.flush()
    audit.total_requests = await _count(s, AuditRequest, audit)
    audit.open_requests = await _count(s, AuditRequest, audit, AuditRequest.status.not_in(REQUEST_CLOSED))


async def recompute_finding_counters(s: AsyncSession, audit: Audit) -> None:
    await s.flush()
    audit.total_findings = await _count(s, AuditFinding, audit)
    audit.open_findings = await _count(s, AuditFinding, audit, AuditFinding.status.not_in(FINDING_CLOSED))


async def recompute_all(s: AsyncSession, audit: Audit) -> None:
    await recompute_request_counters(s, audit)
    await recompute_finding_counters(s, audit)
