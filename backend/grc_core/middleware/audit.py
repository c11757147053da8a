"""
Audit trail: one audit_log record per state-changing action.

Usage in a router:
    from grc_core.middleware.audit import AuditTrail, get_audit_trail

    trail.record("policy.created", "policy", p.id, identifier=p.identifier)
    await s.commit()
    await trail.emit()

Records are buffered while the operation runs and written after its commit,
through a session of their own. A failed write is logged and dropped: the
originating operation has already succeeded and must not fail because of it.
"""
from __future__ import annotations

import contextvars
import logging
from dataclasses import dataclass, field
from typing import Any

from fastapi import Depends

from grc_core.database import async_session
from grc_core.models.audit_log import AuditLog
from grc_core.models.base import utcnow
from grc_core.services.authz import Principal, get_principal

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Per-request context, set by AuditContextMiddleware in main.py.
# ---------------------------------------------------------------------------
_ctx_ip_address: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "_ctx_ip_address", default=None
)
_ctx_user_agent: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "_ctx_user_agent", default=None
)


def set_audit_context(*, ip_address: str | None = None, user_agent: str | None = None) -> None:
    """Store the current request's client address and agent for audit records."""
    _ctx_ip_address.set(ip_address)
    _ctx_user_agent.set((user_agent or "")[:500] or None)


@dataclass
class AuditEntry:
    action: str
    resource_type: str
    resource_id: str | None
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditTrail:
    def __init__(self, principal: Principal):
        self.principal = principal
        self.entries: list[AuditEntry] = []

    def record(self, action: str, resource_type: str, resource_id: str | None, **metadata: Any) -> None:
        self.entries.append(AuditEntry(action, resource_type, resource_id, metadata))

    def discard(self) -> None:
        self.entries.clear()

    async def emit(self) -> None:
        if not self.entries:
            return
        entries, self.entries = self.entries, []
        ip_address = _ctx_ip_address.get()
        user_agent = _ctx_user_agent.get()
        try:
            async with async_session() as session:
                for e in entries:
                    session.add(AuditLog(
                        org_id=self.principal.org_id,
                        actor_id=self.principal.user_id,
                        action=e.action,
                        resource_type=e.resource_type,
                        resource_id=e.resource_id,
                        extra=_jsonable(e.metadata) or None,
                        ip_address=ip_address,
                        user_agent=user_agent,
                        created_at=utcnow(),
                    ))
                await session.commit()
        except Exception:
            logger.exception(
                "Failed to write audit log entries: %s",
                ", ".join(f"{e.action}:{e.resource_id}" for e in entries),
            )


def get_audit_trail(principal: Principal = Depends(get_principal)) -> AuditTrail:
    return AuditTrail(principal)


def _jsonable(value: Any) -> Any:
    """Dates and other scalars are stored as their string form."""
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
