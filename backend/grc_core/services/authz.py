"""
Authorization & tenancy gate.

The authenticated principal arrives in trusted headers set by the gateway in
front of the service (X-User-Id, X-Org-Id, X-User-Role). Every router takes it
through ``Depends(get_principal)`` and scopes its queries by ``principal.org_id``.
"""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header

from grc_core.errors import Forbidden, Unauthorized

# ─── Roles ────────────────────────────────────────────────────

CISO = "ciso"
COMPLIANCE_MANAGER = "compliance_manager"
SECURITY_ENGINEER = "security_engineer"
IT_ADMIN = "it_admin"
DEVOPS_ENGINEER = "devops_engineer"
AUDITOR = "auditor"
VENDOR_MANAGER = "vendor_manager"

ALL_ROLES = frozenset({
    CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER, IT_ADMIN, DEVOPS_ENGINEER, AUDITOR, VENDOR_MANAGER,
})

# ─── Role sets ────────────────────────────────────────────────

AUDIT_CREATE_ROLES = frozenset({CISO, COMPLIANCE_MANAGER})
AUDIT_VIEW_ROLES = frozenset({CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER, IT_ADMIN, AUDITOR})
AUDIT_DASHBOARD_ROLES = frozenset({CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER})
AUDIT_REQUEST_CREATE_ROLES = frozenset({CISO, COMPLIANCE_MANAGER, AUDITOR})
AUDIT_REQUEST_ASSIGN_ROLES = frozenset({CISO, COMPLIANCE_MANAGER})
AUDIT_EVIDENCE_SUBMIT_ROLES = frozenset({CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER, IT_ADMIN})
AUDIT_EVIDENCE_REVIEW_ROLES = frozenset({AUDITOR})
AUDIT_FINDING_CREATE_ROLES = frozenset({AUDITOR})
AUDIT_FINDING_STATUS_ROLES = frozenset({CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER, AUDITOR})
AUDIT_MANAGEMENT_RESPONSE_ROLES = frozenset({CISO, COMPLIANCE_MANAGER})

EVIDENCE_UPLOAD_ROLES = frozenset({CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER, IT_ADMIN, DEVOPS_ENGINEER})
EVIDENCE_EDIT_ROLES = frozenset({CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER})
EVIDENCE_LINK_ROLES = frozenset({CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER})
EVIDENCE_EVAL_ROLES = frozenset({CISO, COMPLIANCE_MANAGER, AUDITOR})
EVIDENCE_STATUS_ROLES = frozenset({CISO, COMPLIANCE_MANAGER})

POLICY_CREATE_ROLES = frozenset({CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER})
POLICY_PUBLISH_ROLES = frozenset({CISO, COMPLIANCE_MANAGER})
POLICY_ARCHIVE_ROLES = frozenset({CISO, COMPLIANCE_MANAGER})
POLICY_GAP_ROLES = frozenset({CISO, COMPLIANCE_MANAGER, SECURITY_ENGINEER, AUDITOR})

AUDIT_LOG_VIEW_ROLES = frozenset({CISO, COMPLIANCE_MANAGER, AUDITOR})


@dataclass(frozen=True)
class Principal:
    user_id: str
    org_id: str
    role: str

    @property
    def is_auditor(self) -> bool:
        return self.role == AUDITOR

    def has_role(self, roles) -> bool:
        return self.role in roles


async def get_principal(
    x_user_id: str | None = Header(None),
    x_org_id: str | None = Header(None),
    x_user_role: str | None = Header(None),
) -> Principal:
    if not x_user_id or not x_org_id or not x_user_role:
        raise Unauthorized("Authentication required")
    role = x_user_role.strip().lower()
    if role not in ALL_ROLES:
        raise Forbidden(f"Unknown role '{x_user_role}'")
    return Principal(user_id=x_user_id, org_id=x_org_id, role=role)


def require_roles(principal: Principal, roles, message: str = "Insufficient permissions") -> None:
    if principal.role not in roles:
        raise Forbidden(message)


def require_owner_or_roles(
    principal: Principal,
    owner_ids,
    roles,
    message: str = "Insufficient permissions",
) -> None:
    """Pass when the caller owns the resource or holds one of ``roles``."""
    if principal.user_id in {o for o in owner_ids if o}:
        return
    require_roles(principal, roles, message)
