from .base import Base
from .org import Organization, User
from .catalog import Framework, FrameworkVersion, Requirement, OrgFramework, Control, ControlMapping
from .audit import (
    Audit,
    AuditRequest,
    AuditEvidenceLink,
    AuditFinding,
    AuditComment,
    AuditRequestTemplate,
)
from .evidence import EvidenceArtifact, EvidenceLink, EvidenceEvaluation
from .policy import Policy, PolicyVersion, PolicySignoff, PolicyControl
from .audit_log import AuditLog

__all__ = [
    "Base",
    "Organization",
    "User",
    "Framework",
    "FrameworkVersion",
    "Requirement",
    "OrgFramework",
    "Control",
    "ControlMapping",
    "Audit",
    "AuditRequest",
    "AuditEvidenceLink",
    "AuditFinding",
    "AuditComment",
    "AuditRequestTemplate",
    "EvidenceArtifact",
    "EvidenceLink",
    "EvidenceEvaluation",
    "Policy",
    "PolicyVersion",
    "PolicySignoff",
    "PolicyControl",
    "AuditLog",
]
