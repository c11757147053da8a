"""
Audit engagement models: audits, PBC requests, evidence submissions,
findings, threaded comments and the global request-template catalogue.
"""
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from grc_core.services import state_machine

from .base import Base, new_id, utcnow


# ─── Audit ────────────────────────────────────────────────────


class Audit(Base):
    __tablename__ = "audits"
    __table_args__ = (
        Index("idx_audits_org_status", "org_id", "status"),
        Index("idx_audits_org_type", "org_id", "audit_type"),
    )

    TYPES = (
        "soc2_type1", "soc2_type2", "iso27001_certification", "iso27001_surveillance",
        "pci_dss_roc", "pci_dss_saq", "gdpr_dpia", "internal", "custom",
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    audit_type: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="planning")
    org_framework_id: Mapped[str | None] = mapped_column(ForeignKey("org_frameworks.id", ondelete="SET NULL"))

    # Dates
    period_start: Mapped[date | None] = mapped_column(Date)
    period_end: Mapped[date | None] = mapped_column(Date)
    planned_start: Mapped[date | None] = mapped_column(Date)
    planned_end: Mapped[date | None] = mapped_column(Date)
    actual_start: Mapped[datetime | None] = mapped_column(DateTime)
    actual_end: Mapped[datetime | None] = mapped_column(DateTime)

    # Team
    audit_firm: Mapped[str | None] = mapped_column(String(255))
    lead_auditor_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    internal_lead_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    auditor_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    milestones: Mapped[list | None] = mapped_column(JSON)

    # Report
    report_type: Mapped[str | None] = mapped_column(String(50))
    report_url: Mapped[str | None] = mapped_column(String(1000))
    report_issued_at: Mapped[datetime | None] = mapped_column(DateTime)

    # Denormalized counters, recomputed by services.counters
    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    open_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_findings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    open_findings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    TRANSITIONS = state_machine.AUDIT.transitions

    def can_transition_to(self, target: str) -> bool:
        return state_machine.AUDIT.can_transition(self.status, target)

    @property
    def is_terminal(self) -> bool:
        return self.status in state_machine.AUDIT_TERMINAL


# ─── Requests (PBC) ───────────────────────────────────────────


class AuditRequest(Base):
    __tablename__ = "audit_requests"
    __table_args__ = (
        Index("idx_audit_requests_audit_status", "audit_id", "status"),
        Index("idx_audit_requests_assignee", "org_id", "assigned_to"),
    )

    PRIORITIES = ("low", "medium", "high", "critical")

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    audit_id: Mapped[str] = mapped_column(ForeignKey("audits.id", ondelete="CASCADE"), nullable=False)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    control_id: Mapped[str | None] = mapped_column(ForeignKey("controls.id", ondelete="SET NULL"))
    requirement_id: Mapped[str | None] = mapped_column(ForeignKey("requirements.id", ondelete="SET NULL"))

    requested_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    assigned_to: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    due_date: Mapped[date | None] = mapped_column(Date)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime)
    reviewer_notes: Mapped[str | None] = mapped_column(Text)

    reference_number: Mapped[str | None] = mapped_column(String(50))
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    TRANSITIONS = state_machine.AUDIT_REQUEST.transitions

    def can_transition_to(self, target: str) -> bool:
        return state_machine.AUDIT_REQUEST.can_transition(self.status, target)


class AuditEvidenceLink(Base):
    """An evidence artifact submitted against a PBC request."""

    __tablename__ = "audit_evidence_links"
    __table_args__ = (
        UniqueConstraint("audit_request_id", "artifact_id", name="uq_audit_evidence_request_artifact"),
        Index("idx_audit_evidence_audit", "audit_id"),
    )

    STATUSES = ("pending_review", "accepted", "rejected", "needs_clarification")

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    audit_id: Mapped[str] = mapped_column(ForeignKey("audits.id", ondelete="CASCADE"), nullable=False)
    audit_request_id: Mapped[str] = mapped_column(
        ForeignKey("audit_requests.id", ondelete="CASCADE"), nullable=False,
    )
    artifact_id: Mapped[str] = mapped_column(ForeignKey("evidence_artifacts.id", ondelete="CASCADE"), nullable=False)

    submitted_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    submitted_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    submission_notes: Mapped[str | None] = mapped_column(Text)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending_review")
    reviewed_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime)
    review_notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


# ─── Findings ─────────────────────────────────────────────────


class AuditFinding(Base):
    __tablename__ = "audit_findings"
    __table_args__ = (
        Index("idx_audit_findings_audit_status", "audit_id", "status"),
        Index("idx_audit_findings_severity", "audit_id", "severity"),
    )

    SEVERITIES = ("critical", "high", "medium", "low", "informational")
    CATEGORIES = (
        "control_deficiency", "control_gap", "documentation_gap", "process_gap",
        "configuration_issue", "access_control", "monitoring_gap", "policy_violation",
        "vendor_risk", "data_handling", "other",
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    audit_id: Mapped[str] = mapped_column(ForeignKey("audits.id", ondelete="CASCADE"), nullable=False)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    category: Mapped[str] = mapped_column(String(40), nullable=False, default="other")
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="identified")
    control_id: Mapped[str | None] = mapped_column(ForeignKey("controls.id", ondelete="SET NULL"))
    requirement_id: Mapped[str | None] = mapped_column(ForeignKey("requirements.id", ondelete="SET NULL"))
    found_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))

    # Remediation
    remediation_owner_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    remediation_plan: Mapped[str | None] = mapped_column(Text)
    remediation_due_date: Mapped[date | None] = mapped_column(Date)
    remediation_started_at: Mapped[datetime | None] = mapped_column(DateTime)
    remediation_completed_at: Mapped[datetime | None] = mapped_column(DateTime)

    # Verification
    verified_at: Mapped[datetime | None] = mapped_column(DateTime)
    verified_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    verification_notes: Mapped[str | None] = mapped_column(Text)

    # Risk acceptance
    risk_accepted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    risk_acceptance_reason: Mapped[str | None] = mapped_column(Text)
    risk_accepted_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    risk_accepted_at: Mapped[datetime | None] = mapped_column(DateTime)

    reference_number: Mapped[str | None] = mapped_column(String(50))
    recommendation: Mapped[str | None] = mapped_column(Text)
    management_response: Mapped[str | None] = mapped_column(Text)
    management_response_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    management_response_at: Mapped[datetime | None] = mapped_column(DateTime)

    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    extra: Mapped[dict | None] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    TRANSITIONS = state_machine.FINDING.transitions

    def can_transition_to(self, target: str) -> bool:
        return state_machine.FINDING.can_transition(self.status, target)

    @property
    def is_open(self) -> bool:
        return self.status not in state_machine.FINDING_CLOSED


# ─── Comments ─────────────────────────────────────────────────


class AuditComment(Base):
    __tablename__ = "audit_comments"
    __table_args__ = (
        Index("idx_audit_comments_target", "audit_id", "target_type", "target_id"),
    )

    TARGET_TYPES = ("audit", "request", "finding")

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    audit_id: Mapped[str] = mapped_column(ForeignKey("audits.id", ondelete="CASCADE"), nullable=False)
    target_type: Mapped[str] = mapped_column(String(20), nullable=False)
    target_id: Mapped[str] = mapped_column(String(36), nullable=False)
    author_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    parent_comment_id: Mapped[str | None] = mapped_column(ForeignKey("audit_comments.id", ondelete="CASCADE"))
    is_internal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    edited_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


# ─── Request templates (global catalogue) ─────────────────────


class AuditRequestTemplate(Base):
    __tablename__ = "audit_request_templates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    audit_type: Mapped[str | None] = mapped_column(String(40))
    framework: Mapped[str | None] = mapped_column(String(50))
    category: Mapped[str | None] = mapped_column(String(50))
    default_priority: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
