"""
Policy models: policies, their append-only version chain, sign-off requests
and policy ↔ control coverage links.
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


class Policy(Base):
    __tablename__ = "policies"
    __table_args__ = (
        UniqueConstraint("org_id", "identifier", name="uq_policy_org_identifier"),
        Index("idx_policies_org_status", "org_id", "status"),
        Index("idx_policies_org_template", "org_id", "is_template"),
    )

    CATEGORIES = (
        "information_security", "acceptable_use", "access_control", "data_classification",
        "data_privacy", "data_retention", "incident_response", "business_continuity",
        "change_management", "vulnerability_management", "vendor_management",
        "physical_security", "encryption", "network_security", "secure_development",
        "human_resources", "compliance", "risk_management", "asset_management",
        "logging_monitoring", "custom",
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)

    identifier: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")

    owner_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    secondary_owner_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    # No FK: policy_versions already references policies
    current_version_id: Mapped[str | None] = mapped_column(String(36))

    # Review cycle
    review_frequency_days: Mapped[int | None] = mapped_column(Integer)
    next_review_at: Mapped[date | None] = mapped_column(Date)
    last_reviewed_at: Mapped[date | None] = mapped_column(Date)

    # Approval / publication
    approved_at: Mapped[datetime | None] = mapped_column(DateTime)
    approved_version: Mapped[int | None] = mapped_column(Integer)
    published_at: Mapped[datetime | None] = mapped_column(DateTime)

    # Templates
    is_template: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    template_framework_id: Mapped[str | None] = mapped_column(ForeignKey("frameworks.id", ondelete="SET NULL"))
    cloned_from_policy_id: Mapped[str | None] = mapped_column(ForeignKey("policies.id", ondelete="SET NULL"))

    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    TRANSITIONS = state_machine.POLICY.transitions

    def can_transition_to(self, target: str) -> bool:
        return state_machine.POLICY.can_transition(self.status, target)


class PolicyVersion(Base):
    __tablename__ = "policy_versions"
    __table_args__ = (
        UniqueConstraint("policy_id", "version_number", name="uq_policy_version_number"),
        Index("idx_policy_versions_current", "policy_id", "is_current"),
    )

    FORMATS = ("html", "markdown")
    CHANGE_TYPES = ("initial", "major", "minor", "patch")

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    policy_id: Mapped[str] = mapped_column(ForeignKey("policies.id", ondelete="CASCADE"), nullable=False)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_format: Mapped[str] = mapped_column(String(20), nullable=False, default="html")
    content_summary: Mapped[str | None] = mapped_column(Text)
    change_summary: Mapped[str | None] = mapped_column(Text)
    change_type: Mapped[str] = mapped_column(String(20), nullable=False, default="minor")
    word_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    character_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class PolicySignoff(Base):
    __tablename__ = "policy_signoffs"
    __table_args__ = (
        Index("idx_policy_signoffs_signer", "org_id", "signer_id", "status"),
        Index("idx_policy_signoffs_version", "policy_version_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    policy_id: Mapped[str] = mapped_column(ForeignKey("policies.id", ondelete="CASCADE"), nullable=False)
    policy_version_id: Mapped[str] = mapped_column(ForeignKey("policy_versions.id", ondelete="CASCADE"), nullable=False)
    signer_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    signer_role: Mapped[str | None] = mapped_column(String(30))
    requested_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    requested_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    decided_at: Mapped[datetime | None] = mapped_column(DateTime)
    comments: Mapped[str | None] = mapped_column(Text)
    reminder_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PolicyControl(Base):
    __tablename__ = "policy_controls"
    __table_args__ = (
        UniqueConstraint("policy_id", "control_id", name="uq_policy_control"),
        Index("idx_policy_controls_control", "control_id"),
    )

    COVERAGE = ("full", "partial")

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    policy_id: Mapped[str] = mapped_column(ForeignKey("policies.id", ondelete="CASCADE"), nullable=False)
    control_id: Mapped[str] = mapped_column(ForeignKey("controls.id", ondelete="CASCADE"), nullable=False)
    coverage: Mapped[str] = mapped_column(String(10), nullable=False, default="full")
    notes: Mapped[str | None] = mapped_column(Text)
    linked_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
