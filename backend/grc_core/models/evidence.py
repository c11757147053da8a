"""
Evidence artifact models: versioned files, links to controls/requirements
and evaluations.

Versions form a linear chain: every non-root version stores the chain root in
``parent_artifact_id``; the immediate predecessor is ``version - 1``.
"""
from datetime import date, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
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


class EvidenceArtifact(Base):
    __tablename__ = "evidence_artifacts"
    __table_args__ = (
        Index("idx_evidence_org_current", "org_id", "is_current"),
        Index("idx_evidence_org_status", "org_id", "status"),
        Index("idx_evidence_parent", "parent_artifact_id", "version"),
        Index("idx_evidence_expires", "org_id", "expires_at"),
    )

    TYPES = (
        "screenshot", "api_response", "configuration_export", "log_sample",
        "policy_document", "access_list", "vulnerability_report", "certificate",
        "training_record", "penetration_test", "audit_report", "other",
    )
    COLLECTION_METHODS = (
        "manual_upload", "automated_pull", "api_ingestion", "screenshot_capture", "system_export",
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    evidence_type: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    collection_method: Mapped[str] = mapped_column(String(30), nullable=False, default="manual_upload")

    # File
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)
    object_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    checksum_sha256: Mapped[str | None] = mapped_column(String(64))
    upload_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime)

    # Version chain
    parent_artifact_id: Mapped[str | None] = mapped_column(
        ForeignKey("evidence_artifacts.id", ondelete="CASCADE"),
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Freshness
    collection_date: Mapped[date] = mapped_column(Date, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime)
    freshness_period_days: Mapped[int | None] = mapped_column(Integer)

    source_system: Mapped[str | None] = mapped_column(String(255))
    uploaded_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    TRANSITIONS = state_machine.EVIDENCE.transitions

    def can_transition_to(self, target: str) -> bool:
        return state_machine.EVIDENCE.can_transition(self.status, target)

    @property
    def root_id(self) -> str:
        return self.parent_artifact_id or self.id


class EvidenceLink(Base):
    """Artifact ↔ control or requirement. Exactly one target column is set."""

    __tablename__ = "evidence_links"
    __table_args__ = (
        UniqueConstraint("artifact_id", "control_id", name="uq_evidence_link_control"),
        UniqueConstraint("artifact_id", "requirement_id", name="uq_evidence_link_requirement"),
        Index("idx_evidence_links_control", "control_id"),
        Index("idx_evidence_links_requirement", "requirement_id"),
    )

    TARGET_TYPES = ("control", "requirement")
    STRENGTHS = ("primary", "supporting", "supplementary")

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    artifact_id: Mapped[str] = mapped_column(ForeignKey("evidence_artifacts.id", ondelete="CASCADE"), nullable=False)
    target_type: Mapped[str] = mapped_column(String(20), nullable=False)
    control_id: Mapped[str | None] = mapped_column(ForeignKey("controls.id", ondelete="CASCADE"))
    requirement_id: Mapped[str | None] = mapped_column(ForeignKey("requirements.id", ondelete="CASCADE"))
    strength: Mapped[str] = mapped_column(String(20), nullable=False, default="primary")
    notes: Mapped[str | None] = mapped_column(Text)
    linked_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    @property
    def target_id(self) -> str | None:
        return self.control_id if self.target_type == "control" else self.requirement_id


class EvidenceEvaluation(Base):
    __tablename__ = "evidence_evaluations"
    __table_args__ = (Index("idx_evidence_evaluations_artifact", "artifact_id", "created_at"),)

    VERDICTS = ("sufficient", "partial", "insufficient", "needs_update")
    CONFIDENCE = ("high", "medium", "low")

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    artifact_id: Mapped[str] = mapped_column(ForeignKey("evidence_artifacts.id", ondelete="CASCADE"), nullable=False)
    evidence_link_id: Mapped[str | None] = mapped_column(ForeignKey("evidence_links.id", ondelete="SET NULL"))
    verdict: Mapped[str] = mapped_column(String(20), nullable=False)
    confidence: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")
    comments: Mapped[str] = mapped_column(Text, nullable=False)
    missing_elements: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    remediation_notes: Mapped[str | None] = mapped_column(Text)
    evaluated_by: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
