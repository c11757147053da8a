"""Pydantic schemas for the Audit Hub: audits, requests, evidence submissions, findings, comments."""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from .common import Tags

AuditType = Literal[
    "soc2_type1", "soc2_type2", "iso27001_certification", "iso27001_surveillance",
    "pci_dss_roc", "pci_dss_saq", "gdpr_dpia", "internal", "custom",
]
Severity = Literal["critical", "high", "medium", "low", "informational"]
FindingCategory = Literal[
    "control_deficiency", "control_gap", "documentation_gap", "process_gap",
    "configuration_issue", "access_control", "monitoring_gap", "policy_violation",
    "vendor_risk", "data_handling", "other",
]


# ═══ Audit ═══


class Milestone(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    target_date: date | None = None
    completed_at: date | None = None
    model_config = {"extra": "allow"}


class _AuditDates(BaseModel):
    @model_validator(mode="after")
    def _check_ranges(self):
        if self.period_start and self.period_end and self.period_end < self.period_start:
            raise ValueError("period_end must not be before period_start")
        if self.planned_start and self.planned_end and self.planned_end < self.planned_start:
            raise ValueError("planned_end must not be before planned_start")
        return self


class AuditCreate(_AuditDates):
    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(None, max_length=10000)
    audit_type: AuditType
    org_framework_id: str | None = None
    period_start: date | None = None
    period_end: date | None = None
    planned_start: date | None = None
    planned_end: date | None = None
    audit_firm: str | None = Field(None, max_length=255)
    lead_auditor_id: str | None = None
    auditor_ids: list[str] = Field(default_factory=list, max_length=50)
    internal_lead_id: str | None = None
    milestones: list[Milestone] | None = Field(None, max_length=50)
    report_type: str | None = Field(None, max_length=50)
    tags: Tags = Field(default_factory=list)


class AuditUpdate(_AuditDates):
    title: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = Field(None, max_length=10000)
    org_framework_id: str | None = None
    period_start: date | None = None
    period_end: date | None = None
    planned_start: date | None = None
    planned_end: date | None = None
    audit_firm: str | None = Field(None, max_length=255)
    lead_auditor_id: str | None = None
    internal_lead_id: str | None = None
    milestones: list[Milestone] | None = Field(None, max_length=50)
    report_type: str | None = Field(None, max_length=50)
    report_url: str | None = Field(None, max_length=1000)
    tags: Tags | None = None


class AuditStatusChange(BaseModel):
    status: str = Field(..., min_length=1, max_length=20)
    notes: str | None = Field(None, max_length=5000)


class AuditorAdd(BaseModel):
    user_id: str = Field(..., min_length=1)


class AuditCreatedOut(BaseModel):
    id: str
    title: str
    audit_type: str
    status: str
    created_at: datetime
    model_config = {"from_attributes": True}


class AuditOut(BaseModel):
    id: str
    org_id: str
    title: str
    description: str | None = None
    audit_type: str
    status: str
    org_framework_id: str | None = None
    framework_id: str | None = None
    framework_name: str | None = None
    period_start: date | None = None
    period_end: date | None = None
    planned_start: date | None = None
    planned_end: date | None = None
    actual_start: datetime | None = None
    actual_end: datetime | None = None
    audit_firm: str | None = None
    lead_auditor_id: str | None = None
    internal_lead_id: str | None = None
    auditor_ids: list[str] = []
    milestones: list[dict[str, Any]] | None = None
    report_type: str | None = None
    report_url: str | None = None
    report_issued_at: datetime | None = None
    total_requests: int = 0
    open_requests: int = 0
    total_findings: int = 0
    open_findings: int = 0
    tags: list[str] = []
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime
    model_config = {"from_attributes": True}


# ═══ Requests (PBC) ═══


class AuditRequestCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: str | None = Field(None, max_length=10000)
    # Unknown priorities fall back to "medium"
    priority: str | None = Field(None, max_length=20)
    control_id: str | None = None
    requirement_id: str | None = None
    assigned_to: str | None = None
    due_date: date | None = None
    reference_number: str | None = Field(None, max_length=50)
    tags: Tags = Field(default_factory=list)


class AuditRequestBulkCreate(BaseModel):
    requests: list[AuditRequestCreate] = Field(..., min_length=1, max_length=100)


class AuditRequestFromTemplate(BaseModel):
    template_ids: list[str] = Field(..., min_length=1, max_length=100)
    auto_number: bool = True
    number_prefix: str = Field("PBC", min_length=1, max_length=20)
    due_date: date | None = None
    assigned_to: str | None = None


class AuditRequestUpdate(BaseModel):
    title: str | None = Field(None, min_length=1, max_length=500)
    description: str | None = Field(None, max_length=10000)
    priority: Literal["low", "medium", "high", "critical"] | None = None
    control_id: str | None = None
    requirement_id: str | None = None
    due_date: date | None = None
    reference_number: str | None = Field(None, max_length=50)
    tags: Tags | None = None


class AuditRequestAssign(BaseModel):
    assigned_to: str = Field(..., min_length=1)


class AuditRequestSubmit(BaseModel):
    notes: str | None = Field(None, max_length=5000)


class AuditRequestReview(BaseModel):
    status: str = Field(..., min_length=1, max_length=20)
    reviewer_notes: str | None = Field(None, max_length=10000)


class AuditRequestOut(BaseModel):
    id: str
    audit_id: str
    title: str
    description: str | None = None
    priority: str
    status: str
    control_id: str | None = None
    requirement_id: str | None = None
    requested_by: str | None = None
    assigned_to: str | None = None
    due_date: date | None = None
    submitted_at: datetime | None = None
    reviewed_at: datetime | None = None
    reviewer_notes: str | None = None
    reference_number: str | None = None
    tags: list[str] = []
    evidence_count: int = 0
    comment_count: int = 0
    is_overdue: bool = False
    created_at: datetime
    updated_at: datetime
    model_config = {"from_attributes": True}


class BulkResultOut(BaseModel):
    created: int
    skipped: int = 0
    data: list[AuditRequestOut] = []
    errors: list[dict[str, Any]] = []


class AuditRequestTemplateOut(BaseModel):
    id: str
    title: str
    description: str | None = None
    audit_type: str | None = None
    framework: str | None = None
    category: str | None = None
    default_priority: str
    tags: list[str] = []
    model_config = {"from_attributes": True}


# ═══ Evidence submissions ═══


class AuditEvidenceSubmit(BaseModel):
    artifact_id: str = Field(..., min_length=1)
    submission_notes: str | None = Field(None, max_length=5000)


class AuditEvidenceReview(BaseModel):
    status: str = Field(..., min_length=1, max_length=30)
    review_notes: str | None = Field(None, max_length=5000)


class AuditEvidenceLinkOut(BaseModel):
    id: str
    audit_id: str
    audit_request_id: str
    artifact_id: str
    artifact_title: str | None = None
    artifact_file_name: str | None = None
    artifact_evidence_type: str | None = None
    artifact_status: str | None = None
    submitted_by: str | None = None
    submitted_at: datetime
    submission_notes: str | None = None
    status: str
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None
    model_config = {"from_attributes": True}


# ═══ Findings ═══


class AuditFindingCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: str = Field(..., min_length=1, max_length=20000)
    severity: Severity
    category: FindingCategory = "other"
    control_id: str | None = None
    requirement_id: str | None = None
    recommendation: str | None = Field(None, max_length=10000)
    remediation_owner_id: str | None = None
    remediation_due_date: date | None = None
    reference_number: str | None = Field(None, max_length=50)
    tags: Tags = Field(default_factory=list)
    metadata: dict[str, Any] | None = None


class AuditFindingUpdate(BaseModel):
    title: str | None = Field(None, min_length=1, max_length=500)
    description: str | None = Field(None, min_length=1, max_length=20000)
    severity: Severity | None = None
    category: FindingCategory | None = None
    control_id: str | None = None
    requirement_id: str | None = None
    recommendation: str | None = Field(None, max_length=10000)
    reference_number: str | None = Field(None, max_length=50)
    tags: Tags | None = None


class AuditFindingStatusChange(BaseModel):
    status: str = Field(..., min_length=1, max_length=30)
    remediation_plan: str | None = Field(None, max_length=20000)
    remediation_due_date: date | None = None
    remediation_owner_id: str | None = None
    notes: str | None = Field(None, max_length=10000)
    verification_notes: str | None = Field(None, max_length=10000)
    risk_acceptance_reason: str | None = Field(None, max_length=10000)


class ManagementResponse(BaseModel):
    management_response: str = Field(..., min_length=1, max_length=20000)


class AuditFindingOut(BaseModel):
    id: str
    audit_id: str
    title: str
    description: str
    severity: str
    category: str
    status: str
    control_id: str | None = None
    requirement_id: str | None = None
    found_by: str | None = None
    remediation_owner_id: str | None = None
    remediation_plan: str | None = None
    remediation_due_date: date | None = None
    remediation_started_at: datetime | None = None
    remediation_completed_at: datetime | None = None
    verified_at: datetime | None = None
    verified_by: str | None = None
    verification_notes: str | None = None
    risk_accepted: bool = False
    risk_acceptance_reason: str | None = None
    risk_accepted_by: str | None = None
    risk_accepted_at: datetime | None = None
    reference_number: str | None = None
    recommendation: str | None = None
    management_response: str | None = None
    management_response_by: str | None = None
    management_response_at: datetime | None = None
    tags: list[str] = []
    metadata: dict[str, Any] | None = Field(None, validation_alias="extra")
    created_at: datetime
    updated_at: datetime
    model_config = {"from_attributes": True}


# ═══ Comments ═══


class AuditCommentCreate(BaseModel):
    target_type: Literal["audit", "request", "finding"]
    target_id: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1, max_length=10000)
    parent_comment_id: str | None = None
    is_internal: bool = False


class AuditCommentUpdate(BaseModel):
    body: str = Field(..., min_length=1, max_length=10000)


class AuditCommentOut(BaseModel):
    id: str
    audit_id: str
    target_type: str
    target_id: str
    author_id: str
    author_name: str | None = None
    body: str
    parent_comment_id: str | None = None
    is_internal: bool
    edited_at: datetime | None = None
    created_at: datetime
    replies: list[AuditCommentOut] = []
    model_config = {"from_attributes": True}
