"""Pydantic schemas for policies, versions, sign-offs and control coverage."""
from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from .common import Tags, UserRef

PolicyCategory = Literal[
    "information_security", "acceptable_use", "access_control", "data_classification",
    "data_privacy", "data_retention", "incident_response", "business_continuity",
    "change_management", "vulnerability_management", "vendor_management",
    "physical_security", "encryption", "network_security", "secure_development",
    "human_resources", "compliance", "risk_management", "asset_management",
    "logging_monitoring", "custom",
]
ContentFormat = Literal["html", "markdown"]


# ═══════════════════ POLICY ═══════════════════

class PolicyCreate(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=50)
    title: str = Field(..., min_length=1, max_length=500)
    description: str | None = Field(None, max_length=10000)
    category: PolicyCategory
    owner_id: str | None = None
    secondary_owner_id: str | None = None
    review_frequency_days: int | None = Field(None, ge=1, le=3650)
    content: str = Field(..., min_length=1)
    content_format: ContentFormat = "html"
    content_summary: str | None = Field(None, max_length=5000)
    is_template: bool = False
    template_framework_id: str | None = None
    tags: Tags = Field(default_factory=list)

    @field_validator("identifier")
    @classmethod
    def _strip_identifier(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("identifier is required")
        return v


class PolicyUpdate(BaseModel):
    title: str | None = Field(None, min_length=1, max_length=500)
    description: str | None = Field(None, max_length=10000)
    category: PolicyCategory | None = None
    owner_id: str | None = None
    secondary_owner_id: str | None = None
    review_frequency_days: int | None = Field(None, ge=1, le=3650)
    next_review_at: date | None = None
    tags: Tags | None = None


class PolicyVersionCreate(BaseModel):
    content: str = Field(..., min_length=1)
    content_format: ContentFormat = "html"
    content_summary: str | None = Field(None, max_length=5000)
    change_summary: str = Field(..., min_length=1, max_length=5000)
    change_type: Literal["major", "minor", "patch"] = "minor"


class SubmitForReview(BaseModel):
    signer_ids: list[str] = Field(..., min_length=1, max_length=10)
    due_date: date | None = None
    message: str | None = Field(None, max_length=2000)


class SignoffDecision(BaseModel):
    comments: str | None = Field(None, max_length=5000)


class RemindRequest(BaseModel):
    signoff_ids: list[str] | None = Field(None, max_length=100)


class TemplateClone(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=50)
    title: str | None = Field(None, min_length=1, max_length=500)
    owner_id: str | None = None
    tags: Tags | None = None


class PolicyControlLink(BaseModel):
    control_id: str = Field(..., min_length=1)
    coverage: Literal["full", "partial"] = "full"
    notes: str | None = Field(None, max_length=2000)


class PolicyControlBulk(BaseModel):
    links: list[PolicyControlLink] = Field(..., min_length=1, max_length=50)


class PolicyVersionOut(BaseModel):
    id: str
    policy_id: str
    version_number: int
    is_current: bool
    content: str | None = None
    content_format: str
    content_summary: str | None = None
    change_summary: str | None = None
    change_type: str
    word_count: int
    character_count: int
    created_by: str | None = None
    created_at: datetime
    model_config = {"from_attributes": True}


class SignoffOut(BaseModel):
    id: str
    policy_id: str
    policy_version_id: str
    version_number: int | None = None
    signer_id: str
    signer: UserRef | None = None
    signer_role: str | None = None
    requested_by: str | None = None
    requested_at: datetime
    due_date: date | None = None
    status: str
    decided_at: datetime | None = None
    comments: str | None = None
    reminder_count: int = 0
    reminder_sent_at: datetime | None = None
    model_config = {"from_attributes": True}


class PolicyControlOut(BaseModel):
    id: str
    policy_id: str
    control_id: str
    coverage: str
    notes: str | None = None
    linked_by: str | None = None
    created_at: datetime
    control_identifier: str | None = None
    control_title: str | None = None
    control_category: str | None = None
    model_config = {"from_attributes": True}


class PolicyOut(BaseModel):
    id: str
    org_id: str
    identifier: str
    title: str
    description: str | None = None
    category: str
    status: str
    owner_id: str
    owner: UserRef | None = None
    secondary_owner_id: str | None = None
    current_version_id: str | None = None
    current_version: PolicyVersionOut | None = None
    review_frequency_days: int | None = None
    next_review_at: date | None = None
    last_reviewed_at: date | None = None
    review_status: str = "no_schedule"
    approved_at: datetime | None = None
    approved_version: int | None = None
    published_at: datetime | None = None
    is_template: bool
    template_framework_id: str | None = None
    cloned_from_policy_id: str | None = None
    tags: list[str] = []
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime
    linked_controls: list[PolicyControlOut] | None = None
    signoff_summary: dict[str, int] | None = None
    model_config = {"from_attributes": True}
