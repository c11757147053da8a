"""Pydantic schemas for the evidence store."""
from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, StringConstraints, model_validator

from grc_core.services.content import MAX_FILE_SIZE

from .common import Tags

EvidenceType = Literal[
    "screenshot", "api_response", "configuration_export", "log_sample",
    "policy_document", "access_list", "vulnerability_report", "certificate",
    "training_record", "penetration_test", "audit_report", "other",
]
CollectionMethod = Literal[
    "manual_upload", "automated_pull", "api_ingestion", "screenshot_capture", "system_export",
]
FreshnessDays = Annotated[int, Field(ge=1, le=3650)]


class EvidenceCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: str | None = Field(None, max_length=10000)
    evidence_type: EvidenceType
    collection_method: CollectionMethod = "manual_upload"
    file_name: str = Field(..., min_length=1, max_length=1024)
    file_size: int = Field(..., ge=1, le=MAX_FILE_SIZE)
    mime_type: str = Field(..., min_length=1, max_length=255)
    collection_date: date
    freshness_period_days: FreshnessDays | None = None
    source_system: str | None = Field(None, max_length=255)
    tags: Tags = Field(default_factory=list)


class EvidenceUpdate(BaseModel):
    title: str | None = Field(None, min_length=1, max_length=500)
    description: str | None = Field(None, max_length=10000)
    evidence_type: EvidenceType | None = None
    collection_method: CollectionMethod | None = None
    collection_date: date | None = None
    freshness_period_days: FreshnessDays | None = None
    source_system: str | None = Field(None, max_length=255)
    tags: Tags | None = None


class EvidenceVersionCreate(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=1024)
    file_size: int = Field(..., ge=1, le=MAX_FILE_SIZE)
    mime_type: str = Field(..., min_length=1, max_length=255)
    collection_date: date
    title: str | None = Field(None, min_length=1, max_length=500)
    description: str | None = Field(None, max_length=10000)
    evidence_type: EvidenceType | None = None
    collection_method: CollectionMethod | None = None
    freshness_period_days: FreshnessDays | None = None
    source_system: str | None = Field(None, max_length=255)
    tags: Tags | None = None


class EvidenceStatusChange(BaseModel):
    status: str = Field(..., min_length=1, max_length=20)
    notes: str | None = Field(None, max_length=5000)


class UploadConfirm(BaseModel):
    checksum_sha256: str | None = Field(None, max_length=128)


class EvidenceLinkItem(BaseModel):
    target_type: Literal["control", "requirement"]
    target_id: str = Field(..., min_length=1)
    strength: Literal["primary", "supporting", "supplementary"] = "primary"
    notes: str | None = Field(None, max_length=2000)


class EvidenceLinkRequest(BaseModel):
    """Either one link inline or a ``links`` list of 1..50."""

    target_type: Literal["control", "requirement"] | None = None
    target_id: str | None = None
    strength: Literal["primary", "supporting", "supplementary"] = "primary"
    notes: str | None = Field(None, max_length=2000)
    links: list[EvidenceLinkItem] | None = Field(None, min_length=1, max_length=50)

    @model_validator(mode="after")
    def _one_shape(self):
        if self.links is None and not (self.target_type and self.target_id):
            raise ValueError("Provide target_type and target_id, or a links list")
        return self

    def items(self) -> list[EvidenceLinkItem]:
        if self.links is not None:
            return self.links
        return [EvidenceLinkItem(
            target_type=self.target_type, target_id=self.target_id,
            strength=self.strength, notes=self.notes,
        )]


MissingElement = Annotated[str, StringConstraints(min_length=1, max_length=200)]


class EvaluationCreate(BaseModel):
    verdict: Literal["sufficient", "partial", "insufficient", "needs_update"]
    confidence: Literal["high", "medium", "low"] = "medium"
    comments: str = Field(..., min_length=1, max_length=5000)
    missing_elements: list[MissingElement] = Field(default_factory=list, max_length=20)
    remediation_notes: str | None = Field(None, max_length=5000)
    evidence_link_id: str | None = None


class EvaluationOut(BaseModel):
    id: str
    artifact_id: str
    evidence_link_id: str | None = None
    verdict: str
    confidence: str
    comments: str
    missing_elements: list[str] = []
    remediation_notes: str | None = None
    evaluated_by: str | None = None
    evaluator_name: str | None = None
    created_at: datetime
    model_config = {"from_attributes": True}


class EvidenceLinkOut(BaseModel):
    id: str
    artifact_id: str
    target_type: str
    control_id: str | None = None
    requirement_id: str | None = None
    strength: str
    notes: str | None = None
    linked_by: str | None = None
    created_at: datetime
    target: dict[str, Any] | None = None
    model_config = {"from_attributes": True}


class UploadDescriptor(BaseModel):
    presigned_url: str
    method: str = "PUT"
    expires_in: int
    max_size: int | None = None
    content_type: str | None = None


class EvidenceOut(BaseModel):
    id: str
    org_id: str
    title: str
    description: str | None = None
    evidence_type: str
    status: str
    collection_method: str
    file_name: str
    file_size: int
    mime_type: str
    object_key: str
    checksum_sha256: str | None = None
    upload_confirmed_at: datetime | None = None
    parent_artifact_id: str | None = None
    version: int
    is_current: bool
    collection_date: date
    expires_at: datetime | None = None
    freshness_period_days: int | None = None
    freshness_status: str = "fresh"
    days_until_expiry: int | None = None
    source_system: str | None = None
    uploaded_by: str | None = None
    tags: list[str] = []
    links_count: int = 0
    evaluations_count: int = 0
    latest_evaluation: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime
    upload: UploadDescriptor | None = None
    model_config = {"from_attributes": True}
