from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class AuditLogOut(BaseModel):
    id: str
    org_id: str
    actor_id: str | None = None
    actor_name: str | None = None
    action: str
    resource_type: str
    resource_id: str | None = None
    metadata: dict[str, Any] | None = Field(None, validation_alias="extra")
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime
    model_config = {"from_attributes": True}
