"""
Control catalogue collaborators: frameworks, their versions and
requirements, the organization's controls and the control ↔ requirement
mappings. Evidence links, audit requests, findings and policy coverage all
point into these tables.
"""
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, new_id, utcnow


class Framework(Base):
    __tablename__ = "frameworks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    identifier: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class FrameworkVersion(Base):
    __tablename__ = "framework_versions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    framework_id: Mapped[str] = mapped_column(ForeignKey("frameworks.id", ondelete="CASCADE"), nullable=False)
    version: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Requirement(Base):
    __tablename__ = "requirements"
    __table_args__ = (Index("idx_requirements_fv", "framework_version_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    framework_version_id: Mapped[str] = mapped_column(
        ForeignKey("framework_versions.id", ondelete="CASCADE"), nullable=False,
    )
    identifier: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class OrgFramework(Base):
    """A framework version activated by an organization."""

    __tablename__ = "org_frameworks"
    __table_args__ = (UniqueConstraint("org_id", "framework_id", name="uq_org_framework"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    framework_id: Mapped[str] = mapped_column(ForeignKey("frameworks.id"), nullable=False)
    framework_version_id: Mapped[str] = mapped_column(ForeignKey("framework_versions.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Control(Base):
    __tablename__ = "controls"
    __table_args__ = (
        UniqueConstraint("org_id", "identifier", name="uq_control_org_identifier"),
        Index("idx_controls_org_status", "org_id", "status"),
    )

    CATEGORIES = ("technical", "administrative", "physical", "operational")

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    identifier: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(30), nullable=False, default="technical")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    owner_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ControlMapping(Base):
    __tablename__ = "control_mappings"
    __table_args__ = (UniqueConstraint("control_id", "requirement_id", name="uq_control_mapping"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    org_id: Mapped[str] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    control_id: Mapped[str] = mapped_column(ForeignKey("controls.id", ondelete="CASCADE"), nullable=False)
    requirement_id: Mapped[str] = mapped_column(ForeignKey("requirements.id", ondelete="CASCADE"), nullable=False)
    strength: Mapped[str] = mapped_column(String(20), nullable=False, default="primary")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
