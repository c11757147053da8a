"""Initial schema: tenancy, control catalogue, audits, evidence, policies, audit log.

Revision ID: 001_initial_schema
Revises:
"""
from alembic import op
import sqlalchemy as sa

revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

ID = sa.String(36)


def _org():
    return sa.Column("org_id", ID, sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)


def _user(name: str, **kw):
    return sa.Column(name, ID, sa.ForeignKey("users.id", ondelete="SET NULL"), **kw)


def _timestamps(updated: bool = True):
    cols = [sa.Column("created_at", sa.DateTime, nullable=False)]
    if updated:
        cols.append(sa.Column("updated_at", sa.DateTime, nullable=False))
    return cols


def upgrade() -> None:
    # ── Tenancy ──
    op.create_table(
        "organizations",
        sa.Column("id", ID, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_table(
        "users",
        sa.Column("id", ID, primary_key=True),
        _org(),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("first_name", sa.String(100)),
        sa.Column("last_name", sa.String(100)),
        sa.Column("role", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "email", name="uq_user_org_email"),
    )
    op.create_index("idx_users_org_role", "users", ["org_id", "role"])

    # ── Control catalogue ──
    op.create_table(
        "frameworks",
        sa.Column("id", ID, primary_key=True),
        sa.Column("identifier", sa.String(50), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_table(
        "framework_versions",
        sa.Column("id", ID, primary_key=True),
        sa.Column("framework_id", ID, sa.ForeignKey("frameworks.id", ondelete="CASCADE"), nullable=False),
        sa.Column("version", sa.String(30), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        *_timestamps(updated=False),
    )
    op.create_table(
        "requirements",
        sa.Column("id", ID, primary_key=True),
        sa.Column(
            "framework_version_id", ID,
            sa.ForeignKey("framework_versions.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("identifier", sa.String(50), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text),
        *_timestamps(updated=False),
    )
    op.create_index("idx_requirements_fv", "requirements", ["framework_version_id"])
    op.create_table(
        "org_frameworks",
        sa.Column("id", ID, primary_key=True),
        _org(),
        sa.Column("framework_id", ID, sa.ForeignKey("frameworks.id"), nullable=False),
        sa.Column("framework_version_id", ID, sa.ForeignKey("framework_versions.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        *_timestamps(updated=False),
        sa.UniqueConstraint("org_id", "framework_id", name="uq_org_framework"),
    )
    op.create_table(
        "controls",
        sa.Column("id", ID, primary_key=True),
        _org(),
        sa.Column("identifier", sa.String(50), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("category", sa.String(30), nullable=False, server_default="technical"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        _user("owner_id"),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "identifier", name="uq_control_org_identifier"),
    )
    op.create_index("idx_controls_org_status", "controls", ["org_id", "status"])
    op.create_table(
        "control_mappings",
        sa.Column("id", ID, primary_key=True),
        _org(),
        sa.Column("control_id", ID, sa.ForeignKey("controls.id", ondelete="CASCADE"), nullable=False),
        sa.Column("requirement_id", ID, sa.ForeignKey("requirements.id", ondelete="CASCADE"), nullable=False),
        sa.Column("strength", sa.String(20), nullable=False, server_default="primary"),
        *_timestamps(updated=False),
        sa.UniqueConstraint("control_id", "requirement_id", name="uq_control_mapping"),
    )

    # ── Audits ──
    op.create_table(
        "audits",
        sa.Column("id", ID, primary_key=True),
        _org(),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("audit_type", sa.String(40), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="planning"),
        sa.Column("org_framework_id", ID, sa.ForeignKey("org_frameworks.id", ondelete="SET NULL")),
        sa.Column("period_start", sa.Date),
        sa.Column("period_end", sa.Date),
        sa.Column("planned_start", sa.Date),
        sa.Column("planned_end", sa.Date),
        sa.Column("actual_start", sa.DateTime),
        sa.Column("actual_end", sa.DateTime),
        sa.Column("audit_firm", sa.String(255)),
        _user("lead_auditor_id"),
        _user("internal_lead_id"),
        sa.Column("auditor_ids", sa.JSON, nullable=False),
        sa.Column("milestones", sa.JSON),
        sa.Column("report_type", sa.String(50)),
        sa.Column("report_url", sa.String(1000)),
        sa.Column("report_issued_at", sa.DateTime),
        sa.Column("total_requests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("open_requests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_findings", sa.Integer, nullable=False, server_default="0"),
        sa.Column("open_findings", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tags", sa.JSON, nullable=False),
        _user("created_by"),
        *_timestamps(),
    )
    op.create_index("idx_audits_org_status", "audits", ["org_id", "status"])
    op.create_index("idx_audits_org_type", "audits", ["org_id", "audit_type"])

    op.create_table(
        "audit_requests",
        sa.Column("id", ID, primary_key=True),
        _org(),
        sa.Column("audit_id", ID, sa.ForeignKey("audits.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("priority", sa.String(10), nullable=False, server_default="medium"),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("control_id", ID, sa.ForeignKey("controls.id", ondelete="SET NULL")),
        sa.Column("requirement_id", ID, sa.ForeignKey("requirements.id", ondelete="SET NULL")),
        _user("requested_by"),
        _user("assigned_to"),
        sa.Column("due_date", sa.Date),
        sa.Column("submitted_at", sa.DateTime),
        sa.Column("reviewed_at", sa.DateTime),
        sa.Column("reviewer_notes", sa.Text),
        sa.Column("reference_number", sa.String(50)),
        sa.Column("tags", sa.JSON, nullable=False),
        *_timestamps(),
    )
    op.create_index("idx_audit_requests_audit_status", "audit_requests", ["audit_id", "status"])
    op.create_index("idx_audit_requests_assignee", "audit_requests", ["org_id", "assigned_to"])

    op.create_table(
        "audit_findings",
        sa.Column("id", ID, primary_key=True),
        _org(),
        sa.Column("audit_id", ID, sa.ForeignKey("audits.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("category", sa.String(40), nullable=False, server_default="other"),
        sa.Column("status", sa.String(30), nullable=False, server_default="identified"),
        sa.Column("control_id", ID, sa.ForeignKey("controls.id", ondelete="SET NULL")),
        sa.Column("requirement_id", ID, sa.ForeignKey("requirements.id", ondelete="SET NULL")),
        _user("found_by"),
        _user("remediation_owner_id"),
        sa.Column("remediation_plan", sa.Text),
        sa.Column("remediation_due_date", sa.Date),
        sa.Column("remediation_started_at", sa.DateTime),
        sa.Column("remediation_completed_at", sa.DateTime),
        sa.Column("verified_at", sa.DateTime),
        _user("verified_by"),
        sa.Column("verification_notes", sa.Text),
        sa.Column("risk_accepted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("risk_acceptance_reason", sa.Text),
        _user("risk_accepted_by"),
        sa.Column("risk_accepted_at", sa.DateTime),
        sa.Column("reference_number", sa.String(50)),
        sa.Column("recommendation", sa.Text),
        sa.Column("management_response", sa.Text),
        _user("management_response_by"),
        sa.Column("management_response_at", sa.DateTime),
        sa.Column("tags", sa.JSON, nullable=False),
        sa.Column("metadata", sa.JSON),
        *_timestamps(),
    )
    op.create_index("idx_audit_findings_audit_status", "audit_findings", ["audit_id", "status"])
    op.create_index("idx_audit_findings_severity", "audit_findings", ["audit_id", "severity"])

    op.create_table(
        "audit_comments",
        sa.Column("id", ID, primary_key=True),
        _org(),
        sa.Column("audit_id", ID, sa.ForeignKey("audits.id", ondelete="CASCADE"), nullable=False),
        sa.Column("target_type", sa.String(20), nullable=False),
        sa.Column("target_id", ID, nullable=False),
        sa.Column("author_id", ID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("parent_comment_id", ID, sa.ForeignKey("audit_comments.id", ondelete="CASCADE")),
        sa.Column("is_internal", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("edited_at", sa.DateTime),
        *_timestamps(),
    )
    op.create_index("idx_audit_comments_target", "audit_comments", ["audit_id", "target_type", "target_id"])

    op.create_table(
        "audit_request_templates",
        sa.Column("id", ID, primary_key=True),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("audit_type", sa.String(40)),
        sa.Column("framework", sa.String(50)),
        sa.Column("category", sa.String(50)),
        sa.Column("default_priority", sa.String(10), nullable=False, server_default="medium"),
        sa.Column("tags", sa.JSON, nullable=False),
        *_timestamps(updated=False),
    )

    # ── Evidence ──
    op.create_table(
        "evidence_artifacts",
        sa.Column("id", ID, primary_key=True),
        _org(),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("evidence_type", sa.String(40), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("collection_method", sa.String(30), nullable=False, server_default="manual_upload"),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("file_size", sa.BigInteger, nullable=False),
        sa.Column("mime_type", sa.String(255), nullable=False),
        sa.Column("object_key", sa.String(1024), nullable=False),
        sa.Column("checksum_sha256", sa.String(64)),
        sa.Column("upload_confirmed_at", sa.DateTime),
        sa.Column("parent_artifact_id", ID, sa.ForeignKey("evidence_artifacts.id", ondelete="CASCADE")),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("is_current", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("collection_date", sa.Date, nullable=False),
        sa.Column("expires_at", sa.DateTime),
        sa.Column("freshness_period_days", sa.Integer),
        sa.Column("source_system", sa.String(255)),
        _user("uploaded_by"),
        sa.Column("tags", sa.JSON, nullable=False),
        *_timestamps(),
    )
    op.create_index("idx_evidence_org_current", "evidence_artifacts", ["org_id", "is_current"])
    op.create_index("idx_evidence_org_status", "evidence_artifacts", ["org_id", "status"])
    op.create_index("idx_evidence_parent", "evidence_artifacts", ["parent_artifact_id", "version"])
    op.create_index("idx_evidence_expires", "evidence_artifacts", ["org_id", "expires_at"])

    op.create_table(
        "evidence_links",
        sa.Column("id", ID, primary_key=True),
        _org(),
        sa.Column("artifact_id", ID, sa.ForeignKey("evidence_artifacts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("target_type", sa.String(20), nullable=False),
        sa.Column("control_id", ID, sa.ForeignKey("controls.id", ondelete="CASCADE")),
        sa.Column("requirement_id", ID, sa.ForeignKey("requirements.id", ondelete="CASCADE")),
        sa.Column("strength", sa.String(20), nullable=False, server_default="primary"),
        sa.Column("notes", sa.Text),
        _user("linked_by"),
        *_timestamps(updated=False),
        sa.UniqueConstraint("artifact_id", "control_id", name="uq_evidence_link_control"),
        sa.UniqueConstraint("artifact_id", "requirement_id", name="uq_evidence_link_requirement"),
    )
    op.create_index("idx_evidence_links_control", "evidence_links", ["control_id"])
    op.create_index("idx_evidence_links_requirement", "evidence_links", ["requirement_id"])

    op.create_table(
        "evidence_evaluations",
        sa.Column("id", ID, primary_key=True),
        _org(),
        sa.Column("artifact_id", ID, sa.ForeignKey("evidence_artifacts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("evidence_link_id", ID, sa.ForeignKey("evidence_links.id", ondelete="SET NULL")),
        sa.Column("verdict", sa.String(20), nullable=False),
        sa.Column("confidence", sa.String(10), nullable=False, server_default="medium"),
        sa.Column("comments", sa.Text, nullable=False),
        sa.Column("missing_elements", sa.JSON, nullable=False),
        sa.Column("remediation_notes", sa.Text),
        _user("evaluated_by"),
        *_timestamps(updated=False),
    )
    op.create_index("idx_evidence_evaluations_artifact", "evidence_evaluations", ["artifact_id", "created_at"])

    op.create_table(
        "audit_evidence_links",
        sa.Column("id", ID, primary_key=True),
        _org(),
        sa.Column("audit_id", ID, sa.ForeignKey("audits.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "audit_request_id", ID,
            sa.ForeignKey("audit_requests.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("artifact_id", ID, sa.ForeignKey("evidence_artifacts.id", ondelete="CASCADE"), nullable=False),
        _user("submitted_by"),
        sa.Column("submitted_at", sa.DateTime, nullable=False),
        sa.Column("submission_notes", sa.Text),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending_review"),
        _user("reviewed_by"),
        sa.Column("reviewed_at", sa.DateTime),
        sa.Column("review_notes", sa.Text),
        *_timestamps(),
        sa.UniqueConstraint("audit_request_id", "artifact_id", name="uq_audit_evidence_request_artifact"),
    )
    op.create_index("idx_audit_evidence_audit", "audit_evidence_links", ["audit_id"])

    # ── Policies ──
    op.create_table(
        "policies",
        sa.Column("id", ID, primary_key=True),
        _org(),
        sa.Column("identifier", sa.String(50), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("category", sa.String(40), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("owner_id", ID, sa.ForeignKey("users.id"), nullable=False),
        _user("secondary_owner_id"),
        sa.Column("current_version_id", ID),
        sa.Column("review_frequency_days", sa.Integer),
        sa.Column("next_review_at", sa.Date),
        sa.Column("last_reviewed_at", sa.Date),
        sa.Column("approved_at", sa.DateTime),
        sa.Column("approved_version", sa.Integer),
        sa.Column("published_at", sa.DateTime),
        sa.Column("is_template", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("template_framework_id", ID, sa.ForeignKey("frameworks.id", ondelete="SET NULL")),
        sa.Column("cloned_from_policy_id", ID, sa.ForeignKey("policies.id", ondelete="SET NULL")),
        sa.Column("tags", sa.JSON, nullable=False),
        _user("created_by"),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "identifier", name="uq_policy_org_identifier"),
    )
    op.create_index("idx_policies_org_status", "policies", ["org_id", "status"])
    op.create_index("idx_policies_org_template", "policies", ["org_id", "is_template"])

    op.create_table(
        "policy_versions",
        sa.Column("id", ID, primary_key=True),
        _org(),
        sa.Column("policy_id", ID, sa.ForeignKey("policies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("version_number", sa.Integer, nullable=False),
        sa.Column("is_current", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("content", sa.Text(length=4294967295), nullable=False),
        sa.Column("content_format", sa.String(20), nullable=False, server_default="html"),
        sa.Column("content_summary", sa.Text),
        sa.Column("change_summary", sa.Text),
        sa.Column("change_type", sa.String(20), nullable=False, server_default="minor"),
        sa.Column("word_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("character_count", sa.Integer, nullable=False, server_default="0"),
        _user("created_by"),
        *_timestamps(updated=False),
        sa.UniqueConstraint("policy_id", "version_number", name="uq_policy_version_number"),
    )
    op.create_index("idx_policy_versions_current", "policy_versions", ["policy_id", "is_current"])

    op.create_table(
        "policy_signoffs",
        sa.Column("id", ID, primary_key=True),
        _org(),
        sa.Column("policy_id", ID, sa.ForeignKey("policies.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "policy_version_id", ID,
            sa.ForeignKey("policy_versions.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("signer_id", ID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("signer_role", sa.String(30)),
        _user("requested_by"),
        sa.Column("requested_at", sa.DateTime, nullable=False),
        sa.Column("due_date", sa.Date),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("decided_at", sa.DateTime),
        sa.Column("comments", sa.Text),
        sa.Column("reminder_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("reminder_sent_at", sa.DateTime),
        *_timestamps(),
    )
    op.create_index("idx_policy_signoffs_signer", "policy_signoffs", ["org_id", "signer_id", "status"])
    op.create_index("idx_policy_signoffs_version", "policy_signoffs", ["policy_version_id", "status"])

    op.create_table(
        "policy_controls",
        sa.Column("id", ID, primary_key=True),
        _org(),
        sa.Column("policy_id", ID, sa.ForeignKey("policies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("control_id", ID, sa.ForeignKey("controls.id", ondelete="CASCADE"), nullable=False),
        sa.Column("coverage", sa.String(10), nullable=False, server_default="full"),
        sa.Column("notes", sa.Text),
        _user("linked_by"),
        *_timestamps(updated=False),
        sa.UniqueConstraint("policy_id", "control_id", name="uq_policy_control"),
    )
    op.create_index("idx_policy_controls_control", "policy_controls", ["control_id"])

    # ── Audit log ──
    op.create_table(
        "audit_log",
        sa.Column("id", ID, primary_key=True),
        sa.Column("org_id", ID, nullable=False),
        sa.Column("actor_id", ID),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("resource_type", sa.String(50), nullable=False),
        sa.Column("resource_id", ID),
        sa.Column("metadata", sa.JSON),
        sa.Column("ip_address", sa.String(45)),
        sa.Column("user_agent", sa.String(500)),
        *_timestamps(updated=False),
    )
    op.create_index("idx_audit_log_org_created", "audit_log", ["org_id", "created_at"])
    op.create_index("idx_audit_log_resource", "audit_log", ["org_id", "resource_type", "resource_id"])


def downgrade() -> None:
    for table in (
        "audit_log",
        "policy_controls",
        "policy_signoffs",
        "policy_versions",
        "policies",
        "audit_evidence_links",
        "evidence_evaluations",
        "evidence_links",
        "evidence_artifacts",
        "audit_request_templates",
        "audit_comments",
        "audit_findings",
        "audit_requests",
        "audits",
        "control_mappings",
        "controls",
        "org_frameworks",
        "requirements",
        "framework_versions",
        "frameworks",
        "users",
        "organizations",
    ):
        op.drop_table(table)
