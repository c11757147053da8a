"""
Policy store: policy lifecycle, the append-only version chain, sign-off
requests and decisions, template cloning and control coverage.

Every multi-row change here (policy + version 1, supersede + new version,
status + sign-offs) is staged on the caller's session and committed once by
the router, so a failure leaves nothing half-written.
"""
from __future__ import annotations

import logging
from datetime import date, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_core.config import settings
from grc_core.errors import (
    Conflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    RateLimited,
    Unprocessable,
    ValidationFailed,
)
from grc_core.middleware.audit import AuditTrail
from grc_core.models.base import utcnow
from grc_core.models.catalog import Control
from grc_core.models.policy import Policy, PolicyControl, PolicySignoff, PolicyVersion
from grc_core.services import authz, content
from grc_core.services.authz import Principal
from grc_core.services.lookups import load_control, load_org_user, require_org_user, users_by_id
from grc_core.services.state_machine import POLICY

logger = logging.getLogger(__name__)

# Control category -> policy categories that usually cover it
SUGGESTED_CATEGORIES = {
    "technical": ["encryption", "network_security", "access_control", "secure_development"],
    "administrative": ["compliance", "risk_management", "human_resources", "change_management"],
    "physical": ["physical_security", "asset_management"],
    "operational": [
        "incident_response", "business_continuity", "vulnerability_management", "logging_monitoring",
    ],
}


def suggest_categories(control_category: str | None) -> list[str]:
    return list(SUGGESTED_CATEGORIES.get(control_category or "", ["information_security"]))


def review_status(next_review_at: date | None, today: date | None = None) -> str:
    if next_review_at is None:
        return "no_schedule"
    today = today or utcnow().date()
    if next_review_at < today:
        return "overdue"
    if next_review_at <= today + timedelta(days=settings.REVIEW_DUE_SOON_DAYS):
        return "due_soon"
    return "on_track"


# ─── Loading & guards ─────────────────────────────────────────


async def load_policy(s: AsyncSession, org_id: str, policy_id: str) -> Policy:
    p = (await s.execute(
        select(Policy).where(Policy.id == policy_id, Policy.org_id == org_id)
    )).scalar_one_or_none()
    if not p:
        raise NotFound("Policy not found")
    return p


def ensure_not_archived(p: Policy) -> None:
    if p.status == "archived":
        raise Unprocessable("Archived policies cannot be modified", code="POLICY_ARCHIVED")


def require_editor(principal: Principal, p: Policy) -> None:
    authz.require_owner_or_roles(
        principal, [p.owner_id], authz.POLICY_CREATE_ROLES,
        "Only the policy owner or a policy manager can modify this policy",
    )


async def current_version(s: AsyncSession, p: Policy) -> PolicyVersion | None:
    return (await s.execute(
        select(PolicyVersion).where(
            PolicyVersion.policy_id == p.id,
            PolicyVersion.org_id == p.org_id,
            PolicyVersion.is_current.is_(True),
        )
    )).scalar_one_or_none()


async def load_version(s: AsyncSession, p: Policy, number: int) -> PolicyVersion:
    v = (await s.execute(
        select(PolicyVersion).where(
            PolicyVersion.policy_id == p.id,
            PolicyVersion.org_id == p.org_id,
            PolicyVersion.version_number == number,
        )
    )).scalar_one_or_none()
    if not v:
        raise NotFound(f"Version {number} not found")
    return v


async def _check_identifier(s: AsyncSession, org_id: str, identifier: str) -> None:
    taken = (await s.execute(
        select(Policy.id).where(Policy.org_id == org_id, Policy.identifier == identifier)
    )).scalar_one_or_none()
    if taken:
        raise Conflict(f"Policy identifier '{identifier}' already exists", code="DUPLICATE_IDENTIFIER")


def _build_version(
    p: Policy,
    number: int,
    body: str,
    fmt: str,
    change_type: str,
    created_by: str,
    content_summary: str | None = None,
    change_summary: str | None = None,
) -> PolicyVersion:
    if content.content_too_large(body):
        raise ValidationFailed("Policy content exceeds 1 MiB", code="CONTENT_TOO_LARGE")
    stored = content.prepare_content(body, fmt)
    return PolicyVersion(
        org_id=p.org_id,
        policy_id=p.id,
        version_number=number,
        is_current=True,
        content=stored,
        content_format=fmt,
        content_summary=content_summary,
        change_summary=change_summary,
        change_type=change_type,
        word_count=content.count_words(stored),
        character_count=content.count_characters(stored),
        created_by=created_by,
    )


def _set_status(p: Policy, target: str, trail: AuditTrail, **extra) -> str:
    POLICY.check(p.status, target)
    previous = p.status
    p.status = target
    trail.record("policy.status_changed", "policy", p.id, **{"from": previous, "to": target, **extra})
    return previous


async def _withdraw_pending(s: AsyncSession, p: Policy, trail: AuditTrail, reason: str) -> int:
    pending = (await s.execute(
        select(PolicySignoff).where(
            PolicySignoff.policy_id == p.id,
            PolicySignoff.org_id == p.org_id,
            PolicySignoff.status == "pending",
        )
    )).scalars().all()
    now = utcnow()
    for so in pending:
        so.status = "withdrawn"
        so.decided_at = now
        trail.record("policy_signoff.withdrawn", "policy_signoff", so.id, policy_id=p.id, reason=reason)
    return len(pending)


# ═══ Policies ═══


async def create_policy(s: AsyncSession, principal: Principal, data: dict, trail: AuditTrail) -> tuple[Policy, PolicyVersion]:
    await _check_identifier(s, principal.org_id, data["identifier"])
    owner_id = data.get("owner_id") or principal.user_id
    if owner_id != principal.user_id:
        await require_org_user(s, principal.org_id, owner_id, "Owner")
    if data.get("secondary_owner_id"):
        await require_org_user(s, principal.org_id, data["secondary_owner_id"], "Secondary owner")

    p = Policy(
        org_id=principal.org_id,
        identifier=data["identifier"],
        title=data["title"].strip(),
        description=data.get("description"),
        category=data["category"],
        status="draft",
        owner_id=owner_id,
        secondary_owner_id=data.get("secondary_owner_id"),
        review_frequency_days=data.get("review_frequency_days"),
        is_template=bool(data.get("is_template")),
        template_framework_id=data.get("template_framework_id"),
        tags=data.get("tags") or [],
        created_by=principal.user_id,
    )
    s.add(p)
    await s.flush()
    v = _build_version(
        p, 1, data["content"], data.get("content_format") or "html", "initial", principal.user_id,
        content_summary=data.get("content_summary"), change_summary="Initial version",
    )
    s.add(v)
    await s.flush()
    p.current_version_id = v.id
    trail.record("policy.created", "policy", p.id, identifier=p.identifier, title=p.title, category=p.category)
    trail.record("policy_version.created", "policy_version", v.id, policy_id=p.id, version_number=1)
    return p, v


async def update_policy(s: AsyncSession, principal: Principal, p: Policy, data: dict, trail: AuditTrail) -> None:
    require_editor(principal, p)
    ensure_not_archived(p)
    if not data:
        raise ValidationFailed("No fields to update")
    previous_owner = p.owner_id
    if data.get("owner_id") and data["owner_id"] != p.owner_id:
        await require_org_user(s, p.org_id, data["owner_id"], "Owner")
    if data.get("secondary_owner_id"):
        await require_org_user(s, p.org_id, data["secondary_owner_id"], "Secondary owner")
    for key, value in data.items():
        if key in ("title", "category", "owner_id", "tags") and value is None:
            continue
        setattr(p, key, value)
    trail.record("policy.updated", "policy", p.id, fields=sorted(data))
    if p.owner_id != previous_owner:
        trail.record("policy.owner_changed", "policy", p.id, previous_owner_id=previous_owner, owner_id=p.owner_id)


async def create_version(
    s: AsyncSession, principal: Principal, p: Policy, data: dict, trail: AuditTrail,
) -> PolicyVersion:
    require_editor(principal, p)
    ensure_not_archived(p)
    top = (await s.execute(
        select(func.max(PolicyVersion.version_number)).where(
            PolicyVersion.policy_id == p.id, PolicyVersion.org_id == p.org_id,
        )
    )).scalar() or 0
    v = _build_version(
        p, top + 1, data["content"], data.get("content_format") or "html",
        data.get("change_type") or "minor", principal.user_id,
        content_summary=data.get("content_summary"), change_summary=data["change_summary"],
    )
    old = await current_version(s, p)
    if old is not None:
        old.is_current = False
        await s.flush()
    s.add(v)
    await s.flush()
    p.current_version_id = v.id
    trail.record(
        "policy_version.created", "policy_version", v.id,
        policy_id=p.id, version_number=v.version_number, change_type=v.change_type,
    )
    # Content change invalidates any approval or open review
    if p.status in ("approved", "published", "in_review"):
        if p.status == "in_review":
            await _withdraw_pending(s, p, trail, "new_version")
        _set_status(p, "draft", trail, trigger="new_version", version_number=v.version_number)
    return v


async def submit_for_review(
    s: AsyncSession,
    principal: Principal,
    p: Policy,
    signer_ids: list[str],
    due_date: date | None,
    trail: AuditTrail,
) -> list[PolicySignoff]:
    authz.require_roles(principal, authz.POLICY_CREATE_ROLES)
    ensure_not_archived(p)
    POLICY.check(p.status, "in_review")

    unique_ids = list(dict.fromkeys(signer_ids))
    signers = []
    for sid in unique_ids:
        u = await load_org_user(s, p.org_id, sid)
        if u is None:
            raise ValidationFailed(
                f"Signer {sid} is not an active user of this organization", status_code=422,
            )
        signers.append(u)

    v = await current_version(s, p)
    if v is None:
        raise Unprocessable("Policy has no current version")

    now = utcnow()
    created = []
    for u in signers:
        so = PolicySignoff(
            org_id=p.org_id,
            policy_id=p.id,
            policy_version_id=v.id,
            signer_id=u.id,
            signer_role=u.role,
            requested_by=principal.user_id,
            requested_at=now,
            due_date=due_date,
            status="pending",
        )
        s.add(so)
        created.append(so)
    await s.flush()
    for so in created:
        trail.record(
            "policy_signoff.requested", "policy_signoff", so.id,
            policy_id=p.id, version_number=v.version_number, signer_id=so.signer_id,
        )
    _set_status(p, "in_review", trail, signer_count=len(created))
    return created


# ═══ Sign-offs ═══


async def load_signoff(s: AsyncSession, p: Policy, signoff_id: str) -> PolicySignoff:
    so = (await s.execute(
        select(PolicySignoff).where(
            PolicySignoff.id == signoff_id,
            PolicySignoff.policy_id == p.id,
            PolicySignoff.org_id == p.org_id,
        )
    )).scalar_one_or_none()
    if not so:
        raise NotFound("Sign-off not found")
    return so


def _ensure_pending(so: PolicySignoff, target: str) -> None:
    if so.status != "pending":
        raise InvalidTransition("policy_signoff", so.status, target)


def _ensure_signer(principal: Principal, so: PolicySignoff) -> None:
    if so.signer_id != principal.user_id:
        raise Forbidden("You are not the designated signer", code="NOT_SIGNER")


async def approve_signoff(
    s: AsyncSession, principal: Principal, p: Policy, so: PolicySignoff, comments: str | None, trail: AuditTrail,
) -> bool:
    """Approve; returns True when this was the last pending sign-off on its version."""
    _ensure_signer(principal, so)
    _ensure_pending(so, "approved")
    so.status = "approved"
    so.decided_at = utcnow()
    so.comments = comments
    await s.flush()
    trail.record("policy_signoff.approved", "policy_signoff", so.id, policy_id=p.id)

    pending = (await s.execute(
        select(func.count()).select_from(PolicySignoff).where(
            PolicySignoff.policy_version_id == so.policy_version_id,
            PolicySignoff.org_id == p.org_id,
            PolicySignoff.status == "pending",
        )
    )).scalar() or 0
    if pending or p.status != "in_review":
        return pending == 0
    v = await s.get(PolicyVersion, so.policy_version_id)
    _set_status(p, "approved", trail, trigger="signoffs_complete")
    p.approved_at = so.decided_at
    p.approved_version = v.version_number if v else None
    return True


def reject_signoff(principal: Principal, p: Policy, so: PolicySignoff, comments: str | None, trail: AuditTrail) -> None:
    _ensure_signer(principal, so)
    _ensure_pending(so, "rejected")
    if not comments or not comments.strip():
        raise ValidationFailed("Comments are required when rejecting", code="REJECTION_REQUIRES_COMMENTS")
    so.status = "rejected"
    so.decided_at = utcnow()
    so.comments = comments
    trail.record("policy_signoff.rejected", "policy_signoff", so.id, policy_id=p.id)


def withdraw_signoff(principal: Principal, p: Policy, so: PolicySignoff, trail: AuditTrail) -> None:
    authz.require_owner_or_roles(
        principal, [so.requested_by], authz.POLICY_PUBLISH_ROLES,
        "Only the requester or a policy approver can withdraw this sign-off",
    )
    _ensure_pending(so, "withdrawn")
    so.status = "withdrawn"
    so.decided_at = utcnow()
    trail.record("policy_signoff.withdrawn", "policy_signoff", so.id, policy_id=p.id)


async def remind_signoffs(
    s: AsyncSession, principal: Principal, p: Policy, signoff_ids: list[str] | None, trail: AuditTrail,
) -> dict:
    """Stamp a reminder on each targeted pending sign-off, at most once per interval."""
    if principal.user_id != p.owner_id and not principal.has_role(authz.POLICY_PUBLISH_ROLES):
        is_requester = (await s.execute(
            select(PolicySignoff.id).where(
                PolicySignoff.policy_id == p.id,
                PolicySignoff.org_id == p.org_id,
                PolicySignoff.requested_by == principal.user_id,
                PolicySignoff.status == "pending",
            ).limit(1)
        )).scalar_one_or_none()
        if not is_requester:
            raise Forbidden("Not authorized to send reminders")

    q = select(PolicySignoff).where(
        PolicySignoff.policy_id == p.id,
        PolicySignoff.org_id == p.org_id,
        PolicySignoff.status == "pending",
    )
    if signoff_ids:
        q = q.where(PolicySignoff.id.in_(signoff_ids))
    pending = (await s.execute(q.order_by(PolicySignoff.requested_at, PolicySignoff.id))).scalars().all()
    if not pending:
        raise ValidationFailed("No pending sign-offs found", code="NO_PENDING_SIGNOFFS")

    now = utcnow()
    interval = timedelta(hours=settings.REMINDER_INTERVAL_HOURS)
    users = await users_by_id(s, p.org_id, [so.signer_id for so in pending])
    reminded = []
    for so in pending:
        if so.reminder_sent_at is not None and now - so.reminder_sent_at < interval:
            continue
        so.reminder_sent_at = now
        so.reminder_count = (so.reminder_count or 0) + 1
        u = users.get(so.signer_id)
        reminded.append({
            "signoff_id": so.id,
            "signer_id": so.signer_id,
            "name": u.display_name if u else None,
            "reminder_count": so.reminder_count,
        })
        trail.record(
            "policy_signoff.reminded", "policy_signoff", so.id,
            policy_id=p.id, signer_id=so.signer_id, reminder_count=so.reminder_count,
        )
    if not reminded:
        raise RateLimited(f"Reminder already sent within the last {settings.REMINDER_INTERVAL_HOURS} hours")
    return {"reminders_sent": len(reminded), "signers": reminded}


# ═══ Publish / archive ═══


def publish_policy(p: Policy, trail: AuditTrail) -> None:
    _set_status(p, "published", trail)
    today = utcnow().date()
    p.published_at = utcnow()
    p.last_reviewed_at = today
    if p.review_frequency_days:
        p.next_review_at = today + timedelta(days=p.review_frequency_days)


async def archive_policy(s: AsyncSession, p: Policy, trail: AuditTrail) -> int:
    previous = p.status
    POLICY.check(p.status, "archived")
    withdrawn = await _withdraw_pending(s, p, trail, "archived")
    p.status = "archived"
    trail.record("policy.archived", "policy", p.id, previous_status=previous, signoffs_withdrawn=withdrawn)
    return withdrawn


# ═══ Templates ═══


async def clone_template(
    s: AsyncSession, principal: Principal, template_id: str, data: dict, trail: AuditTrail,
) -> tuple[Policy, PolicyVersion]:
    tpl = (await s.execute(
        select(Policy).where(
            Policy.id == template_id,
            Policy.org_id == principal.org_id,
            Policy.is_template.is_(True),
        )
    )).scalar_one_or_none()
    if not tpl:
        raise NotFound("Policy template not found")
    identifier = data["identifier"].strip()
    await _check_identifier(s, principal.org_id, identifier)
    owner_id = data.get("owner_id") or principal.user_id
    if owner_id != principal.user_id:
        await require_org_user(s, principal.org_id, owner_id, "Owner")

    first = (await s.execute(
        select(PolicyVersion).where(
            PolicyVersion.policy_id == tpl.id,
            PolicyVersion.org_id == tpl.org_id,
            PolicyVersion.version_number == 1,
        )
    )).scalar_one_or_none()
    if first is None:
        raise Unprocessable("Template has no content")

    tags = data.get("tags")
    if tags is None:
        tags = [t for t in (tpl.tags or []) if t != "template"]

    p = Policy(
        org_id=principal.org_id,
        identifier=identifier,
        title=(data.get("title") or tpl.title).strip(),
        description=tpl.description,
        category=tpl.category,
        status="draft",
        owner_id=owner_id,
        review_frequency_days=tpl.review_frequency_days,
        is_template=False,
        template_framework_id=tpl.template_framework_id,
        cloned_from_policy_id=tpl.id,
        tags=tags,
        created_by=principal.user_id,
    )
    s.add(p)
    await s.flush()
    v = _build_version(
        p, 1, first.content, first.content_format, "initial", principal.user_id,
        content_summary=first.content_summary, change_summary=f"Cloned from template {tpl.identifier}",
    )
    s.add(v)
    await s.flush()
    p.current_version_id = v.id
    trail.record("policy.created", "policy", p.id, identifier=p.identifier, title=p.title, category=p.category)
    trail.record(
        "policy.cloned_from_template", "policy", p.id,
        template_id=tpl.id, template_identifier=tpl.identifier,
    )
    return p, v


# ═══ Control coverage ═══


async def _existing_link(s: AsyncSession, p: Policy, control_id: str) -> PolicyControl | None:
    return (await s.execute(
        select(PolicyControl).where(
            PolicyControl.policy_id == p.id,
            PolicyControl.control_id == control_id,
            PolicyControl.org_id == p.org_id,
        )
    )).scalar_one_or_none()


async def link_control(
    s: AsyncSession, principal: Principal, p: Policy, control_id: str, coverage: str, notes: str | None,
    trail: AuditTrail,
) -> tuple[PolicyControl, Control]:
    require_editor(principal, p)
    ensure_not_archived(p)
    c = await load_control(s, p.org_id, control_id)
    if await _existing_link(s, p, c.id):
        raise Conflict("Control is already linked to this policy")
    link = PolicyControl(
        org_id=p.org_id, policy_id=p.id, control_id=c.id,
        coverage=coverage or "full", notes=notes, linked_by=principal.user_id,
    )
    s.add(link)
    await s.flush()
    trail.record(
        "policy_control.linked", "policy_control", link.id,
        policy_id=p.id, control_id=c.id, coverage=link.coverage,
    )
    return link, c


async def bulk_link_controls(
    s: AsyncSession, principal: Principal, p: Policy, items: list, trail: AuditTrail,
) -> dict:
    """Best-effort: each row is linked, skipped as a duplicate, or reported as an error."""
    require_editor(principal, p)
    ensure_not_archived(p)
    created, skipped, errors = [], [], []
    for i, item in enumerate(items):
        c = (await s.execute(
            select(Control).where(Control.id == item.control_id, Control.org_id == p.org_id)
        )).scalar_one_or_none()
        if c is None:
            errors.append({"index": i, "control_id": item.control_id, "message": "Control not found"})
            continue
        if await _existing_link(s, p, c.id):
            skipped.append({"index": i, "control_id": c.id, "reason": "already_linked"})
            continue
        link = PolicyControl(
            org_id=p.org_id, policy_id=p.id, control_id=c.id,
            coverage=item.coverage, notes=item.notes, linked_by=principal.user_id,
        )
        s.add(link)
        await s.flush()
        trail.record(
            "policy_control.linked", "policy_control", link.id,
            policy_id=p.id, control_id=c.id, coverage=link.coverage, bulk=True,
        )
        created.append({"id": link.id, "control_id": c.id, "coverage": link.coverage})
    return {"created": created, "skipped": skipped, "errors": errors}


async def unlink_control(
    s: AsyncSession, principal: Principal, p: Policy, control_id: str, trail: AuditTrail,
) -> None:
    require_editor(principal, p)
    ensure_not_archived(p)
    link = await _existing_link(s, p, control_id)
    if not link:
        raise NotFound("Control is not linked to this policy")
    trail.record("policy_control.unlinked", "policy_control", link.id, policy_id=p.id, control_id=control_id)
    await s.delete(link)
    await s.flush()
