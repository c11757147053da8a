"""
Audit engine: lifecycle rules for audits and everything hanging off them.

Routers load the principal, call into here and commit; this module enforces
auditor isolation, the terminal-audit lock, the request/finding state
machines and their guards, and keeps the audit counters in step.
"""
from __future__ import annotations

import re
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_core.errors import Conflict, Forbidden, NotFound, ValidationFailed
from grc_core.middleware.audit import AuditTrail
from grc_core.models.audit import (
    Audit,
    AuditComment,
    AuditEvidenceLink,
    AuditFinding,
    AuditRequest,
    AuditRequestTemplate,
)
from grc_core.models.base import utcnow
from grc_core.models.evidence import EvidenceArtifact
from grc_core.models.org import User
from grc_core.services import authz, counters
from grc_core.services.authz import Principal
from grc_core.services.lookups import load_control, load_org_user, load_requirement, require_org_user
from grc_core.services.state_machine import AUDIT, AUDIT_REQUEST, FINDING

INVALID = "AUDIT_INVALID_TRANSITION"
INVALID_STATUS = 409


# ─── Loading & guards ─────────────────────────────────────────


async def load_audit(s: AsyncSession, principal: Principal, audit_id: str) -> Audit:
    """Fetch an audit in the caller's org. Auditors only see audits naming them."""
    a = (await s.execute(
        select(Audit).where(Audit.id == audit_id, Audit.org_id == principal.org_id)
    )).scalar_one_or_none()
    if not a or (principal.is_auditor and principal.user_id not in (a.auditor_ids or [])):
        raise NotFound("Audit not found", code="AUDIT_NOT_FOUND")
    return a


def ensure_active(audit: Audit) -> None:
    if audit.status == "completed":
        raise ValidationFailed("Audit is completed; no further changes are allowed", code="AUDIT_COMPLETED")
    if audit.status == "cancelled":
        raise ValidationFailed("Audit is cancelled; no further changes are allowed", code="AUDIT_CANCELLED")


async def load_request(s: AsyncSession, audit: Audit, request_id: str) -> AuditRequest:
    r = (await s.execute(
        select(AuditRequest).where(
            AuditRequest.id == request_id,
            AuditRequest.audit_id == audit.id,
            AuditRequest.org_id == audit.org_id,
        )
    )).scalar_one_or_none()
    if not r:
        raise NotFound("Audit request not found", code="AUDIT_REQUEST_NOT_FOUND")
    return r


async def load_finding(s: AsyncSession, audit: Audit, finding_id: str) -> AuditFinding:
    f = (await s.execute(
        select(AuditFinding).where(
            AuditFinding.id == finding_id,
            AuditFinding.audit_id == audit.id,
            AuditFinding.org_id == audit.org_id,
        )
    )).scalar_one_or_none()
    if not f:
        raise NotFound("Audit finding not found", code="AUDIT_FINDING_NOT_FOUND")
    return f


async def load_comment(s: AsyncSession, principal: Principal, audit: Audit, comment_id: str) -> AuditComment:
    c = (await s.execute(
        select(AuditComment).where(
            AuditComment.id == comment_id,
            AuditComment.audit_id == audit.id,
            AuditComment.org_id == audit.org_id,
        )
    )).scalar_one_or_none()
    if not c or (c.is_internal and principal.is_auditor):
        raise NotFound("Comment not found", code="AUDIT_COMMENT_NOT_FOUND")
    return c


async def _check_refs(s: AsyncSession, org_id: str, control_id: str | None, requirement_id: str | None) -> None:
    if control_id:
        await load_control(s, org_id, control_id)
    if requirement_id:
        await load_requirement(s, requirement_id)


# ─── Audits ───────────────────────────────────────────────────


async def add_auditor(s: AsyncSession, audit: Audit, user_id: str, trail: AuditTrail) -> None:
    ensure_active(audit)
    u = await load_org_user(s, audit.org_id, user_id)
    if not u:
        raise NotFound("User not found")
    if u.role != authz.AUDITOR:
        raise ValidationFailed("User does not have the auditor role")
    current = list(audit.auditor_ids or [])
    if user_id in current:
        raise Conflict("Auditor already assigned to this audit")
    audit.auditor_ids = current + [user_id]
    trail.record("audit.auditor_added", "audit", audit.id, user_id=user_id)


async def remove_auditor(s: AsyncSession, audit: Audit, user_id: str, trail: AuditTrail) -> None:
    ensure_active(audit)
    current = list(audit.auditor_ids or [])
    if user_id not in current:
        raise NotFound("Auditor not assigned to this audit")
    audit.auditor_ids = [a for a in current if a != user_id]
    trail.record("audit.auditor_removed", "audit", audit.id, user_id=user_id)


async def change_audit_status(audit: Audit, target: str, notes: str | None, trail: AuditTrail) -> str:
    ensure_active(audit)
    AUDIT.check(audit.status, target, code=INVALID, status_code=INVALID_STATUS)
    previous = audit.status
    now = utcnow()
    if previous == "planning" and target == "fieldwork" and not audit.actual_start:
        audit.actual_start = now
    if target == "completed":
        audit.actual_end = now
    audit.status = target
    trail.record("audit.status_changed", "audit", audit.id, from_status=previous, to_status=target, notes=notes)
    return previous


# ─── Requests ─────────────────────────────────────────────────


def _priority(value: str | None, default: str = "medium") -> str:
    if value and value in AuditRequest.PRIORITIES:
        return value
    return default


async def build_request(
    s: AsyncSession,
    principal: Principal,
    audit: Audit,
    *,
    title: str,
    description: str | None = None,
    priority: str | None = None,
    control_id: str | None = None,
    requirement_id: str | None = None,
    assigned_to: str | None = None,
    due_date: date | None = None,
    reference_number: str | None = None,
    tags: list[str] | None = None,
) -> AuditRequest:
    """Validate and stage one request (no counter update, no audit record)."""
    await _check_refs(s, audit.org_id, control_id, requirement_id)
    if assigned_to:
        await require_org_user(s, audit.org_id, assigned_to, "Assignee")
    r = AuditRequest(
        org_id=audit.org_id,
        audit_id=audit.id,
        title=title,
        description=description,
        priority=_priority(priority),
        status="in_progress" if assigned_to else "open",
        control_id=control_id,
        requirement_id=requirement_id,
        requested_by=principal.user_id,
        assigned_to=assigned_to,
        due_date=due_date,
        reference_number=reference_number,
        tags=list(tags or []),
    )
    s.add(r)
    return r


async def create_requests(
    s: AsyncSession,
    principal: Principal,
    audit: Audit,
    items: list[dict],
    trail: AuditTrail,
) -> tuple[list[AuditRequest], list[dict]]:
    """Create requests one by one; a bad item is reported, the rest still go in."""
    ensure_active(audit)
    created: list[AuditRequest] = []
    errors: list[dict] = []
    for index, item in enumerate(items):
        try:
            r = await build_request(s, principal, audit, **item)
        except (NotFound, ValidationFailed) as exc:
            errors.append({"index": index, "title": item.get("title"), "code": exc.code, "message": exc.message})
            continue
        created.append(r)
    await counters.recompute_request_counters(s, audit)
    for r in created:
        trail.record("audit_request.created", "audit_request", r.id, audit_id=audit.id, title=r.title)
    return created, errors


_REF_SUFFIX = re.compile(r"-(\d+)$")


def _next_ref(prefix: str, count: int) -> str:
    return f"{prefix}-{count + 1:03d}"


async def _max_reference(s: AsyncSession, audit: Audit, prefix: str) -> int:
    refs = (await s.execute(
        select(AuditRequest.reference_number).where(
            AuditRequest.audit_id == audit.id,
            AuditRequest.org_id == audit.org_id,
            AuditRequest.reference_number.like(f"{prefix}-%"),
        )
    )).scalars().all()
    highest = 0
    for ref in refs:
        m = _REF_SUFFIX.search(ref or "")
        if m and ref[: m.start()] == prefix:
            highest = max(highest, int(m.group(1)))
    return highest


async def create_from_templates(
    s: AsyncSession,
    principal: Principal,
    audit: Audit,
    template_ids: list[str],
    trail: AuditTrail,
    *,
    auto_number: bool = True,
    prefix: str = "PBC",
    due_date: date | None = None,
    assigned_to: str | None = None,
) -> tuple[list[AuditRequest], list[str]]:
    ensure_active(audit)
    if assigned_to:
        await require_org_user(s, audit.org_id, assigned_to, "Assignee")
    rows = (await s.execute(
        select(AuditRequestTemplate).where(AuditRequestTemplate.id.in_(set(template_ids)))
    )).scalars().all()
    by_id = {t.id: t for t in rows}
    skipped = [tid for tid in template_ids if tid not in by_id]

    counter = await _max_reference(s, audit, prefix) if auto_number else 0
    created: list[AuditRequest] = []
    for tid in template_ids:
        t = by_id.get(tid)
        if not t:
            continue
        ref = None
        if auto_number:
            ref = _next_ref(prefix, counter)
            counter += 1
        created.append(await build_request(
            s, principal, audit,
            title=t.title,
            description=t.description,
            priority=t.default_priority,
            assigned_to=assigned_to,
            due_date=due_date,
            reference_number=ref,
            tags=t.tags,
        ))
    await counters.recompute_request_counters(s, audit)
    for r in created:
        trail.record(
            "audit_request.created", "audit_request", r.id,
            audit_id=audit.id, title=r.title, reference_number=r.reference_number, from_template=True,
        )
    return created, skipped


async def update_request(
    s: AsyncSession, audit: Audit, r: AuditRequest, changes: dict, trail: AuditTrail,
) -> None:
    ensure_active(audit)
    if not changes:
        raise ValidationFailed("No fields to update")
    if r.status == "closed":
        raise ValidationFailed("Closed requests cannot be edited")
    await _check_refs(s, audit.org_id, changes.get("control_id"), changes.get("requirement_id"))
    for k, v in changes.items():
        setattr(r, k, v)
    trail.record("audit_request.updated", "audit_request", r.id, audit_id=audit.id, fields=sorted(changes))


async def assign_request(
    s: AsyncSession, audit: Audit, r: AuditRequest, assignee_id: str, trail: AuditTrail,
) -> None:
    ensure_active(audit)
    if r.status in ("accepted", "closed"):
        raise ValidationFailed(f"Cannot assign a request in status '{r.status}'")
    await require_org_user(s, audit.org_id, assignee_id, "Assignee")
    previous = r.assigned_to
    r.assigned_to = assignee_id
    if r.status == "open":
        r.status = "in_progress"
    await counters.recompute_request_counters(s, audit)
    trail.record(
        "audit_request.assigned", "audit_request", r.id,
        audit_id=audit.id, assigned_to=assignee_id, previous_assignee=previous,
    )


# A submitted request must keep the evidence it was submitted with
_EVIDENCE_LOCKED = ("submitted", "accepted", "closed")


async def evidence_count(s: AsyncSession, r: AuditRequest) -> int:
    return (await s.execute(
        select(func.count()).select_from(AuditEvidenceLink).where(
            AuditEvidenceLink.audit_request_id == r.id,
            AuditEvidenceLink.org_id == r.org_id,
        )
    )).scalar() or 0


async def submit_request(
    s: AsyncSession, audit: Audit, r: AuditRequest, notes: str | None, trail: AuditTrail,
) -> None:
    ensure_active(audit)
    AUDIT_REQUEST.check(r.status, "submitted", code=INVALID, status_code=INVALID_STATUS)
    if await evidence_count(s, r) == 0:
        raise ValidationFailed("Attach at least one evidence artifact before submitting", code="AUDIT_NO_EVIDENCE")
    previous = r.status
    r.status = "submitted"
    r.submitted_at = utcnow()
    await counters.recompute_request_counters(s, audit)
    trail.record(
        "audit_request.submitted", "audit_request", r.id,
        audit_id=audit.id, from_status=previous, notes=notes,
    )


async def review_request(
    s: AsyncSession, audit: Audit, r: AuditRequest, decision: str, notes: str | None, trail: AuditTrail,
) -> None:
    ensure_active(audit)
    if decision not in ("accepted", "rejected"):
        raise ValidationFailed("Review status must be 'accepted' or 'rejected'")
    if decision == "rejected" and not (notes or "").strip():
        raise ValidationFailed("Rejection requires reviewer notes", code="AUDIT_REJECTION_REQUIRES_NOTES")
    AUDIT_REQUEST.check(r.status, decision, code=INVALID, status_code=INVALID_STATUS)
    r.status = decision
    r.reviewed_at = utcnow()
    r.reviewer_notes = notes
    await counters.recompute_request_counters(s, audit)
    trail.record(f"audit_request.{decision}", "audit_request", r.id, audit_id=audit.id, notes=notes)


async def close_request(s: AsyncSession, audit: Audit, r: AuditRequest, trail: AuditTrail) -> None:
    ensure_active(audit)
    AUDIT_REQUEST.check(r.status, "closed", code=INVALID, status_code=INVALID_STATUS)
    previous = r.status
    r.status = "closed"
    await counters.recompute_request_counters(s, audit)
    trail.record("audit_request.closed", "audit_request", r.id, audit_id=audit.id, from_status=previous)


# ─── Evidence submissions ─────────────────────────────────────


async def submit_evidence(
    s: AsyncSession,
    principal: Principal,
    audit: Audit,
    r: AuditRequest,
    artifact_id: str,
    notes: str | None,
    trail: AuditTrail,
) -> AuditEvidenceLink:
    ensure_active(audit)
    artifact = (await s.execute(
        select(EvidenceArtifact).where(
            EvidenceArtifact.id == artifact_id, EvidenceArtifact.org_id == audit.org_id,
        )
    )).scalar_one_or_none()
    if not artifact:
        raise NotFound("Evidence artifact not found")
    dup = (await s.execute(
        select(AuditEvidenceLink.id).where(
            AuditEvidenceLink.audit_request_id == r.id,
            AuditEvidenceLink.artifact_id == artifact_id,
            AuditEvidenceLink.org_id == audit.org_id,
        )
    )).scalar_one_or_none()
    if dup:
        raise Conflict("This artifact is already submitted for the request", code="AUDIT_DUPLICATE_EVIDENCE")
    link = AuditEvidenceLink(
        org_id=audit.org_id,
        audit_id=audit.id,
        audit_request_id=r.id,
        artifact_id=artifact_id,
        submitted_by=principal.user_id,
        submitted_at=utcnow(),
        submission_notes=notes,
        status="pending_review",
    )
    s.add(link)
    await s.flush()
    trail.record(
        "audit_evidence.submitted", "audit_evidence_link", link.id,
        audit_id=audit.id, request_id=r.id, artifact_id=artifact_id,
    )
    return link


async def load_evidence_link(s: AsyncSession, r: AuditRequest, link_id: str) -> AuditEvidenceLink:
    link = (await s.execute(
        select(AuditEvidenceLink).where(
            AuditEvidenceLink.id == link_id,
            AuditEvidenceLink.audit_request_id == r.id,
            AuditEvidenceLink.org_id == r.org_id,
        )
    )).scalar_one_or_none()
    if not link:
        raise NotFound("Evidence submission not found")
    return link


async def review_evidence(
    principal: Principal,
    audit: Audit,
    link: AuditEvidenceLink,
    decision: str,
    notes: str | None,
    trail: AuditTrail,
) -> None:
    ensure_active(audit)
    if decision not in ("accepted", "rejected", "needs_clarification"):
        raise ValidationFailed("Review status must be one of: accepted, rejected, needs_clarification")
    if decision in ("rejected", "needs_clarification") and not (notes or "").strip():
        raise ValidationFailed(
            f"Review notes are required when marking evidence as {decision}",
            code="AUDIT_REJECTION_REQUIRES_NOTES",
        )
    previous = link.status
    link.status = decision
    link.reviewed_by = principal.user_id
    link.reviewed_at = utcnow()
    link.review_notes = notes
    trail.record(
        "audit_evidence.reviewed", "audit_evidence_link", link.id,
        audit_id=audit.id, from_status=previous, to_status=decision,
    )


async def remove_evidence(
    s: AsyncSession,
    principal: Principal,
    audit: Audit,
    r: AuditRequest,
    link: AuditEvidenceLink,
    trail: AuditTrail,
) -> None:
    ensure_active(audit)
    if r.status in _EVIDENCE_LOCKED:
        raise ValidationFailed(f"Evidence cannot be removed from a request in status '{r.status}'")
    authz.require_owner_or_roles(
        principal, [link.submitted_by], authz.AUDIT_CREATE_ROLES,
        "Only the submitter or an audit manager can remove this evidence",
    )
    await s.delete(link)
    trail.record(
        "audit_evidence.removed", "audit_evidence_link", link.id,
        audit_id=audit.id, request_id=link.audit_request_id, artifact_id=link.artifact_id,
    )


# ─── Findings ─────────────────────────────────────────────────

# Who may move a finding into each state (risk acceptance is CISO-only).
_REMEDIATION_ROLES = frozenset({authz.CISO, authz.COMPLIANCE_MANAGER, authz.SECURITY_ENGINEER})
_VERIFY_ROLES = frozenset({authz.AUDITOR, authz.CISO, authz.COMPLIANCE_MANAGER})
_FINDING_TARGET_ROLES = {
    "remediation_planned": _REMEDIATION_ROLES,
    "remediation_in_progress": _REMEDIATION_ROLES,
    "remediation_complete": _REMEDIATION_ROLES,
    "verified": _VERIFY_ROLES,
    "closed": _VERIFY_ROLES,
    "risk_accepted": frozenset({authz.CISO}),
}


async def create_finding(
    s: AsyncSession, principal: Principal, audit: Audit, data: dict, trail: AuditTrail,
) -> AuditFinding:
    ensure_active(audit)
    await _check_refs(s, audit.org_id, data.get("control_id"), data.get("requirement_id"))
    if data.get("remediation_owner_id"):
        await require_org_user(s, audit.org_id, data["remediation_owner_id"], "Remediation owner")
    extra = data.pop("metadata", None)
    f = AuditFinding(
        org_id=audit.org_id,
        audit_id=audit.id,
        status="identified",
        found_by=principal.user_id,
        extra=extra,
        **data,
    )
    s.add(f)
    await counters.recompute_finding_counters(s, audit)
    trail.record(
        "audit_finding.created", "audit_finding", f.id,
        audit_id=audit.id, severity=f.severity, title=f.title,
    )
    return f


async def update_finding(
    s: AsyncSession, audit: Audit, f: AuditFinding, changes: dict, trail: AuditTrail,
) -> None:
    ensure_active(audit)
    if not changes:
        raise ValidationFailed("No fields to update")
    await _check_refs(s, audit.org_id, changes.get("control_id"), changes.get("requirement_id"))
    for k, v in changes.items():
        setattr(f, k, v)
    trail.record("audit_finding.updated", "audit_finding", f.id, audit_id=audit.id, fields=sorted(changes))


async def change_finding_status(
    s: AsyncSession,
    principal: Principal,
    audit: Audit,
    f: AuditFinding,
    target: str,
    body,
    trail: AuditTrail,
) -> str:
    ensure_active(audit)
    allowed_roles = _FINDING_TARGET_ROLES.get(target)
    if target == "risk_accepted" and principal.role != authz.CISO:
        raise Forbidden("Only the CISO can accept risk on a finding")
    if allowed_roles is not None and principal.role not in allowed_roles:
        raise Forbidden(f"Your role cannot move findings to '{target}'")
    FINDING.check(f.status, target, code=INVALID, status_code=INVALID_STATUS)

    previous = f.status
    now = utcnow()
    if target == "remediation_planned":
        plan = body.remediation_plan or f.remediation_plan
        if not (plan or "").strip():
            raise ValidationFailed("A remediation plan is required")
        f.remediation_plan = plan
        if body.remediation_due_date:
            f.remediation_due_date = body.remediation_due_date
        if body.remediation_owner_id:
            await require_org_user(s, audit.org_id, body.remediation_owner_id, "Remediation owner")
            f.remediation_owner_id = body.remediation_owner_id
    elif target == "remediation_in_progress":
        if previous == "remediation_planned":
            f.remediation_started_at = now
        elif previous == "remediation_complete":
            if not (body.notes or "").strip():
                raise ValidationFailed("Notes are required to reopen remediation")
            f.remediation_completed_at = None
    elif target == "remediation_complete":
        f.remediation_completed_at = now
    elif target == "verified":
        f.verified_at = now
        f.verified_by = principal.user_id
        f.verification_notes = body.verification_notes or body.notes
    elif target == "risk_accepted":
        reason = (body.risk_acceptance_reason or "").strip()
        if not reason:
            raise ValidationFailed(
                "A reason is required to accept risk", code="AUDIT_RISK_ACCEPT_REQUIRES_REASON",
            )
        f.risk_accepted = True
        f.risk_acceptance_reason = reason
        f.risk_accepted_by = principal.user_id
        f.risk_accepted_at = now

    f.status = target
    await counters.recompute_finding_counters(s, audit)
    trail.record(
        "audit_finding.status_changed", "audit_finding", f.id,
        audit_id=audit.id, from_status=previous, to_status=target, notes=body.notes,
    )
    return previous


async def set_management_response(
    principal: Principal, audit: Audit, f: AuditFinding, response: str, trail: AuditTrail,
) -> None:
    ensure_active(audit)
    f.management_response = response
    f.management_response_by = principal.user_id
    f.management_response_at = utcnow()
    trail.record("audit_finding.management_response", "audit_finding", f.id, audit_id=audit.id)


# ─── Comments ─────────────────────────────────────────────────


async def _check_comment_target(s: AsyncSession, audit: Audit, target_type: str, target_id: str) -> None:
    if target_type == "audit":
        if target_id != audit.id:
            raise ValidationFailed("Audit comments must target the audit itself")
    elif target_type == "request":
        await load_request(s, audit, target_id)
    elif target_type == "finding":
        await load_finding(s, audit, target_id)
    else:
        raise ValidationFailed(f"Unknown comment target '{target_type}'")


async def create_comment(
    s: AsyncSession, principal: Principal, audit: Audit, data, trail: AuditTrail,
) -> AuditComment:
    if data.is_internal and principal.is_auditor:
        raise Forbidden("Auditors cannot create internal comments", code="AUDIT_INTERNAL_COMMENT_DENIED")
    await _check_comment_target(s, audit, data.target_type, data.target_id)
    if data.parent_comment_id:
        parent = await load_comment(s, principal, audit, data.parent_comment_id)
        if parent.parent_comment_id:
            raise ValidationFailed("Replies can only be one level deep")
        if (parent.target_type, parent.target_id) != (data.target_type, data.target_id):
            raise ValidationFailed("A reply must target the same item as its parent comment")
    c = AuditComment(
        org_id=audit.org_id,
        audit_id=audit.id,
        target_type=data.target_type,
        target_id=data.target_id,
        author_id=principal.user_id,
        body=data.body,
        parent_comment_id=data.parent_comment_id,
        is_internal=data.is_internal,
    )
    s.add(c)
    await s.flush()
    trail.record(
        "audit_comment.created", "audit_comment", c.id,
        audit_id=audit.id, target_type=c.target_type, target_id=c.target_id, is_internal=c.is_internal,
    )
    return c


def edit_comment(principal: Principal, audit: Audit, c: AuditComment, body: str, trail: AuditTrail) -> None:
    if c.author_id != principal.user_id:
        raise Forbidden("Only the author can edit a comment")
    c.body = body
    c.edited_at = utcnow()
    trail.record("audit_comment.updated", "audit_comment", c.id, audit_id=audit.id)


async def delete_comment(
    s: AsyncSession, principal: Principal, audit: Audit, c: AuditComment, trail: AuditTrail,
) -> None:
    authz.require_owner_or_roles(
        principal, [c.author_id], authz.AUDIT_CREATE_ROLES,
        "Only the author or an audit manager can delete this comment",
    )
    replies = (await s.execute(
        select(AuditComment).where(AuditComment.parent_comment_id == c.id, AuditComment.org_id == c.org_id)
    )).scalars().all()
    for reply in replies:
        await s.delete(reply)
    await s.delete(c)
    trail.record("audit_comment.deleted", "audit_comment", c.id, audit_id=audit.id, replies_deleted=len(replies))


# ─── Readiness ────────────────────────────────────────────────


def readiness_pct(done: int, total: int) -> float:
    return round(done * 100 / total, 1) if total else 0.0


async def author_names(s: AsyncSession, org_id: str, ids) -> dict[str, str]:
    wanted = {i for i in ids if i}
    if not wanted:
        return {}
    rows = (await s.execute(select(User).where(User.org_id == org_id, User.id.in_(wanted)))).scalars().all()
    return {u.id: u.display_name for u in rows}
