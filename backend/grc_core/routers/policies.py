"""
Policy Management: /api/v1/policies
Policies, versions, review/sign-off workflow, publication and control coverage.
"""
from datetime import timedelta

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_core.config import settings
from grc_core.database import get_session
from grc_core.errors import ValidationFailed
from grc_core.middleware.audit import AuditTrail, get_audit_trail
from grc_core.models.base import utcnow
from grc_core.models.catalog import Control, ControlMapping, FrameworkVersion, Requirement
from grc_core.models.org import User
from grc_core.models.policy import Policy, PolicyControl, PolicySignoff, PolicyVersion
from grc_core.pagination import Page, order_clause, paginated, pagination, pick_sort
from grc_core.schemas.common import UserRef
from grc_core.schemas.policy import (
    PolicyControlBulk,
    PolicyControlLink,
    PolicyControlOut,
    PolicyCreate,
    PolicyOut,
    PolicyUpdate,
    PolicyVersionCreate,
    PolicyVersionOut,
    RemindRequest,
    SignoffDecision,
    SignoffOut,
    SubmitForReview,
)
from grc_core.services import authz, policy as policy_svc
from grc_core.services.authz import Principal, get_principal
from grc_core.services.lookups import json_contains, users_by_id

router = APIRouter(prefix="/api/v1/policies", tags=["Policy Management"])
signoffs_router = APIRouter(prefix="/api/v1/signoffs", tags=["Policy Management"])

_SORTS = {
    "identifier": Policy.identifier,
    "title": Policy.title,
    "category": Policy.category,
    "status": Policy.status,
    "next_review_at": Policy.next_review_at,
    "published_at": Policy.published_at,
    "created_at": Policy.created_at,
    "updated_at": Policy.updated_at,
}


# ─── Helpers ──────────────────────────────────────────────────


def _user_ref(u: User | None) -> UserRef | None:
    if u is None:
        return None
    return UserRef(id=u.id, name=u.display_name, email=u.email, role=u.role)


def _review_filter(value: str):
    today = utcnow().date()
    soon = today + timedelta(days=settings.REVIEW_DUE_SOON_DAYS)
    col = Policy.next_review_at
    if value == "overdue":
        return col < today
    if value == "due_soon":
        return (col >= today) & (col <= soon)
    if value == "on_track":
        return col > soon
    if value == "no_schedule":
        return col.is_(None)
    raise ValidationFailed(f"Unknown review_status '{value}'")


def _framework_filter(framework_id: str):
    mapped = (
        select(PolicyControl.policy_id)
        .join(ControlMapping, ControlMapping.control_id == PolicyControl.control_id)
        .join(Requirement, Requirement.id == ControlMapping.requirement_id)
        .join(FrameworkVersion, FrameworkVersion.id == Requirement.framework_version_id)
        .where(FrameworkVersion.framework_id == framework_id)
    )
    return or_(Policy.template_framework_id == framework_id, Policy.id.in_(mapped))


async def _policy_outs(s: AsyncSession, policies) -> list[PolicyOut]:
    policies = list(policies)
    owners = await users_by_id(s, policies[0].org_id, [p.owner_id for p in policies]) if policies else {}
    today = utcnow().date()
    outs = []
    for p in policies:
        out = PolicyOut.model_validate(p)
        out.owner = _user_ref(owners.get(p.owner_id))
        out.review_status = policy_svc.review_status(p.next_review_at, today)
        outs.append(out)
    return outs


async def _control_outs(s: AsyncSession, p: Policy) -> list[PolicyControlOut]:
    rows = (await s.execute(
        select(PolicyControl, Control)
        .join(Control, Control.id == PolicyControl.control_id)
        .where(PolicyControl.policy_id == p.id, PolicyControl.org_id == p.org_id)
        .order_by(Control.identifier)
    )).all()
    outs = []
    for link, c in rows:
        out = PolicyControlOut.model_validate(link)
        out.control_identifier, out.control_title, out.control_category = c.identifier, c.title, c.category
        outs.append(out)
    return outs


async def _policy_detail(s: AsyncSession, p: Policy) -> PolicyOut:
    out = (await _policy_outs(s, [p]))[0]
    v = await policy_svc.current_version(s, p)
    if v is not None:
        out.current_version = PolicyVersionOut.model_validate(v)
        counts = dict((await s.execute(
            select(PolicySignoff.status, func.count())
            .where(PolicySignoff.policy_version_id == v.id, PolicySignoff.org_id == p.org_id)
            .group_by(PolicySignoff.status)
        )).all())
        out.signoff_summary = {
            st: counts.get(st, 0) for st in ("pending", "approved", "rejected", "withdrawn")
        } | {"total": sum(counts.values())}
    out.linked_controls = await _control_outs(s, p)
    return out


async def _signoff_outs(s: AsyncSession, org_id: str, signoffs) -> list[SignoffOut]:
    signoffs = list(signoffs)
    users = await users_by_id(s, org_id, [so.signer_id for so in signoffs])
    numbers = {}
    version_ids = {so.policy_version_id for so in signoffs}
    if version_ids:
        numbers = dict((await s.execute(
            select(PolicyVersion.id, PolicyVersion.version_number).where(PolicyVersion.id.in_(version_ids))
        )).all())
    outs = []
    for so in signoffs:
        out = SignoffOut.model_validate(so)
        out.signer = _user_ref(users.get(so.signer_id))
        out.version_number = numbers.get(so.policy_version_id)
        outs.append(out)
    return outs


# ═══ Lists ═══


@router.get("", summary="List policies")
async def list_policies(
    status: str | None = Query(None),
    category: str | None = Query(None),
    owner_id: str | None = Query(None),
    framework_id: str | None = Query(None),
    tags: str | None = Query(None, description="Comma-separated; any match"),
    review_status: str | None = Query(None),
    search: str | None = Query(None, max_length=200),
    is_template: bool | None = Query(None),
    sort: str | None = Query(None),
    order: str | None = Query(None),
    page: Page = Depends(pagination()),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    q = select(Policy).where(Policy.org_id == principal.org_id)
    if status:
        q = q.where(Policy.status == status)
    if category:
        q = q.where(Policy.category == category)
    if owner_id:
        q = q.where(Policy.owner_id == owner_id)
    if framework_id:
        q = q.where(_framework_filter(framework_id))
    tag_list = [t.strip() for t in (tags or "").split(",") if t.strip()]
    if tag_list:
        q = q.where(or_(*[json_contains(Policy.tags, t) for t in tag_list]))
    if review_status:
        q = q.where(_review_filter(review_status))
    if search:
        like = f"%{search}%"
        q = q.where(or_(Policy.identifier.ilike(like), Policy.title.ilike(like), Policy.description.ilike(like)))
    if is_template is not None:
        q = q.where(Policy.is_template.is_(is_template))

    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    col = pick_sort(sort, _SORTS, "identifier")
    q = q.order_by(order_clause(col, order, default_desc=col is not Policy.identifier), Policy.id)
    rows = (await s.execute(q.offset(page.offset).limit(page.per_page))).scalars().all()
    return paginated(await _policy_outs(s, rows), page, total)


@router.get("/search", summary="Search policy metadata and content")
async def search_policies(
    q: str = Query(..., min_length=1, max_length=200),
    scope: str = Query("all", pattern="^(metadata|content|all)$"),
    status: str | None = Query(None),
    category: str | None = Query(None),
    page: Page = Depends(pagination()),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    like = f"%{q}%"
    meta = or_(
        Policy.identifier.ilike(like),
        Policy.title.ilike(like),
        Policy.description.ilike(like),
        json_contains(Policy.tags, q),
    )
    in_content = Policy.id.in_(
        select(PolicyVersion.policy_id).where(
            PolicyVersion.org_id == principal.org_id,
            PolicyVersion.is_current.is_(True),
            PolicyVersion.content.ilike(like),
        )
    )
    match = {"metadata": meta, "content": in_content, "all": or_(meta, in_content)}[scope]
    query = select(Policy).where(Policy.org_id == principal.org_id, match)
    if status:
        query = query.where(Policy.status == status)
    if category:
        query = query.where(Policy.category == category)

    total = (await s.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0
    rows = (await s.execute(
        query.order_by(Policy.identifier, Policy.id).offset(page.offset).limit(page.per_page)
    )).scalars().all()
    result = paginated(await _policy_outs(s, rows), page, total)
    result["search_meta"] = {"query": q, "scope": scope, "total_results": total}
    return result


@router.get("/stats", summary="Policy programme statistics")
async def policy_stats(
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.POLICY_GAP_ROLES)
    base = [Policy.org_id == principal.org_id, Policy.is_template.is_(False)]
    by_status = dict((await s.execute(
        select(Policy.status, func.count()).where(*base).group_by(Policy.status)
    )).all())
    by_category = dict((await s.execute(
        select(Policy.category, func.count()).where(*base).group_by(Policy.category).order_by(Policy.category)
    )).all())
    review = {}
    for bucket in ("overdue", "due_soon", "on_track", "no_schedule"):
        review[bucket] = (await s.execute(
            select(func.count()).select_from(Policy)
            .where(*base, Policy.status != "archived", _review_filter(bucket))
        )).scalar() or 0
    today = utcnow().date()
    pending = (await s.execute(
        select(func.count()).select_from(PolicySignoff)
        .where(PolicySignoff.org_id == principal.org_id, PolicySignoff.status == "pending")
    )).scalar() or 0
    overdue_signoffs = (await s.execute(
        select(func.count()).select_from(PolicySignoff).where(
            PolicySignoff.org_id == principal.org_id,
            PolicySignoff.status == "pending",
            PolicySignoff.due_date < today,
        )
    )).scalar() or 0
    return {
        "total_policies": sum(by_status.values()),
        "by_status": {st: by_status.get(st, 0) for st in ("draft", "in_review", "approved", "published", "archived")},
        "by_category": by_category,
        "review_status": review,
        "signoffs": {"pending": pending, "overdue": overdue_signoffs},
    }


# ═══ Policy CRUD ═══


@router.post("", response_model=PolicyOut, status_code=201, summary="Create policy")
async def create_policy(
    body: PolicyCreate,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.POLICY_CREATE_ROLES)
    p, _ = await policy_svc.create_policy(s, principal, body.model_dump(), trail)
    await s.commit()
    await trail.emit()
    await s.refresh(p)
    return await _policy_detail(s, p)


@router.get("/{policy_id}", response_model=PolicyOut, summary="Policy details")
async def get_policy(
    policy_id: str,
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    return await _policy_detail(s, p)


@router.put("/{policy_id}", response_model=PolicyOut, summary="Update policy metadata")
async def update_policy(
    policy_id: str,
    body: PolicyUpdate,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    await policy_svc.update_policy(s, principal, p, body.model_dump(exclude_unset=True), trail)
    await s.commit()
    await trail.emit()
    await s.refresh(p)
    return await _policy_detail(s, p)


# ═══ Versions ═══


@router.get("/{policy_id}/versions", summary="Version history, newest first")
async def list_versions(
    policy_id: str,
    page: Page = Depends(pagination()),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    q = select(PolicyVersion).where(PolicyVersion.policy_id == p.id, PolicyVersion.org_id == p.org_id)
    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    rows = (await s.execute(
        q.order_by(PolicyVersion.version_number.desc()).offset(page.offset).limit(page.per_page)
    )).scalars().all()
    data = []
    for v in rows:
        out = PolicyVersionOut.model_validate(v)
        out.content = None
        data.append(out)
    return paginated(data, page, total)


@router.post("/{policy_id}/versions", response_model=PolicyVersionOut, status_code=201, summary="New content version")
async def create_version(
    policy_id: str,
    body: PolicyVersionCreate,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    v = await policy_svc.create_version(s, principal, p, body.model_dump(), trail)
    await s.commit()
    await trail.emit()
    return PolicyVersionOut.model_validate(v)


@router.get("/{policy_id}/versions/compare", summary="Compare two versions")
async def compare_versions(
    policy_id: str,
    v1: int = Query(..., ge=1),
    v2: int = Query(..., ge=1),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    a = await policy_svc.load_version(s, p, v1)
    b = await policy_svc.load_version(s, p, v2)
    return {
        "policy_id": p.id,
        "v1": PolicyVersionOut.model_validate(a),
        "v2": PolicyVersionOut.model_validate(b),
        "word_count_delta": b.word_count - a.word_count,
        "character_count_delta": b.character_count - a.character_count,
    }


@router.get("/{policy_id}/versions/{version_number}", summary="One version with its sign-offs")
async def get_version(
    policy_id: str,
    version_number: int,
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    v = await policy_svc.load_version(s, p, version_number)
    signoffs = (await s.execute(
        select(PolicySignoff)
        .where(PolicySignoff.policy_version_id == v.id, PolicySignoff.org_id == p.org_id)
        .order_by(PolicySignoff.requested_at, PolicySignoff.id)
    )).scalars().all()
    out = PolicyVersionOut.model_validate(v).model_dump()
    out["signoffs"] = await _signoff_outs(s, p.org_id, signoffs)
    return out


# ═══ Workflow ═══


@router.post("/{policy_id}/submit-for-review", summary="Request sign-offs")
async def submit_for_review(
    policy_id: str,
    body: SubmitForReview,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    signoffs = await policy_svc.submit_for_review(s, principal, p, body.signer_ids, body.due_date, trail)
    await s.commit()
    await trail.emit()
    return {
        "id": p.id,
        "status": p.status,
        "signoffs": await _signoff_outs(s, p.org_id, signoffs),
    }


@router.post("/{policy_id}/publish", response_model=PolicyOut, summary="Publish approved policy")
async def publish_policy(
    policy_id: str,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.POLICY_PUBLISH_ROLES, "Only a CISO or compliance manager can publish")
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    policy_svc.publish_policy(p, trail)
    await s.commit()
    await trail.emit()
    await s.refresh(p)
    return await _policy_detail(s, p)


@router.post("/{policy_id}/archive", summary="Archive policy")
async def archive_policy(
    policy_id: str,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.POLICY_ARCHIVE_ROLES, "Only a CISO or compliance manager can archive")
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    withdrawn = await policy_svc.archive_policy(s, p, trail)
    await s.commit()
    await trail.emit()
    return {"id": p.id, "status": p.status, "signoffs_withdrawn": withdrawn}


# ═══ Sign-offs ═══


@router.get("/{policy_id}/signoffs", summary="Sign-offs for a policy")
async def list_signoffs(
    policy_id: str,
    version_number: int | None = Query(None, ge=1),
    status: str | None = Query(None),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    q = select(PolicySignoff).where(PolicySignoff.policy_id == p.id, PolicySignoff.org_id == p.org_id)
    if version_number is not None:
        v = await policy_svc.load_version(s, p, version_number)
        q = q.where(PolicySignoff.policy_version_id == v.id)
    if status:
        q = q.where(PolicySignoff.status == status)
    rows = (await s.execute(q.order_by(PolicySignoff.requested_at.desc(), PolicySignoff.id))).scalars().all()
    return {"data": await _signoff_outs(s, p.org_id, rows)}


@router.post("/{policy_id}/signoffs/remind", summary="Remind pending signers")
async def remind_signoffs(
    policy_id: str,
    body: RemindRequest | None = None,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    result = await policy_svc.remind_signoffs(s, principal, p, body.signoff_ids if body else None, trail)
    await s.commit()
    await trail.emit()
    return result


@router.post("/{policy_id}/signoffs/{signoff_id}/approve", summary="Approve sign-off")
async def approve_signoff(
    policy_id: str,
    signoff_id: str,
    body: SignoffDecision | None = None,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    so = await policy_svc.load_signoff(s, p, signoff_id)
    complete = await policy_svc.approve_signoff(s, principal, p, so, body.comments if body else None, trail)
    await s.commit()
    await trail.emit()
    return {
        "id": so.id,
        "status": so.status,
        "decided_at": so.decided_at,
        "comments": so.comments,
        "policy_status": p.status,
        "all_signoffs_complete": complete,
    }


@router.post("/{policy_id}/signoffs/{signoff_id}/reject", summary="Reject sign-off")
async def reject_signoff(
    policy_id: str,
    signoff_id: str,
    body: SignoffDecision | None = None,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    so = await policy_svc.load_signoff(s, p, signoff_id)
    policy_svc.reject_signoff(principal, p, so, body.comments if body else None, trail)
    await s.commit()
    await trail.emit()
    return {
        "id": so.id,
        "status": so.status,
        "decided_at": so.decided_at,
        "comments": so.comments,
        "policy_status": p.status,
    }


@router.post("/{policy_id}/signoffs/{signoff_id}/withdraw", summary="Withdraw sign-off request")
async def withdraw_signoff(
    policy_id: str,
    signoff_id: str,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    so = await policy_svc.load_signoff(s, p, signoff_id)
    policy_svc.withdraw_signoff(principal, p, so, trail)
    await s.commit()
    await trail.emit()
    return {"id": so.id, "status": so.status, "decided_at": so.decided_at}


@signoffs_router.get("/pending", summary="My pending sign-offs")
async def pending_signoffs(
    page: Page = Depends(pagination()),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    q = (
        select(PolicySignoff, Policy)
        .join(Policy, Policy.id == PolicySignoff.policy_id)
        .where(
            PolicySignoff.org_id == principal.org_id,
            PolicySignoff.signer_id == principal.user_id,
            PolicySignoff.status == "pending",
        )
    )
    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    rows = (await s.execute(
        q.order_by(PolicySignoff.due_date.is_(None), PolicySignoff.due_date, PolicySignoff.requested_at)
        .offset(page.offset).limit(page.per_page)
    )).all()
    outs = await _signoff_outs(s, principal.org_id, [so for so, _ in rows])
    today = utcnow().date()
    data = []
    for out, (so, p) in zip(outs, rows):
        item = out.model_dump()
        if so.due_date and so.due_date < today:
            item["urgency"] = "overdue"
        elif so.due_date and so.due_date <= today + timedelta(days=3):
            item["urgency"] = "due_soon"
        else:
            item["urgency"] = "on_time"
        item["policy"] = {"id": p.id, "identifier": p.identifier, "title": p.title, "category": p.category}
        data.append(item)
    return paginated(data, page, total)


# ═══ Control coverage ═══


@router.get("/{policy_id}/controls", summary="Controls this policy covers")
async def list_policy_controls(
    policy_id: str,
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    return {"data": await _control_outs(s, p)}


@router.post("/{policy_id}/controls", response_model=PolicyControlOut, status_code=201, summary="Link control")
async def link_control(
    policy_id: str,
    body: PolicyControlLink,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    link, c = await policy_svc.link_control(s, principal, p, body.control_id, body.coverage, body.notes, trail)
    await s.commit()
    await trail.emit()
    out = PolicyControlOut.model_validate(link)
    out.control_identifier, out.control_title, out.control_category = c.identifier, c.title, c.category
    return out


@router.post("/{policy_id}/controls/bulk", status_code=201, summary="Link many controls")
async def bulk_link_controls(
    policy_id: str,
    body: PolicyControlBulk,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    result = await policy_svc.bulk_link_controls(s, principal, p, body.links, trail)
    await s.commit()
    await trail.emit()
    return result


@router.delete("/{policy_id}/controls/{control_id}", status_code=204, summary="Unlink control")
async def unlink_control(
    policy_id: str,
    control_id: str,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    p = await policy_svc.load_policy(s, principal.org_id, policy_id)
    await policy_svc.unlink_control(s, principal, p, control_id, trail)
    await s.commit()
    await trail.emit()
    return Response(status_code=204)
