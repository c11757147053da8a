"""
Policy Management: templates and coverage gaps
/api/v1/policy-templates, /api/v1/policy-gap
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy import and_, case, distinct, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_core.database import get_session
from grc_core.middleware.audit import AuditTrail, get_audit_trail
from grc_core.models.catalog import Control, ControlMapping, Framework, FrameworkVersion, OrgFramework, Requirement
from grc_core.models.policy import Policy, PolicyControl
from grc_core.pagination import Page, paginated, pagination
from grc_core.schemas.policy import PolicyOut, TemplateClone
from grc_core.services import authz, policy as policy_svc
from grc_core.services.authz import Principal, get_principal
from grc_core.services.lookups import users_by_id

templates_router = APIRouter(prefix="/api/v1/policy-templates", tags=["Policy Management"])
gap_router = APIRouter(prefix="/api/v1/policy-gap", tags=["Policy Management"])


# ═══ Templates ═══


@templates_router.get("", summary="List policy templates")
async def list_templates(
    category: str | None = Query(None),
    framework_id: str | None = Query(None),
    search: str | None = Query(None, max_length=200),
    page: Page = Depends(pagination()),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    q = select(Policy).where(Policy.org_id == principal.org_id, Policy.is_template.is_(True))
    if category:
        q = q.where(Policy.category == category)
    if framework_id:
        q = q.where(Policy.template_framework_id == framework_id)
    if search:
        like = f"%{search}%"
        q = q.where(or_(Policy.identifier.ilike(like), Policy.title.ilike(like), Policy.description.ilike(like)))
    total = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0
    rows = (await s.execute(
        q.order_by(Policy.identifier, Policy.id).offset(page.offset).limit(page.per_page)
    )).scalars().all()
    return paginated([PolicyOut.model_validate(p) for p in rows], page, total)


@templates_router.post("/{template_id}/clone", response_model=PolicyOut, status_code=201, summary="Clone template")
async def clone_template(
    template_id: str,
    body: TemplateClone,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.POLICY_CREATE_ROLES)
    p, v = await policy_svc.clone_template(s, principal, template_id, body.model_dump(exclude_unset=True), trail)
    await s.commit()
    await trail.emit()
    await s.refresh(p)
    out = PolicyOut.model_validate(p)
    out.review_status = policy_svc.review_status(p.next_review_at)
    return out


# ═══ Gap analysis ═══


def _has_link(coverage: str | None = None):
    clause = exists().where(PolicyControl.control_id == Control.id, PolicyControl.org_id == Control.org_id)
    if coverage:
        clause = exists().where(
            PolicyControl.control_id == Control.id,
            PolicyControl.org_id == Control.org_id,
            PolicyControl.coverage == coverage,
        )
    return clause


def _framework_controls(framework_id: str):
    return (
        select(ControlMapping.control_id)
        .join(Requirement, Requirement.id == ControlMapping.requirement_id)
        .join(FrameworkVersion, FrameworkVersion.id == Requirement.framework_version_id)
        .where(FrameworkVersion.framework_id == framework_id)
    )


@gap_router.get("", summary="Controls lacking policy coverage")
async def policy_gap(
    framework_id: str | None = Query(None),
    category: str | None = Query(None),
    include_partial: bool = Query(False),
    page: Page = Depends(pagination()),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    """A control is fully covered by a ``full`` link, partially by links that are all ``partial``."""
    authz.require_roles(principal, authz.POLICY_GAP_ROLES)
    base = [Control.org_id == principal.org_id, Control.status == "active"]
    if framework_id:
        base.append(Control.id.in_(_framework_controls(framework_id)))
    if category:
        base.append(Control.category == category)

    full, any_link = _has_link("full"), _has_link()
    partial = and_(~full, any_link)
    row = (await s.execute(
        select(
            func.count(),
            func.coalesce(func.sum(case((full, 1), else_=0)), 0),
            func.coalesce(func.sum(case((partial, 1), else_=0)), 0),
            func.coalesce(func.sum(case((~any_link, 1), else_=0)), 0),
        ).select_from(Control).where(*base)
    )).one()
    total_active, with_full, with_partial, without = (int(x or 0) for x in row)
    coverage_pct = round((with_full + with_partial) / total_active * 100, 2) if total_active else 0.0

    gap = or_(~any_link, partial) if include_partial else ~any_link
    q = select(Control).where(*base, gap)
    total_gaps = (await s.execute(select(func.count()).select_from(q.subquery()))).scalar() or 0

    req_count = (
        select(func.count(distinct(ControlMapping.requirement_id)))
        .where(ControlMapping.control_id == Control.id)
        .correlate(Control)
        .scalar_subquery()
    )
    controls = (await s.execute(
        q.order_by(req_count.desc(), Control.identifier).offset(page.offset).limit(page.per_page)
    )).scalars().all()

    ids = [c.id for c in controls]
    frameworks: dict[str, list[str]] = {}
    counts: dict[str, int] = {}
    linked: set[str] = set()
    if ids:
        for cid, fname in (await s.execute(
            select(ControlMapping.control_id, Framework.name)
            .join(Requirement, Requirement.id == ControlMapping.requirement_id)
            .join(FrameworkVersion, FrameworkVersion.id == Requirement.framework_version_id)
            .join(Framework, Framework.id == FrameworkVersion.framework_id)
            .where(ControlMapping.control_id.in_(ids))
            .distinct()
        )).all():
            frameworks.setdefault(cid, []).append(fname)
        counts = dict((await s.execute(
            select(ControlMapping.control_id, func.count(distinct(ControlMapping.requirement_id)))
            .where(ControlMapping.control_id.in_(ids))
            .group_by(ControlMapping.control_id)
        )).all())
        linked = set((await s.execute(
            select(PolicyControl.control_id).where(
                PolicyControl.control_id.in_(ids), PolicyControl.org_id == principal.org_id,
            )
        )).scalars().all())
    owners = await users_by_id(s, principal.org_id, [c.owner_id for c in controls])

    gaps = []
    for c in controls:
        owner = owners.get(c.owner_id)
        gaps.append({
            "control": {
                "id": c.id,
                "identifier": c.identifier,
                "title": c.title,
                "category": c.category,
                "status": c.status,
                "owner": {"id": owner.id, "name": owner.display_name} if owner else None,
            },
            "mapped_frameworks": sorted(frameworks.get(c.id, [])),
            "mapped_requirements_count": counts.get(c.id, 0),
            "policy_coverage": "partial" if c.id in linked else "none",
            "suggested_categories": policy_svc.suggest_categories(c.category),
        })

    result = paginated(gaps, page, total_gaps)
    result["summary"] = {
        "total_active_controls": total_active,
        "controls_with_full_coverage": with_full,
        "controls_with_partial_coverage": with_partial,
        "controls_without_coverage": without,
        "coverage_percentage": coverage_pct,
    }
    return result


@gap_router.get("/by-framework", summary="Policy coverage per activated framework")
async def policy_gap_by_framework(
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.POLICY_GAP_ROLES)
    activated = (await s.execute(
        select(Framework, FrameworkVersion)
        .join(OrgFramework, OrgFramework.framework_id == Framework.id)
        .join(FrameworkVersion, FrameworkVersion.id == OrgFramework.framework_version_id)
        .where(OrgFramework.org_id == principal.org_id, OrgFramework.status == "active")
        .order_by(Framework.name)
    )).all()

    data = []
    for fw, fv in activated:
        total_reqs = (await s.execute(
            select(func.count()).select_from(Requirement).where(Requirement.framework_version_id == fv.id)
        )).scalar() or 0
        mapped = (
            select(ControlMapping.control_id)
            .join(Requirement, Requirement.id == ControlMapping.requirement_id)
            .where(Requirement.framework_version_id == fv.id, ControlMapping.org_id == principal.org_id)
        )
        reqs_with_controls = (await s.execute(
            select(func.count(distinct(ControlMapping.requirement_id)))
            .join(Requirement, Requirement.id == ControlMapping.requirement_id)
            .where(Requirement.framework_version_id == fv.id, ControlMapping.org_id == principal.org_id)
        )).scalar() or 0
        controls = [Control.org_id == principal.org_id, Control.id.in_(mapped)]
        total_controls = (await s.execute(
            select(func.count()).select_from(Control).where(*controls)
        )).scalar() or 0
        with_policy = (await s.execute(
            select(func.count()).select_from(Control).where(*controls, _has_link("full"))
        )).scalar() or 0
        without_policy = (await s.execute(
            select(func.count()).select_from(Control).where(*controls, ~_has_link())
        )).scalar() or 0
        data.append({
            "framework": {"id": fw.id, "identifier": fw.identifier, "name": fw.name, "version": fv.version},
            "total_requirements": total_reqs,
            "requirements_with_controls": reqs_with_controls,
            "mapped_controls": total_controls,
            "controls_with_policy_coverage": with_policy,
            "controls_without_policy_coverage": without_policy,
            "policy_coverage_percentage": round(with_policy / total_controls * 100, 2) if total_controls else 0.0,
            "gap_count": without_policy,
        })
    return {"data": data}
