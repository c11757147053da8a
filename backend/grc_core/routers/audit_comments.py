"""
Audit Hub: threaded comments on audits, requests and findings
/api/v1/audits/{audit_id}/comments

Internal comments are never shown to, or created by, auditors.
"""
from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_core.database import get_session
from grc_core.middleware.audit import AuditTrail, get_audit_trail
from grc_core.models.audit import AuditComment
from grc_core.pagination import Page, paginated, pagination
from grc_core.schemas.audit import AuditCommentCreate, AuditCommentOut, AuditCommentUpdate
from grc_core.services import audit_engine, authz
from grc_core.services.authz import Principal, get_principal

router = APIRouter(prefix="/api/v1/audits/{audit_id}/comments", tags=["Audit Hub: comments"])


def _comment_out(c: AuditComment, names: dict[str, str]) -> AuditCommentOut:
    out = AuditCommentOut.model_validate(c)
    out.author_name = names.get(c.author_id)
    return out


@router.get("", summary="List comments")
async def list_comments(
    audit_id: str,
    target_type: str | None = Query(None),
    target_id: str | None = Query(None),
    page: Page = Depends(pagination(default_per_page=50, max_per_page=200)),
    principal: Principal = Depends(get_principal),
    s: AsyncSession = Depends(get_session),
):
    """Top-level comments, oldest first, each with its replies."""
    authz.require_roles(principal, authz.AUDIT_VIEW_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)

    base = [AuditComment.audit_id == a.id, AuditComment.org_id == a.org_id]
    if principal.is_auditor:
        base.append(AuditComment.is_internal.is_(False))
    if target_type:
        base.append(AuditComment.target_type == target_type)
    if target_id:
        base.append(AuditComment.target_id == target_id)

    top_q = select(AuditComment).where(*base, AuditComment.parent_comment_id.is_(None))
    total = (await s.execute(select(func.count()).select_from(top_q.subquery()))).scalar() or 0
    top = (await s.execute(
        top_q.order_by(AuditComment.created_at, AuditComment.id).offset(page.offset).limit(page.per_page)
    )).scalars().all()

    replies: list[AuditComment] = []
    if top:
        replies = (await s.execute(
            select(AuditComment)
            .where(*base, AuditComment.parent_comment_id.in_([c.id for c in top]))
            .order_by(AuditComment.created_at, AuditComment.id)
        )).scalars().all()

    names = await audit_engine.author_names(s, a.org_id, [c.author_id for c in (*top, *replies)])
    outs = {c.id: _comment_out(c, names) for c in top}
    for r in replies:
        outs[r.parent_comment_id].replies.append(_comment_out(r, names))
    return paginated([outs[c.id] for c in top], page, total)


@router.post("", response_model=AuditCommentOut, status_code=201, summary="Add comment")
async def create_comment(
    audit_id: str,
    body: AuditCommentCreate,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_VIEW_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    c = await audit_engine.create_comment(s, principal, a, body, trail)
    await s.commit()
    await trail.emit()
    names = await audit_engine.author_names(s, a.org_id, [c.author_id])
    return _comment_out(c, names)


@router.put("/{comment_id}", response_model=AuditCommentOut, summary="Edit comment")
async def update_comment(
    audit_id: str,
    comment_id: str,
    body: AuditCommentUpdate,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_VIEW_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    c = await audit_engine.load_comment(s, principal, a, comment_id)
    audit_engine.edit_comment(principal, a, c, body.body, trail)
    await s.commit()
    await trail.emit()
    names = await audit_engine.author_names(s, a.org_id, [c.author_id])
    return _comment_out(c, names)


@router.delete("/{comment_id}", status_code=204, summary="Delete comment")
async def delete_comment(
    audit_id: str,
    comment_id: str,
    principal: Principal = Depends(get_principal),
    trail: AuditTrail = Depends(get_audit_trail),
    s: AsyncSession = Depends(get_session),
):
    authz.require_roles(principal, authz.AUDIT_VIEW_ROLES)
    a = await audit_engine.load_audit(s, principal, audit_id)
    c = await audit_engine.load_comment(s, principal, a, comment_id)
    await audit_engine.delete_comment(s, principal, a, c, trail)
    await s.commit()
    await trail.emit()
    return Response(status_code=204)
