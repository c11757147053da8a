"""Org-scoped loaders for the collaborator tables (users, controls, requirements)."""
from __future__ import annotations

from sqlalchemy import String, cast, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_core.errors import NotFound, ValidationFailed
from grc_core.models.catalog import Control, Requirement
from grc_core.models.org import User


def json_contains(column, value: str):
    """Membership test on a JSON array of strings, portable across MySQL and SQLite."""
    return cast(column, String).contains(f'"{value}"', autoescape=True)


async def load_org_user(s: AsyncSession, org_id: str, user_id: str, *, active: bool = True) -> User | None:
    q = select(User).where(User.id == user_id, User.org_id == org_id)
    if active:
        q = q.where(User.status == "active")
    return (await s.execute(q)).scalar_one_or_none()


async def require_org_user(s: AsyncSession, org_id: str, user_id: str, label: str = "User") -> User:
    u = await load_org_user(s, org_id, user_id)
    if not u:
        raise ValidationFailed(f"{label} is not an active user of this organization")
    return u


async def load_control(s: AsyncSession, org_id: str, control_id: str) -> Control:
    c = (await s.execute(
        select(Control).where(Control.id == control_id, Control.org_id == org_id)
    )).scalar_one_or_none()
    if not c:
        raise NotFound("Control not found")
    return c


async def load_requirement(s: AsyncSession, requirement_id: str) -> Requirement:
    r = await s.get(Requirement, requirement_id)
    if not r:
        raise NotFound("Requirement not found")
    return r


async def users_by_id(s: AsyncSession, org_id: str, ids) -> dict[str, User]:
    wanted = {i for i in ids if i}
    if not wanted:
        return {}
    rows = (await s.execute(
        select(User).where(User.org_id == org_id, User.id.in_(wanted))
    )).scalars().all()
    return {u.id: u for u in rows}
