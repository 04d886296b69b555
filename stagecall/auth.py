"""Bearer-token member lookup and capability checks."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .models import Member

SCHEDULE_MANAGE = "schedule.manage"


def resolve_member(session: Session, token: str | None) -> Member | None:
    """Return the member owning ``token`` or ``None``."""
    cleaned = (token or "").strip()
    if not cleaned:
        return None
    stmt = select(Member).where(Member.api_token == cleaned)
    return session.scalars(stmt).first()


def has_permission(member: Member | None, capability: str) -> bool:
    if member is None:
        return False
    if capability == SCHEDULE_MANAGE:
        roles = {role.lower() for role in member.roles if role}
        return bool(roles & settings.planner_role_set)
    return False
