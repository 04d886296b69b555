"""Development helpers for populating a fake ensemble roster."""

from __future__ import annotations

import random
from datetime import timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .crud import block_day, create_member
from .database import get_session
from .models import Member
from .storage import init_db
from .utils import utcnow

_section_roles = [
    "soprano",
    "alto",
    "tenor",
    "bass",
    "strings",
    "winds",
    "percussion",
]
_planner_roles = ["board", "admin", "tech"]
_block_reasons = [
    "Vacation",
    "Work trip",
    "Family event",
    "Doctor's appointment",
    None,
]


def seed_fake_data(
    *,
    member_count: int = 12,
    max_blocked_days: int = 3,
    planner_percentage: int = 20,
) -> dict[str, int]:
    """Populate the SQLite database with synthetic members and availability."""
    if member_count < 0:
        raise ValueError("member_count must be >= 0")
    if max_blocked_days < 0:
        raise ValueError("max_blocked_days must be >= 0")
    if not 0 <= planner_percentage <= 100:
        raise ValueError("planner_percentage must be between 0 and 100")

    init_db()
    fake = Faker()
    stats = {"members": 0, "planners": 0, "blocked_days": 0}

    with get_session() as session:
        for index in range(member_count):
            # Always seed at least one planner so the schedule can be managed.
            is_planner = index == 0 or random.randint(1, 100) <= planner_percentage
            member = _create_member(session, fake, planner=is_planner)
            stats["members"] += 1
            stats["planners"] += int(is_planner)
            stats["blocked_days"] += _block_days(session, member, max_blocked_days)

    return stats


def _create_member(session: Session, fake: Faker, *, planner: bool) -> Member:
    section = random.choice(_section_roles)
    extra_roles = [random.choice(_planner_roles)] if planner else []
    if random.random() < 0.2:
        extra_roles.append(random.choice(_section_roles))
    return create_member(
        session,
        name=fake.name_nonbinary(),
        role=section,
        email=fake.unique.email(),
        extra_roles=extra_roles,
    )


def _block_days(session: Session, member: Member, max_days: int) -> int:
    if max_days <= 0:
        return 0
    today = utcnow().date()
    offsets = random.sample(range(1, 60), k=random.randint(0, max_days))
    for offset in offsets:
        block_day(
            session,
            member=member,
            day=today + timedelta(days=offset),
            reason=random.choice(_block_reasons),
        )
    return len(offsets)
