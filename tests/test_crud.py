from __future__ import annotations

from datetime import date, datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from stagecall import database
from stagecall.auth import SCHEDULE_MANAGE, has_permission, resolve_member
from stagecall.crud import (
    block_day,
    blocked_member_ids,
    create_member,
    create_notification,
    create_rehearsal,
    get_rehearsal,
    recipients_for_member,
    roster_ids,
    rotate_member_token,
)
from stagecall.models import RECIPIENT_PENDING


@pytest.fixture()
def session():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def test_create_member_normalizes_roles(session):
    member = create_member(
        session,
        name="Dana",
        role=" Actor ",
        email="Dana@Example.org",
        extra_roles=["tech", "TECH", "actor", " "],
    )
    session.commit()
    assert member.role == "actor"
    assert member.email == "dana@example.org"
    assert member.roles == {"actor", "tech"}
    assert member.api_token


def test_duplicate_email_is_rejected(session):
    create_member(session, name="One", email="same@example.org")
    session.commit()
    with pytest.raises(IntegrityError):
        create_member(session, name="Two", email="same@example.org")
    session.rollback()


def test_rotate_member_token(session):
    member = create_member(session, name="Eve")
    original = member.api_token
    rotated = rotate_member_token(session, member)
    assert rotated != original
    assert member.api_token == rotated


def test_roster_ids(session):
    a = create_member(session, name="A")
    b = create_member(session, name="B")
    session.commit()
    assert roster_ids(session) == {a.id, b.id}


def test_create_rehearsal_defaults(session):
    start = datetime(2030, 2, 1, 18, 0)
    created_at = datetime(2030, 1, 1, 8, 0)
    rehearsal = create_rehearsal(
        session,
        title="Run-through",
        start=start,
        end=start + timedelta(hours=2),
        location="Hall",
        created_at=created_at,
    )
    session.commit()
    loaded = get_rehearsal(session, rehearsal.id, for_update=True)
    assert loaded.status == "draft"
    assert loaded.required_roles == []
    assert loaded.created_at == created_at
    assert loaded.last_modified == created_at
    assert get_rehearsal(session, "") is None


def test_notifications_for_member(session):
    member = create_member(session, name="Finn")
    start = datetime(2030, 2, 1, 18, 0)
    rehearsal = create_rehearsal(
        session, title="Run", start=start, end=start + timedelta(hours=2), location="Hall"
    )
    older = create_notification(
        session,
        rehearsal=rehearsal,
        title="Older",
        body=None,
        notification_type="rehearsal",
        recipient_ids=[member.id, member.id],
        created_at=datetime(2030, 1, 1),
    )
    create_notification(
        session,
        rehearsal=rehearsal,
        title="Newer",
        body=None,
        notification_type="rehearsal-update",
        recipient_ids=[member.id],
        created_at=datetime(2030, 1, 2),
    )
    session.commit()

    assert len(older.recipients) == 1
    assert older.recipients[0].state == RECIPIENT_PENDING
    rows = recipients_for_member(session, member.id)
    assert [row.notification.title for row in rows] == ["Newer", "Older"]
    assert len(recipients_for_member(session, member.id, limit=1)) == 1


def test_blocked_days(session):
    member = create_member(session, name="Gil")
    block_day(session, member=member, day=date(2030, 3, 3), reason="Holiday")
    session.commit()
    assert blocked_member_ids(session, date(2030, 3, 3)) == {member.id}
    assert blocked_member_ids(session, date(2030, 3, 4)) == set()


def test_resolve_member_and_planner_permission(session):
    planner = create_member(session, name="Pia", role="actor", extra_roles=["Board"])
    singer = create_member(session, name="Sam", role="soprano")
    session.commit()

    assert resolve_member(session, f" {planner.api_token} ").id == planner.id
    assert resolve_member(session, "") is None
    assert resolve_member(session, "unknown") is None
    assert has_permission(planner, SCHEDULE_MANAGE)
    assert not has_permission(singer, SCHEDULE_MANAGE)
    assert not has_permission(None, SCHEDULE_MANAGE)
    assert not has_permission(planner, "library.manage")
