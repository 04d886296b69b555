from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import func, select

from stagecall import database
from stagecall.config import settings
from stagecall.housekeeping import purge_stale_notifications
from stagecall.lifecycle import RehearsalFields
from stagecall.models import Notification, NotificationRecipient
from stagecall.notifications import TYPE_ATTENDANCE, TYPE_CREATED, TYPE_EMERGENCY

REHEARSAL_END = datetime(2030, 3, 20, 20, 0)


def _publish_and_decline(lifecycle, roster) -> str:
    planner, alice, bob = roster["planner"], roster["alice"], roster["bob"]
    outcome = lifecycle.create_planned(
        planner.id,
        RehearsalFields(
            title="Dress rehearsal",
            date="2030-03-20",
            time="19:00",
            invitees=[alice.id, bob.id],
        ),
    )
    assert outcome.ok, outcome.message
    with database.get_session() as session:
        recipients = {
            row.member_id: row.id
            for row in session.scalars(select(NotificationRecipient)).all()
        }
    assert lifecycle.respond_to_notification(
        alice.id, recipients[alice.id], response="no"
    ).ok
    assert lifecycle.respond_to_notification(
        bob.id, recipients[bob.id], response="emergency", reason="Broken arm"
    ).ok
    return outcome.rehearsal_id


def _types(rehearsal_id: str) -> list[str]:
    with database.get_session() as session:
        return sorted(
            session.scalars(
                select(Notification.type).where(Notification.rehearsal_id == rehearsal_id)
            ).all()
        )


def test_purge_keeps_notices_of_recent_rehearsals(lifecycle, roster):
    rehearsal_id = _publish_and_decline(lifecycle, roster)

    stats = purge_stale_notifications(now=REHEARSAL_END + timedelta(days=1))

    assert stats == {"notifications_deleted": 0, "batches": 0}
    assert _types(rehearsal_id) == sorted([TYPE_CREATED, TYPE_ATTENDANCE, TYPE_EMERGENCY])


def test_purge_drops_attendance_notices_after_retention(lifecycle, roster):
    rehearsal_id = _publish_and_decline(lifecycle, roster)

    stats = purge_stale_notifications(
        now=REHEARSAL_END + settings.retention + timedelta(days=1)
    )

    assert stats == {"notifications_deleted": 2, "batches": 1}
    assert _types(rehearsal_id) == [TYPE_CREATED]
    with database.get_session() as session:
        planner_rows = session.scalar(
            select(func.count(NotificationRecipient.id)).where(
                NotificationRecipient.member_id == roster["planner"].id
            )
        )
    assert planner_rows == 0


def test_purge_with_nothing_to_do():
    assert purge_stale_notifications(now=REHEARSAL_END) == {
        "notifications_deleted": 0,
        "batches": 0,
    }
