"""CRUD helpers for members, rehearsals, notifications, and attendance."""

from __future__ import annotations

import secrets
from datetime import date, datetime
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .models import (
    BlockedDay,
    Member,
    MemberRole,
    Notification,
    NotificationRecipient,
    Rehearsal,
    RehearsalAttendance,
    RECIPIENT_PENDING,
    STATUS_DRAFT,
)
from .utils import to_naive_utc, utcnow


def _now() -> datetime:
    return utcnow()


def create_member(
    session: Session,
    *,
    name: str,
    role: str = "member",
    email: str | None = None,
    extra_roles: Iterable[str] = (),
    api_token: str | None = None,
) -> Member:
    """Create and persist a member with optional extra roles."""
    member = Member(
        name=name,
        email=(email or "").strip().lower() or None,
        role=role.strip().lower(),
        api_token=api_token or secrets.token_urlsafe(32),
        created_at=_now(),
    )
    for extra in sorted({r.strip().lower() for r in extra_roles if r.strip()}):
        if extra != member.role:
            member.extra_roles.append(MemberRole(role=extra))
    session.add(member)
    session.flush()
    return member


def get_member(session: Session, member_id: str) -> Member | None:
    return session.get(Member, member_id)


def get_members(session: Session, member_ids: Iterable[str]) -> Sequence[Member]:
    ids = {member_id for member_id in member_ids if member_id}
    if not ids:
        return []
    stmt = select(Member).where(Member.id.in_(ids)).options(
        selectinload(Member.extra_roles)
    )
    return session.scalars(stmt).all()


def roster_ids(session: Session) -> set[str]:
    """Return every member id; the default invitee set for direct scheduling."""
    return set(session.scalars(select(Member.id)).all())


def rotate_member_token(session: Session, member: Member) -> str:
    member.api_token = secrets.token_urlsafe(32)
    session.add(member)
    session.flush()
    return member.api_token


def create_rehearsal(
    session: Session,
    *,
    title: str,
    start: datetime,
    end: datetime,
    location: str,
    status: str = STATUS_DRAFT,
    description: str | None = None,
    registration_deadline: datetime | None = None,
    created_by: str | None = None,
    created_at: datetime | None = None,
) -> Rehearsal:
    """Create and persist a rehearsal row without invitees."""
    stamp = to_naive_utc(created_at) if created_at else _now()
    rehearsal = Rehearsal(
        title=title,
        start=to_naive_utc(start),
        end=to_naive_utc(end),
        location=location,
        description=description,
        status=status,
        registration_deadline=to_naive_utc(registration_deadline),
        required_roles=[],
        created_by=created_by,
        created_at=stamp,
        last_modified=stamp,
    )
    session.add(rehearsal)
    session.flush()
    return rehearsal


def get_rehearsal(
    session: Session, rehearsal_id: str, *, for_update: bool = False
) -> Rehearsal | None:
    """Load a rehearsal, taking a row lock when the dialect supports it."""
    if not rehearsal_id:
        return None
    stmt = select(Rehearsal).where(Rehearsal.id == rehearsal_id)
    if for_update:
        stmt = stmt.with_for_update()
    return session.scalars(stmt).first()


def create_notification(
    session: Session,
    *,
    rehearsal: Rehearsal | None,
    title: str,
    body: str | None,
    notification_type: str,
    recipient_ids: Iterable[str],
    created_at: datetime | None = None,
) -> Notification:
    """Create a notification thread with one pending recipient per member."""
    notification = Notification(
        rehearsal=rehearsal,
        title=title,
        body=body,
        type=notification_type,
        created_at=created_at or _now(),
    )
    for member_id in sorted(set(recipient_ids)):
        notification.recipients.append(
            NotificationRecipient(member_id=member_id, state=RECIPIENT_PENDING)
        )
    session.add(notification)
    session.flush()
    return notification


def get_recipient(session: Session, recipient_id: str) -> NotificationRecipient | None:
    return session.get(NotificationRecipient, recipient_id)


def recipients_for_member(
    session: Session, member_id: str, *, limit: int | None = None
) -> Sequence[NotificationRecipient]:
    stmt = (
        select(NotificationRecipient)
        .join(Notification)
        .where(NotificationRecipient.member_id == member_id)
        .options(
            selectinload(NotificationRecipient.notification).selectinload(
                Notification.rehearsal
            )
        )
        .order_by(Notification.created_at.desc(), Notification.id.desc())
    )
    if limit and limit > 0:
        stmt = stmt.limit(limit)
    return session.scalars(stmt).all()


def record_attendance(
    session: Session,
    *,
    rehearsal_id: str,
    member_id: str,
    status: str,
    emergency_reason: str | None = None,
    updated_at: datetime | None = None,
) -> RehearsalAttendance:
    """Insert or overwrite the member's attendance for one rehearsal."""
    entry = session.scalars(
        select(RehearsalAttendance).where(
            RehearsalAttendance.rehearsal_id == rehearsal_id,
            RehearsalAttendance.member_id == member_id,
        )
    ).first()
    if entry is None:
        entry = RehearsalAttendance(rehearsal_id=rehearsal_id, member_id=member_id)
    entry.status = status
    entry.emergency_reason = emergency_reason
    entry.updated_at = updated_at or _now()
    session.add(entry)
    session.flush()
    return entry


def attendance_for_member(
    session: Session, member_id: str, rehearsal_ids: Iterable[str]
) -> dict[str, str]:
    """Map rehearsal id to the member's attendance status."""
    ids = {rehearsal_id for rehearsal_id in rehearsal_ids if rehearsal_id}
    if not ids:
        return {}
    stmt = select(RehearsalAttendance).where(
        RehearsalAttendance.member_id == member_id,
        RehearsalAttendance.rehearsal_id.in_(ids),
    )
    return {entry.rehearsal_id: entry.status for entry in session.scalars(stmt)}


def blocked_member_ids(session: Session, day: date) -> set[str]:
    """Return the members who blocked ``day`` in their availability calendar."""
    stmt = select(BlockedDay.member_id).where(BlockedDay.day == day)
    return set(session.scalars(stmt).all())


def block_day(
    session: Session, *, member: Member, day: date, reason: str | None = None
) -> BlockedDay:
    entry = BlockedDay(member_id=member.id, day=day, reason=reason)
    session.add(entry)
    session.flush()
    return entry
