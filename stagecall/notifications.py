"""Notification reconciliation for rehearsal lifecycle transitions.

Persisted rows are written inside the lifecycle transaction; the returned
:class:`DispatchPlan` is executed by :func:`dispatch` after commit so realtime
and push deliveries only ever describe durable state.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy.orm import Session

from .config import settings
from .crud import (
    attendance_for_member,
    create_notification,
    get_member,
    get_recipient,
    recipients_for_member,
    record_attendance,
)
from .models import (
    Member,
    Notification,
    NotificationRecipient,
    Rehearsal,
    RECIPIENT_PENDING,
    RECIPIENT_RESPONDED,
)
from .outcomes import LifecycleError
from .realtime import PushSender, RealtimeHub, get_push_sender, hub as default_hub
from .utils import duration_between, format_local, utcnow

logger = logging.getLogger("uvicorn.error")

TYPE_CREATED = "rehearsal"
TYPE_UPDATED = "rehearsal-update"
TYPE_ATTENDANCE = "rehearsal-attendance"
TYPE_EMERGENCY = "rehearsal-emergency"
ATTENDANCE_NOTICE_TYPES = {TYPE_ATTENDANCE, TYPE_EMERGENCY}

EVENT_CREATED = "rehearsal_created"
EVENT_UPDATED = "rehearsal_updated"
EVENT_NOTIFICATION = "notification_created"

VALID_RESPONSES = {"yes", "no", "emergency"}
REASON_MAX_LENGTH = 500


@dataclass
class Broadcast:
    event_type: str
    payload: dict[str, Any]
    member_ids: set[str]


@dataclass
class Push:
    member_ids: set[str]
    title: str
    body: str | None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class DispatchPlan:
    rehearsal_id: str | None
    broadcasts: list[Broadcast] = field(default_factory=list)
    pushes: list[Push] = field(default_factory=list)

    @property
    def audience(self) -> set[str]:
        members: set[str] = set()
        for broadcast in self.broadcasts:
            members |= broadcast.member_ids
        return members


def rehearsal_summary(rehearsal: Rehearsal) -> dict[str, Any]:
    return {
        "id": rehearsal.id,
        "title": rehearsal.title,
        "start": rehearsal.start.isoformat(),
        "end": rehearsal.end.isoformat(),
        "location": rehearsal.location,
    }


def _body(rehearsal: Rehearsal) -> str:
    when = format_local(rehearsal.start, settings.time_zone)
    length = duration_between(rehearsal.start, rehearsal.end)
    return f"On {when} ({length}) at {rehearsal.location}"


def created_text(rehearsal: Rehearsal) -> tuple[str, str]:
    return f"New rehearsal: {rehearsal.title}", _body(rehearsal)


def updated_text(rehearsal: Rehearsal) -> tuple[str, str]:
    return f"Rehearsal updated: {rehearsal.title}", _body(rehearsal)


def earliest_thread(rehearsal: Rehearsal) -> Notification | None:
    """Return the original invitation thread, ignoring attendance notices.

    Invitations sort before forks created in the same instant.
    """
    threads = [
        thread
        for thread in rehearsal.notifications
        if thread.type in {TYPE_CREATED, TYPE_UPDATED}
    ]
    if not threads:
        return None
    return min(
        threads,
        key=lambda thread: (
            thread.created_at,
            0 if thread.type == TYPE_CREATED else 1,
            thread.id,
        ),
    )


def partition_recipients(
    recipients: Iterable[NotificationRecipient],
) -> tuple[list[NotificationRecipient], list[NotificationRecipient]]:
    """Split recipients into ``(pending, responded)`` by their state tag."""
    pending: list[NotificationRecipient] = []
    responded: list[NotificationRecipient] = []
    for recipient in recipients:
        if recipient.state == RECIPIENT_RESPONDED:
            responded.append(recipient)
        elif recipient.state == RECIPIENT_PENDING:
            pending.append(recipient)
        else:
            raise ValueError(f"Unknown recipient state {recipient.state!r}")
    return pending, responded


def plan_created(
    session: Session,
    rehearsal: Rehearsal,
    invitee_ids: set[str],
    *,
    now: datetime | None = None,
) -> DispatchPlan:
    """Persist the invitation thread and describe its fan-out."""
    if not invitee_ids:
        return DispatchPlan(rehearsal_id=rehearsal.id)
    title, body = created_text(rehearsal)
    create_notification(
        session,
        rehearsal=rehearsal,
        title=title,
        body=body,
        notification_type=TYPE_CREATED,
        recipient_ids=invitee_ids,
        created_at=now,
    )
    return DispatchPlan(
        rehearsal_id=rehearsal.id,
        broadcasts=[
            Broadcast(
                EVENT_CREATED,
                {"rehearsal": rehearsal_summary(rehearsal)},
                set(invitee_ids),
            )
        ],
        pushes=[
            Push(
                set(invitee_ids),
                title,
                body,
                {"rehearsal_id": rehearsal.id},
            )
        ],
    )


def plan_updated(
    session: Session,
    rehearsal: Rehearsal,
    invitee_ids: set[str],
    changes: dict[str, Any],
    *,
    now: datetime | None = None,
) -> DispatchPlan:
    """Amend the original thread and fork it for members who already answered."""
    title, body = updated_text(rehearsal)
    original = earliest_thread(rehearsal)
    targets = set(invitee_ids)

    if original is None and not invitee_ids:
        logger.info("Rehearsal %s updated without invitees to notify", rehearsal.id)
    elif original is None:
        create_notification(
            session,
            rehearsal=rehearsal,
            title=title,
            body=body,
            notification_type=TYPE_UPDATED,
            recipient_ids=invitee_ids,
            created_at=now,
        )
        logger.info(
            "Created update notification for rehearsal %s (%d recipients)",
            rehearsal.id,
            len(invitee_ids),
        )
    else:
        pending, responded = partition_recipients(original.recipients)
        original.title = title
        original.body = body
        known = {recipient.member_id for recipient in original.recipients}
        for member_id in sorted(set(invitee_ids) - known):
            original.recipients.append(
                NotificationRecipient(member_id=member_id, state=RECIPIENT_PENDING)
            )
        session.add(original)
        if responded:
            create_notification(
                session,
                rehearsal=rehearsal,
                title=title,
                body=body,
                notification_type=TYPE_UPDATED,
                recipient_ids={recipient.member_id for recipient in responded},
                created_at=now,
            )
        logger.info(
            "Amended notification %s for rehearsal %s (%d pending, %d forked)",
            original.id,
            rehearsal.id,
            len(pending),
            len(responded),
        )
        targets.update(recipient.member_id for recipient in original.recipients)
        session.flush()

    return DispatchPlan(
        rehearsal_id=rehearsal.id,
        broadcasts=[
            Broadcast(
                EVENT_UPDATED,
                {"rehearsal_id": rehearsal.id, "changes": changes},
                targets,
            )
        ],
        pushes=[Push(targets, title, body, {"rehearsal_id": rehearsal.id})],
    )


def plan_deleted(rehearsal: Rehearsal) -> DispatchPlan:
    """Describe the deletion broadcast; must run before the row is removed."""
    audience = set(rehearsal.invitee_ids)
    for thread in rehearsal.notifications:
        audience.update(recipient.member_id for recipient in thread.recipients)
    return DispatchPlan(
        rehearsal_id=rehearsal.id,
        broadcasts=[
            Broadcast(
                EVENT_UPDATED,
                {
                    "rehearsal_id": rehearsal.id,
                    "changes": {"status": "deleted", "title": rehearsal.title},
                },
                audience,
            )
        ],
    )


def dispatch(
    plan: DispatchPlan | None,
    *,
    realtime: RealtimeHub | None = None,
    push_sender: PushSender | None = None,
) -> list[str]:
    """Deliver ``plan`` best-effort; return warnings for failed deliveries."""
    if plan is None:
        return []
    realtime = realtime or default_hub
    sender = push_sender or get_push_sender()
    warnings: list[str] = []

    for broadcast in plan.broadcasts:
        if not broadcast.member_ids:
            continue
        try:
            realtime.publish(broadcast.event_type, broadcast.payload, broadcast.member_ids)
        except Exception as exc:
            logger.warning(
                "Realtime %s broadcast failed for rehearsal %s: %s",
                broadcast.event_type,
                plan.rehearsal_id,
                exc,
            )
            warnings.append(f"Realtime update could not be delivered: {exc}")

    jobs = [
        (member_id, push)
        for push in plan.pushes
        for member_id in sorted(push.member_ids)
    ]
    if not jobs:
        return warnings

    executor = ThreadPoolExecutor(
        max_workers=min(8, len(jobs)), thread_name_prefix="stagecall-push"
    )
    try:
        futures = {
            executor.submit(
                sender.send,
                member_id,
                title=push.title,
                body=push.body,
                metadata=push.metadata,
            ): member_id
            for member_id, push in jobs
        }
        done, not_done = wait(futures, timeout=settings.push_timeout_seconds)
        for future in done:
            exc = future.exception()
            if exc is not None:
                logger.warning(
                    "Push notification to member %s failed: %s", futures[future], exc
                )
                warnings.append(f"Push to member {futures[future]} failed: {exc}")
        for future in not_done:
            logger.warning("Push notification to member %s timed out", futures[future])
            warnings.append(f"Push to member {futures[future]} timed out")
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
    return warnings


def respond(
    session: Session,
    *,
    member: Member,
    recipient_id: str,
    response: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> tuple[NotificationRecipient, DispatchPlan | None]:
    """Record a member's answer to a rehearsal invitation."""
    now = now or utcnow()
    normalized = (response or "").strip().lower()
    if normalized not in VALID_RESPONSES:
        raise LifecycleError("ValidationFailed", "Response must be yes, no or emergency.")
    trimmed_reason = (reason or "").strip()
    if normalized == "emergency" and not trimmed_reason:
        raise LifecycleError(
            "ValidationFailed", "Please give a reason for the emergency cancellation."
        )
    if len(trimmed_reason) > REASON_MAX_LENGTH:
        raise LifecycleError("ValidationFailed", "Reason is too long.")

    recipient = get_recipient(session, recipient_id)
    if recipient is None or recipient.member_id != member.id:
        raise LifecycleError("NotFound", "Notification not found.")
    rehearsal = recipient.notification.rehearsal
    if rehearsal is None:
        raise LifecycleError("ValidationFailed", "Notification is not linked to a rehearsal.")
    if recipient.notification.type in ATTENDANCE_NOTICE_TYPES:
        raise LifecycleError("ValidationFailed", "Attendance notices take no response.")
    deadline = rehearsal.registration_deadline
    if normalized == "no" and deadline is not None and now > deadline:
        raise LifecycleError("DeadlinePassed")

    recipient.state = RECIPIENT_RESPONDED
    recipient.response = normalized
    recipient.responded_at = now
    session.add(recipient)
    record_attendance(
        session,
        rehearsal_id=rehearsal.id,
        member_id=member.id,
        status=normalized,
        emergency_reason=trimmed_reason if normalized == "emergency" else None,
        updated_at=now,
    )

    creator_id = rehearsal.created_by
    if normalized == "yes" or not creator_id or creator_id == member.id:
        session.flush()
        return recipient, None
    if get_member(session, creator_id) is None:
        session.flush()
        return recipient, None

    when = format_local(rehearsal.start, settings.time_zone)
    actor = member.display_name
    notice_type = TYPE_ATTENDANCE
    if normalized == "emergency":
        notice_type = TYPE_EMERGENCY
        title = f"Emergency: {actor} drops out of {rehearsal.title}"
        body = f"{actor} reported an emergency and cannot attend on {when}. Reason: {trimmed_reason}"
    else:
        title = f"Absence: {actor} cannot attend"
        body = f"{actor} declined the rehearsal on {when} at {rehearsal.location}."
    create_notification(
        session,
        rehearsal=rehearsal,
        title=title,
        body=body,
        notification_type=notice_type,
        recipient_ids={creator_id},
        created_at=now,
    )
    plan = DispatchPlan(
        rehearsal_id=rehearsal.id,
        pushes=[Push({creator_id}, title, body, {"rehearsal_id": rehearsal.id})],
    )
    return recipient, plan


def list_for_member(
    session: Session, member_id: str, *, limit: int | None = None
) -> list[dict[str, Any]]:
    """Return the member's notification feed, newest first."""
    rows = recipients_for_member(
        session, member_id, limit=limit or settings.notifications_page_size
    )
    attendance = attendance_for_member(
        session, member_id, {row.notification.rehearsal_id for row in rows}
    )
    feed: list[dict[str, Any]] = []
    for recipient in rows:
        notification = recipient.notification
        rehearsal = notification.rehearsal
        feed.append(
            {
                "recipient_id": recipient.id,
                "notification_id": notification.id,
                "title": notification.title,
                "body": notification.body,
                "type": notification.type,
                "created_at": notification.created_at.isoformat(),
                "state": recipient.state,
                "response": recipient.response,
                "responded_at": recipient.responded_at.isoformat()
                if recipient.responded_at
                else None,
                "rehearsal": {
                    "id": rehearsal.id,
                    "title": rehearsal.title,
                    "start": rehearsal.start.isoformat(),
                    "registration_deadline": rehearsal.registration_deadline.isoformat()
                    if rehearsal.registration_deadline
                    else None,
                }
                if rehearsal
                else None,
                "attendance_status": attendance.get(rehearsal.id) if rehearsal else None,
            }
        )
    return feed
