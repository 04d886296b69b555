"""Rehearsal lifecycle: drafts, publishing, edits, and deletion.

Every public operation returns an :class:`~stagecall.outcomes.Outcome`. The
database work for one call happens in a single transaction; notifications are
dispatched only after that transaction committed. Concurrent edits to the same
rehearsal are serialized by a per-rehearsal lock plus a row lock, and the last
committed writer wins.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import notifications
from .auth import SCHEDULE_MANAGE, has_permission
from .config import settings
from .crud import create_rehearsal, get_member, get_members, get_rehearsal, roster_ids
from .database import get_session
from .deadlines import (
    DeadlineOption,
    compute_deadline,
    detect_deadline_option,
    parse_deadline_option,
)
from .invitees import aggregate_roles, normalize_member_ids, sync_invitees
from .models import Member, Rehearsal, STATUS_DRAFT, STATUS_PLANNED
from .outcomes import LifecycleError, Outcome
from .realtime import PushSender, RealtimeHub
from .utils import (
    local_to_utc,
    next_full_hour,
    parse_date,
    parse_time,
    sanitize_rich_text,
    utc_to_local,
    utcnow,
)

logger = logging.getLogger("uvicorn.error")

TITLE_MIN_LENGTH = 3
TITLE_MAX_LENGTH = 120
LOCATION_MIN_LENGTH = 2
LOCATION_MAX_LENGTH = 120

class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


# Entries live only while a call holds or waits for them.
_locks: dict[str, _LockEntry] = {}
_locks_guard = threading.Lock()


@contextmanager
def _rehearsal_lock(rehearsal_id: str):
    with _locks_guard:
        entry = _locks.get(rehearsal_id)
        if entry is None:
            entry = _locks[rehearsal_id] = _LockEntry()
        entry.holders += 1
    try:
        with entry.lock:
            yield
    finally:
        with _locks_guard:
            entry.holders -= 1
            if entry.holders == 0:
                del _locks[rehearsal_id]


@dataclass
class RehearsalFields:
    """Caller-supplied fields; ``None`` means "not supplied"."""

    title: str | None = None
    date: str | None = None
    time: str | None = None
    end_time: str | None = None
    location: str | None = None
    description: str | None = None
    invitees: list[str] | None = None
    deadline_option: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "RehearsalFields":
        data = data or {}
        invitees = data.get("invitees")
        return cls(
            title=data.get("title"),
            date=data.get("date"),
            time=data.get("time"),
            end_time=data.get("end_time") or None,
            location=data.get("location"),
            description=data.get("description"),
            invitees=list(invitees) if invitees is not None else None,
            deadline_option=data.get("deadline_option"),
        )


def derive_end(
    new_start: datetime,
    *,
    previous_start: datetime | None = None,
    previous_end: datetime | None = None,
    default_duration: timedelta | None = None,
) -> datetime:
    """Keep a positive prior duration across reschedules, else use the default."""
    if previous_start is not None and previous_end is not None:
        duration = previous_end - previous_start
        if duration > timedelta(0):
            return new_start + duration
    return new_start + (default_duration or settings.default_duration)


def serialize_rehearsal(rehearsal: Rehearsal) -> dict[str, Any]:
    return {
        "id": rehearsal.id,
        "title": rehearsal.title,
        "status": rehearsal.status,
        "start": rehearsal.start.isoformat(),
        "end": rehearsal.end.isoformat(),
        "location": rehearsal.location,
        "description": rehearsal.description,
        "registration_deadline": rehearsal.registration_deadline.isoformat()
        if rehearsal.registration_deadline
        else None,
        "deadline_option": detect_deadline_option(
            rehearsal.start, rehearsal.registration_deadline
        ).value,
        "required_roles": sorted(rehearsal.required_roles or []),
        "invitee_ids": sorted(rehearsal.invitee_ids),
        "attendance": {
            entry.member_id: entry.status
            for entry in sorted(rehearsal.attendance, key=lambda entry: entry.member_id)
        },
        "created_by": rehearsal.created_by,
        "created_at": rehearsal.created_at.isoformat(),
        "last_modified": rehearsal.last_modified.isoformat(),
    }


def _snapshot(rehearsal: Rehearsal) -> dict[str, Any]:
    return {
        "title": rehearsal.title,
        "start": rehearsal.start.isoformat(),
        "end": rehearsal.end.isoformat(),
        "location": rehearsal.location,
        "description": rehearsal.description,
        "registration_deadline": rehearsal.registration_deadline.isoformat()
        if rehearsal.registration_deadline
        else None,
    }


def _check_title(raw: str) -> str:
    title = raw.strip()
    if len(title) < TITLE_MIN_LENGTH:
        raise LifecycleError("ValidationFailed", "Title is too short.")
    if len(title) > TITLE_MAX_LENGTH:
        raise LifecycleError("ValidationFailed", "Title is too long.")
    return title


def _check_location(raw: str) -> str:
    location = raw.strip()
    if len(location) < LOCATION_MIN_LENGTH:
        raise LifecycleError("ValidationFailed", "Location is too short.")
    if len(location) > LOCATION_MAX_LENGTH:
        raise LifecycleError("ValidationFailed", "Location is too long.")
    return location


def _check_date(raw: str) -> date:
    try:
        return parse_date(raw)
    except ValueError as exc:
        raise LifecycleError("ValidationFailed", str(exc)) from exc


def _check_time(raw: str) -> time:
    try:
        return parse_time(raw)
    except ValueError as exc:
        raise LifecycleError("ValidationFailed", str(exc)) from exc


def _check_deadline_option(raw: str | None) -> DeadlineOption | None:
    if raw is None:
        return None
    try:
        return parse_deadline_option(raw)
    except ValueError as exc:
        raise LifecycleError("ValidationFailed", str(exc)) from exc


def _check_invitees(session: Session, raw: Iterable[str] | None) -> set[str] | None:
    if raw is None:
        return None
    requested = normalize_member_ids(raw)
    known = {member.id for member in get_members(session, requested)}
    unknown = requested - known
    if unknown:
        raise LifecycleError(
            "ValidationFailed", f"Unknown member(s): {', '.join(sorted(unknown))}"
        )
    return requested


def _require_fields(fields: RehearsalFields) -> None:
    missing = [
        name
        for name in ("title", "date", "time")
        if not (getattr(fields, name) or "").strip()
    ]
    if missing:
        raise LifecycleError(
            "ValidationFailed", f"Missing required field(s): {', '.join(missing)}"
        )


class RehearsalLifecycle:
    """Rehearsal state machine with injectable clock and dispatch collaborators."""

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utcnow,
        realtime: RealtimeHub | None = None,
        push_sender: PushSender | None = None,
    ) -> None:
        self.clock = clock
        self.realtime = realtime
        self.push_sender = push_sender

    # -------- plumbing --------

    def _run(self, operation: str, work) -> Outcome:
        try:
            rehearsal_id, data, plan = work()
        except LifecycleError as exc:
            logger.info("%s rejected: %s (%s)", operation, exc.kind, exc.message)
            return Outcome.from_error(exc)
        except SQLAlchemyError:
            logger.exception("%s failed with a database error", operation)
            return Outcome.failure("PersistenceFailed")
        warnings = notifications.dispatch(
            plan, realtime=self.realtime, push_sender=self.push_sender
        )
        return Outcome.success(rehearsal_id, data=data, warnings=warnings)

    def _actor(self, session: Session, actor_id: str | None) -> Member:
        actor = get_member(session, actor_id) if actor_id else None
        if actor is None:
            raise LifecycleError("Unauthorized")
        if not has_permission(actor, SCHEDULE_MANAGE):
            raise LifecycleError("Forbidden")
        return actor

    @contextmanager
    def _locked(self, actor_id: str | None, rehearsal_id: str):
        """Authorize, then hold the rehearsal lock around one transaction."""
        with get_session() as session:
            self._actor(session, actor_id)
        with _rehearsal_lock(rehearsal_id), get_session() as session:
            yield session, self._actor(session, actor_id)

    def _load(
        self, session: Session, rehearsal_id: str, actor: Member
    ) -> Rehearsal:
        rehearsal = get_rehearsal(session, rehearsal_id, for_update=True)
        if rehearsal is None:
            raise LifecycleError("NotFound")
        if rehearsal.is_draft and rehearsal.created_by not in (None, actor.id):
            raise LifecycleError("NotFound")
        return rehearsal

    def _apply_schedule(
        self,
        rehearsal: Rehearsal,
        fields: RehearsalFields,
        deadline_option: DeadlineOption | None,
    ) -> None:
        tz_name = settings.time_zone
        previous_start, previous_end = rehearsal.start, rehearsal.end
        start_changed = False
        if fields.date is not None or fields.time is not None:
            local_start = utc_to_local(previous_start, tz_name)
            new_day = (
                _check_date(fields.date) if fields.date is not None else local_start.date()
            )
            new_time = (
                _check_time(fields.time)
                if fields.time is not None
                else local_start.time().replace(second=0, microsecond=0)
            )
            candidate = local_to_utc(new_day, new_time, tz_name)
            start_changed = candidate != previous_start

        if start_changed:
            rehearsal.start = candidate
            rehearsal.end = derive_end(
                candidate, previous_start=previous_start, previous_end=previous_end
            )
        if fields.end_time is not None:
            end_local = _check_time(fields.end_time)
            explicit_end = local_to_utc(
                utc_to_local(rehearsal.start, tz_name).date(), end_local, tz_name
            )
            if explicit_end <= rehearsal.start:
                raise LifecycleError("ValidationFailed", "End time must be after the start time.")
            rehearsal.end = explicit_end

        if deadline_option is None and start_changed:
            deadline_option = detect_deadline_option(
                previous_start, rehearsal.registration_deadline
            )
        if deadline_option is not None:
            rehearsal.registration_deadline = compute_deadline(
                rehearsal.start, deadline_option
            )

    def _apply_fields(
        self,
        session: Session,
        rehearsal: Rehearsal,
        fields: RehearsalFields,
    ) -> set[str] | None:
        """Apply validated fields; return the synchronized invitee set if touched."""
        if fields.title is not None:
            rehearsal.title = _check_title(fields.title)
        if fields.location is not None:
            rehearsal.location = (
                _check_location(fields.location)
                if fields.location.strip()
                else settings.default_location
            )
        if fields.description is not None:
            rehearsal.description = sanitize_rich_text(fields.description)
        deadline_option = _check_deadline_option(fields.deadline_option)
        requested = _check_invitees(session, fields.invitees)
        self._apply_schedule(rehearsal, fields, deadline_option)

        synchronized = None
        if requested is not None:
            synchronized = sync_invitees(session, rehearsal.id, requested)
            rehearsal.required_roles = sorted(aggregate_roles(session, synchronized))
        rehearsal.last_modified = self.clock()
        session.add(rehearsal)
        session.flush()
        return synchronized

    # -------- operations --------

    def create_draft(
        self, actor_id: str | None, fields: RehearsalFields | None = None
    ) -> Outcome:
        """Create a planner-only draft, filling gaps with defaults."""
        fields = fields or RehearsalFields()

        def work():
            with get_session() as session:
                actor = self._actor(session, actor_id)
                now = self.clock()
                start = next_full_hour(now)
                if fields.date and fields.time:
                    try:
                        start = local_to_utc(
                            parse_date(fields.date),
                            parse_time(fields.time),
                            settings.time_zone,
                        )
                    except ValueError:
                        logger.info("Ignoring unparseable draft date/time")
                title = (fields.title or "").strip()
                title = _check_title(title) if title else settings.default_title
                location = (fields.location or "").strip()
                location = _check_location(location) if location else settings.default_location
                option = _check_deadline_option(
                    fields.deadline_option or settings.default_deadline_option
                )
                rehearsal = create_rehearsal(
                    session,
                    title=title,
                    start=start,
                    end=derive_end(start),
                    location=location,
                    status=STATUS_DRAFT,
                    registration_deadline=compute_deadline(start, option),
                    created_by=actor.id,
                    created_at=now,
                )
                logger.info("Draft rehearsal %s created by %s", rehearsal.id, actor.id)
                return rehearsal.id, {"rehearsal": serialize_rehearsal(rehearsal)}, None

        return self._run("create_draft", work)

    def update_draft(
        self, actor_id: str | None, rehearsal_id: str, fields: RehearsalFields
    ) -> Outcome:
        """Edit a draft; no notifications are sent."""

        def work():
            with self._locked(actor_id, rehearsal_id) as (session, actor):
                rehearsal = self._load(session, rehearsal_id, actor)
                if not rehearsal.is_draft:
                    raise LifecycleError("NotDraft")
                self._apply_fields(session, rehearsal, fields)
                return rehearsal.id, {"rehearsal": serialize_rehearsal(rehearsal)}, None

        return self._run("update_draft", work)

    def publish(
        self, actor_id: str | None, rehearsal_id: str, fields: RehearsalFields
    ) -> Outcome:
        """Turn a draft into a planned rehearsal and invite its members."""

        def work():
            with self._locked(actor_id, rehearsal_id) as (session, actor):
                rehearsal = self._load(session, rehearsal_id, actor)
                if not rehearsal.is_draft:
                    raise LifecycleError("NotDraft")
                _require_fields(fields)
                payload = replace(
                    fields,
                    invitees=fields.invitees
                    if fields.invitees is not None
                    else sorted(rehearsal.invitee_ids),
                    deadline_option=fields.deadline_option
                    or detect_deadline_option(
                        rehearsal.start, rehearsal.registration_deadline
                    ).value,
                )
                invitees = self._apply_fields(session, rehearsal, payload) or set()
                rehearsal.status = STATUS_PLANNED
                session.add(rehearsal)
                session.flush()
                plan = None
                if invitees:
                    plan = notifications.plan_created(
                        session, rehearsal, invitees, now=self.clock()
                    )
                logger.info(
                    "Rehearsal %s published with %d invitees", rehearsal.id, len(invitees)
                )
                return rehearsal.id, {"rehearsal": serialize_rehearsal(rehearsal)}, plan

        return self._run("publish", work)

    def update_planned(
        self, actor_id: str | None, rehearsal_id: str, fields: RehearsalFields
    ) -> Outcome:
        """Edit a planned rehearsal and reconcile its notifications."""

        def work():
            with self._locked(actor_id, rehearsal_id) as (session, actor):
                rehearsal = self._load(session, rehearsal_id, actor)
                if rehearsal.is_draft:
                    raise LifecycleError(
                        "ValidationFailed", "Publish the draft before editing it as planned."
                    )
                before = _snapshot(rehearsal)
                synchronized = self._apply_fields(session, rehearsal, fields)
                invitees = (
                    synchronized if synchronized is not None else rehearsal.invitee_ids
                )
                after = _snapshot(rehearsal)
                changes = {
                    key: value for key, value in after.items() if before[key] != value
                }
                plan = notifications.plan_updated(
                    session, rehearsal, set(invitees), changes, now=self.clock()
                )
                logger.info(
                    "Rehearsal %s updated (%s)",
                    rehearsal.id,
                    ", ".join(sorted(changes)) or "no field changes",
                )
                return rehearsal.id, {"rehearsal": serialize_rehearsal(rehearsal)}, plan

        return self._run("update_planned", work)

    def update(
        self, actor_id: str | None, rehearsal_id: str, fields: RehearsalFields
    ) -> Outcome:
        """Route an edit to the draft or planned variant by current status."""
        with get_session() as session:
            rehearsal = get_rehearsal(session, rehearsal_id)
            status = rehearsal.status if rehearsal else None
        if status == STATUS_PLANNED:
            return self.update_planned(actor_id, rehearsal_id, fields)
        return self.update_draft(actor_id, rehearsal_id, fields)

    def create_planned(self, actor_id: str | None, fields: RehearsalFields) -> Outcome:
        """Schedule a rehearsal directly, inviting the whole roster by default.

        Blank invitee ids are dropped before the default applies. The roster
        includes the acting planner, so ``NoRecipients`` is only returned when
        the member table reads back empty.
        """

        def work():
            with get_session() as session:
                actor = self._actor(session, actor_id)
                _require_fields(fields)
                requested = sorted(normalize_member_ids(fields.invitees))
                if not requested:
                    requested = sorted(roster_ids(session))
                    if not requested:
                        raise LifecycleError("NoRecipients")
                payload = replace(
                    fields,
                    invitees=requested,
                    deadline_option=fields.deadline_option
                    or settings.default_deadline_option,
                )
                now = self.clock()
                placeholder = next_full_hour(now)
                rehearsal = create_rehearsal(
                    session,
                    title=settings.default_title,
                    start=placeholder,
                    end=derive_end(placeholder),
                    location=settings.default_location,
                    status=STATUS_PLANNED,
                    created_by=actor.id,
                    created_at=now,
                )
                invitees = self._apply_fields(session, rehearsal, payload) or set()
                plan = notifications.plan_created(session, rehearsal, invitees, now=now)
                logger.info(
                    "Rehearsal %s scheduled directly with %d invitees",
                    rehearsal.id,
                    len(invitees),
                )
                return rehearsal.id, {"rehearsal": serialize_rehearsal(rehearsal)}, plan

        return self._run("create_planned", work)

    def delete(self, actor_id: str | None, rehearsal_id: str) -> Outcome:
        """Remove a rehearsal and tell everyone who could see it."""

        def work():
            with self._locked(actor_id, rehearsal_id) as (session, actor):
                rehearsal = self._load(session, rehearsal_id, actor)
                title = rehearsal.title
                plan = None if rehearsal.is_draft else notifications.plan_deleted(rehearsal)
                session.delete(rehearsal)
                session.flush()
                logger.info("Rehearsal %s deleted", rehearsal_id)
                return rehearsal_id, {"title": title}, plan

        return self._run("delete", work)

    def discard_draft(self, actor_id: str | None, rehearsal_id: str) -> Outcome:
        """Delete a draft that was never published."""

        def work():
            with self._locked(actor_id, rehearsal_id) as (session, actor):
                rehearsal = self._load(session, rehearsal_id, actor)
                if not rehearsal.is_draft:
                    raise LifecycleError("NotDraft")
                session.delete(rehearsal)
                session.flush()
                logger.info("Draft %s discarded", rehearsal_id)
                return rehearsal_id, {}, None

        return self._run("discard_draft", work)

    def view(self, actor_id: str | None, rehearsal_id: str) -> Outcome:
        """Read a rehearsal with the visibility rules applied."""

        def work():
            with get_session() as session:
                actor = get_member(session, actor_id) if actor_id else None
                if actor is None:
                    raise LifecycleError("Unauthorized")
                rehearsal = get_rehearsal(session, rehearsal_id)
                if rehearsal is None:
                    raise LifecycleError("NotFound")
                if rehearsal.is_draft:
                    visible = rehearsal.created_by == actor.id
                else:
                    visible = actor.id in rehearsal.invitee_ids or has_permission(
                        actor, SCHEDULE_MANAGE
                    )
                if not visible:
                    raise LifecycleError("NotFound")
                return rehearsal.id, {"rehearsal": serialize_rehearsal(rehearsal)}, None

        return self._run("view", work)

    def respond_to_notification(
        self,
        member_id: str | None,
        recipient_id: str,
        *,
        response: str,
        reason: str | None = None,
    ) -> Outcome:
        """Record an invitee's answer and notify the rehearsal's creator."""

        def work():
            with get_session() as session:
                member = get_member(session, member_id) if member_id else None
                if member is None:
                    raise LifecycleError("Unauthorized")
                recipient, plan = notifications.respond(
                    session,
                    member=member,
                    recipient_id=recipient_id,
                    response=response,
                    reason=reason,
                    now=self.clock(),
                )
                rehearsal_id = recipient.notification.rehearsal_id
                return (
                    rehearsal_id,
                    {
                        "recipient_id": recipient.id,
                        "state": recipient.state,
                        "response": recipient.response,
                    },
                    plan,
                )

        return self._run("respond", work)


default_lifecycle = RehearsalLifecycle()


def get_lifecycle() -> RehearsalLifecycle:
    return default_lifecycle
