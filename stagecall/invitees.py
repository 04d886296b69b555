"""Invitee synchronization and required-role aggregation."""

from __future__ import annotations

import logging
import uuid
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .crud import get_members
from .models import Rehearsal, RehearsalInvitee

logger = logging.getLogger("uvicorn.error")

_UPSERT_DIALECTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


def normalize_member_ids(member_ids: Iterable[str] | None) -> set[str]:
    """De-duplicate ids and drop blanks."""
    if not member_ids:
        return set()
    return {str(member_id).strip() for member_id in member_ids if str(member_id).strip()}


def diff_invitees(existing: set[str], requested: set[str]) -> tuple[set[str], set[str]]:
    """Return ``(adds, removals)`` that turn ``existing`` into ``requested``."""
    return requested - existing, existing - requested


def _insert_ignoring_duplicates(
    session: Session, rehearsal_id: str, member_ids: Iterable[str]
) -> None:
    rows = [
        {"id": str(uuid.uuid4()), "rehearsal_id": rehearsal_id, "member_id": member_id}
        for member_id in sorted(member_ids)
    ]
    if not rows:
        return
    dialect = session.get_bind().dialect.name
    insert = _UPSERT_DIALECTS.get(dialect)
    if insert is not None:
        stmt = (
            insert(RehearsalInvitee)
            .values(rows)
            .on_conflict_do_nothing(index_elements=["rehearsal_id", "member_id"])
        )
        session.execute(stmt)
        return
    for row in rows:
        try:
            with session.begin_nested():
                session.add(RehearsalInvitee(**row))
        except IntegrityError:
            logger.info(
                "Invitee %s already present on rehearsal %s",
                row["member_id"],
                rehearsal_id,
            )


def sync_invitees(
    session: Session, rehearsal_id: str, requested_ids: Iterable[str] | None
) -> set[str]:
    """Reconcile the persisted invitee rows with ``requested_ids``.

    Runs inside the caller's transaction. Removals are deleted, missing rows
    inserted; rows that already exist are left alone, so calling this twice
    with the same set performs no writes the second time. Returns the
    resulting invitee set.
    """
    requested = normalize_member_ids(requested_ids)
    existing = set(
        session.scalars(
            select(RehearsalInvitee.member_id).where(
                RehearsalInvitee.rehearsal_id == rehearsal_id
            )
        ).all()
    )
    adds, removals = diff_invitees(existing, requested)

    if removals:
        session.execute(
            delete(RehearsalInvitee)
            .where(RehearsalInvitee.rehearsal_id == rehearsal_id)
            .where(RehearsalInvitee.member_id.in_(removals))
            .execution_options(synchronize_session=False)
        )
    if adds:
        _insert_ignoring_duplicates(session, rehearsal_id, adds)

    if adds or removals:
        logger.info(
            "Synchronized invitees for rehearsal %s (+%d/-%d, total %d)",
            rehearsal_id,
            len(adds),
            len(removals),
            len(requested),
        )
        loaded = session.get(Rehearsal, rehearsal_id)
        if loaded is not None:
            session.expire(loaded, ["invitees"])
    return requested


def aggregate_roles(session: Session, member_ids: Iterable[str]) -> set[str]:
    """Union of the primary and extra roles of every member in ``member_ids``."""
    roles: set[str] = set()
    for member in get_members(session, normalize_member_ids(member_ids)):
        roles.update(role for role in member.roles if role)
    return roles
