from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import event, select

from stagecall import database, invitees
from stagecall.crud import create_member, create_rehearsal
from stagecall.invitees import (
    _insert_ignoring_duplicates,
    aggregate_roles,
    diff_invitees,
    normalize_member_ids,
    sync_invitees,
)
from stagecall.models import RehearsalInvitee


@pytest.fixture()
def rehearsal_id():
    start = datetime(2030, 5, 1, 18, 0)
    with database.get_session() as session:
        rehearsal = create_rehearsal(
            session,
            title="Sitzprobe",
            start=start,
            end=start + timedelta(hours=2),
            location="Hall",
        )
        return rehearsal.id


@pytest.fixture()
def members():
    with database.get_session() as session:
        return [
            create_member(session, name="Anna", role="actor"),
            create_member(session, name="Ben", role="actor", extra_roles=["tech"]),
            create_member(session, name="Cara", role="director", extra_roles=["board"]),
        ]


def _invitee_rows(rehearsal_id: str) -> dict[str, str]:
    with database.get_session() as session:
        rows = session.scalars(
            select(RehearsalInvitee).where(RehearsalInvitee.rehearsal_id == rehearsal_id)
        ).all()
        return {row.member_id: row.id for row in rows}


class _WriteCounter:
    def __init__(self):
        self.statements: list[str] = []

    def __call__(self, conn, cursor, statement, parameters, context, executemany):
        verb = statement.lstrip().split(None, 1)[0].upper()
        if verb in {"INSERT", "UPDATE", "DELETE"}:
            self.statements.append(statement)


def test_normalize_and_diff():
    assert normalize_member_ids(None) == set()
    assert normalize_member_ids([" a ", "a", "", "b"]) == {"a", "b"}
    assert diff_invitees({"a", "b"}, {"b", "c"}) == ({"c"}, {"a"})


def test_sync_adds_and_removes(rehearsal_id, members):
    a, b, c = members
    with database.get_session() as session:
        assert sync_invitees(session, rehearsal_id, [a.id, b.id]) == {a.id, b.id}
    assert set(_invitee_rows(rehearsal_id)) == {a.id, b.id}

    with database.get_session() as session:
        assert sync_invitees(session, rehearsal_id, [b.id, c.id]) == {b.id, c.id}
    assert set(_invitee_rows(rehearsal_id)) == {b.id, c.id}

    with database.get_session() as session:
        assert sync_invitees(session, rehearsal_id, []) == set()
    assert _invitee_rows(rehearsal_id) == {}


def test_sync_twice_is_idempotent(rehearsal_id, members):
    requested = [members[0].id, members[1].id, members[0].id]
    with database.get_session() as session:
        sync_invitees(session, rehearsal_id, requested)
    first_rows = _invitee_rows(rehearsal_id)

    counter = _WriteCounter()
    event.listen(database.engine, "before_cursor_execute", counter)
    try:
        with database.get_session() as session:
            result = sync_invitees(session, rehearsal_id, requested)
    finally:
        event.remove(database.engine, "before_cursor_execute", counter)

    assert result == {members[0].id, members[1].id}
    assert counter.statements == []
    assert _invitee_rows(rehearsal_id) == first_rows


def test_aggregate_roles(members):
    a, b, c = members
    with database.get_session() as session:
        assert aggregate_roles(session, []) == set()
        assert aggregate_roles(session, [a.id]) == {"actor"}
        assert aggregate_roles(session, [a.id, b.id]) == {"actor", "tech"}
        assert aggregate_roles(session, ["unknown"]) == set()


def test_aggregate_roles_is_monotonic(members):
    ids = [member.id for member in members]
    with database.get_session() as session:
        previous: set[str] = set()
        for size in range(len(ids) + 1):
            roles = aggregate_roles(session, ids[:size])
            assert previous <= roles
            previous = roles
    assert previous == {"actor", "tech", "director", "board"}


def test_insert_skips_rows_that_already_exist(rehearsal_id, members):
    a, b, _ = members
    with database.get_session() as session:
        sync_invitees(session, rehearsal_id, [a.id])
    existing = _invitee_rows(rehearsal_id)

    with database.get_session() as session:
        _insert_ignoring_duplicates(session, rehearsal_id, [a.id, b.id])

    rows = _invitee_rows(rehearsal_id)
    assert set(rows) == {a.id, b.id}
    assert rows[a.id] == existing[a.id]


def test_sync_tolerates_a_concurrent_insert_of_the_same_member(
    rehearsal_id, members, monkeypatch
):
    a, b, _ = members
    original_diff = invitees.diff_invitees

    with database.get_session() as session:

        def diff_after_competing_insert(existing, requested):
            # Another writer adds ``a`` after the existing rows were read.
            session.add(RehearsalInvitee(rehearsal_id=rehearsal_id, member_id=a.id))
            session.flush()
            return original_diff(existing, requested)

        monkeypatch.setattr(invitees, "diff_invitees", diff_after_competing_insert)
        result = sync_invitees(session, rehearsal_id, [a.id, b.id])

    assert result == {a.id, b.id}
    with database.get_session() as session:
        rows = session.scalars(
            select(RehearsalInvitee).where(RehearsalInvitee.rehearsal_id == rehearsal_id)
        ).all()
    assert sorted(row.member_id for row in rows) == sorted([a.id, b.id])
