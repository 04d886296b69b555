"""Shared pytest fixtures for StageCall."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from stagecall import api, database, storage
from stagecall.crud import create_member
from stagecall.lifecycle import RehearsalLifecycle
from stagecall.models import Base
from stagecall.realtime import RealtimeHub


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    database.enable_sqlite_foreign_keys(engine)
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


class FixedClock:
    """Deterministic clock; ``advance`` moves it forward."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingPushSender:
    """Collects push deliveries instead of sending them."""

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.sent: list[dict] = []
        self.fail_for = fail_for or set()

    def send(self, member_id, *, title, body, metadata):
        if member_id in self.fail_for:
            raise RuntimeError("push gateway unavailable")
        self.sent.append(
            {"member_id": member_id, "title": title, "body": body, "metadata": metadata}
        )

    def titles_for(self, member_id: str) -> list[str]:
        return [entry["title"] for entry in self.sent if entry["member_id"] == member_id]


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(datetime(2030, 3, 1, 9, 30))


@pytest.fixture()
def push_sender() -> RecordingPushSender:
    return RecordingPushSender()


@pytest.fixture()
def realtime() -> RealtimeHub:
    return RealtimeHub(history_size=50)


@pytest.fixture()
def lifecycle(clock, push_sender, realtime) -> RehearsalLifecycle:
    return RehearsalLifecycle(clock=clock, realtime=realtime, push_sender=push_sender)


@pytest.fixture()
def roster():
    """A planner plus three singers, committed and detached."""

    with database.get_session() as session:
        planner = create_member(
            session, name="Paula Planner", role="member", extra_roles=["board"]
        )
        alice = create_member(session, name="Alice", role="soprano")
        bob = create_member(session, name="Bob", role="tenor", extra_roles=["tech"])
        cleo = create_member(session, name="Cleo", role="alto")
        members = {
            "planner": planner,
            "alice": alice,
            "bob": bob,
            "cleo": cleo,
        }
    return members
