"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import pytest
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.pool import StaticPool

from nightwatch.database.models import Base
from nightwatch.engine.events import ChangeEvent
from nightwatch.engine.notifier import ChangeNotifier
from nightwatch.services import guild_service


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Nightwatch tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).  Foreign keys
    are switched on so ``ON DELETE CASCADE`` behaves as on PostgreSQL.
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def guild(db_engine):
    """A stored guild ``g1`` with default settings."""
    return guild_service.create(db_engine, {"id": "g1", "name": "Nightwatch HQ"})


@pytest.fixture
def members(db_engine, guild):
    """Three members of ``g1``: a moderator and two regular users."""
    for user_id in ("mod", "u1", "u2"):
        guild_service.create_user(db_engine, "g1", {"id": user_id})
    return ["mod", "u1", "u2"]


class RecordingSubscriber:
    """Notifier subscriber that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list[ChangeEvent] = []

    def __call__(self, event: ChangeEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [e.type.value for e in self.events]


@pytest.fixture
def recorder() -> RecordingSubscriber:
    return RecordingSubscriber()


@pytest.fixture
def notifier(recorder) -> ChangeNotifier:
    notifier = ChangeNotifier(origin="test-origin")
    notifier.subscribe(recorder)
    return notifier


@pytest.fixture
def client(db_engine, notifier):
    """FastAPI TestClient wired to the SQLite engine and recording notifier."""
    from fastapi.testclient import TestClient

    from nightwatch.api.deps import get_engine, get_notifier
    from nightwatch.api.main import app

    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
