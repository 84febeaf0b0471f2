"""Shared test fixtures and configuration.

Sets up fake environment variables so src.config doesn't sys.exit(),
and provides common fixtures like a temp DB and a service with a fixed clock.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("ADMIN_USER_IDS", "12345")
os.environ.setdefault("ALLOWED_USER_IDS", "")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "Europe/Moscow")

import pytest
from datetime import datetime, timedelta

ADMIN_ID = 12345
NOW = datetime(2026, 10, 17, 15, 42)


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_presence.db")


@pytest.fixture
def person_db(tmp_db_path):
    """Return a PersonDB instance backed by a temp file."""
    from src.data.db import PersonDB
    return PersonDB(db_path=tmp_db_path)


@pytest.fixture
def status_db(tmp_db_path):
    """Return a StatusDB sharing the PersonDB file (statistics join on people)."""
    from src.data.db import StatusDB
    return StatusDB(db_path=tmp_db_path)


@pytest.fixture
def roster(person_db):
    """A small roster with two Petrovs and one Ivanova."""
    return {
        "petrov_ivan": person_db.add_person("Petrov", "Ivan", "Sergeevich"),
        "petrov_pavel": person_db.add_person("Petrov", "Pavel"),
        "ivanova": person_db.add_person("Ivanova", "Maria", "Petrovna"),
        "sidorov": person_db.add_person("Сидоров", "Алексей"),
    }


class FakeMonotonic:
    """Manually advanced monotonic clock for session TTL tests."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def monotonic():
    return FakeMonotonic()


def _build_service(person_db, status_db, monotonic, confirm_overwrites):
    from src.core.presence_service import PresenceService
    from src.core.sessions import SessionStore

    return PresenceService(
        person_db,
        status_db,
        sessions=SessionStore(ttl=timedelta(minutes=30), clock=monotonic),
        clock=lambda: NOW,
        admin_ids=[ADMIN_ID],
        confirm_overwrites=confirm_overwrites,
    )


@pytest.fixture
def service(person_db, status_db, monotonic):
    """PresenceService committing straight away, clock fixed at NOW."""
    return _build_service(person_db, status_db, monotonic, confirm_overwrites=False)


@pytest.fixture
def confirming_service(person_db, status_db, monotonic):
    """PresenceService that asks before replacing today's record."""
    return _build_service(person_db, status_db, monotonic, confirm_overwrites=True)
