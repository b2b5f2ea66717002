"""Pytest fixtures: throwaway SQLite database and a scriptable fake calendar provider."""
import os

# Must be set before calmirror.config is imported.
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("QUEUE_AUTOSTART", "false")

import copy
import itertools
import threading
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import event
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from calmirror.database import Base, get_db, make_engine
from calmirror.errors import ProviderAuthError, ProviderError, ProviderNotFoundError
from calmirror.main import app
from calmirror.models.calendar_config import CalendarConfig
from calmirror.runtime import build_runtime
from calmirror.services.event_times import parse_event_time

# Import all models so they register with Base.metadata
import calmirror.models  # noqa: F401

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def db_engine(tmp_path):
    """Create a fresh SQLite engine for each test."""
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")

    # Enable WAL mode for better concurrency
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db(session_factory):
    """Yield a database session for direct assertions."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def provider():
    fake = FakeCalendarProvider()
    yield fake
    fake.release.set()


@pytest.fixture(scope="function")
def runtime(session_factory, provider):
    """Sync engine wired to the test database and the fake provider, workers stopped."""
    rt = build_runtime(session_factory, provider, normal_delay_seconds=0.0, backoff_seconds=0.0, poll_interval=0.05)
    yield rt
    rt.queue.stop()


@pytest.fixture(scope="function")
def client(session_factory, runtime):
    """FastAPI TestClient with the database and runtime overridden."""

    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_get_db
    app.state.runtime = runtime
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.runtime = None


# ---------------------------------------------------------------------------
# Fake calendar provider
# ---------------------------------------------------------------------------
class FakeCalendarProvider:
    """In-memory stand-in for Google Calendar.

    ``fail`` maps an operation name (create, update, delete, list, get or watch) to the
    calendar ids whose calls raise a transient ProviderError; calendars in
    ``hang`` block until ``release`` is set.
    """

    def __init__(self):
        self.events: dict[str, dict[str, dict]] = defaultdict(dict)
        self.fail: dict[str, set] = defaultdict(set)
        self.bad_credentials: set = set()
        self.hang: set = set()
        self.release = threading.Event()
        self.calls: list[tuple[str, str]] = []
        self.list_windows: list[tuple[str, str]] = []
        self.channels: list[dict] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def add_event(self, calendar_id: str, event: dict) -> dict:
        self.events[calendar_id][event["id"]] = copy.deepcopy(event)
        return event

    def _enter(self, op: str, calendar_id: str) -> None:
        with self._lock:
            self.calls.append((op, calendar_id))
        if calendar_id in self.hang:
            self.release.wait(5)
        if calendar_id in self.fail[op]:
            raise ProviderError(f"{op} on {calendar_id}: HTTP 503 backend error")

    def authenticate(self, credential):
        if not credential or credential in self.bad_credentials:
            raise ProviderAuthError("Token refresh failed: invalid_grant")
        return {"credential": credential}

    def list_events(self, session, calendar_id, time_min, time_max):
        self._enter("list", calendar_id)
        self.list_windows.append((time_min, time_max))
        lo = parse_event_time({"dateTime": time_min})
        hi = parse_event_time({"dateTime": time_max})
        found = [
            copy.deepcopy(ev) for ev in self.events[calendar_id].values()
            if parse_event_time(ev.get("end")) >= lo and parse_event_time(ev.get("start")) <= hi
        ]
        return sorted(found, key=lambda ev: parse_event_time(ev.get("start")))

    def get_event(self, session, calendar_id, event_id):
        self._enter("get", calendar_id)
        if event_id not in self.events[calendar_id]:
            raise ProviderNotFoundError(f"get event {event_id}: HTTP 404")
        return copy.deepcopy(self.events[calendar_id][event_id])

    def create_event(self, session, calendar_id, draft):
        self._enter("create", calendar_id)
        with self._lock:
            created = {**copy.deepcopy(draft), "id": f"block-{next(self._ids)}", "status": "confirmed"}
            self.events[calendar_id][created["id"]] = created
        return copy.deepcopy(created)

    def update_event(self, session, calendar_id, event_id, patch):
        self._enter("update", calendar_id)
        with self._lock:
            if event_id not in self.events[calendar_id]:
                raise ProviderNotFoundError(f"update event {event_id}: HTTP 404")
            self.events[calendar_id][event_id].update(copy.deepcopy(patch))
            return copy.deepcopy(self.events[calendar_id][event_id])

    def delete_event(self, session, calendar_id, event_id):
        self._enter("delete", calendar_id)
        with self._lock:
            self.events[calendar_id].pop(event_id, None)

    def watch(self, session, calendar_id, channel_id, address, ttl_seconds):
        self._enter("watch", calendar_id)
        channel = {"id": channel_id, "resourceId": f"resource-{calendar_id}", "address": address, "ttl": ttl_seconds}
        self.channels.append(channel)
        return dict(channel)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def add_calendar(db, calendar_id: str, alias: str, active: bool = True, token: str = None) -> CalendarConfig:
    """Helper: insert a calendar config row."""
    row = CalendarConfig(
        calendar_id=calendar_id,
        calendar_alias=alias,
        calendar_name=alias,
        is_active=active,
        refresh_token=token if token is not None else f"token-{calendar_id}",
    )
    db.add(row)
    db.commit()
    return row


def make_event(event_id: str, start: datetime = T0, hours: float = 1, summary: str = "Team Standup", **extra) -> dict:
    """Helper: a provider-shaped event dict."""
    end = start + timedelta(hours=hours)
    event = {
        "id": event_id,
        "summary": summary,
        "description": extra.pop("description", None),
        "start": {"dateTime": start.isoformat()},
        "end": {"dateTime": end.isoformat()},
        "status": extra.pop("status", "confirmed"),
    }
    event.update(extra)
    return event


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; normalise for comparisons."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
