"""
Shared pytest fixtures.

- settings pointing at a throwaway SQLite file
- a repository over that database
- an in-memory stand-in for the Google Calendar client
- a reconciler wired to the stand-in with a fixed "today"
"""

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Tuple

import httpx
import pytest

from tracker.db import Database
from tracker.db_init import init_db
from tracker.errors import CalendarApiError
from tracker.models import Habit, Schedule
from tracker.repositories import TrackerRepository
from tracker.services.calendar_client import RemoteCalendar, RemoteEvent
from tracker.services.reconciler import SyncReconciler
from tracker.services.token_manager import TokenCipher, TokenManager
from tracker.settings import Settings

USER = "someone@example.com"
TODAY = date(2024, 1, 7)


def make_habit(schedule: Schedule, created: date = date(2024, 1, 1), habit_id: str = "h1") -> Habit:
    return Habit(
        id=habit_id,
        user_email=USER,
        title="Read",
        schedule=schedule,
        created_at=datetime(created.year, created.month, created.day, 9, 30, tzinfo=timezone.utc),
    )


class FakeCalendarClient:
    """Keeps events in a dict keyed by (calendar id, event id) and records every call."""

    def __init__(self):
        self.events: Dict[Tuple[str, str], object] = {}
        self.calendars: Dict[str, str] = {}
        self.listed: Dict[str, List[RemoteEvent]] = {}
        self.calls: List[tuple] = []
        self.fail_titles: set = set()
        self.latency = 0.0
        self._next_id = 0

    def _record(self, *call):
        self.calls.append(call)

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    async def create_event(self, calendar_id, payload):
        self._record("create_event", calendar_id, payload.title)
        if payload.title in self.fail_titles:
            raise CalendarApiError("create_event", 500, "backend error")
        self._next_id += 1
        event_id = f"evt-{self._next_id}"
        self.events[(calendar_id, event_id)] = payload
        return event_id

    async def update_event(self, calendar_id, event_id, payload):
        self._record("update_event", calendar_id, event_id)
        if (calendar_id, event_id) not in self.events:
            raise CalendarApiError("update_event", 404, "Not Found")
        self.events[(calendar_id, event_id)] = payload

    async def delete_event(self, calendar_id, event_id):
        self._record("delete_event", calendar_id, event_id)
        self.events.pop((calendar_id, event_id), None)

    async def list_events(self, calendar_id, from_date, to_date, timezone_name="UTC"):
        self._record("list_events", calendar_id)
        return list(self.listed.get(calendar_id, []))

    async def list_calendars(self):
        self._record("list_calendars")
        if self.latency:
            await asyncio.sleep(self.latency)
        return [RemoteCalendar(id=cid, name=name, access_role="owner") for cid, name in self.calendars.items()]

    async def create_calendar(self, name):
        self._record("create_calendar", name)
        calendar_id = f"cal-{name.lower()}"
        if calendar_id in self.calendars:
            calendar_id = f"{calendar_id}-{len(self.calendars)}"
        self.calendars[calendar_id] = name
        return calendar_id

    async def delete_calendar(self, calendar_id):
        self._record("delete_calendar", calendar_id)
        self.calendars.pop(calendar_id, None)

    async def find_or_create_calendar(self, name):
        for calendar in await self.list_calendars():
            if calendar.name == name:
                return calendar.id
        return await self.create_calendar(name)


def _no_network(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request to {request.url}")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'tracker.db'}",
        TOKEN_ENCRYPTION_KEY="test-encryption-key",
        BACKEND_SESSION_SECRET="test-secret",
        CALENDAR_CLIENT_ID="client-id",
        CALENDAR_CLIENT_SECRET="client-secret",
        CALENDAR_REDIRECT_URI="http://localhost/v1/oauth/google/callback",
        CALENDAR_TIMEZONE="UTC",
    )


@pytest.fixture
async def database(settings):
    db = Database(settings.database_url)
    yield db
    await db.dispose()


@pytest.fixture
async def repo(database, settings):
    capabilities = await init_db(database.engine)
    return TrackerRepository(
        database.sessionmaker,
        capabilities,
        TokenCipher(settings.token_encryption_key),
        timezone_name=settings.calendar_timezone,
    )


@pytest.fixture
async def http_client():
    async with httpx.AsyncClient(transport=httpx.MockTransport(_no_network)) as client:
        yield client


@pytest.fixture
def token_manager(http_client, settings):
    return TokenManager(http_client, settings)


@pytest.fixture
def fake_calendar():
    return FakeCalendarClient()


@pytest.fixture
def reconciler(repo, token_manager, settings, fake_calendar):
    return SyncReconciler(repo, token_manager, settings, lambda access_token: fake_calendar, today=lambda: TODAY)


@pytest.fixture
async def connected(repo):
    await repo.store_credentials(
        USER,
        "refresh-token",
        access_token="access-token",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        scope="https://www.googleapis.com/auth/calendar",
    )
    return USER
