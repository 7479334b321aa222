import json
from datetime import date

import httpx
import pytest

from tracker.errors import CalendarApiError
from tracker.services.calendar_client import CALENDAR_API, GoogleCalendarClient
from tracker.services.event_mapper import EventPayload, EventTime


def _payload() -> EventPayload:
    return EventPayload(
        title="Dentist",
        start=EventTime(date="2024-02-01"),
        end=EventTime(date="2024-02-02"),
        color_id="8",
    )


def _client(handler) -> GoogleCalendarClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleCalendarClient(http, "token-123")


async def test_create_event_posts_payload_and_returns_id():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "evt-9"})

    event_id = await _client(handler).create_event("team@group.calendar.google.com", _payload())

    assert event_id == "evt-9"
    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == f"{CALENDAR_API}/calendars/team%40group.calendar.google.com/events"
    assert request.headers["Authorization"] == "Bearer token-123"
    body = json.loads(request.content)
    assert body["summary"] == "Dentist"
    assert body["reminders"]["useDefault"] is False


async def test_update_missing_event_raises_gone():
    client = _client(lambda request: httpx.Response(404, json={"error": {"message": "Not Found"}}))
    with pytest.raises(CalendarApiError) as excinfo:
        await client.update_event("primary", "evt-1", _payload())
    assert excinfo.value.is_gone
    assert excinfo.value.status_code == 404
    assert "Not Found" in str(excinfo.value)


@pytest.mark.parametrize("status", [204, 404, 410])
async def test_delete_treats_missing_as_success(status):
    await _client(lambda request: httpx.Response(status)).delete_event("primary", "evt-1")


async def test_delete_raises_on_server_error():
    with pytest.raises(CalendarApiError) as excinfo:
        await _client(lambda request: httpx.Response(503, text="unavailable")).delete_event("primary", "evt-1")
    assert not excinfo.value.is_gone


async def test_list_events_follows_pages():
    pages = {
        None: {
            "items": [{"id": "a", "summary": "A", "start": {"date": "2024-02-01"}, "end": {"date": "2024-02-02"}}],
            "nextPageToken": "p2",
        },
        "p2": {
            "items": [
                {
                    "id": "b",
                    "status": "cancelled",
                    "start": {"dateTime": "2024-02-01T10:00:00Z"},
                    "end": {"dateTime": "2024-02-01T11:00:00Z"},
                }
            ]
        },
    }

    def handler(request):
        assert request.url.params["singleEvents"] == "true"
        return httpx.Response(200, json=pages[request.url.params.get("pageToken")])

    events = await _client(handler).list_events("primary", date(2024, 2, 1), date(2024, 2, 7))

    assert [event.id for event in events] == ["a", "b"]
    assert events[0].is_all_day and events[0].start == "2024-02-01"
    assert events[1].cancelled and events[1].title == "(No title)"


async def test_find_or_create_calendar_reuses_owned_calendar():
    created = []

    def handler(request):
        if request.method == "GET":
            return httpx.Response(
                200,
                json={
                    "items": [
                        {"id": "shared", "summary": "Todos", "accessRole": "reader"},
                        {"id": "mine", "summary": "Todos", "accessRole": "owner"},
                    ]
                },
            )
        created.append(request)
        return httpx.Response(200, json={"id": "new"})

    client = _client(handler)
    assert await client.find_or_create_calendar("Todos") == "mine"
    assert await client.find_or_create_calendar("Habits") == "new"
    assert json.loads(created[0].content)["summary"] == "Habits"
