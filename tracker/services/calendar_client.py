from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional
from urllib.parse import quote
from zoneinfo import ZoneInfo

import httpx

from tracker.errors import CalendarApiError
from tracker.services.event_mapper import EventPayload

logger = logging.getLogger(__name__)

CALENDAR_API = "https://www.googleapis.com/calendar/v3"
CALENDAR_DESCRIPTION = "Tasks synced from the habit tracker"


@dataclass(frozen=True)
class RemoteEvent:
    id: str
    title: str
    description: Optional[str]
    start: Optional[str]
    end: Optional[str]
    is_all_day: bool
    link: Optional[str]
    cancelled: bool

    @classmethod
    def from_api(cls, item: dict) -> "RemoteEvent":
        start = item.get("start") or {}
        end = item.get("end") or {}
        is_all_day = bool(start.get("date"))
        return cls(
            id=str(item.get("id")),
            title=item.get("summary") or "(No title)",
            description=item.get("description"),
            start=start.get("date") if is_all_day else start.get("dateTime"),
            end=end.get("date") if is_all_day else end.get("dateTime"),
            is_all_day=is_all_day,
            link=item.get("htmlLink"),
            cancelled=item.get("status") == "cancelled",
        )


@dataclass(frozen=True)
class RemoteCalendar:
    id: str
    name: str
    access_role: Optional[str] = None
    primary: bool = False


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
        return payload.get("error", {}).get("message") or payload.get("message") or response.text
    except ValueError:
        return response.text


def _raise_for_status(response: httpx.Response, action: str) -> None:
    if response.status_code >= 400:
        raise CalendarApiError(action, response.status_code, _error_message(response))


class GoogleCalendarClient:
    """Thin async wrapper over the Google Calendar v3 REST API.

    One instance is bound to a single access token; build a new one after a refresh.
    """

    def __init__(self, http: httpx.AsyncClient, access_token: str, base_url: str = CALENDAR_API):
        self._http = http
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")

    def _headers(self, json_body: bool = False) -> dict:
        headers = {"Authorization": f"Bearer {self._access_token}"}
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    def _events_url(self, calendar_id: str, event_id: str | None = None) -> str:
        url = f"{self._base_url}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            url = f"{url}/{quote(event_id, safe='')}"
        return url

    async def create_event(self, calendar_id: str, payload: EventPayload) -> str:
        response = await self._http.post(
            self._events_url(calendar_id),
            headers=self._headers(json_body=True),
            json=payload.to_api(),
            timeout=20,
        )
        _raise_for_status(response, "create_event")
        event_id = response.json().get("id")
        if not event_id:
            raise CalendarApiError("create_event", response.status_code, "response carried no event id")
        return str(event_id)

    async def update_event(self, calendar_id: str, event_id: str, payload: EventPayload) -> None:
        response = await self._http.put(
            self._events_url(calendar_id, event_id),
            headers=self._headers(json_body=True),
            json=payload.to_api(),
            timeout=20,
        )
        _raise_for_status(response, "update_event")

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        response = await self._http.delete(
            self._events_url(calendar_id, event_id),
            headers=self._headers(),
            timeout=20,
        )
        # 404/410: already gone, which is what we wanted.
        if response.status_code in {404, 410}:
            logger.info("Event %s already absent from calendar %s", event_id, calendar_id)
            return
        _raise_for_status(response, "delete_event")

    async def list_events(
        self,
        calendar_id: str,
        from_date: date,
        to_date: date,
        timezone_name: str = "UTC",
    ) -> list[RemoteEvent]:
        tzinfo = ZoneInfo(timezone_name)
        params = {
            "timeMin": datetime.combine(from_date, time.min, tzinfo).isoformat(),
            "timeMax": datetime.combine(to_date, time(23, 59, 59), tzinfo).isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": 250,
        }
        events: list[RemoteEvent] = []
        while True:
            response = await self._http.get(
                self._events_url(calendar_id),
                headers=self._headers(),
                params=params,
                timeout=25,
            )
            _raise_for_status(response, "list_events")
            payload = response.json()
            events.extend(RemoteEvent.from_api(item) for item in payload.get("items") or [] if item.get("id"))
            page_token = payload.get("nextPageToken")
            if not page_token:
                return events
            params = {**params, "pageToken": page_token}

    async def list_calendars(self) -> list[RemoteCalendar]:
        response = await self._http.get(
            f"{self._base_url}/users/me/calendarList",
            headers=self._headers(),
            timeout=15,
        )
        _raise_for_status(response, "list_calendars")
        return [
            RemoteCalendar(
                id=str(item["id"]),
                name=item.get("summary") or "",
                access_role=item.get("accessRole"),
                primary=bool(item.get("primary")),
            )
            for item in response.json().get("items") or []
            if item.get("id")
        ]

    async def create_calendar(self, name: str) -> str:
        response = await self._http.post(
            f"{self._base_url}/calendars",
            headers=self._headers(json_body=True),
            json={"summary": name, "description": CALENDAR_DESCRIPTION},
            timeout=15,
        )
        _raise_for_status(response, "create_calendar")
        return str(response.json()["id"])

    async def delete_calendar(self, calendar_id: str) -> None:
        response = await self._http.delete(
            f"{self._base_url}/calendars/{quote(calendar_id, safe='')}",
            headers=self._headers(),
            timeout=15,
        )
        if response.status_code in {404, 410}:
            return
        _raise_for_status(response, "delete_calendar")

    async def find_or_create_calendar(self, name: str) -> str:
        for calendar in await self.list_calendars():
            if calendar.name == name and calendar.access_role == "owner":
                return calendar.id
        calendar_id = await self.create_calendar(name)
        logger.info("Created calendar %r (%s)", name, calendar_id)
        return calendar_id
