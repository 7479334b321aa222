"""
Calendar sync reconciliation.

Maps local todo/habit mutations onto remote create/update/delete calls and keeps
the binding rows (entity id -> remote event id + calendar id) in step. Every
entry point is safe to call repeatedly; a missing binding simply means the next
call creates the event afresh.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Dict, List, Optional, Tuple

import httpx

from tracker.errors import CalendarApiError, NotFoundError
from tracker.models import CalendarCredentials, Habit, RemoteBinding, TodoDetails, TodoList
from tracker.repositories import TrackerRepository
from tracker.services.calendar_client import GoogleCalendarClient, RemoteEvent
from tracker.services.event_mapper import habit_to_event, today_in, todo_to_event
from tracker.services.token_manager import TokenManager
from tracker.settings import Settings

logger = logging.getLogger(__name__)

TODO_ACTIONS = {"create", "update", "delete", "complete"}
HABIT_ACTIONS = {"create", "update", "delete"}

DISCONNECTED_KEY = "calendar_disconnected"
DISCONNECTED_MESSAGE = "Calendar authorization expired or was revoked; reconnect to resume sync"

PRIMARY_CALENDAR = "primary"

ClientFactory = Callable[[str], GoogleCalendarClient]


@dataclass
class ResyncReport:
    connected: bool = True
    todos_synced: int = 0
    habits_synced: int = 0
    failures: int = 0
    errors: List[str] = field(default_factory=list)

    def record_failure(self, label: str, exc: Exception) -> None:
        self.failures += 1
        self.errors.append(f"{label}: {exc}")

    def as_dict(self) -> dict:
        return {
            "connected": self.connected,
            "todos_synced": self.todos_synced,
            "habits_synced": self.habits_synced,
            "failures": self.failures,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class MergedEvent:
    event: RemoteEvent
    calendar_id: str
    synced: bool

    def to_dict(self) -> dict:
        return {
            "id": self.event.id,
            "title": self.event.title,
            "description": self.event.description,
            "start": self.event.start,
            "end": self.event.end,
            "is_all_day": self.event.is_all_day,
            "link": self.event.link,
            "calendar_id": self.calendar_id,
            "synced": self.synced,
        }


@dataclass
class _Connection:
    user_email: str
    client: GoogleCalendarClient
    credentials: CalendarCredentials
    lists: Dict[str, TodoList] = field(default_factory=dict)


class SyncReconciler:
    def __init__(
        self,
        repo: TrackerRepository,
        token_manager: TokenManager,
        settings: Settings,
        client_factory: ClientFactory,
        today: Optional[Callable[[], date]] = None,
    ):
        self._repo = repo
        self._tokens = token_manager
        self._settings = settings
        self._client_factory = client_factory
        self._timezone = settings.calendar_timezone
        self._today = today or (lambda: today_in(self._timezone))
        self._calendar_locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    # ─── Connection ───────────────────────────────────────────

    async def _connect(self, user_email: str) -> Optional[_Connection]:
        credentials = await self._repo.get_credentials(user_email)
        if credentials is None:
            logger.debug("No calendar credentials for %s; skipping sync", user_email)
            return None

        async def _store_refreshed(access_token, expires_at):
            await self._repo.update_access_token(user_email, access_token, expires_at)
            credentials.access_token = access_token
            credentials.expires_at = expires_at

        access_token = await self._tokens.get_valid_access_token(credentials, _store_refreshed)
        if access_token is None:
            logger.warning("Calendar credentials for %s are no longer usable; disconnecting", user_email)
            await self._repo.delete_credentials(user_email)
            await self._repo.set_setting(user_email, DISCONNECTED_KEY, DISCONNECTED_MESSAGE)
            return None
        return _Connection(user_email=user_email, client=self._client_factory(access_token), credentials=credentials)

    async def disconnect(self, user_email: str) -> None:
        await self._repo.delete_credentials(user_email)
        await self._repo.delete_all_bindings(user_email)
        await self._repo.delete_setting(user_email, DISCONNECTED_KEY)
        logger.info("Calendar disconnected for %s", user_email)

    # ─── Calendar resolution ──────────────────────────────────

    def _calendar_lock(self, user_email: str, key: str) -> asyncio.Lock:
        # Concurrent sync tasks for one user must not each create the same calendar.
        return self._calendar_locks.setdefault((user_email, key), asyncio.Lock())

    async def _todos_calendar(self, conn: _Connection) -> str:
        if conn.credentials.calendar_id:
            return conn.credentials.calendar_id
        async with self._calendar_lock(conn.user_email, "todos"):
            stored = await self._repo.get_credentials(conn.user_email)
            calendar_id = stored.calendar_id if stored else None
            if not calendar_id:
                calendar_id = await conn.client.find_or_create_calendar(self._settings.todos_calendar_name)
                await self._repo.set_default_calendar(conn.user_email, calendar_id)
        conn.credentials.calendar_id = calendar_id
        return calendar_id

    async def _habits_calendar(self, conn: _Connection) -> str:
        if self._settings.habits_share_todos_calendar:
            return await self._todos_calendar(conn)
        if conn.credentials.habits_calendar_id:
            return conn.credentials.habits_calendar_id
        async with self._calendar_lock(conn.user_email, "habits"):
            stored = await self._repo.get_credentials(conn.user_email)
            calendar_id = stored.habits_calendar_id if stored else None
            if not calendar_id:
                calendar_id = await conn.client.find_or_create_calendar(self._settings.habits_calendar_name)
                await self._repo.set_default_calendar(conn.user_email, calendar_id, habits=True)
        conn.credentials.habits_calendar_id = calendar_id
        return calendar_id

    async def _lookup_list(self, conn: _Connection, list_id: str) -> Optional[TodoList]:
        if list_id not in conn.lists:
            try:
                conn.lists[list_id] = await self._repo.get_list(conn.user_email, list_id)
            except NotFoundError:
                return None
        return conn.lists[list_id]

    async def _calendar_for_todo(self, conn: _Connection, details: TodoDetails) -> str:
        list_id = details.todo.list_id
        todo_list = await self._lookup_list(conn, list_id) if list_id else None
        if todo_list is None:
            return await self._todos_calendar(conn)
        if todo_list.remote_calendar_id:
            return todo_list.remote_calendar_id
        async with self._calendar_lock(conn.user_email, f"list:{todo_list.id}"):
            try:
                todo_list = await self._repo.get_list(conn.user_email, todo_list.id)
            except NotFoundError:
                conn.lists.pop(list_id, None)
                return await self._todos_calendar(conn)
            calendar_id = todo_list.remote_calendar_id
            if not calendar_id:
                calendar_id = await conn.client.find_or_create_calendar(todo_list.name)
                await self._repo.set_list_calendar(conn.user_email, todo_list.id, calendar_id)
        conn.lists[todo_list.id] = TodoList(
            id=todo_list.id,
            user_email=todo_list.user_email,
            name=todo_list.name,
            remote_calendar_id=calendar_id,
            sort_order=todo_list.sort_order,
        )
        return calendar_id

    # ─── Shared steps ─────────────────────────────────────────

    async def _create_and_bind(self, conn: _Connection, kind: str, entity_id: str, calendar_id: str, payload) -> None:
        event_id = await conn.client.create_event(calendar_id, payload)
        await self._repo.upsert_binding(kind, conn.user_email, entity_id, event_id, calendar_id)
        logger.info("Created %s event %s for %s in %s", kind, event_id, entity_id, calendar_id)

    async def _unbind_remote(self, conn: _Connection, kind: str, entity_id: str, binding: RemoteBinding) -> None:
        calendar_id = binding.remote_calendar_id or conn.credentials.calendar_id or PRIMARY_CALENDAR
        await conn.client.delete_event(calendar_id, binding.remote_event_id)
        await self._repo.delete_binding(kind, entity_id)

    async def _delete_remote(
        self,
        kind: str,
        user_email: str,
        entity_id: str,
        remote_event_id: Optional[str],
        remote_calendar_id: Optional[str],
    ) -> None:
        binding = await self._repo.get_binding(kind, entity_id)
        event_id = binding.remote_event_id if binding else remote_event_id
        if not event_id:
            return
        conn = await self._connect(user_email)
        if conn is None:
            return
        calendar_id = (
            (binding.remote_calendar_id if binding else None)
            or remote_calendar_id
            or conn.credentials.calendar_id
            or PRIMARY_CALENDAR
        )
        await conn.client.delete_event(calendar_id, event_id)
        if binding:
            await self._repo.delete_binding(kind, entity_id)
        logger.info("Deleted %s event %s for %s", kind, event_id, entity_id)

    # ─── Todos ────────────────────────────────────────────────

    async def sync_todo(
        self,
        user_email: str,
        action: str,
        todo_id: str,
        remote_event_id: Optional[str] = None,
        remote_calendar_id: Optional[str] = None,
    ) -> None:
        """Reconcile one todo with its remote event.

        ``remote_event_id``/``remote_calendar_id`` are only consulted for
        ``delete``, where the binding row may already be gone with the todo.
        """
        if action not in TODO_ACTIONS:
            raise ValueError(f"Unknown todo sync action: {action}")
        if action == "delete":
            await self._delete_remote("todo", user_email, todo_id, remote_event_id, remote_calendar_id)
            return

        binding = await self._repo.get_binding("todo", todo_id)
        if action == "complete" and binding is None:
            return
        details = await self._repo.get_todo_details(user_email, todo_id)
        if binding is None and not details.todo.is_schedulable:
            return

        conn = await self._connect(user_email)
        if conn is None:
            return
        if action == "complete":
            await self._complete_todo(conn, details, binding)
        else:
            await self._push_todo(conn, details, binding)

    async def _push_todo(self, conn: _Connection, details: TodoDetails, binding: Optional[RemoteBinding]) -> None:
        todo = details.todo
        if not todo.is_schedulable:
            if binding is not None:
                await self._unbind_remote(conn, "todo", todo.id, binding)
                logger.info("Removed event for unscheduled todo %s", todo.id)
            return

        payload = todo_to_event(details, self._timezone)
        target = await self._calendar_for_todo(conn, details)
        if binding is None:
            await self._create_and_bind(conn, "todo", todo.id, target, payload)
            return

        bound_calendar = binding.remote_calendar_id or target
        if bound_calendar != target:
            await conn.client.delete_event(bound_calendar, binding.remote_event_id)
            await self._repo.delete_binding("todo", todo.id)
            await self._create_and_bind(conn, "todo", todo.id, target, payload)
            return

        try:
            await conn.client.update_event(target, binding.remote_event_id, payload)
        except CalendarApiError as exc:
            if not exc.is_gone:
                raise
            logger.info("Event %s for todo %s vanished remotely; recreating", binding.remote_event_id, todo.id)
            await self._repo.delete_binding("todo", todo.id)
            await self._create_and_bind(conn, "todo", todo.id, target, payload)
            return
        await self._repo.upsert_binding("todo", conn.user_email, todo.id, binding.remote_event_id, target)

    async def _complete_todo(self, conn: _Connection, details: TodoDetails, binding: RemoteBinding) -> None:
        todo = details.todo
        if not todo.is_schedulable:
            await self._unbind_remote(conn, "todo", todo.id, binding)
            return
        calendar_id = binding.remote_calendar_id or await self._calendar_for_todo(conn, details)
        payload = todo_to_event(details, self._timezone, completed=True)
        try:
            await conn.client.update_event(calendar_id, binding.remote_event_id, payload)
        except CalendarApiError as exc:
            if not exc.is_gone:
                raise
            logger.info("Completed todo %s has no remote event left; dropping binding", todo.id)
            await self._repo.delete_binding("todo", todo.id)
            return
        await self._repo.upsert_binding("todo", conn.user_email, todo.id, binding.remote_event_id, calendar_id)

    # ─── Habits ───────────────────────────────────────────────

    async def sync_habit(
        self,
        user_email: str,
        action: str,
        habit_id: str,
        remote_event_id: Optional[str] = None,
        remote_calendar_id: Optional[str] = None,
    ) -> None:
        if action not in HABIT_ACTIONS:
            raise ValueError(f"Unknown habit sync action: {action}")
        if action == "delete":
            await self._delete_remote("habit", user_email, habit_id, remote_event_id, remote_calendar_id)
            return

        binding = await self._repo.get_binding("habit", habit_id)
        habit = await self._repo.get_habit(user_email, habit_id)
        conn = await self._connect(user_email)
        if conn is None:
            return
        await self._push_habit(conn, habit, binding)

    async def _push_habit(self, conn: _Connection, habit: Habit, binding: Optional[RemoteBinding]) -> None:
        # Recurring events are replaced wholesale so the series restarts from today.
        payload = habit_to_event(habit, self._timezone, self._today())
        target = await self._habits_calendar(conn)
        if binding is not None:
            await self._unbind_remote(conn, "habit", habit.id, binding)
        await self._create_and_bind(conn, "habit", habit.id, target, payload)

    # ─── Lists ────────────────────────────────────────────────

    async def retire_list_calendar(self, user_email: str, calendar_id: Optional[str], todo_ids: List[str]) -> None:
        """Delete a removed list's calendar, then move its todos' events to the Todos calendar."""
        if not calendar_id and not todo_ids:
            return
        conn = await self._connect(user_email)
        if conn is None:
            return
        if calendar_id:
            await conn.client.delete_calendar(calendar_id)
            logger.info("Deleted list calendar %s for %s", calendar_id, user_email)
        for todo_id in todo_ids:
            binding = await self._repo.get_binding("todo", todo_id)
            try:
                details = await self._repo.get_todo_details(user_email, todo_id)
            except NotFoundError:
                continue
            await self._push_todo(conn, details, binding)

    # ─── Bulk ─────────────────────────────────────────────────

    async def full_resync(self, user_email: str) -> ResyncReport:
        """Push every schedulable or bound todo and every habit.

        Remote failures are counted per entity and never stop the batch.
        """
        conn = await self._connect(user_email)
        if conn is None:
            return ResyncReport(connected=False)

        report = ResyncReport()
        todos = await self._repo.list_todos_for_sync(user_email)
        todo_ids = [todo.id for todo in todos]
        todo_bindings = await self._repo.list_bindings("todo", user_email)
        subtasks = await self._repo.list_subtasks(user_email, todo_ids)
        tag_names = await self._repo.tag_names_for(user_email, todo_ids)
        conn.lists.update({item.id: item for item in await self._repo.list_lists(user_email)})

        for todo in todos:
            todo_list = conn.lists.get(todo.list_id) if todo.list_id else None
            details = TodoDetails(
                todo=todo,
                subtasks=tuple(subtasks.get(todo.id, [])),
                tag_names=tuple(tag_names.get(todo.id, [])),
                list_name=todo_list.name if todo_list else None,
            )
            try:
                await self._push_todo(conn, details, todo_bindings.get(todo.id))
                report.todos_synced += 1
            except (CalendarApiError, httpx.HTTPError) as exc:
                logger.warning("Resync of todo %s failed: %s", todo.id, exc)
                report.record_failure(f"todo {todo.id}", exc)

        habit_bindings = await self._repo.list_bindings("habit", user_email)
        for habit in await self._repo.list_habits(user_email):
            try:
                await self._push_habit(conn, habit, habit_bindings.get(habit.id))
                report.habits_synced += 1
            except (CalendarApiError, httpx.HTTPError) as exc:
                logger.warning("Resync of habit %s failed: %s", habit.id, exc)
                report.record_failure(f"habit {habit.id}", exc)

        logger.info(
            "Resync for %s: %s todos, %s habits, %s failures",
            user_email,
            report.todos_synced,
            report.habits_synced,
            report.failures,
        )
        return report

    # ─── Reading ──────────────────────────────────────────────

    async def merged_events(self, user_email: str, start: date, end: date) -> Optional[List[MergedEvent]]:
        """Events from the primary and Todos calendars, de-duplicated and sorted.

        Returns ``None`` when the user has no usable calendar connection.
        """
        conn = await self._connect(user_email)
        if conn is None:
            return None
        calendar_ids = [PRIMARY_CALENDAR]
        if conn.credentials.calendar_id and conn.credentials.calendar_id != PRIMARY_CALENDAR:
            calendar_ids.append(conn.credentials.calendar_id)

        synced_ids = await self._repo.synced_event_ids(user_email)
        seen = set()
        merged: List[MergedEvent] = []
        for calendar_id in calendar_ids:
            for event in await conn.client.list_events(calendar_id, start, end, self._timezone):
                if event.cancelled or event.id in seen:
                    continue
                seen.add(event.id)
                merged.append(MergedEvent(event=event, calendar_id=calendar_id, synced=event.id in synced_ids))

        def _sort_key(item: MergedEvent):
            start_value = item.event.start or ""
            return (start_value[:10], 0 if item.event.is_all_day else 1, start_value)

        merged.sort(key=_sort_key)
        return merged
