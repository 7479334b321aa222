from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Dict, Iterable, List, Optional, Set
from uuid import uuid4
from zoneinfo import ZoneInfo

from sqlalchemy import bindparam, text as sql_text
from sqlalchemy.ext.asyncio import async_sessionmaker

from tracker.db_init import (
    COMPLETIONS_TABLE,
    CREDENTIALS_TABLE,
    HABIT_SYNC_TABLE,
    HABITS_TABLE,
    LISTS_TABLE,
    SETTINGS_TABLE,
    SUBTASKS_TABLE,
    TAGS_TABLE,
    TODO_SYNC_TABLE,
    TODO_TAGS_TABLE,
    TODOS_TABLE,
    SchemaCapabilities,
)
from tracker.errors import NotFoundError, SchemaCapabilityError
from tracker.models import (
    CalendarCredentials,
    Habit,
    Priority,
    RemoteBinding,
    Schedule,
    Subtask,
    Tag,
    Todo,
    TodoDetails,
    TodoList,
)
from tracker.services.token_manager import TokenCipher

BINDING_TABLES = {"todo": TODO_SYNC_TABLE, "habit": HABIT_SYNC_TABLE}
OAUTH_STATE_SCOPE = "oauth_state"

TODO_BASE_COLUMNS = [
    "id",
    "user_email",
    "title",
    "completed",
    "due_date",
    "priority",
    "list_id",
    "sort_order",
]


def _new_id() -> str:
    return uuid4().hex


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_datetime(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_date(value) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _parse_time(value) -> Optional[time]:
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value).strip()[:5])


def _format_time(value: Optional[time]) -> Optional[str]:
    return value.strftime("%H:%M") if value is not None else None


def _format_days(days: Iterable[int]) -> str:
    return ",".join(str(day) for day in sorted(days))


def _parse_days(raw) -> List[int]:
    return [int(item) for item in str(raw or "").split(",") if str(item).strip() != ""]


def _normalize_priority(value) -> Priority:
    try:
        return Priority(str(value).lower())
    except ValueError:
        return Priority.NONE


class TrackerRepository:
    """Row-level access for habits, todos, lists, tags, credentials and sync bindings."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        capabilities: SchemaCapabilities,
        cipher: TokenCipher,
        timezone_name: str = "UTC",
    ):
        self._sessions = session_factory
        self.capabilities = capabilities
        self._cipher = cipher
        self._tzinfo = ZoneInfo(timezone_name)

    # ─── Settings ─────────────────────────────────────────────

    async def get_setting(self, user_email: str, key: str) -> str | None:
        async with self._sessions() as session:
            row = (await session.execute(
                sql_text(f"SELECT value FROM {SETTINGS_TABLE} WHERE key = :key"),
                {"key": f"{user_email}::{key}"},
            )).fetchone()
        return row[0] if row else None

    async def set_setting(self, user_email: str, key: str, value: str) -> None:
        async with self._sessions() as session:
            await session.execute(
                sql_text(
                    f"INSERT INTO {SETTINGS_TABLE} (key, value) VALUES (:key, :value) "
                    "ON CONFLICT(key) DO UPDATE SET value=EXCLUDED.value"
                ),
                {"key": f"{user_email}::{key}", "value": value},
            )
            await session.commit()

    async def delete_setting(self, user_email: str, key: str) -> None:
        async with self._sessions() as session:
            await session.execute(
                sql_text(f"DELETE FROM {SETTINGS_TABLE} WHERE key = :key"),
                {"key": f"{user_email}::{key}"},
            )
            await session.commit()

    async def save_oauth_state(self, state: str, user_email: str) -> None:
        await self.set_setting(OAUTH_STATE_SCOPE, state, user_email)

    async def consume_oauth_state(self, state: str) -> str | None:
        """Return the email an OAuth state was issued to; each state works once."""
        key = f"{OAUTH_STATE_SCOPE}::{state}"
        async with self._sessions() as session:
            row = (await session.execute(
                sql_text(f"SELECT value FROM {SETTINGS_TABLE} WHERE key = :key"),
                {"key": key},
            )).fetchone()
            if row is None:
                return None
            result = await session.execute(
                sql_text(f"DELETE FROM {SETTINGS_TABLE} WHERE key = :key"),
                {"key": key},
            )
            await session.commit()
        return row[0] if result.rowcount == 1 else None

    # ─── Habits ───────────────────────────────────────────────

    def _habit_from_row(self, row) -> Habit:
        created_at = _parse_datetime(row["created_at"]).astimezone(self._tzinfo)
        return Habit(
            id=row["id"],
            user_email=row["user_email"],
            title=row["title"],
            schedule=Schedule.from_parts(
                row["schedule_type"],
                _parse_days(row["schedule_days"]),
                row["schedule_interval"],
            ),
            created_at=created_at,
            sort_order=int(row["sort_order"] or 0),
        )

    async def list_habits(self, user_email: str) -> list[Habit]:
        async with self._sessions() as session:
            rows = (await session.execute(
                sql_text(
                    f"""
                    SELECT id, user_email, title, schedule_type, schedule_days, schedule_interval,
                           sort_order, created_at
                    FROM {HABITS_TABLE}
                    WHERE user_email = :user_email
                    ORDER BY sort_order, created_at
                    """
                ),
                {"user_email": user_email},
            )).mappings().all()
        return [self._habit_from_row(row) for row in rows]

    async def get_habit(self, user_email: str, habit_id: str) -> Habit:
        async with self._sessions() as session:
            row = (await session.execute(
                sql_text(
                    f"""
                    SELECT id, user_email, title, schedule_type, schedule_days, schedule_interval,
                           sort_order, created_at
                    FROM {HABITS_TABLE}
                    WHERE id = :id AND user_email = :user_email
                    """
                ),
                {"id": habit_id, "user_email": user_email},
            )).mappings().fetchone()
        if not row:
            raise NotFoundError(f"Habit {habit_id} not found")
        return self._habit_from_row(row)

    async def create_habit(self, user_email: str, title: str, schedule: Schedule) -> Habit:
        now = _now_iso()
        async with self._sessions() as session:
            max_order = (await session.execute(
                sql_text(f"SELECT MAX(sort_order) FROM {HABITS_TABLE} WHERE user_email = :user_email"),
                {"user_email": user_email},
            )).scalar_one_or_none()
            record = {
                "id": _new_id(),
                "user_email": user_email,
                "title": title,
                "schedule_type": schedule.kind.value,
                "schedule_days": _format_days(schedule.days),
                "schedule_interval": schedule.interval,
                "sort_order": int(max_order or 0) + 1,
                "created_at": now,
                "updated_at": now,
            }
            await session.execute(
                sql_text(
                    f"""
                    INSERT INTO {HABITS_TABLE}
                    (id, user_email, title, schedule_type, schedule_days, schedule_interval,
                     sort_order, created_at, updated_at)
                    VALUES
                    (:id, :user_email, :title, :schedule_type, :schedule_days, :schedule_interval,
                     :sort_order, :created_at, :updated_at)
                    """
                ),
                record,
            )
            await session.commit()
        return self._habit_from_row(record)

    async def save_habit(self, habit: Habit) -> None:
        async with self._sessions() as session:
            result = await session.execute(
                sql_text(
                    f"""
                    UPDATE {HABITS_TABLE}
                    SET title = :title,
                        schedule_type = :schedule_type,
                        schedule_days = :schedule_days,
                        schedule_interval = :schedule_interval,
                        updated_at = :updated_at
                    WHERE id = :id AND user_email = :user_email
                    """
                ),
                {
                    "id": habit.id,
                    "user_email": habit.user_email,
                    "title": habit.title,
                    "schedule_type": habit.schedule.kind.value,
                    "schedule_days": _format_days(habit.schedule.days),
                    "schedule_interval": habit.schedule.interval,
                    "updated_at": _now_iso(),
                },
            )
            await session.commit()
        if result.rowcount == 0:
            raise NotFoundError(f"Habit {habit.id} not found")

    async def delete_habit(self, user_email: str, habit_id: str) -> None:
        params = {"user_email": user_email, "habit_id": habit_id}
        async with self._sessions() as session:
            await session.execute(
                sql_text(f"DELETE FROM {COMPLETIONS_TABLE} WHERE user_email = :user_email AND habit_id = :habit_id"),
                params,
            )
            await session.execute(
                sql_text(f"DELETE FROM {HABIT_SYNC_TABLE} WHERE user_email = :user_email AND entity_id = :habit_id"),
                params,
            )
            await session.execute(
                sql_text(f"DELETE FROM {HABITS_TABLE} WHERE user_email = :user_email AND id = :habit_id"),
                params,
            )
            await session.commit()

    async def reorder_habits(self, user_email: str, habit_ids: List[str]) -> None:
        async with self._sessions() as session:
            for index, habit_id in enumerate(habit_ids):
                await session.execute(
                    sql_text(
                        f"UPDATE {HABITS_TABLE} SET sort_order = :sort_order "
                        "WHERE id = :id AND user_email = :user_email"
                    ),
                    {"sort_order": index, "id": habit_id, "user_email": user_email},
                )
            await session.commit()

    async def list_completions(self, user_email: str, since: date) -> Dict[str, Set[date]]:
        async with self._sessions() as session:
            rows = (await session.execute(
                sql_text(
                    f"""
                    SELECT habit_id, completed_date
                    FROM {COMPLETIONS_TABLE}
                    WHERE user_email = :user_email AND completed_date >= :since
                    """
                ),
                {"user_email": user_email, "since": since.isoformat()},
            )).mappings().all()
        payload: Dict[str, Set[date]] = {}
        for row in rows:
            payload.setdefault(row["habit_id"], set()).add(_parse_date(row["completed_date"]))
        return payload

    async def toggle_completion(self, user_email: str, habit_id: str, day: date) -> bool:
        """Delete the (habit, day) completion if present, insert it otherwise.

        Returns whether the habit is completed for ``day`` afterwards.
        """
        params = {"user_email": user_email, "habit_id": habit_id, "completed_date": day.isoformat()}
        async with self._sessions() as session:
            existing = (await session.execute(
                sql_text(
                    f"""
                    SELECT id FROM {COMPLETIONS_TABLE}
                    WHERE user_email = :user_email AND habit_id = :habit_id AND completed_date = :completed_date
                    """
                ),
                params,
            )).fetchone()
            if existing:
                await session.execute(
                    sql_text(f"DELETE FROM {COMPLETIONS_TABLE} WHERE id = :id"),
                    {"id": existing[0]},
                )
            else:
                await session.execute(
                    sql_text(
                        f"""
                        INSERT INTO {COMPLETIONS_TABLE} (id, habit_id, user_email, completed_date, created_at)
                        VALUES (:id, :habit_id, :user_email, :completed_date, :created_at)
                        ON CONFLICT(habit_id, completed_date) DO NOTHING
                        """
                    ),
                    {**params, "id": _new_id(), "created_at": _now_iso()},
                )
            await session.commit()
        return not existing

    # ─── Todos ────────────────────────────────────────────────

    def _todo_columns(self) -> List[str]:
        columns = list(TODO_BASE_COLUMNS)
        if self.capabilities.todo_time_of_day:
            columns += ["start_time", "end_time"]
        if self.capabilities.todo_notes:
            columns.append("notes")
        return columns

    def _todo_params(self, todo: Todo) -> dict:
        if not self.capabilities.todo_time_of_day and (todo.start_time or todo.end_time):
            raise SchemaCapabilityError("This database does not store todo start/end times")
        if not self.capabilities.todo_notes and todo.notes:
            raise SchemaCapabilityError("This database does not store todo notes")
        params = {
            "id": todo.id,
            "user_email": todo.user_email,
            "title": todo.title,
            "completed": int(bool(todo.completed)),
            "due_date": todo.due_date.isoformat() if todo.due_date else None,
            "priority": todo.priority.value,
            "list_id": todo.list_id,
            "sort_order": todo.sort_order,
        }
        if self.capabilities.todo_time_of_day:
            params["start_time"] = _format_time(todo.start_time)
            params["end_time"] = _format_time(todo.end_time)
        if self.capabilities.todo_notes:
            params["notes"] = todo.notes
        return params

    @staticmethod
    def _todo_from_row(row) -> Todo:
        return Todo(
            id=row["id"],
            user_email=row["user_email"],
            title=row["title"],
            completed=bool(row["completed"]),
            due_date=_parse_date(row["due_date"]),
            start_time=_parse_time(row.get("start_time")),
            end_time=_parse_time(row.get("end_time")),
            priority=_normalize_priority(row["priority"]),
            notes=row.get("notes"),
            list_id=row["list_id"],
            sort_order=int(row["sort_order"] or 0),
        )

    async def list_todos(self, user_email: str) -> list[Todo]:
        async with self._sessions() as session:
            rows = (await session.execute(
                sql_text(
                    f"""
                    SELECT {', '.join(self._todo_columns())}
                    FROM {TODOS_TABLE}
                    WHERE user_email = :user_email
                    ORDER BY sort_order, created_at
                    """
                ),
                {"user_email": user_email},
            )).mappings().all()
        return [self._todo_from_row(row) for row in rows]

    async def list_todos_for_sync(self, user_email: str) -> list[Todo]:
        """Todos that have a due date or still carry a calendar binding."""
        async with self._sessions() as session:
            rows = (await session.execute(
                sql_text(
                    f"""
                    SELECT {', '.join('t.' + column for column in self._todo_columns())}
                    FROM {TODOS_TABLE} t
                    LEFT JOIN {TODO_SYNC_TABLE} s ON s.entity_id = t.id
                    WHERE t.user_email = :user_email
                      AND (t.due_date IS NOT NULL OR s.entity_id IS NOT NULL)
                    ORDER BY t.sort_order, t.created_at
                    """
                ),
                {"user_email": user_email},
            )).mappings().all()
        return [self._todo_from_row(row) for row in rows]

    async def get_todo(self, user_email: str, todo_id: str) -> Todo:
        async with self._sessions() as session:
            row = (await session.execute(
                sql_text(
                    f"""
                    SELECT {', '.join(self._todo_columns())}
                    FROM {TODOS_TABLE}
                    WHERE id = :id AND user_email = :user_email
                    """
                ),
                {"id": todo_id, "user_email": user_email},
            )).mappings().fetchone()
        if not row:
            raise NotFoundError(f"Todo {todo_id} not found")
        return self._todo_from_row(row)

    async def create_todo(self, todo: Todo) -> Todo:
        now = _now_iso()
        async with self._sessions() as session:
            max_order = (await session.execute(
                sql_text(f"SELECT MAX(sort_order) FROM {TODOS_TABLE} WHERE user_email = :user_email"),
                {"user_email": todo.user_email},
            )).scalar_one_or_none()
            record = Todo(**{**todo.__dict__, "id": todo.id or _new_id(), "sort_order": int(max_order or 0) + 1})
            params = self._todo_params(record)
            params.update({"created_at": now, "updated_at": now})
            columns = list(params.keys())
            await session.execute(
                sql_text(
                    f"INSERT INTO {TODOS_TABLE} ({', '.join(columns)}) "
                    f"VALUES ({', '.join(':' + column for column in columns)})"
                ),
                params,
            )
            await session.commit()
        return record

    async def save_todo(self, todo: Todo) -> None:
        params = self._todo_params(todo)
        params["updated_at"] = _now_iso()
        assignments = ", ".join(
            f"{column} = :{column}" for column in params if column not in {"id", "user_email", "sort_order"}
        )
        async with self._sessions() as session:
            result = await session.execute(
                sql_text(f"UPDATE {TODOS_TABLE} SET {assignments} WHERE id = :id AND user_email = :user_email"),
                params,
            )
            await session.commit()
        if result.rowcount == 0:
            raise NotFoundError(f"Todo {todo.id} not found")

    async def delete_todo(self, user_email: str, todo_id: str) -> None:
        params = {"user_email": user_email, "todo_id": todo_id}
        async with self._sessions() as session:
            await session.execute(
                sql_text(f"DELETE FROM {SUBTASKS_TABLE} WHERE user_email = :user_email AND todo_id = :todo_id"),
                params,
            )
            await session.execute(sql_text(f"DELETE FROM {TODO_TAGS_TABLE} WHERE todo_id = :todo_id"), params)
            await session.execute(
                sql_text(f"DELETE FROM {TODO_SYNC_TABLE} WHERE user_email = :user_email AND entity_id = :todo_id"),
                params,
            )
            await session.execute(
                sql_text(f"DELETE FROM {TODOS_TABLE} WHERE user_email = :user_email AND id = :todo_id"),
                params,
            )
            await session.commit()

    async def reorder_todos(self, user_email: str, todo_ids: List[str]) -> None:
        async with self._sessions() as session:
            for index, todo_id in enumerate(todo_ids):
                await session.execute(
                    sql_text(
                        f"UPDATE {TODOS_TABLE} SET sort_order = :sort_order "
                        "WHERE id = :id AND user_email = :user_email"
                    ),
                    {"sort_order": index, "id": todo_id, "user_email": user_email},
                )
            await session.commit()

    # ─── Subtasks ─────────────────────────────────────────────

    async def list_subtasks(self, user_email: str, todo_ids: List[str]) -> Dict[str, List[Subtask]]:
        if not todo_ids:
            return {}
        stmt = sql_text(
            f"""
            SELECT id, todo_id, title, completed, sort_order
            FROM {SUBTASKS_TABLE}
            WHERE user_email = :user_email AND todo_id IN :todo_ids
            ORDER BY sort_order ASC, created_at ASC
            """
        ).bindparams(bindparam("todo_ids", expanding=True))
        async with self._sessions() as session:
            rows = (await session.execute(stmt, {"user_email": user_email, "todo_ids": todo_ids})).mappings().all()
        payload: Dict[str, List[Subtask]] = {todo_id: [] for todo_id in todo_ids}
        for row in rows:
            payload.setdefault(row["todo_id"], []).append(
                Subtask(
                    id=row["id"],
                    todo_id=row["todo_id"],
                    title=row["title"],
                    completed=bool(row["completed"]),
                    sort_order=int(row["sort_order"] or 0),
                )
            )
        return payload

    async def add_subtask(self, user_email: str, todo_id: str, title: str) -> Subtask:
        clean_title = (title or "").strip()
        if not clean_title:
            raise ValueError("Subtask title cannot be empty")
        async with self._sessions() as session:
            max_order = (await session.execute(
                sql_text(f"SELECT MAX(sort_order) FROM {SUBTASKS_TABLE} WHERE todo_id = :todo_id"),
                {"todo_id": todo_id},
            )).scalar_one_or_none()
            record = Subtask(id=_new_id(), todo_id=todo_id, title=clean_title, sort_order=int(max_order or 0) + 1)
            await session.execute(
                sql_text(
                    f"""
                    INSERT INTO {SUBTASKS_TABLE} (id, todo_id, user_email, title, completed, sort_order, created_at)
                    VALUES (:id, :todo_id, :user_email, :title, 0, :sort_order, :created_at)
                    """
                ),
                {
                    "id": record.id,
                    "todo_id": todo_id,
                    "user_email": user_email,
                    "title": record.title,
                    "sort_order": record.sort_order,
                    "created_at": _now_iso(),
                },
            )
            await session.commit()
        return record

    async def get_subtask(self, user_email: str, subtask_id: str) -> Subtask:
        async with self._sessions() as session:
            row = (await session.execute(
                sql_text(
                    f"SELECT id, todo_id, title, completed, sort_order FROM {SUBTASKS_TABLE} "
                    "WHERE id = :id AND user_email = :user_email"
                ),
                {"id": subtask_id, "user_email": user_email},
            )).mappings().fetchone()
        if not row:
            raise NotFoundError(f"Subtask {subtask_id} not found")
        return Subtask(
            id=row["id"],
            todo_id=row["todo_id"],
            title=row["title"],
            completed=bool(row["completed"]),
            sort_order=int(row["sort_order"] or 0),
        )

    async def save_subtask(self, user_email: str, subtask: Subtask) -> None:
        async with self._sessions() as session:
            await session.execute(
                sql_text(
                    f"UPDATE {SUBTASKS_TABLE} SET title = :title, completed = :completed "
                    "WHERE id = :id AND user_email = :user_email"
                ),
                {
                    "id": subtask.id,
                    "user_email": user_email,
                    "title": subtask.title,
                    "completed": int(bool(subtask.completed)),
                },
            )
            await session.commit()

    async def delete_subtask(self, user_email: str, subtask_id: str) -> None:
        async with self._sessions() as session:
            await session.execute(
                sql_text(f"DELETE FROM {SUBTASKS_TABLE} WHERE id = :id AND user_email = :user_email"),
                {"id": subtask_id, "user_email": user_email},
            )
            await session.commit()

    # ─── Lists & tags ─────────────────────────────────────────

    @staticmethod
    def _list_from_row(row) -> TodoList:
        return TodoList(
            id=row["id"],
            user_email=row["user_email"],
            name=row["name"],
            remote_calendar_id=row["remote_calendar_id"],
            sort_order=int(row["sort_order"] or 0),
        )

    async def list_lists(self, user_email: str) -> list[TodoList]:
        async with self._sessions() as session:
            rows = (await session.execute(
                sql_text(
                    f"SELECT id, user_email, name, remote_calendar_id, sort_order FROM {LISTS_TABLE} "
                    "WHERE user_email = :user_email ORDER BY sort_order, created_at"
                ),
                {"user_email": user_email},
            )).mappings().all()
        return [self._list_from_row(row) for row in rows]

    async def get_list(self, user_email: str, list_id: str) -> TodoList:
        async with self._sessions() as session:
            row = (await session.execute(
                sql_text(
                    f"SELECT id, user_email, name, remote_calendar_id, sort_order FROM {LISTS_TABLE} "
                    "WHERE id = :id AND user_email = :user_email"
                ),
                {"id": list_id, "user_email": user_email},
            )).mappings().fetchone()
        if not row:
            raise NotFoundError(f"List {list_id} not found")
        return self._list_from_row(row)

    async def create_list(self, user_email: str, name: str) -> TodoList:
        name = " ".join(str(name or "").split()).strip()[:60]
        if not name:
            raise ValueError("List name cannot be empty")
        async with self._sessions() as session:
            max_order = (await session.execute(
                sql_text(f"SELECT MAX(sort_order) FROM {LISTS_TABLE} WHERE user_email = :user_email"),
                {"user_email": user_email},
            )).scalar_one_or_none()
            record = TodoList(id=_new_id(), user_email=user_email, name=name, sort_order=int(max_order or 0) + 1)
            await session.execute(
                sql_text(
                    f"""
                    INSERT INTO {LISTS_TABLE} (id, user_email, name, remote_calendar_id, sort_order, created_at)
                    VALUES (:id, :user_email, :name, NULL, :sort_order, :created_at)
                    """
                ),
                {
                    "id": record.id,
                    "user_email": user_email,
                    "name": name,
                    "sort_order": record.sort_order,
                    "created_at": _now_iso(),
                },
            )
            await session.commit()
        return record

    async def set_list_calendar(self, user_email: str, list_id: str, calendar_id: str | None) -> None:
        async with self._sessions() as session:
            await session.execute(
                sql_text(
                    f"UPDATE {LISTS_TABLE} SET remote_calendar_id = :calendar_id "
                    "WHERE id = :id AND user_email = :user_email"
                ),
                {"calendar_id": calendar_id, "id": list_id, "user_email": user_email},
            )
            await session.commit()

    async def delete_list(self, user_email: str, list_id: str) -> None:
        params = {"user_email": user_email, "list_id": list_id}
        async with self._sessions() as session:
            await session.execute(
                sql_text(f"UPDATE {TODOS_TABLE} SET list_id = NULL WHERE user_email = :user_email AND list_id = :list_id"),
                params,
            )
            await session.execute(
                sql_text(f"DELETE FROM {LISTS_TABLE} WHERE user_email = :user_email AND id = :list_id"),
                params,
            )
            await session.commit()

    async def list_tags(self, user_email: str) -> list[Tag]:
        async with self._sessions() as session:
            rows = (await session.execute(
                sql_text(f"SELECT id, user_email, name FROM {TAGS_TABLE} WHERE user_email = :user_email ORDER BY name"),
                {"user_email": user_email},
            )).mappings().all()
        return [Tag(id=row["id"], user_email=row["user_email"], name=row["name"]) for row in rows]

    async def create_tag(self, user_email: str, name: str) -> Tag:
        name = " ".join(str(name or "").split()).strip()[:40]
        if not name:
            raise ValueError("Tag name cannot be empty")
        if any(tag.name.lower() == name.lower() for tag in await self.list_tags(user_email)):
            raise ValueError("Tag already exists")
        record = Tag(id=_new_id(), user_email=user_email, name=name)
        async with self._sessions() as session:
            await session.execute(
                sql_text(
                    f"INSERT INTO {TAGS_TABLE} (id, user_email, name, created_at) "
                    "VALUES (:id, :user_email, :name, :created_at)"
                ),
                {"id": record.id, "user_email": user_email, "name": name, "created_at": _now_iso()},
            )
            await session.commit()
        return record

    async def delete_tag(self, user_email: str, tag_id: str) -> None:
        async with self._sessions() as session:
            await session.execute(sql_text(f"DELETE FROM {TODO_TAGS_TABLE} WHERE tag_id = :tag_id"), {"tag_id": tag_id})
            await session.execute(
                sql_text(f"DELETE FROM {TAGS_TABLE} WHERE id = :tag_id AND user_email = :user_email"),
                {"tag_id": tag_id, "user_email": user_email},
            )
            await session.commit()

    async def set_todo_tags(self, user_email: str, todo_id: str, tag_ids: List[str]) -> None:
        known = {tag.id for tag in await self.list_tags(user_email)}
        unknown = [tag_id for tag_id in tag_ids if tag_id not in known]
        if unknown:
            raise NotFoundError(f"Unknown tags: {', '.join(unknown)}")
        async with self._sessions() as session:
            await session.execute(sql_text(f"DELETE FROM {TODO_TAGS_TABLE} WHERE todo_id = :todo_id"), {"todo_id": todo_id})
            for tag_id in dict.fromkeys(tag_ids):
                await session.execute(
                    sql_text(f"INSERT INTO {TODO_TAGS_TABLE} (todo_id, tag_id) VALUES (:todo_id, :tag_id)"),
                    {"todo_id": todo_id, "tag_id": tag_id},
                )
            await session.commit()

    async def tag_names_for(self, user_email: str, todo_ids: List[str]) -> Dict[str, List[str]]:
        if not todo_ids:
            return {}
        stmt = sql_text(
            f"""
            SELECT tt.todo_id, t.name
            FROM {TODO_TAGS_TABLE} tt
            JOIN {TAGS_TABLE} t ON t.id = tt.tag_id
            WHERE t.user_email = :user_email AND tt.todo_id IN :todo_ids
            ORDER BY t.name
            """
        ).bindparams(bindparam("todo_ids", expanding=True))
        async with self._sessions() as session:
            rows = (await session.execute(stmt, {"user_email": user_email, "todo_ids": todo_ids})).mappings().all()
        payload: Dict[str, List[str]] = {}
        for row in rows:
            payload.setdefault(row["todo_id"], []).append(row["name"])
        return payload

    async def todo_ids_with_tag(self, user_email: str, tag_id: str) -> list[str]:
        async with self._sessions() as session:
            rows = (await session.execute(
                sql_text(
                    f"""
                    SELECT tt.todo_id
                    FROM {TODO_TAGS_TABLE} tt
                    JOIN {TODOS_TABLE} t ON t.id = tt.todo_id
                    WHERE t.user_email = :user_email AND tt.tag_id = :tag_id
                    """
                ),
                {"user_email": user_email, "tag_id": tag_id},
            )).fetchall()
        return [row[0] for row in rows]

    async def get_todo_details(self, user_email: str, todo_id: str) -> TodoDetails:
        todo = await self.get_todo(user_email, todo_id)
        subtasks = await self.list_subtasks(user_email, [todo_id])
        tag_names = await self.tag_names_for(user_email, [todo_id])
        list_name = None
        if todo.list_id:
            try:
                list_name = (await self.get_list(user_email, todo.list_id)).name
            except NotFoundError:
                list_name = None
        return TodoDetails(
            todo=todo,
            subtasks=tuple(subtasks.get(todo_id, [])),
            tag_names=tuple(tag_names.get(todo_id, [])),
            list_name=list_name,
        )

    # ─── Calendar credentials ─────────────────────────────────

    async def get_credentials(self, user_email: str) -> CalendarCredentials | None:
        async with self._sessions() as session:
            row = (await session.execute(
                sql_text(
                    f"""
                    SELECT user_email, refresh_token_enc, access_token, expires_at, scope,
                           calendar_id, habits_calendar_id
                    FROM {CREDENTIALS_TABLE}
                    WHERE user_email = :user_email
                    """
                ),
                {"user_email": user_email},
            )).mappings().fetchone()
        if not row:
            return None
        refresh_enc = row["refresh_token_enc"]
        return CalendarCredentials(
            user_email=row["user_email"],
            access_token=row["access_token"],
            refresh_token=self._cipher.decrypt(refresh_enc) if refresh_enc else None,
            expires_at=_parse_datetime(row["expires_at"]),
            scope=row["scope"],
            calendar_id=row["calendar_id"],
            habits_calendar_id=row["habits_calendar_id"],
        )

    async def store_credentials(
        self,
        user_email: str,
        refresh_token: str | None,
        access_token: str | None = None,
        expires_at: datetime | None = None,
        scope: str | None = None,
    ) -> None:
        async with self._sessions() as session:
            await session.execute(
                sql_text(
                    f"""
                    INSERT INTO {CREDENTIALS_TABLE}
                        (user_email, refresh_token_enc, access_token, expires_at, scope, updated_at)
                    VALUES
                        (:user_email, :refresh_token_enc, :access_token, :expires_at, :scope, :updated_at)
                    ON CONFLICT(user_email) DO UPDATE SET
                        refresh_token_enc = COALESCE(EXCLUDED.refresh_token_enc, {CREDENTIALS_TABLE}.refresh_token_enc),
                        access_token = COALESCE(EXCLUDED.access_token, {CREDENTIALS_TABLE}.access_token),
                        expires_at = COALESCE(EXCLUDED.expires_at, {CREDENTIALS_TABLE}.expires_at),
                        scope = COALESCE(EXCLUDED.scope, {CREDENTIALS_TABLE}.scope),
                        updated_at = EXCLUDED.updated_at
                    """
                ),
                {
                    "user_email": user_email,
                    "refresh_token_enc": self._cipher.encrypt(refresh_token) if refresh_token else None,
                    "access_token": access_token,
                    "expires_at": expires_at.isoformat() if expires_at else None,
                    "scope": scope,
                    "updated_at": _now_iso(),
                },
            )
            await session.commit()

    async def update_access_token(self, user_email: str, access_token: str, expires_at: datetime) -> None:
        async with self._sessions() as session:
            await session.execute(
                sql_text(
                    f"""
                    UPDATE {CREDENTIALS_TABLE}
                    SET access_token = :access_token, expires_at = :expires_at, updated_at = :updated_at
                    WHERE user_email = :user_email
                    """
                ),
                {
                    "user_email": user_email,
                    "access_token": access_token,
                    "expires_at": expires_at.isoformat(),
                    "updated_at": _now_iso(),
                },
            )
            await session.commit()

    async def set_default_calendar(self, user_email: str, calendar_id: str, habits: bool = False) -> None:
        column = "habits_calendar_id" if habits else "calendar_id"
        async with self._sessions() as session:
            await session.execute(
                sql_text(f"UPDATE {CREDENTIALS_TABLE} SET {column} = :calendar_id WHERE user_email = :user_email"),
                {"calendar_id": calendar_id, "user_email": user_email},
            )
            await session.commit()

    async def delete_credentials(self, user_email: str) -> None:
        async with self._sessions() as session:
            await session.execute(
                sql_text(f"DELETE FROM {CREDENTIALS_TABLE} WHERE user_email = :user_email"),
                {"user_email": user_email},
            )
            await session.commit()

    async def list_connected_users(self) -> list[str]:
        async with self._sessions() as session:
            rows = (await session.execute(
                sql_text(f"SELECT user_email FROM {CREDENTIALS_TABLE} ORDER BY user_email")
            )).fetchall()
        return [row[0] for row in rows]

    # ─── Remote bindings ──────────────────────────────────────

    @staticmethod
    def _binding_from_row(row) -> RemoteBinding:
        return RemoteBinding(
            entity_id=row["entity_id"],
            user_email=row["user_email"],
            remote_event_id=row["remote_event_id"],
            remote_calendar_id=row["remote_calendar_id"],
            synced_at=row["synced_at"],
        )

    async def get_binding(self, kind: str, entity_id: str) -> RemoteBinding | None:
        table = BINDING_TABLES[kind]
        async with self._sessions() as session:
            row = (await session.execute(
                sql_text(
                    f"SELECT entity_id, user_email, remote_event_id, remote_calendar_id, synced_at "
                    f"FROM {table} WHERE entity_id = :entity_id"
                ),
                {"entity_id": entity_id},
            )).mappings().fetchone()
        return self._binding_from_row(row) if row else None

    async def list_bindings(self, kind: str, user_email: str) -> Dict[str, RemoteBinding]:
        table = BINDING_TABLES[kind]
        async with self._sessions() as session:
            rows = (await session.execute(
                sql_text(
                    f"SELECT entity_id, user_email, remote_event_id, remote_calendar_id, synced_at "
                    f"FROM {table} WHERE user_email = :user_email"
                ),
                {"user_email": user_email},
            )).mappings().all()
        return {row["entity_id"]: self._binding_from_row(row) for row in rows}

    async def upsert_binding(
        self,
        kind: str,
        user_email: str,
        entity_id: str,
        remote_event_id: str,
        remote_calendar_id: str | None,
    ) -> RemoteBinding:
        table = BINDING_TABLES[kind]
        record = {
            "entity_id": entity_id,
            "user_email": user_email,
            "remote_event_id": remote_event_id,
            "remote_calendar_id": remote_calendar_id,
            "synced_at": _now_iso(),
        }
        async with self._sessions() as session:
            await session.execute(
                sql_text(
                    f"""
                    INSERT INTO {table} (entity_id, user_email, remote_event_id, remote_calendar_id, synced_at)
                    VALUES (:entity_id, :user_email, :remote_event_id, :remote_calendar_id, :synced_at)
                    ON CONFLICT(entity_id) DO UPDATE SET
                        remote_event_id = EXCLUDED.remote_event_id,
                        remote_calendar_id = EXCLUDED.remote_calendar_id,
                        synced_at = EXCLUDED.synced_at
                    """
                ),
                record,
            )
            await session.commit()
        return self._binding_from_row(record)

    async def delete_binding(self, kind: str, entity_id: str) -> None:
        table = BINDING_TABLES[kind]
        async with self._sessions() as session:
            await session.execute(sql_text(f"DELETE FROM {table} WHERE entity_id = :entity_id"), {"entity_id": entity_id})
            await session.commit()

    async def delete_all_bindings(self, user_email: str) -> None:
        async with self._sessions() as session:
            for table in BINDING_TABLES.values():
                await session.execute(sql_text(f"DELETE FROM {table} WHERE user_email = :user_email"), {"user_email": user_email})
            await session.commit()

    async def synced_event_ids(self, user_email: str) -> Set[str]:
        event_ids: Set[str] = set()
        for kind in BINDING_TABLES:
            event_ids.update(binding.remote_event_id for binding in (await self.list_bindings(kind, user_email)).values())
        return event_ids
