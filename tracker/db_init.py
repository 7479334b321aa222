from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import inspect, text as sql_text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

SETTINGS_TABLE = "settings"
HABITS_TABLE = "habits"
COMPLETIONS_TABLE = "habit_completions"
TODOS_TABLE = "todos"
SUBTASKS_TABLE = "subtasks"
LISTS_TABLE = "lists"
TAGS_TABLE = "tags"
TODO_TAGS_TABLE = "todo_tags"
CREDENTIALS_TABLE = "calendar_credentials"
TODO_SYNC_TABLE = "todo_calendar_sync"
HABIT_SYNC_TABLE = "habit_calendar_sync"

TABLE_DDL = [
    f"""
    CREATE TABLE IF NOT EXISTS {SETTINGS_TABLE} (
        key TEXT PRIMARY KEY,
        value TEXT
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {HABITS_TABLE} (
        id TEXT PRIMARY KEY,
        user_email TEXT NOT NULL,
        title TEXT NOT NULL,
        schedule_type TEXT NOT NULL DEFAULT 'interval',
        schedule_days TEXT,
        schedule_interval INTEGER NOT NULL DEFAULT 1,
        sort_order INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {COMPLETIONS_TABLE} (
        id TEXT PRIMARY KEY,
        habit_id TEXT NOT NULL,
        user_email TEXT NOT NULL,
        completed_date TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (habit_id, completed_date)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {LISTS_TABLE} (
        id TEXT PRIMARY KEY,
        user_email TEXT NOT NULL,
        name TEXT NOT NULL,
        remote_calendar_id TEXT,
        sort_order INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {TODOS_TABLE} (
        id TEXT PRIMARY KEY,
        user_email TEXT NOT NULL,
        title TEXT NOT NULL,
        completed INTEGER NOT NULL DEFAULT 0,
        due_date TEXT,
        start_time TEXT,
        end_time TEXT,
        priority TEXT NOT NULL DEFAULT 'none',
        notes TEXT,
        list_id TEXT,
        sort_order INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {SUBTASKS_TABLE} (
        id TEXT PRIMARY KEY,
        todo_id TEXT NOT NULL,
        user_email TEXT NOT NULL,
        title TEXT NOT NULL,
        completed INTEGER NOT NULL DEFAULT 0,
        sort_order INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {TAGS_TABLE} (
        id TEXT PRIMARY KEY,
        user_email TEXT NOT NULL,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (user_email, name)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {TODO_TAGS_TABLE} (
        todo_id TEXT NOT NULL,
        tag_id TEXT NOT NULL,
        PRIMARY KEY (todo_id, tag_id)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {CREDENTIALS_TABLE} (
        user_email TEXT PRIMARY KEY,
        refresh_token_enc TEXT,
        access_token TEXT,
        expires_at TEXT,
        scope TEXT,
        calendar_id TEXT,
        habits_calendar_id TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {TODO_SYNC_TABLE} (
        entity_id TEXT PRIMARY KEY,
        user_email TEXT NOT NULL,
        remote_event_id TEXT NOT NULL,
        remote_calendar_id TEXT,
        synced_at TEXT
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {HABIT_SYNC_TABLE} (
        entity_id TEXT PRIMARY KEY,
        user_email TEXT NOT NULL,
        remote_event_id TEXT NOT NULL,
        remote_calendar_id TEXT,
        synced_at TEXT
    )
    """,
]

INDEX_DDL = [
    f"CREATE INDEX IF NOT EXISTS idx_{HABITS_TABLE}_user ON {HABITS_TABLE} (user_email, sort_order)",
    f"CREATE INDEX IF NOT EXISTS idx_{COMPLETIONS_TABLE}_user_date ON {COMPLETIONS_TABLE} (user_email, completed_date)",
    f"CREATE INDEX IF NOT EXISTS idx_{TODOS_TABLE}_user_due ON {TODOS_TABLE} (user_email, due_date)",
    f"CREATE INDEX IF NOT EXISTS idx_{SUBTASKS_TABLE}_todo ON {SUBTASKS_TABLE} (todo_id, sort_order)",
    f"CREATE INDEX IF NOT EXISTS idx_{TODO_SYNC_TABLE}_user ON {TODO_SYNC_TABLE} (user_email)",
    f"CREATE INDEX IF NOT EXISTS idx_{HABIT_SYNC_TABLE}_user ON {HABIT_SYNC_TABLE} (user_email)",
]


@dataclass(frozen=True)
class SchemaCapabilities:
    """Optional columns the connected database actually has.

    Detected once at startup. Databases created before time-of-day or notes
    support keep working; writes that need a missing column fail loudly.
    """

    todo_time_of_day: bool = True
    todo_notes: bool = True

    @classmethod
    def from_columns(cls, todo_columns) -> "SchemaCapabilities":
        names = {str(name) for name in todo_columns}
        return cls(
            todo_time_of_day={"start_time", "end_time"} <= names,
            todo_notes="notes" in names,
        )


def _todo_column_names(sync_conn) -> list[str]:
    return [column["name"] for column in inspect(sync_conn).get_columns(TODOS_TABLE)]


async def detect_capabilities(engine: AsyncEngine) -> SchemaCapabilities:
    async with engine.connect() as conn:
        columns = await conn.run_sync(_todo_column_names)
    capabilities = SchemaCapabilities.from_columns(columns)
    if not (capabilities.todo_time_of_day and capabilities.todo_notes):
        logger.warning("Database schema lacks optional todo columns: %s", capabilities)
    return capabilities


async def init_db(engine: AsyncEngine) -> SchemaCapabilities:
    async with engine.begin() as conn:
        for ddl in TABLE_DDL:
            await conn.execute(sql_text(ddl))
        for ddl in INDEX_DDL:
            await conn.execute(sql_text(ddl))
    return await detect_capabilities(engine)
