from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request

from tracker.db import Database
from tracker.db_init import init_db
from tracker.repositories import TrackerRepository
from tracker.services.calendar_client import GoogleCalendarClient
from tracker.services.event_mapper import today_in
from tracker.services.habit_store import HabitStore
from tracker.services.reconciler import ClientFactory, SyncReconciler
from tracker.services.todo_store import TodoStore
from tracker.services.token_manager import TokenCipher, TokenManager
from tracker.settings import Settings
from tracker.workers.sync_worker import SyncDispatcher

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    database: Database
    http: httpx.AsyncClient
    repo: TrackerRepository
    token_manager: TokenManager
    reconciler: SyncReconciler
    dispatcher: SyncDispatcher
    habits: HabitStore
    todos: TodoStore

    async def aclose(self) -> None:
        await self.dispatcher.drain()
        await self.http.aclose()
        await self.database.dispose()


async def open_context(
    settings: Settings,
    http: Optional[httpx.AsyncClient] = None,
    client_factory: Optional[ClientFactory] = None,
) -> AppContext:
    """Build everything a process needs: database, HTTP client, services."""
    database = Database(settings.database_url)
    capabilities = await init_db(database.engine)
    http = http or httpx.AsyncClient(timeout=20)
    repo = TrackerRepository(
        database.sessionmaker,
        capabilities,
        TokenCipher(settings.token_encryption_key),
        timezone_name=settings.calendar_timezone,
    )
    token_manager = TokenManager(http, settings)

    def today():
        return today_in(settings.calendar_timezone)

    reconciler = SyncReconciler(
        repo,
        token_manager,
        settings,
        client_factory or (lambda access_token: GoogleCalendarClient(http, access_token)),
        today=today,
    )
    dispatcher = SyncDispatcher()
    logger.info("Context ready (database=%s)", database.url.split("://", 1)[0])
    return AppContext(
        settings=settings,
        database=database,
        http=http,
        repo=repo,
        token_manager=token_manager,
        reconciler=reconciler,
        dispatcher=dispatcher,
        habits=HabitStore(repo, reconciler, dispatcher, today, settings.streak_lookback_days),
        todos=TodoStore(repo, reconciler, dispatcher),
    )


def get_context(request: Request) -> AppContext:
    return request.app.state.context
