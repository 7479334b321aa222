from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Callable, List, Optional

from tracker.models import Habit, HabitStatus, Schedule
from tracker.repositories import TrackerRepository
from tracker.schemas import HabitPatch
from tracker.services.reconciler import SyncReconciler
from tracker.services.streaks import DEFAULT_LOOKBACK_DAYS, due_today, habit_status, habit_statuses
from tracker.workers.sync_worker import SyncDispatcher

logger = logging.getLogger(__name__)


class HabitStore:
    """Habit CRUD plus derived status. Every mutation is persisted first, then synced best-effort."""

    def __init__(
        self,
        repo: TrackerRepository,
        reconciler: SyncReconciler,
        dispatcher: SyncDispatcher,
        today: Callable[[], date],
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    ):
        self._repo = repo
        self._reconciler = reconciler
        self._dispatcher = dispatcher
        self._today = today
        self._lookback_days = lookback_days

    def _sync(self, user_email: str, action: str, habit_id: str, **remote) -> None:
        self._dispatcher.fire_and_forget(
            f"habit:{action}:{habit_id}",
            self._reconciler.sync_habit(user_email, action, habit_id, **remote),
        )

    async def list_with_status(self, user_email: str, today: Optional[date] = None) -> List[HabitStatus]:
        today = today or self._today()
        habits = await self._repo.list_habits(user_email)
        completions = await self._repo.list_completions(user_email, today - timedelta(days=self._lookback_days))
        return habit_statuses(habits, completions, today, self._lookback_days)

    async def due_today(self, user_email: str) -> List[HabitStatus]:
        today = self._today()
        return due_today(await self.list_with_status(user_email, today), today)

    async def add(self, user_email: str, title: str, schedule: Schedule) -> Habit:
        title = (title or "").strip()
        if not title:
            raise ValueError("Habit title cannot be empty")
        habit = await self._repo.create_habit(user_email, title, schedule)
        self._sync(user_email, "create", habit.id)
        return habit

    async def update(self, user_email: str, habit_id: str, patch: HabitPatch) -> Habit:
        habit = patch.apply(await self._repo.get_habit(user_email, habit_id))
        await self._repo.save_habit(habit)
        self._sync(user_email, "update", habit_id)
        return habit

    async def delete(self, user_email: str, habit_id: str) -> None:
        await self._repo.get_habit(user_email, habit_id)
        binding = await self._repo.get_binding("habit", habit_id)
        await self._repo.delete_habit(user_email, habit_id)
        if binding is not None:
            self._sync(
                user_email,
                "delete",
                habit_id,
                remote_event_id=binding.remote_event_id,
                remote_calendar_id=binding.remote_calendar_id,
            )

    async def toggle_completion(self, user_email: str, habit_id: str, day: Optional[date] = None) -> HabitStatus:
        today = self._today()
        habit = await self._repo.get_habit(user_email, habit_id)
        completed = await self._repo.toggle_completion(user_email, habit_id, day or today)
        logger.debug("Habit %s on %s -> %s", habit_id, day or today, "done" if completed else "not done")
        completions = await self._repo.list_completions(user_email, today - timedelta(days=self._lookback_days))
        return habit_status(habit, completions.get(habit_id, set()), today, self._lookback_days)

    async def reorder(self, user_email: str, habit_ids: List[str]) -> None:
        await self._repo.reorder_habits(user_email, habit_ids)
