"""
Streak calculation for habits.

A streak is the number of consecutive scheduled days, ending today or at the
most recent scheduled day before today, that each have a completion record.
Unscheduled days are skipped and never break a streak.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import AbstractSet, Dict, Iterable, List

from tracker.models import Habit, HabitStatus
from tracker.services.recurrence import is_scheduled

DEFAULT_LOOKBACK_DAYS = 365


def calculate_streak(
    habit: Habit,
    completed_dates: AbstractSet[date],
    today: date,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
) -> int:
    cursor = today
    if today not in completed_dates:
        if is_scheduled(habit, today):
            return 0
        cursor = today - timedelta(days=1)

    streak = 0
    for _ in range(lookback_days):
        if is_scheduled(habit, cursor):
            if cursor not in completed_dates:
                break
            streak += 1
        cursor = cursor - timedelta(days=1)
    return streak


def habit_status(
    habit: Habit,
    completed_dates: AbstractSet[date],
    today: date,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
) -> HabitStatus:
    return HabitStatus(
        habit=habit,
        completed_today=today in completed_dates,
        streak=calculate_streak(habit, completed_dates, today, lookback_days),
    )


def habit_statuses(
    habits: Iterable[Habit],
    completions: Dict[str, AbstractSet[date]],
    today: date,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
) -> List[HabitStatus]:
    return [
        habit_status(habit, completions.get(habit.id, frozenset()), today, lookback_days)
        for habit in habits
    ]


def due_today(statuses: Iterable[HabitStatus], today: date) -> List[HabitStatus]:
    return [status for status in statuses if is_scheduled(status.habit, today)]
