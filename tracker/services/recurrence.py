from __future__ import annotations

from datetime import date

from tracker.models import Habit, ScheduleType


def sunday_weekday(day: date) -> int:
    """Weekday index with Sunday=0 ... Saturday=6."""
    return (day.weekday() + 1) % 7


def is_scheduled(habit: Habit, day: date) -> bool:
    schedule = habit.schedule
    if schedule.kind == ScheduleType.WEEKLY:
        return sunday_weekday(day) in schedule.days
    if schedule.interval == 1:
        return True
    diff_days = (day - habit.created_on).days
    return diff_days >= 0 and diff_days % schedule.interval == 0
