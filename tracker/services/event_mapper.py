"""
Map todos and habits to calendar event payloads.

Every function here is pure: the same entity, timezone and reference date always
produce an equal ``EventPayload`` and an identical wire dict, so a resync of an
unchanged entity never produces a spurious diff.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from tracker.models import Habit, Priority, ScheduleType, TodoDetails

PRIORITY_COLOR_MAP = {
    Priority.HIGH: "11",  # Tomato
    Priority.MEDIUM: "5",  # Banana
    Priority.LOW: "9",  # Blueberry
    Priority.NONE: "8",  # Graphite
}

# Lavender, Grape, Flamingo, Tangerine, Peacock, Basil
LIST_TAG_COLORS = ("1", "3", "4", "6", "7", "10")

HABIT_COLOR_ID = "2"  # Sage, kept out of both todo palettes

RRULE_WEEKDAYS = ("SU", "MO", "TU", "WE", "TH", "FR", "SA")

COMPLETED_PREFIX = "✓ "
HABIT_PREFIX = "🔄 "
HABIT_DESCRIPTION = "Habit tracked in your habit tracker"

STATUS_CONFIRMED = "confirmed"
STATUS_CANCELLED = "cancelled"

DEFAULT_EVENT_DURATION = timedelta(hours=1)


@dataclass(frozen=True)
class EventTime:
    date: Optional[str] = None
    date_time: Optional[str] = None
    time_zone: Optional[str] = None

    def to_api(self) -> dict:
        if self.date_time is not None:
            payload = {"dateTime": self.date_time}
            if self.time_zone:
                payload["timeZone"] = self.time_zone
            return payload
        return {"date": self.date}


@dataclass(frozen=True)
class Reminder:
    minutes: int
    method: str = "popup"


@dataclass(frozen=True)
class EventPayload:
    title: str
    start: EventTime
    end: EventTime
    color_id: str
    status: str = STATUS_CONFIRMED
    description: Optional[str] = None
    reminders: Tuple[Reminder, ...] = ()
    recurrence: Tuple[str, ...] = ()

    @property
    def is_all_day(self) -> bool:
        return self.start.date_time is None

    def to_api(self) -> dict:
        payload = {"summary": self.title}
        if self.description:
            payload["description"] = self.description
        payload["start"] = self.start.to_api()
        payload["end"] = self.end.to_api()
        payload["colorId"] = self.color_id
        payload["status"] = self.status
        payload["reminders"] = {
            "useDefault": False,
            "overrides": [{"method": item.method, "minutes": item.minutes} for item in self.reminders],
        }
        if self.recurrence:
            payload["recurrence"] = list(self.recurrence)
        return payload


def _name_hash(name: str) -> int:
    return sum(ord(char) for char in name)


def determine_color_id(
    priority: Priority = Priority.NONE,
    list_name: Optional[str] = None,
    tag_names: Sequence[str] = (),
) -> str:
    if priority != Priority.NONE:
        return PRIORITY_COLOR_MAP[priority]
    if list_name:
        return LIST_TAG_COLORS[_name_hash(list_name) % len(LIST_TAG_COLORS)]
    if tag_names:
        return LIST_TAG_COLORS[_name_hash(tag_names[0]) % len(LIST_TAG_COLORS)]
    return PRIORITY_COLOR_MAP[Priority.NONE]


def build_description(details: TodoDetails) -> Optional[str]:
    parts = []
    if details.list_name:
        parts.append(f"📋 List: {details.list_name}")
    if details.todo.notes:
        parts.append(details.todo.notes)
    if details.subtasks:
        if parts:
            parts.append("")
        parts.append("Subtasks:")
        for subtask in details.subtasks:
            mark = "☑" if subtask.completed else "☐"
            parts.append(f"  {mark} {subtask.title}")
    description = "\n".join(parts)
    return description or None


def _at(day: date, moment: time) -> datetime:
    return datetime.combine(day, moment.replace(second=0, microsecond=0))


def todo_to_event(details: TodoDetails, timezone_name: str, completed: Optional[bool] = None) -> EventPayload:
    """Build the event for a todo with a due date.

    ``completed`` overrides the stored flag, which is how the complete action
    pushes a finished todo before the row is re-read.
    """
    todo = details.todo
    if todo.due_date is None:
        raise ValueError(f"Todo {todo.id} has no due date and cannot be scheduled")
    is_completed = todo.completed if completed is None else completed

    if todo.start_time is not None:
        start_dt = _at(todo.due_date, todo.start_time)
        if todo.end_time is not None:
            end_dt = _at(todo.due_date, todo.end_time)
            if end_dt <= start_dt:
                end_dt = end_dt + timedelta(days=1)
        else:
            end_dt = start_dt + DEFAULT_EVENT_DURATION
        start = EventTime(date_time=start_dt.isoformat(timespec="seconds"), time_zone=timezone_name)
        end = EventTime(date_time=end_dt.isoformat(timespec="seconds"), time_zone=timezone_name)
        reminders = (Reminder(30), Reminder(10))
    else:
        start = EventTime(date=todo.due_date.isoformat())
        end = EventTime(date=(todo.due_date + timedelta(days=1)).isoformat())
        reminders = (Reminder(0),)

    return EventPayload(
        title=f"{COMPLETED_PREFIX}{todo.title}" if is_completed else todo.title,
        description=build_description(details),
        start=start,
        end=end,
        color_id=determine_color_id(todo.priority, details.list_name, details.tag_names),
        status=STATUS_CANCELLED if is_completed else STATUS_CONFIRMED,
        reminders=reminders,
    )


def recurrence_rule(habit: Habit) -> str:
    schedule = habit.schedule
    if schedule.kind == ScheduleType.WEEKLY:
        days = ",".join(RRULE_WEEKDAYS[day] for day in sorted(schedule.days))
        return f"RRULE:FREQ=WEEKLY;BYDAY={days}"
    if schedule.interval <= 1:
        return "RRULE:FREQ=DAILY"
    return f"RRULE:FREQ=DAILY;INTERVAL={schedule.interval}"


def today_in(timezone_name: str) -> date:
    return datetime.now(ZoneInfo(timezone_name)).date()


def habit_to_event(habit: Habit, timezone_name: str, today: Optional[date] = None) -> EventPayload:
    """All-day recurring event projected forward from ``today``.

    The creation date is not used as the start because it may lie in the past.
    """
    start_day = today or today_in(timezone_name)
    return EventPayload(
        title=f"{HABIT_PREFIX}{habit.title}",
        description=HABIT_DESCRIPTION,
        start=EventTime(date=start_day.isoformat()),
        end=EventTime(date=(start_day + timedelta(days=1)).isoformat()),
        color_id=HABIT_COLOR_ID,
        status=STATUS_CONFIRMED,
        reminders=(Reminder(0),),
        recurrence=(recurrence_rule(habit),),
    )
