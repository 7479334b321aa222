from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum
from typing import FrozenSet, Optional, Tuple


class ScheduleType(str, Enum):
    WEEKLY = "weekly"
    INTERVAL = "interval"


class Priority(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class Schedule:
    """Weekly (Sunday=0 weekday set) or every-N-days cadence. Only one mode is active."""

    kind: ScheduleType
    days: FrozenSet[int] = frozenset()
    interval: int = 1

    def __post_init__(self):
        if self.kind == ScheduleType.WEEKLY:
            if not self.days:
                raise ValueError("Weekly schedule needs at least one weekday")
            if any(day < 0 or day > 6 for day in self.days):
                raise ValueError("Weekdays must be between 0 (Sunday) and 6 (Saturday)")
        elif self.interval < 1:
            raise ValueError("Interval must be a positive number of days")

    @classmethod
    def weekly(cls, days) -> "Schedule":
        return cls(ScheduleType.WEEKLY, days=frozenset(int(day) for day in days))

    @classmethod
    def every(cls, interval: int = 1) -> "Schedule":
        return cls(ScheduleType.INTERVAL, interval=int(interval))

    @classmethod
    def from_parts(cls, kind, days, interval) -> "Schedule":
        if ScheduleType(kind) == ScheduleType.WEEKLY:
            return cls.weekly(days or [])
        return cls.every(interval or 1)


@dataclass(frozen=True)
class Habit:
    id: str
    user_email: str
    title: str
    schedule: Schedule
    created_at: datetime
    sort_order: int = 0

    @property
    def created_on(self) -> date:
        return self.created_at.date()


@dataclass(frozen=True)
class HabitStatus:
    habit: Habit
    completed_today: bool
    streak: int


@dataclass(frozen=True)
class Subtask:
    id: str
    todo_id: str
    title: str
    completed: bool = False
    sort_order: int = 0


@dataclass(frozen=True)
class Todo:
    id: str
    user_email: str
    title: str
    completed: bool = False
    due_date: Optional[date] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    priority: Priority = Priority.NONE
    notes: Optional[str] = None
    list_id: Optional[str] = None
    sort_order: int = 0

    @property
    def is_schedulable(self) -> bool:
        return self.due_date is not None


@dataclass(frozen=True)
class TodoDetails:
    """A todo plus the related rows the calendar payload is built from."""

    todo: Todo
    subtasks: Tuple[Subtask, ...] = ()
    tag_names: Tuple[str, ...] = ()
    list_name: Optional[str] = None


@dataclass(frozen=True)
class TodoList:
    id: str
    user_email: str
    name: str
    remote_calendar_id: Optional[str] = None
    sort_order: int = 0


@dataclass(frozen=True)
class Tag:
    id: str
    user_email: str
    name: str


@dataclass(frozen=True)
class RemoteBinding:
    entity_id: str
    user_email: str
    remote_event_id: str
    remote_calendar_id: Optional[str]
    synced_at: Optional[str] = None


@dataclass
class CalendarCredentials:
    user_email: str
    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    scope: Optional[str] = None
    calendar_id: Optional[str] = None
    habits_calendar_id: Optional[str] = None
