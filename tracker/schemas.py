from __future__ import annotations

from dataclasses import replace
from datetime import date, time
from typing import ClassVar, FrozenSet, List, Optional

from pydantic import BaseModel, Field, model_validator

from tracker.models import (
    Habit,
    HabitStatus,
    Priority,
    Schedule,
    ScheduleType,
    Subtask,
    Tag,
    Todo,
    TodoDetails,
    TodoList,
)


class _Patch(BaseModel):
    """Partial update: omitted fields stay as they are, an explicit ``null`` clears.

    Fields listed in ``NOT_NULLABLE`` may be omitted but never sent as ``null``.
    """

    NOT_NULLABLE: ClassVar[FrozenSet[str]] = frozenset()

    @model_validator(mode="after")
    def _reject_null_required(self):
        for name in sorted(self.NOT_NULLABLE & self.model_fields_set):
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> dict:
        return {name: getattr(self, name) for name in self.model_fields_set}


# ─── Habits ───────────────────────────────────────────────────


class HabitCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    schedule_type: ScheduleType = ScheduleType.INTERVAL
    schedule_days: List[int] = Field(default_factory=list)
    schedule_interval: int = 1

    def to_schedule(self) -> Schedule:
        return Schedule.from_parts(self.schedule_type, self.schedule_days, self.schedule_interval)


class HabitPatch(_Patch):
    NOT_NULLABLE: ClassVar[FrozenSet[str]] = frozenset({"title", "schedule_type", "schedule_days", "schedule_interval"})

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    schedule_type: Optional[ScheduleType] = None
    schedule_days: Optional[List[int]] = None
    schedule_interval: Optional[int] = None

    def apply(self, habit: Habit) -> Habit:
        changes = self.changes()
        updated = habit
        if "title" in changes:
            updated = replace(updated, title=changes["title"].strip())
        if {"schedule_type", "schedule_days", "schedule_interval"} & changes.keys():
            current = habit.schedule
            schedule = Schedule.from_parts(
                changes.get("schedule_type", current.kind),
                changes.get("schedule_days", sorted(current.days)),
                changes.get("schedule_interval", current.interval),
            )
            updated = replace(updated, schedule=schedule)
        return updated


class ToggleRequest(BaseModel):
    day: Optional[date] = None


class OrderPayload(BaseModel):
    ids: List[str]


class HabitResponse(BaseModel):
    id: str
    title: str
    schedule_type: ScheduleType
    schedule_days: List[int]
    schedule_interval: int
    sort_order: int
    created_at: str
    completed_today: Optional[bool] = None
    streak: Optional[int] = None

    @classmethod
    def from_habit(cls, habit: Habit, status: Optional[HabitStatus] = None) -> "HabitResponse":
        return cls(
            id=habit.id,
            title=habit.title,
            schedule_type=habit.schedule.kind,
            schedule_days=sorted(habit.schedule.days),
            schedule_interval=habit.schedule.interval,
            sort_order=habit.sort_order,
            created_at=habit.created_at.isoformat(),
            completed_today=status.completed_today if status else None,
            streak=status.streak if status else None,
        )

    @classmethod
    def from_status(cls, status: HabitStatus) -> "HabitResponse":
        return cls.from_habit(status.habit, status)


# ─── Todos ────────────────────────────────────────────────────


class TodoCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    due_date: Optional[date] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    priority: Priority = Priority.NONE
    notes: Optional[str] = None
    list_id: Optional[str] = None
    tag_ids: List[str] = Field(default_factory=list)

    def to_todo(self, user_email: str) -> Todo:
        return Todo(
            id="",
            user_email=user_email,
            title=self.title.strip(),
            due_date=self.due_date,
            start_time=self.start_time,
            end_time=self.end_time,
            priority=self.priority,
            notes=self.notes,
            list_id=self.list_id,
        )


class TodoPatch(_Patch):
    NOT_NULLABLE: ClassVar[FrozenSet[str]] = frozenset({"title", "completed", "priority"})

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    completed: Optional[bool] = None
    due_date: Optional[date] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    priority: Optional[Priority] = None
    notes: Optional[str] = None
    list_id: Optional[str] = None

    def apply(self, todo: Todo) -> Todo:
        changes = self.changes()
        if "title" in changes:
            changes["title"] = changes["title"].strip()
        return replace(todo, **changes)


class TagIdsPayload(BaseModel):
    tag_ids: List[str] = Field(default_factory=list)


class CompletePayload(BaseModel):
    completed: bool = True


class SubtaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)


class SubtaskPatch(_Patch):
    NOT_NULLABLE: ClassVar[FrozenSet[str]] = frozenset({"title", "completed"})

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    completed: Optional[bool] = None

    def apply(self, subtask: Subtask) -> Subtask:
        return replace(subtask, **self.changes())


class SubtaskResponse(BaseModel):
    id: str
    todo_id: str
    title: str
    completed: bool
    sort_order: int

    @classmethod
    def from_subtask(cls, subtask: Subtask) -> "SubtaskResponse":
        return cls(**subtask.__dict__)


class TodoResponse(BaseModel):
    id: str
    title: str
    completed: bool
    due_date: Optional[date] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    priority: Priority
    notes: Optional[str] = None
    list_id: Optional[str] = None
    sort_order: int
    subtasks: List[SubtaskResponse] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)

    @classmethod
    def from_todo(cls, todo: Todo, subtasks=(), tags=()) -> "TodoResponse":
        return cls(
            id=todo.id,
            title=todo.title,
            completed=todo.completed,
            due_date=todo.due_date,
            start_time=todo.start_time.strftime("%H:%M") if todo.start_time else None,
            end_time=todo.end_time.strftime("%H:%M") if todo.end_time else None,
            priority=todo.priority,
            notes=todo.notes,
            list_id=todo.list_id,
            sort_order=todo.sort_order,
            subtasks=[SubtaskResponse.from_subtask(item) for item in subtasks],
            tags=list(tags),
        )

    @classmethod
    def from_details(cls, details: TodoDetails) -> "TodoResponse":
        return cls.from_todo(details.todo, details.subtasks, details.tag_names)


# ─── Lists & tags ─────────────────────────────────────────────


class NamePayload(BaseModel):
    name: str = Field(..., min_length=1)


class ListResponse(BaseModel):
    id: str
    name: str
    remote_calendar_id: Optional[str] = None
    sort_order: int

    @classmethod
    def from_list(cls, todo_list: TodoList) -> "ListResponse":
        return cls(
            id=todo_list.id,
            name=todo_list.name,
            remote_calendar_id=todo_list.remote_calendar_id,
            sort_order=todo_list.sort_order,
        )


class TagResponse(BaseModel):
    id: str
    name: str

    @classmethod
    def from_tag(cls, tag: Tag) -> "TagResponse":
        return cls(id=tag.id, name=tag.name)
