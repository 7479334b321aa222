from datetime import date, time

import pytest

from conftest import USER, make_habit
from tracker.models import Priority, Schedule, Subtask, Todo, TodoDetails
from tracker.services.event_mapper import (
    HABIT_COLOR_ID,
    LIST_TAG_COLORS,
    PRIORITY_COLOR_MAP,
    determine_color_id,
    habit_to_event,
    recurrence_rule,
    todo_to_event,
)


def _details(**overrides) -> TodoDetails:
    todo_fields = {
        "id": "t1",
        "user_email": USER,
        "title": "Write report",
        "due_date": date(2024, 3, 10),
    }
    extra = {key: overrides.pop(key) for key in ("subtasks", "tag_names", "list_name") if key in overrides}
    todo_fields.update(overrides)
    return TodoDetails(todo=Todo(**todo_fields), **extra)


def test_all_day_todo():
    payload = todo_to_event(_details(), "Europe/Berlin").to_api()
    assert payload["start"] == {"date": "2024-03-10"}
    assert payload["end"] == {"date": "2024-03-11"}
    assert payload["status"] == "confirmed"
    assert payload["reminders"] == {"useDefault": False, "overrides": [{"method": "popup", "minutes": 0}]}
    assert "description" not in payload
    assert "recurrence" not in payload


def test_timed_todo_defaults_to_one_hour():
    payload = todo_to_event(_details(start_time=time(9, 15)), "Europe/Berlin").to_api()
    assert payload["start"] == {"dateTime": "2024-03-10T09:15:00", "timeZone": "Europe/Berlin"}
    assert payload["end"] == {"dateTime": "2024-03-10T10:15:00", "timeZone": "Europe/Berlin"}
    assert [item["minutes"] for item in payload["reminders"]["overrides"]] == [30, 10]


def test_timed_todo_end_before_start_rolls_to_next_day():
    payload = todo_to_event(_details(start_time=time(23, 0), end_time=time(1, 0)), "UTC").to_api()
    assert payload["end"]["dateTime"] == "2024-03-11T01:00:00"


def test_completed_todo_is_prefixed_and_cancelled():
    payload = todo_to_event(_details(), "UTC", completed=True)
    assert payload.title == "✓ Write report"
    assert payload.status == "cancelled"


def test_todo_without_due_date_cannot_be_mapped():
    with pytest.raises(ValueError):
        todo_to_event(_details(due_date=None), "UTC")


def test_description_lists_context_notes_and_subtasks():
    details = _details(
        notes="Quarterly numbers",
        list_name="Work",
        subtasks=(
            Subtask(id="s1", todo_id="t1", title="Draft", completed=True),
            Subtask(id="s2", todo_id="t1", title="Review"),
        ),
    )
    assert todo_to_event(details, "UTC").description == (
        "📋 List: Work\nQuarterly numbers\n\nSubtasks:\n  ☑ Draft\n  ☐ Review"
    )


def test_color_precedence():
    assert determine_color_id(Priority.HIGH, "Work", ("x",)) == PRIORITY_COLOR_MAP[Priority.HIGH]
    list_color = determine_color_id(Priority.NONE, "Work", ("x",))
    assert list_color == LIST_TAG_COLORS[sum(map(ord, "Work")) % len(LIST_TAG_COLORS)]
    tag_color = determine_color_id(Priority.NONE, None, ("errands", "home"))
    assert tag_color == LIST_TAG_COLORS[sum(map(ord, "errands")) % len(LIST_TAG_COLORS)]
    assert determine_color_id() == PRIORITY_COLOR_MAP[Priority.NONE]


def test_habit_color_is_outside_todo_palettes():
    assert HABIT_COLOR_ID not in LIST_TAG_COLORS
    assert HABIT_COLOR_ID not in PRIORITY_COLOR_MAP.values()


def test_habit_event_recurs_from_today():
    habit = make_habit(Schedule.weekly([5, 1, 3]))
    payload = habit_to_event(habit, "UTC", today=date(2024, 2, 1)).to_api()
    assert payload["summary"] == "🔄 Read"
    assert payload["start"] == {"date": "2024-02-01"}
    assert payload["end"] == {"date": "2024-02-02"}
    assert payload["recurrence"] == ["RRULE:FREQ=WEEKLY;BYDAY=MO,WE,FR"]
    assert payload["colorId"] == HABIT_COLOR_ID


def test_interval_recurrence_rules():
    assert recurrence_rule(make_habit(Schedule.every(1))) == "RRULE:FREQ=DAILY"
    assert recurrence_rule(make_habit(Schedule.every(4))) == "RRULE:FREQ=DAILY;INTERVAL=4"


def test_mapping_is_deterministic():
    details = _details(start_time=time(8, 0), priority=Priority.LOW, tag_names=("a",))
    first = todo_to_event(details, "UTC")
    second = todo_to_event(details, "UTC")
    assert first == second
    assert first.to_api() == second.to_api()
    habit = make_habit(Schedule.every(2))
    assert habit_to_event(habit, "UTC", date(2024, 1, 1)).to_api() == habit_to_event(habit, "UTC", date(2024, 1, 1)).to_api()
