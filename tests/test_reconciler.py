from datetime import date, datetime, timedelta, timezone

from conftest import USER
from tracker.models import Priority, Schedule, Todo
from tracker.services.calendar_client import RemoteEvent
from tracker.services.reconciler import DISCONNECTED_KEY


async def _todo(repo, **fields) -> Todo:
    values = {"id": "", "user_email": USER, "title": "Pay rent", "due_date": date(2024, 1, 31)}
    values.update(fields)
    return await repo.create_todo(Todo(**values))


async def test_create_binds_the_new_event(repo, reconciler, fake_calendar, connected):
    todo = await _todo(repo)
    await reconciler.sync_todo(USER, "create", todo.id)

    binding = await repo.get_binding("todo", todo.id)
    assert binding is not None
    assert binding.remote_calendar_id == "cal-todos"
    assert (binding.remote_calendar_id, binding.remote_event_id) in fake_calendar.events
    assert fake_calendar.call_names().count("create_event") == 1
    credentials = await repo.get_credentials(USER)
    assert credentials.calendar_id == "cal-todos"


async def test_create_skips_todo_without_due_date(repo, reconciler, fake_calendar, connected):
    todo = await _todo(repo, due_date=None)
    await reconciler.sync_todo(USER, "create", todo.id)
    assert fake_calendar.calls == []
    assert await repo.get_binding("todo", todo.id) is None


async def test_update_with_same_calendar_updates_in_place(repo, reconciler, fake_calendar, connected):
    todo = await _todo(repo)
    await reconciler.sync_todo(USER, "create", todo.id)
    first = await repo.get_binding("todo", todo.id)

    await repo.save_todo(Todo(**{**todo.__dict__, "title": "Pay rent today", "priority": Priority.HIGH}))
    fake_calendar.calls.clear()
    await reconciler.sync_todo(USER, "update", todo.id)

    assert fake_calendar.call_names() == ["update_event"]
    second = await repo.get_binding("todo", todo.id)
    assert second.remote_event_id == first.remote_event_id
    assert fake_calendar.events[("cal-todos", first.remote_event_id)].title == "Pay rent today"


async def test_update_moving_to_list_recreates_in_list_calendar(repo, reconciler, fake_calendar, connected):
    todo = await _todo(repo)
    await reconciler.sync_todo(USER, "create", todo.id)
    first = await repo.get_binding("todo", todo.id)

    work = await repo.create_list(USER, "Work")
    await repo.save_todo(Todo(**{**todo.__dict__, "list_id": work.id}))
    fake_calendar.calls.clear()
    await reconciler.sync_todo(USER, "update", todo.id)

    names = fake_calendar.call_names()
    assert names.index("delete_event") < names.index("create_event")
    second = await repo.get_binding("todo", todo.id)
    assert second.remote_calendar_id == "cal-work"
    assert second.remote_event_id != first.remote_event_id
    assert ("cal-todos", first.remote_event_id) not in fake_calendar.events
    assert (await repo.get_list(USER, work.id)).remote_calendar_id == "cal-work"


async def test_update_clearing_due_date_removes_the_event(repo, reconciler, fake_calendar, connected):
    todo = await _todo(repo)
    await reconciler.sync_todo(USER, "create", todo.id)
    await repo.save_todo(Todo(**{**todo.__dict__, "due_date": None}))

    await reconciler.sync_todo(USER, "update", todo.id)

    assert await repo.get_binding("todo", todo.id) is None
    assert fake_calendar.events == {}


async def test_update_recreates_event_deleted_remotely(repo, reconciler, fake_calendar, connected):
    todo = await _todo(repo)
    await reconciler.sync_todo(USER, "create", todo.id)
    first = await repo.get_binding("todo", todo.id)
    fake_calendar.events.clear()

    await reconciler.sync_todo(USER, "update", todo.id)

    second = await repo.get_binding("todo", todo.id)
    assert second.remote_event_id != first.remote_event_id
    assert ("cal-todos", second.remote_event_id) in fake_calendar.events


async def test_complete_updates_in_place(repo, reconciler, fake_calendar, connected):
    todo = await _todo(repo)
    await reconciler.sync_todo(USER, "create", todo.id)
    binding = await repo.get_binding("todo", todo.id)
    await repo.save_todo(Todo(**{**todo.__dict__, "completed": True}))

    fake_calendar.calls.clear()
    await reconciler.sync_todo(USER, "complete", todo.id)

    assert fake_calendar.call_names() == ["update_event"]
    payload = fake_calendar.events[("cal-todos", binding.remote_event_id)]
    assert payload.title == "✓ Pay rent"
    assert payload.status == "cancelled"


async def test_complete_without_binding_is_a_no_op(repo, reconciler, fake_calendar, connected):
    todo = await _todo(repo)
    await reconciler.sync_todo(USER, "complete", todo.id)
    assert fake_calendar.calls == []


async def test_delete_without_binding_or_event_id_makes_no_calls(reconciler, fake_calendar, connected):
    await reconciler.sync_todo(USER, "delete", "missing-todo")
    await reconciler.sync_habit(USER, "delete", "missing-habit")
    assert fake_calendar.calls == []


async def test_delete_uses_supplied_event_id_after_cascade(repo, reconciler, fake_calendar, connected):
    habit = await repo.create_habit(USER, "Stretch", Schedule.every(1))
    await reconciler.sync_habit(USER, "create", habit.id)
    binding = await repo.get_binding("habit", habit.id)
    await repo.delete_habit(USER, habit.id)
    assert await repo.get_binding("habit", habit.id) is None

    await reconciler.sync_habit(
        USER,
        "delete",
        habit.id,
        remote_event_id=binding.remote_event_id,
        remote_calendar_id=binding.remote_calendar_id,
    )

    assert ("delete_event", "cal-habits", binding.remote_event_id) in fake_calendar.calls
    assert fake_calendar.events == {}


async def test_habit_update_deletes_then_recreates(repo, reconciler, fake_calendar, connected):
    habit = await repo.create_habit(USER, "Stretch", Schedule.every(1))
    await reconciler.sync_habit(USER, "create", habit.id)
    first = await repo.get_binding("habit", habit.id)

    fake_calendar.calls.clear()
    await reconciler.sync_habit(USER, "update", habit.id)

    assert fake_calendar.call_names() == ["delete_event", "create_event"]
    second = await repo.get_binding("habit", habit.id)
    assert second.remote_event_id != first.remote_event_id
    payload = fake_calendar.events[("cal-habits", second.remote_event_id)]
    assert payload.start.date == "2024-01-07"


async def test_habits_can_share_the_todos_calendar(repo, reconciler, settings, fake_calendar, connected):
    settings.habits_share_todos_calendar = True
    habit = await repo.create_habit(USER, "Stretch", Schedule.every(1))
    await reconciler.sync_habit(USER, "create", habit.id)
    assert (await repo.get_binding("habit", habit.id)).remote_calendar_id == "cal-todos"


async def test_no_credentials_means_no_calls(repo, reconciler, fake_calendar):
    todo = await _todo(repo)
    await reconciler.sync_todo(USER, "create", todo.id)
    assert fake_calendar.calls == []
    assert await repo.get_setting(USER, DISCONNECTED_KEY) is None


async def test_unrefreshable_credentials_disconnect(repo, reconciler, fake_calendar):
    await repo.store_credentials(
        USER,
        None,
        access_token="stale",
        expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )
    todo = await _todo(repo)
    await reconciler.sync_todo(USER, "create", todo.id)

    assert fake_calendar.calls == []
    assert await repo.get_credentials(USER) is None
    assert await repo.get_setting(USER, DISCONNECTED_KEY)


async def test_full_resync_counts_failures_without_stopping(repo, reconciler, fake_calendar, connected):
    ok = await _todo(repo, title="Groceries")
    await _todo(repo, title="Broken")
    await _todo(repo, title="Someday", due_date=None)
    await repo.create_habit(USER, "Stretch", Schedule.weekly([1, 3]))
    fake_calendar.fail_titles.add("Broken")

    report = await reconciler.full_resync(USER)

    assert report.connected
    assert report.todos_synced == 1
    assert report.habits_synced == 1
    assert report.failures == 1
    assert await repo.get_binding("todo", ok.id) is not None


async def test_full_resync_without_connection(reconciler):
    report = await reconciler.full_resync(USER)
    assert report.connected is False
    assert report.todos_synced == 0


async def test_retiring_a_list_moves_todos_back(repo, reconciler, fake_calendar, connected):
    work = await repo.create_list(USER, "Work")
    todo = await _todo(repo, list_id=work.id)
    await reconciler.sync_todo(USER, "create", todo.id)
    assert (await repo.get_binding("todo", todo.id)).remote_calendar_id == "cal-work"

    await repo.delete_list(USER, work.id)
    await reconciler.retire_list_calendar(USER, "cal-work", [todo.id])

    assert ("delete_calendar", "cal-work") in fake_calendar.calls
    assert (await repo.get_binding("todo", todo.id)).remote_calendar_id == "cal-todos"


async def test_merged_events_dedupes_and_flags_synced(repo, reconciler, fake_calendar, connected):
    todo = await _todo(repo)
    await reconciler.sync_todo(USER, "create", todo.id)
    binding = await repo.get_binding("todo", todo.id)

    def event(event_id, start, all_day=False, cancelled=False):
        return RemoteEvent(
            id=event_id,
            title=event_id,
            description=None,
            start=start,
            end=start,
            is_all_day=all_day,
            link=None,
            cancelled=cancelled,
        )

    fake_calendar.listed["primary"] = [
        event("meeting", "2024-01-31T10:00:00+00:00"),
        event("gone", "2024-01-30", all_day=True, cancelled=True),
    ]
    fake_calendar.listed["cal-todos"] = [
        event(binding.remote_event_id, "2024-01-31", all_day=True),
        event("meeting", "2024-01-31T10:00:00+00:00"),
    ]

    merged = await reconciler.merged_events(USER, date(2024, 1, 29), date(2024, 2, 4))

    assert [item.event.id for item in merged] == [binding.remote_event_id, "meeting"]
    assert [item.synced for item in merged] == [True, False]
