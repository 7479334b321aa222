from __future__ import annotations

import logging
from dataclasses import replace
from typing import List, Optional

from tracker.models import Subtask, Tag, Todo, TodoDetails, TodoList
from tracker.repositories import TrackerRepository
from tracker.schemas import SubtaskPatch, TodoCreate, TodoPatch
from tracker.services.reconciler import SyncReconciler
from tracker.workers.sync_worker import SyncDispatcher

logger = logging.getLogger(__name__)


class TodoStore:
    """Todos with their subtasks, tags and lists.

    Local writes propagate their errors; the calendar side is scheduled on the
    dispatcher afterwards and never affects the result.
    """

    def __init__(self, repo: TrackerRepository, reconciler: SyncReconciler, dispatcher: SyncDispatcher):
        self._repo = repo
        self._reconciler = reconciler
        self._dispatcher = dispatcher

    def _sync(self, user_email: str, action: str, todo_id: str, **remote) -> None:
        self._dispatcher.fire_and_forget(
            f"todo:{action}:{todo_id}",
            self._reconciler.sync_todo(user_email, action, todo_id, **remote),
        )

    async def _check_list(self, user_email: str, list_id: Optional[str]) -> None:
        if list_id:
            await self._repo.get_list(user_email, list_id)

    # ─── Todos ────────────────────────────────────────────────

    async def list_details(self, user_email: str) -> List[TodoDetails]:
        todos = await self._repo.list_todos(user_email)
        todo_ids = [todo.id for todo in todos]
        subtasks = await self._repo.list_subtasks(user_email, todo_ids)
        tag_names = await self._repo.tag_names_for(user_email, todo_ids)
        list_names = {item.id: item.name for item in await self._repo.list_lists(user_email)}
        return [
            TodoDetails(
                todo=todo,
                subtasks=tuple(subtasks.get(todo.id, [])),
                tag_names=tuple(tag_names.get(todo.id, [])),
                list_name=list_names.get(todo.list_id) if todo.list_id else None,
            )
            for todo in todos
        ]

    async def get_details(self, user_email: str, todo_id: str) -> TodoDetails:
        return await self._repo.get_todo_details(user_email, todo_id)

    async def create(self, user_email: str, payload: TodoCreate) -> TodoDetails:
        todo = payload.to_todo(user_email)
        if not todo.title:
            raise ValueError("Todo title cannot be empty")
        await self._check_list(user_email, todo.list_id)
        record = await self._repo.create_todo(todo)
        if payload.tag_ids:
            await self._repo.set_todo_tags(user_email, record.id, payload.tag_ids)
        self._sync(user_email, "create", record.id)
        return await self._repo.get_todo_details(user_email, record.id)

    async def update(self, user_email: str, todo_id: str, patch: TodoPatch) -> TodoDetails:
        todo = patch.apply(await self._repo.get_todo(user_email, todo_id))
        if "list_id" in patch.model_fields_set:
            await self._check_list(user_email, todo.list_id)
        await self._repo.save_todo(todo)
        self._sync(user_email, "update", todo_id)
        return await self._repo.get_todo_details(user_email, todo_id)

    async def set_completed(self, user_email: str, todo_id: str, completed: bool = True) -> Todo:
        todo = replace(await self._repo.get_todo(user_email, todo_id), completed=completed)
        await self._repo.save_todo(todo)
        self._sync(user_email, "complete" if completed else "update", todo_id)
        return todo

    async def delete(self, user_email: str, todo_id: str) -> None:
        await self._repo.get_todo(user_email, todo_id)
        binding = await self._repo.get_binding("todo", todo_id)
        await self._repo.delete_todo(user_email, todo_id)
        if binding is not None:
            self._sync(
                user_email,
                "delete",
                todo_id,
                remote_event_id=binding.remote_event_id,
                remote_calendar_id=binding.remote_calendar_id,
            )

    async def reorder(self, user_email: str, todo_ids: List[str]) -> None:
        await self._repo.reorder_todos(user_email, todo_ids)

    async def set_tags(self, user_email: str, todo_id: str, tag_ids: List[str]) -> TodoDetails:
        await self._repo.get_todo(user_email, todo_id)
        await self._repo.set_todo_tags(user_email, todo_id, tag_ids)
        self._sync(user_email, "update", todo_id)
        return await self._repo.get_todo_details(user_email, todo_id)

    # ─── Subtasks ─────────────────────────────────────────────

    async def add_subtask(self, user_email: str, todo_id: str, title: str) -> Subtask:
        await self._repo.get_todo(user_email, todo_id)
        subtask = await self._repo.add_subtask(user_email, todo_id, title)
        self._sync(user_email, "update", todo_id)
        return subtask

    async def update_subtask(self, user_email: str, subtask_id: str, patch: SubtaskPatch) -> Subtask:
        subtask = patch.apply(await self._repo.get_subtask(user_email, subtask_id))
        if not subtask.title.strip():
            raise ValueError("Subtask title cannot be empty")
        await self._repo.save_subtask(user_email, subtask)
        self._sync(user_email, "update", subtask.todo_id)
        return subtask

    async def delete_subtask(self, user_email: str, subtask_id: str) -> None:
        subtask = await self._repo.get_subtask(user_email, subtask_id)
        await self._repo.delete_subtask(user_email, subtask_id)
        self._sync(user_email, "update", subtask.todo_id)

    # ─── Lists & tags ─────────────────────────────────────────

    async def lists(self, user_email: str) -> List[TodoList]:
        return await self._repo.list_lists(user_email)

    async def create_list(self, user_email: str, name: str) -> TodoList:
        return await self._repo.create_list(user_email, name)

    async def delete_list(self, user_email: str, list_id: str) -> None:
        todo_list = await self._repo.get_list(user_email, list_id)
        todo_ids = [todo.id for todo in await self._repo.list_todos(user_email) if todo.list_id == list_id]
        await self._repo.delete_list(user_email, list_id)
        if todo_list.remote_calendar_id or todo_ids:
            self._dispatcher.fire_and_forget(
                f"list:delete:{list_id}",
                self._reconciler.retire_list_calendar(user_email, todo_list.remote_calendar_id, todo_ids),
            )

    async def tags(self, user_email: str) -> List[Tag]:
        return await self._repo.list_tags(user_email)

    async def create_tag(self, user_email: str, name: str) -> Tag:
        return await self._repo.create_tag(user_email, name)

    async def delete_tag(self, user_email: str, tag_id: str) -> None:
        tagged = await self._repo.todo_ids_with_tag(user_email, tag_id)
        await self._repo.delete_tag(user_email, tag_id)
        for todo_id in tagged:
            self._sync(user_email, "update", todo_id)
