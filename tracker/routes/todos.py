from __future__ import annotations

from fastapi import APIRouter, Depends

from tracker.auth import require_user_email
from tracker.context import AppContext, get_context
from tracker.schemas import (
    CompletePayload,
    OrderPayload,
    SubtaskCreate,
    SubtaskPatch,
    SubtaskResponse,
    TagIdsPayload,
    TodoCreate,
    TodoPatch,
    TodoResponse,
)

router = APIRouter()


@router.get("/v1/todos")
async def list_todos(user_email: str = Depends(require_user_email), context: AppContext = Depends(get_context)):
    items = await context.todos.list_details(user_email)
    return {"items": [TodoResponse.from_details(details) for details in items]}


@router.post("/v1/todos")
async def create_todo(
    payload: TodoCreate,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    details = await context.todos.create(user_email, payload)
    return TodoResponse.from_details(details)


@router.put("/v1/todos/order")
async def reorder_todos(
    payload: OrderPayload,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    await context.todos.reorder(user_email, payload.ids)
    return {"ok": True}


@router.patch("/v1/todos/{todo_id}")
async def patch_todo(
    todo_id: str,
    payload: TodoPatch,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    details = await context.todos.update(user_email, todo_id, payload)
    return TodoResponse.from_details(details)


@router.post("/v1/todos/{todo_id}/complete")
async def complete_todo(
    todo_id: str,
    payload: CompletePayload | None = None,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    completed = payload.completed if payload else True
    todo = await context.todos.set_completed(user_email, todo_id, completed)
    return TodoResponse.from_todo(todo)


@router.delete("/v1/todos/{todo_id}")
async def delete_todo(
    todo_id: str,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    await context.todos.delete(user_email, todo_id)
    return {"ok": True}


@router.put("/v1/todos/{todo_id}/tags")
async def set_todo_tags(
    todo_id: str,
    payload: TagIdsPayload,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    details = await context.todos.set_tags(user_email, todo_id, payload.tag_ids)
    return TodoResponse.from_details(details)


@router.post("/v1/todos/{todo_id}/subtasks")
async def add_subtask(
    todo_id: str,
    payload: SubtaskCreate,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    subtask = await context.todos.add_subtask(user_email, todo_id, payload.title)
    return SubtaskResponse.from_subtask(subtask)


@router.patch("/v1/subtasks/{subtask_id}")
async def patch_subtask(
    subtask_id: str,
    payload: SubtaskPatch,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    subtask = await context.todos.update_subtask(user_email, subtask_id, payload)
    return SubtaskResponse.from_subtask(subtask)


@router.delete("/v1/subtasks/{subtask_id}")
async def delete_subtask(
    subtask_id: str,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    await context.todos.delete_subtask(user_email, subtask_id)
    return {"ok": True}
