from __future__ import annotations

from fastapi import APIRouter, Depends

from tracker.auth import require_user_email
from tracker.context import AppContext, get_context
from tracker.schemas import HabitCreate, HabitPatch, HabitResponse, OrderPayload, ToggleRequest

router = APIRouter()


@router.get("/v1/habits")
async def list_habits(user_email: str = Depends(require_user_email), context: AppContext = Depends(get_context)):
    statuses = await context.habits.list_with_status(user_email)
    return {"items": [HabitResponse.from_status(status) for status in statuses]}


@router.get("/v1/habits/today")
async def habits_due_today(user_email: str = Depends(require_user_email), context: AppContext = Depends(get_context)):
    statuses = await context.habits.due_today(user_email)
    return {"items": [HabitResponse.from_status(status) for status in statuses]}


@router.post("/v1/habits")
async def create_habit(
    payload: HabitCreate,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    habit = await context.habits.add(user_email, payload.title, payload.to_schedule())
    return HabitResponse.from_habit(habit)


@router.put("/v1/habits/order")
async def reorder_habits(
    payload: OrderPayload,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    await context.habits.reorder(user_email, payload.ids)
    return {"ok": True}


@router.patch("/v1/habits/{habit_id}")
async def update_habit(
    habit_id: str,
    payload: HabitPatch,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    habit = await context.habits.update(user_email, habit_id, payload)
    return HabitResponse.from_habit(habit)


@router.delete("/v1/habits/{habit_id}")
async def delete_habit(
    habit_id: str,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    await context.habits.delete(user_email, habit_id)
    return {"ok": True}


@router.post("/v1/habits/{habit_id}/toggle")
async def toggle_habit(
    habit_id: str,
    payload: ToggleRequest | None = None,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    status = await context.habits.toggle_completion(user_email, habit_id, payload.day if payload else None)
    return HabitResponse.from_status(status)
