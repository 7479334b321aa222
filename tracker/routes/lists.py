from __future__ import annotations

from fastapi import APIRouter, Depends

from tracker.auth import require_user_email
from tracker.context import AppContext, get_context
from tracker.schemas import ListResponse, NamePayload, TagResponse

router = APIRouter()


@router.get("/v1/lists")
async def list_lists(user_email: str = Depends(require_user_email), context: AppContext = Depends(get_context)):
    return {"items": [ListResponse.from_list(item) for item in await context.todos.lists(user_email)]}


@router.post("/v1/lists")
async def create_list(
    payload: NamePayload,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    return ListResponse.from_list(await context.todos.create_list(user_email, payload.name))


@router.delete("/v1/lists/{list_id}")
async def delete_list(
    list_id: str,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    await context.todos.delete_list(user_email, list_id)
    return {"ok": True}


@router.get("/v1/tags")
async def list_tags(user_email: str = Depends(require_user_email), context: AppContext = Depends(get_context)):
    return {"items": [TagResponse.from_tag(tag) for tag in await context.todos.tags(user_email)]}


@router.post("/v1/tags")
async def create_tag(
    payload: NamePayload,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    return TagResponse.from_tag(await context.todos.create_tag(user_email, payload.name))


@router.delete("/v1/tags/{tag_id}")
async def delete_tag(
    tag_id: str,
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    await context.todos.delete_tag(user_email, tag_id)
    return {"ok": True}
