from __future__ import annotations

from fastapi import APIRouter, Depends

from tracker.auth import require_user_email
from tracker.context import AppContext, get_context
from tracker.services.reconciler import DISCONNECTED_KEY

router = APIRouter()


@router.get("/v1/sync/status")
async def sync_status(user_email: str = Depends(require_user_email), context: AppContext = Depends(get_context)):
    credentials = await context.repo.get_credentials(user_email)
    synced_at = [
        binding.synced_at
        for kind in ("todo", "habit")
        for binding in (await context.repo.list_bindings(kind, user_email)).values()
        if binding.synced_at
    ]
    return {
        "connected": credentials is not None,
        "calendar_id": credentials.calendar_id if credentials else None,
        "habits_calendar_id": credentials.habits_calendar_id if credentials else None,
        "last_synced_at": max(synced_at) if synced_at else None,
        "last_error": await context.repo.get_setting(user_email, DISCONNECTED_KEY),
        "dispatcher": context.dispatcher.stats(),
    }


@router.post("/v1/sync/run")
async def run_sync_once(user_email: str = Depends(require_user_email), context: AppContext = Depends(get_context)):
    report = await context.reconciler.full_resync(user_email)
    return {"ok": report.connected, **report.as_dict()}


@router.post("/v1/sync/disconnect")
async def disconnect(user_email: str = Depends(require_user_email), context: AppContext = Depends(get_context)):
    await context.reconciler.disconnect(user_email)
    return {"ok": True}
