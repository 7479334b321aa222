from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query

from tracker.auth import require_user_email
from tracker.context import AppContext, get_context

router = APIRouter()


@router.get("/v1/calendar/events")
async def calendar_events(
    start: date = Query(...),
    end: date = Query(...),
    user_email: str = Depends(require_user_email),
    context: AppContext = Depends(get_context),
):
    if end < start:
        raise HTTPException(status_code=400, detail="end must not be before start")
    events = await context.reconciler.merged_events(user_email, start, end)
    if events is None:
        return {"connected": False, "items": []}
    return {"connected": True, "items": [item.to_dict() for item in events]}
