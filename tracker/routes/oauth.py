from __future__ import annotations

import logging
import secrets

import httpx
from fastapi import APIRouter, Depends, HTTPException

from tracker.auth import require_user_email
from tracker.context import AppContext, get_context
from tracker.services.reconciler import DISCONNECTED_KEY

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/v1/oauth/google/connect")
async def google_connect(user_email: str = Depends(require_user_email), context: AppContext = Depends(get_context)):
    if not context.settings.calendar_client_id:
        raise HTTPException(status_code=400, detail="Calendar OAuth not configured")
    state = secrets.token_urlsafe(24)
    await context.repo.save_oauth_state(state, user_email)
    return {"url": context.token_manager.build_connect_url(state)}


@router.get("/v1/oauth/google/callback")
async def google_callback(code: str, state: str, context: AppContext = Depends(get_context)):
    # The callback is unauthenticated; only a state issued by /connect names the account.
    user_email = await context.repo.consume_oauth_state(state) if state else None
    if not user_email:
        raise HTTPException(status_code=400, detail="Invalid or expired state")
    try:
        grant = await context.token_manager.exchange_code(code)
    except httpx.HTTPStatusError as exc:
        logger.warning("OAuth code exchange failed for %s: %s", user_email, exc)
        raise HTTPException(status_code=400, detail="Authorization code rejected") from exc
    await context.repo.store_credentials(
        user_email,
        grant.refresh_token,
        access_token=grant.access_token,
        expires_at=grant.expires_at,
        scope=grant.scope,
    )
    await context.repo.delete_setting(user_email, DISCONNECTED_KEY)
    logger.info("Calendar connected for %s", user_email)
    return {"ok": True}
