from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional
from urllib.parse import urlencode

import httpx
from cryptography.fernet import Fernet

from tracker.models import CalendarCredentials
from tracker.settings import Settings

logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"

OnRefreshed = Callable[[str, datetime], Awaitable[None]]


class TokenCipher:
    """Fernet encryption for refresh tokens at rest, keyed by a SHA-256 of the app secret."""

    def __init__(self, secret: str):
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def decrypt(self, value: str) -> str:
        return self._fernet.decrypt(value.encode("utf-8")).decode("utf-8")


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenManager:
    def __init__(
        self,
        http: httpx.AsyncClient,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
        token_url: str = TOKEN_URL,
    ):
        self._http = http
        self._settings = settings
        self._clock = clock
        self._token_url = token_url

    @property
    def refresh_buffer(self) -> timedelta:
        return timedelta(seconds=self._settings.token_refresh_buffer_seconds)

    def _grant_from_response(self, token_data: dict) -> Optional[TokenGrant]:
        access_token = token_data.get("access_token")
        if not access_token:
            return None
        expires_in = int(token_data.get("expires_in", 3600) or 3600)
        return TokenGrant(
            access_token=access_token,
            expires_at=self._clock() + timedelta(seconds=expires_in),
            refresh_token=token_data.get("refresh_token"),
            scope=token_data.get("scope"),
        )

    async def get_valid_access_token(
        self,
        credentials: CalendarCredentials,
        on_refreshed: OnRefreshed,
    ) -> Optional[str]:
        """Return a usable access token, refreshing it when it is inside the buffer.

        ``None`` means the integration is disconnected: there is no refresh token
        or the refresh exchange failed.
        """
        expires_at = credentials.expires_at
        if credentials.access_token and expires_at is not None:
            if expires_at - self._clock() > self.refresh_buffer:
                return credentials.access_token

        if not credentials.refresh_token:
            return None

        grant = await self.refresh(credentials.refresh_token)
        if grant is None:
            return None

        await on_refreshed(grant.access_token, grant.expires_at)
        return grant.access_token

    async def refresh(self, refresh_token: str) -> Optional[TokenGrant]:
        payload = {
            "client_id": self._settings.calendar_client_id,
            "client_secret": self._settings.calendar_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            response = await self._http.post(self._token_url, data=payload, timeout=20)
        except httpx.HTTPError as exc:
            logger.warning("Token refresh request failed: %s", exc)
            return None
        if response.status_code >= 400:
            logger.warning("Token refresh rejected (%s): %s", response.status_code, response.text[:200])
            return None
        return self._grant_from_response(response.json())

    def build_connect_url(self, state: str) -> str:
        params = {
            "client_id": self._settings.calendar_client_id,
            "redirect_uri": self._settings.calendar_redirect_uri,
            "response_type": "code",
            "scope": CALENDAR_SCOPE,
            "access_type": "offline",
            "include_granted_scopes": "true",
            "prompt": "consent",
            "state": state,
        }
        return f"{AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenGrant:
        payload = {
            "code": code,
            "client_id": self._settings.calendar_client_id,
            "client_secret": self._settings.calendar_client_secret,
            "redirect_uri": self._settings.calendar_redirect_uri,
            "grant_type": "authorization_code",
        }
        response = await self._http.post(self._token_url, data=payload, timeout=20)
        response.raise_for_status()
        grant = self._grant_from_response(response.json())
        if grant is None:
            raise RuntimeError("Google OAuth did not return an access token")
        return grant
