from __future__ import annotations

import os
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = Field(..., alias="DATABASE_URL")
    token_encryption_key: str = Field(..., alias="TOKEN_ENCRYPTION_KEY")
    backend_session_secret: str = Field(..., alias="BACKEND_SESSION_SECRET")

    calendar_timezone: str = Field("UTC", alias="CALENDAR_TIMEZONE")

    allowed_emails_raw: str = Field("", alias="ALLOWED_EMAILS")

    calendar_client_id: str | None = Field(None, alias="CALENDAR_CLIENT_ID")
    calendar_client_secret: str | None = Field(None, alias="CALENDAR_CLIENT_SECRET")
    calendar_redirect_uri: str | None = Field(None, alias="CALENDAR_REDIRECT_URI")

    todos_calendar_name: str = Field("Todos", alias="TODOS_CALENDAR_NAME")
    habits_calendar_name: str = Field("Habits", alias="HABITS_CALENDAR_NAME")
    habits_share_todos_calendar: bool = Field(False, alias="HABITS_SHARE_TODOS_CALENDAR")

    streak_lookback_days: int = Field(365, alias="STREAK_LOOKBACK_DAYS")
    token_refresh_buffer_seconds: int = Field(300, alias="TOKEN_REFRESH_BUFFER_SECONDS")

    log_level: str = Field("INFO", alias="BACKEND_LOG_LEVEL")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    @property
    def allowed_emails(self) -> List[str]:
        return [email.strip().lower() for email in self.allowed_emails_raw.split(",") if email.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


# For local dev convenience only.
if os.getenv("BACKEND_DEBUG_SETTINGS"):
    print(get_settings())
