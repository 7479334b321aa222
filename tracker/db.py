from __future__ import annotations

import logging
from urllib.parse import urlparse, urlunparse, parse_qsl, urlencode

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine

logger = logging.getLogger(__name__)


def normalize_database_url(database_url: str) -> str:
    url = str(database_url or "").strip()
    if not url:
        return url
    if url.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + url[len("sqlite://") :]
    if url.startswith("postgres://"):
        url = "postgresql+asyncpg://" + url[len("postgres://") :]
    elif url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://") :]
    elif url.startswith("postgresql+psycopg2://"):
        url = "postgresql+asyncpg://" + url[len("postgresql+psycopg2://") :]
    if not url.startswith("postgresql+asyncpg://"):
        return url
    parsed = urlparse(url)
    clean = []
    ssl_requested = False
    for key, value in parse_qsl(parsed.query, keep_blank_values=True):
        if key == "sslmode":
            ssl_requested = True
            continue
        if key in {"channel_binding", "ssl"}:
            continue
        clean.append((key, value))
    if ssl_requested:
        clean.append(("ssl", "true"))
    return urlunparse(parsed._replace(query=urlencode(clean)))


class Database:
    """Owns one async engine and its session factory.

    Built once per process by the app lifespan (or per test) and passed to
    whatever needs it; call ``dispose()`` when done.
    """

    def __init__(self, database_url: str):
        self.url = normalize_database_url(database_url)
        engine_kwargs: dict = {"future": True}
        if self.is_sqlite:
            self.engine: AsyncEngine = create_async_engine(self.url, **engine_kwargs)
        else:
            engine_kwargs.update({"pool_pre_ping": True, "pool_size": 20, "max_overflow": 10})
            connect_args: dict = {}
            host = urlparse(self.url).hostname or ""
            if host and host not in {"localhost", "127.0.0.1"}:
                connect_args["ssl"] = True
            self.engine = create_async_engine(self.url, connect_args=connect_args, **engine_kwargs)
        self.sessionmaker: async_sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.debug("Database engine disposed")
