from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tracker.context import open_context
from tracker.errors import NotFoundError, SchemaCapabilityError
from tracker.logging_config import configure_logging
from tracker.routes import calendar, habits, lists, oauth, sync, todos
from tracker.settings import Settings, get_settings

logger = logging.getLogger("tracker")


def create_app(settings: Optional[Settings] = None, **context_overrides) -> FastAPI:
    """App factory. ``context_overrides`` go to ``open_context`` (tests pass a fake calendar client)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = settings or get_settings()
        configure_logging(active.log_level)
        app.state.context = await open_context(active, **context_overrides)
        try:
            yield
        finally:
            await app.state.context.aclose()

    app = FastAPI(title="Habit Tracker API", version="0.1.0", lifespan=lifespan)

    app.include_router(habits.router)
    app.include_router(todos.router)
    app.include_router(lists.router)
    app.include_router(sync.router)
    app.include_router(calendar.router)
    app.include_router(oauth.router)

    @app.exception_handler(NotFoundError)
    async def _not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(SchemaCapabilityError)
    async def _schema_capability_handler(request: Request, exc: SchemaCapabilityError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def _value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "Internal error"})

    @app.get("/health")
    async def health():
        return {"ok": True}

    return app


app = create_app()
