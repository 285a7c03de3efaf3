"""FastAPI application for triggering syncs and polling progress."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Auto-create tables for SQLite (local dev); PostgreSQL is provisioned with init-db
    if "sqlite" in settings.database_url:
        from .database import create_tables
        await create_tables()
    yield


app = FastAPI(title=settings.app_title, lifespan=lifespan)

# Import and register routers
from .routers import health, sync  # noqa: E402

app.include_router(sync.router)
app.include_router(health.router)
