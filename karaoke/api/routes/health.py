"""Health check endpoints."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from sqlalchemy import text

from karaoke.config import settings
from karaoke.db import AsyncSessionLocal
from karaoke.services.state_manager import get_state_manager

router = APIRouter()


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Basic health check."""
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
    }


@router.get("/health/full")
async def full_health_check() -> dict[str, Any]:
    """
    Full health check including dependencies.

    Reports:
    - database: a trivial query round-trips
    - liveInstances: songs and sessions currently held in memory
    """
    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        db_ok = True
    except Exception:
        db_ok = False

    return {
        "status": "ok" if db_ok else "degraded",
        "service": settings.app_name,
        "version": settings.app_version,
        "dependencies": {
            "database": {"status": "ok" if db_ok else "unavailable"},
        },
        "liveInstances": get_state_manager().count if db_ok else None,
    }
