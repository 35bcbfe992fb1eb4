"""Health check endpoint logic."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from ticketmeter.config.settings import Settings

logger = structlog.get_logger(__name__)

VERSION = "0.1.0"


async def check_health(engine: AsyncEngine, settings: Settings) -> dict[str, object]:
    """Return application health status with a database connectivity check."""
    result: dict[str, object] = {
        "status": "healthy",
        "version": VERSION,
        "enforcement_mode": settings.enforcement_mode,
        "database": "connected",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("health_check_db_failed", error=str(exc))
        result["database"] = "unavailable"
        result["status"] = "degraded"

    return result
