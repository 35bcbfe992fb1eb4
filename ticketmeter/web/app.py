"""FastAPI application factory."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ticketmeter.billing.services import build_services
from ticketmeter.config.logging import setup_logging
from ticketmeter.config.settings import get_settings
from ticketmeter.exceptions import ConflictError, InvalidTransitionError, NotFoundError
from ticketmeter.storage.database import get_engine
from ticketmeter.web.health import VERSION, check_health
from ticketmeter.web.middleware import RequestIDMiddleware
from ticketmeter.web.routes.analytics import router as analytics_router
from ticketmeter.web.routes.usage import router as usage_router
from ticketmeter.web.routes.webhooks import router as webhooks_router

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from ticketmeter.config.settings import Settings

logger = structlog.get_logger(__name__)


def create_app(engine: AsyncEngine | None = None, settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    setup_logging(log_level=settings.log_level, json_output=not settings.debug)

    app = FastAPI(
        title="TicketMeter",
        description="Subscription usage accounting and plan enforcement",
        version=VERSION,
    )
    app.state.services = build_services(engine or get_engine(), settings)

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    @app.exception_handler(InvalidTransitionError)
    async def conflict_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.info("request_conflict", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def invalid_value_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    # Middleware (order matters: last added runs first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Usage-Warning"],
    )
    app.add_middleware(RequestIDMiddleware)

    @app.get("/api/health")
    async def health_check() -> dict[str, object]:
        return await check_health(app.state.services.engine, settings)

    app.include_router(usage_router)
    app.include_router(analytics_router)
    app.include_router(webhooks_router)

    logger.info("app_created", enforcement_mode=settings.enforcement_mode)
    return app
