"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from settlement_service.config import get_settings
from settlement_service.core.exceptions import register_exception_handlers
from settlement_service.core.lifespan import lifespan
from settlement_service.routers import health


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    Only the operational endpoints are served over HTTP; settlement
    operations are called through SettlementService.
    """
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.service.name} Service",
        version=settings.service.version,
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Operations"])

    return app
