"""API routers."""

from settlement_service.routers import health

__all__ = ["health"]
