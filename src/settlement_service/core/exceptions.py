"""Typed service errors and FastAPI exception handlers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi.responses import JSONResponse

from settlement_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request


class ServiceError(Exception):
    """
    Base error carrying a machine-readable code and HTTP status.

    Every failure surfaced to callers is a ServiceError so that the
    error envelope ({error, message, details}) is uniform.
    """

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, Any],
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error, "message": self.message, "details": self.details}


class ValidationError(ServiceError):
    """Bad amount, ratio or missing field. Rejected before any mutation."""

    def __init__(self, error: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error, message, 400, details or {})


class ForbiddenError(ServiceError):
    """Actor is not a participant allowed to drive this transition."""

    def __init__(self, error: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error, message, 403, details or {})


class NotFoundError(ServiceError):
    """Referenced task, wallet, account or dispute does not exist."""

    def __init__(self, error: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error, message, 404, details or {})


class StateError(ServiceError):
    """Illegal transition, already claimed, no open dispute, already resolved."""

    def __init__(self, error: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error, message, 409, details or {})


class FundsError(ServiceError):
    """Insufficient available balance or escrow. Ledger left untouched."""

    def __init__(self, error: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error, message, 402, details or {})


class ExternalNetworkError(ServiceError):
    """
    A call to an external collaborator failed.

    When ``retryable`` is True the caller may repeat the same request
    (same reference) until it completes.
    """

    def __init__(
        self,
        error: str,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        retryable: bool = True,
    ) -> None:
        super().__init__(error, message, 502, {**(details or {}), "retryable": retryable})
        self.retryable = retryable


class ReconciliationError(ServiceError):
    """
    Ledger and task state disagree in a way that needs manual reconciliation.

    Reaching this means a committed wallet mutation has no matching state
    transition (or the reverse). Background loops log it at CRITICAL and
    move on to the next item instead of aborting the pass.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("RECONCILIATION_REQUIRED", message, 500, details or {})


def register_exception_handlers(app: FastAPI) -> None:
    """Render ServiceError and unexpected exceptions as JSON envelopes."""

    @app.exception_handler(ServiceError)
    async def service_error_handler(_request: Request, exc: ServiceError) -> JSONResponse:
        if isinstance(exc, ReconciliationError):
            get_logger(__name__).critical(
                "Reconciliation required", extra={"details": exc.details}
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(_request: Request, exc: Exception) -> JSONResponse:
        get_logger(__name__).error(
            "Unhandled exception", exc_info=exc, extra={"error_type": type(exc).__name__}
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "details": {},
            },
        )
