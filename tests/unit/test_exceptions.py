"""Unit tests for the JSON error envelope."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from settlement_service.core.exceptions import (
    ExternalNetworkError,
    ReconciliationError,
    StateError,
    register_exception_handlers,
)


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/conflict")
    async def conflict() -> None:
        raise StateError("ILLEGAL_TRANSITION", "Cannot approve task", {"task_id": "t-1"})

    @app.get("/network")
    async def network() -> None:
        raise ExternalNetworkError("FUNDS_NETWORK_UNAVAILABLE", "down")

    @app.get("/reconcile")
    async def reconcile() -> None:
        raise ReconciliationError("Settlement contradicts task state", {"task_id": "t-2"})

    @app.get("/boom")
    async def boom() -> None:
        raise RuntimeError("unexpected")

    return app


async def _get(path: str):
    transport = ASGITransport(app=_app(), raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.get(path)


@pytest.mark.unit
async def test_service_error_renders_envelope() -> None:
    response = await _get("/conflict")

    assert response.status_code == 409
    assert response.json() == {
        "error": "ILLEGAL_TRANSITION",
        "message": "Cannot approve task",
        "details": {"task_id": "t-1"},
    }


@pytest.mark.unit
async def test_network_error_carries_retryable_flag() -> None:
    response = await _get("/network")

    assert response.status_code == 502
    assert response.json()["details"] == {"retryable": True}


@pytest.mark.unit
async def test_reconciliation_error_is_500() -> None:
    response = await _get("/reconcile")

    assert response.status_code == 500
    assert response.json()["error"] == "RECONCILIATION_REQUIRED"


@pytest.mark.unit
async def test_unhandled_error_is_internal_error() -> None:
    response = await _get("/boom")

    assert response.status_code == 500
    assert response.json()["error"] == "INTERNAL_ERROR"
