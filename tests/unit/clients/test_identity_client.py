from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest

from settlement_service.clients.identity_client import IdentityClient
from settlement_service.core.exceptions import ExternalNetworkError


def _make_client(
    response: httpx.Response | None = None, error: Exception | None = None
) -> tuple[IdentityClient, AsyncMock]:
    """Create an IdentityClient with a mock HTTP transport."""
    client = IdentityClient(
        base_url="http://mock-identity:8001",
        accounts_path="/accounts/",
        timeout_seconds=5,
    )
    mock_http = AsyncMock(spec=httpx.AsyncClient)
    mock_http.get = AsyncMock(return_value=response, side_effect=error)
    client._client = mock_http
    return client, mock_http


def _response(status_code: int) -> httpx.Response:
    return httpx.Response(
        status_code=status_code,
        json={},
        request=httpx.Request("GET", "http://mock-identity:8001/accounts/acct-1"),
    )


@pytest.mark.unit
async def test_account_exists_on_200() -> None:
    client, mock_http = _make_client(_response(200))

    assert await client.account_exists("acct-1") is True
    mock_http.get.assert_awaited_once_with("/accounts/acct-1")


@pytest.mark.unit
async def test_account_missing_on_404() -> None:
    client, _ = _make_client(_response(404))

    assert await client.account_exists("acct-1") is False


@pytest.mark.unit
@pytest.mark.parametrize("status_code", [401, 500, 503])
async def test_unexpected_status_raises_unavailable(status_code: int) -> None:
    client, _ = _make_client(_response(status_code))

    with pytest.raises(ExternalNetworkError) as exc_info:
        await client.account_exists("acct-1")

    assert exc_info.value.status_code == 502
    assert exc_info.value.error == "IDENTITY_SERVICE_UNAVAILABLE"
    assert exc_info.value.details["status_code"] == status_code


@pytest.mark.unit
@pytest.mark.parametrize(
    "error",
    [
        httpx.ConnectError("connection refused"),
        httpx.ReadTimeout("timed out"),
        httpx.RemoteProtocolError("bad response"),
    ],
)
async def test_transport_errors_raise_unavailable(error: Exception) -> None:
    client, _ = _make_client(error=error)

    with pytest.raises(ExternalNetworkError) as exc_info:
        await client.account_exists("acct-1")

    assert exc_info.value.error == "IDENTITY_SERVICE_UNAVAILABLE"
    assert exc_info.value.retryable


@pytest.mark.unit
async def test_close_closes_http_client() -> None:
    client, mock_http = _make_client(_response(200))

    await client.close()

    mock_http.aclose.assert_awaited_once()
