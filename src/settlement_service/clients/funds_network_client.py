"""Async HTTP client for the external funds network."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx

from settlement_service.core.exceptions import ExternalNetworkError
from settlement_service.logging import get_logger
from settlement_service.models import TxRef

if TYPE_CHECKING:
    from decimal import Decimal


class FundsNetworkClient:
    """
    Client for the opaque funds-transfer capability of the payment network.

    Both operations are idempotent by ``reference``: the network returns
    the original transfer when a reference is replayed, so callers may
    retry a failed request with the same reference until it completes.
    """

    def __init__(
        self,
        base_url: str,
        deposit_path: str,
        withdraw_path: str,
        timeout_seconds: int,
        api_key: str | None = None,
    ) -> None:
        self._base_url = base_url
        self._deposit_path = deposit_path
        self._withdraw_path = withdraw_path
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers,
        )

    async def deposit_external(self, address: str, amount: Decimal, reference: str) -> TxRef:
        """
        Pull funds from an external address into the platform.

        Raises:
            ExternalNetworkError: FUNDS_NETWORK_UNAVAILABLE (retryable) on
                connection/timeout/5xx, FUNDS_NETWORK_REJECTED (not retryable) on 4xx.
        """
        return await self._transfer(self._deposit_path, "deposit", address, amount, reference)

    async def withdraw_external(self, address: str, amount: Decimal, reference: str) -> TxRef:
        """
        Push funds from the platform to an external address.

        Raises:
            ExternalNetworkError: same mapping as deposit_external.
        """
        return await self._transfer(self._withdraw_path, "withdraw", address, amount, reference)

    async def _transfer(
        self,
        path: str,
        operation: str,
        address: str,
        amount: Decimal,
        reference: str,
    ) -> TxRef:
        logger = get_logger(__name__)
        details = {"operation": operation, "reference": reference}

        try:
            response = await self._client.post(
                path,
                json={"address": address, "amount": str(amount), "reference": reference},
            )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Funds network connection failed",
                extra={"error": str(exc), "base_url": self._base_url, **details},
            )
            raise ExternalNetworkError(
                "FUNDS_NETWORK_UNAVAILABLE", "Cannot connect to funds network", details
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Funds network HTTP error",
                extra={"error": str(exc), "base_url": self._base_url, **details},
            )
            raise ExternalNetworkError(
                "FUNDS_NETWORK_UNAVAILABLE", "Funds network request failed", details
            ) from exc

        if response.status_code in (200, 201):
            body: dict[str, Any] = response.json()
            return TxRef(
                network_tx_id=str(body["tx_id"]),
                reference=str(body.get("reference", reference)),
                status=str(body.get("status", "confirmed")),
            )

        if response.status_code >= 500:
            logger.warning(
                "Funds network unavailable",
                extra={"status_code": response.status_code, **details},
            )
            raise ExternalNetworkError(
                "FUNDS_NETWORK_UNAVAILABLE",
                "Funds network returned a server error",
                {**details, "status_code": response.status_code},
            )

        logger.warning(
            "Funds network rejected transfer",
            extra={"status_code": response.status_code, **details},
        )
        raise ExternalNetworkError(
            "FUNDS_NETWORK_REJECTED",
            "Funds network rejected the transfer",
            {**details, "status_code": response.status_code},
            retryable=False,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
