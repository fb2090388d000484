"""Async HTTP client for the Identity service."""

from __future__ import annotations

import httpx

from settlement_service.core.exceptions import ExternalNetworkError
from settlement_service.logging import get_logger


class IdentityClient:
    """
    Client for Identity service account lookups.

    Settlement never registers accounts; it only asks whether an account
    exists before opening a wallet or assigning a task to it.
    """

    def __init__(
        self,
        base_url: str,
        accounts_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._accounts_path = accounts_path.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def account_exists(self, account_id: str) -> bool:
        """
        Check whether an account is registered.

        Returns:
            True on 200, False on 404.

        Raises:
            ExternalNetworkError: IDENTITY_SERVICE_UNAVAILABLE on connection/timeout/
                unexpected status.
        """
        logger = get_logger(__name__)

        try:
            response = await self._client.get(f"{self._accounts_path}/{account_id}")
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Identity service connection failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ExternalNetworkError(
                "IDENTITY_SERVICE_UNAVAILABLE", "Cannot connect to Identity service"
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Identity service HTTP error",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ExternalNetworkError(
                "IDENTITY_SERVICE_UNAVAILABLE", "Identity service request failed"
            ) from exc

        if response.status_code == 200:
            return True
        if response.status_code == 404:
            return False

        logger.warning(
            "Identity service unexpected status",
            extra={"status_code": response.status_code, "base_url": self._base_url},
        )
        raise ExternalNetworkError(
            "IDENTITY_SERVICE_UNAVAILABLE",
            "Identity service returned unexpected status",
            {"status_code": response.status_code},
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
