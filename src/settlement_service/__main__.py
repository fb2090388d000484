"""Entry point for the settlement service.

Usage::

    CONFIG_PATH=config.yaml python -m settlement_service
"""

from __future__ import annotations

import uvicorn

from settlement_service.config import get_settings


def main() -> None:
    """Run the service with the configured host and port."""
    settings = get_settings()
    uvicorn.run(
        "settlement_service.app:create_app",
        factory=True,
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.server.log_level,
    )


if __name__ == "__main__":
    main()
