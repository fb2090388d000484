"""HTTP clients for external service communication."""

from settlement_service.clients.funds_network_client import FundsNetworkClient
from settlement_service.clients.identity_client import IdentityClient

__all__ = ["FundsNetworkClient", "IdentityClient"]
