"""
Exchange Gateway Module for the NPHIES Communication Workflow.

This module implements the Strategy Pattern for endpoint abstraction,
allowing the same workflow to target the NPHIES test or production exchange.
"""

from src.gateways.base import (
    BaseGateway,
    GatewayConfig,
    GatewayError,
    ProviderHealth,
    ProviderRateLimitError,
)
from src.gateways.nphies_gateway import (
    NphiesGateway,
    RateLimitedError,
    TransportError,
    get_nphies_gateway,
    reset_nphies_gateway,
)

__all__ = [
    # Base
    "BaseGateway",
    "GatewayConfig",
    "GatewayError",
    "ProviderHealth",
    "ProviderRateLimitError",
    # NPHIES
    "NphiesGateway",
    "RateLimitedError",
    "TransportError",
    "get_nphies_gateway",
    "reset_nphies_gateway",
]
