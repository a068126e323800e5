"""
Spresso price optimization client.

Usage:
    settings = load_settings()
    async with PriceOptimizationClient.from_settings(settings) as client:
        result = await client.get_prices(requests, user_agent=ua)
"""

from spresso.auth import TokenProvider, TokenProviderOptions
from spresso.pricing import (
    PriceClientOptions,
    PriceOptimizationClient,
    PriceOptimizationResult,
    PriceRequest,
)
from spresso.services import AuthError, Result, SpressoError
from spresso.settings import Settings, load_settings

__all__ = [
    "AuthError",
    "PriceClientOptions",
    "PriceOptimizationClient",
    "PriceOptimizationResult",
    "PriceRequest",
    "Result",
    "Settings",
    "SpressoError",
    "TokenProvider",
    "TokenProviderOptions",
    "load_settings",
]
