from spresso.pricing.client import (
    MAX_REQUEST_SIZE,
    PriceClientOptions,
    PriceOptimizationClient,
)
from spresso.pricing.models import (
    CatalogUpdateRequest,
    PriceOptimizationResult,
    PriceRequest,
    PriceVerification,
    PriceVerificationRequest,
    PriceVerificationStatus,
    UserAgentRule,
    UserAgentStatus,
)

__all__ = [
    "MAX_REQUEST_SIZE",
    "PriceClientOptions",
    "PriceOptimizationClient",
    "CatalogUpdateRequest",
    "PriceOptimizationResult",
    "PriceRequest",
    "PriceVerification",
    "PriceVerificationRequest",
    "PriceVerificationStatus",
    "UserAgentRule",
    "UserAgentStatus",
]
