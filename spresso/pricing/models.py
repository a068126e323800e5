"""
Pricing request/response models.

Wire format is camelCase; Python attributes are snake_case.
"""

from enum import IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_api(self, **kwargs: Any) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, **kwargs)


class PriceRequest(ApiModel):
    """A single (device, item) price lookup."""

    device_id: str
    item_id: str
    default_price: float
    user_id: str | None = None
    override_to_default_price: bool = False
    user_agent: str | None = None


class PriceOptimizationResult(ApiModel):
    """Optimized (or default) price for one request."""

    item_id: str
    device_id: str
    price: float
    is_optimized: bool = Field(default=False, alias="isPriceOptimized")
    user_id: str | None = None

    @classmethod
    def default_for(cls, request: PriceRequest) -> "PriceOptimizationResult":
        """Fallback result: the caller's default price, never optimized."""
        return cls(
            item_id=request.item_id,
            device_id=request.device_id,
            user_id=request.user_id,
            price=request.default_price,
            is_optimized=False,
        )


class UserAgentStatus(IntEnum):
    ACTIVE = 0
    DISABLED = 1
    DELETED = 2


class UserAgentRule(ApiModel):
    """Bot/crawler signature from the organization config."""

    name: str = ""
    regexp: str
    status: UserAgentStatus = UserAgentStatus.ACTIVE

    @field_validator("status", mode="before")
    @classmethod
    def parse_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            if value.isdigit():
                return int(value)
            try:
                return UserAgentStatus[value.upper()]
            except KeyError:
                raise ValueError(f"unknown user agent status {value!r}")
        return value


class CatalogUpdateRequest(ApiModel):
    """Product catalog entry pushed to the pricing service."""

    sku: str
    name: str
    cost: float
    price: float
    product_id: str | None = None
    category: str | None = None
    upc: str | None = None
    brand: str | None = None
    map_price: float | None = None
    msrp_price: float | None = None


class PriceVerificationStatus(IntEnum):
    INVALID = 0
    SPRESSO_PRICE = 1
    DEVICE_PRICE = 2


class PriceVerificationRequest(ApiModel):
    item_id: str
    price: float
    device_id: str | None = None


class PriceVerification(ApiModel):
    item_id: str
    device_id: str | None = None
    price: float
    price_status: PriceVerificationStatus
    current_valid_price: float | None = None

    @field_validator("price_status", mode="before")
    @classmethod
    def parse_price_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            if value.isdigit():
                return int(value)
            names = {
                "invalid": PriceVerificationStatus.INVALID,
                "spressoprice": PriceVerificationStatus.SPRESSO_PRICE,
                "deviceprice": PriceVerificationStatus.DEVICE_PRICE,
            }
            key = value.replace("_", "").lower()
            if key not in names:
                raise ValueError(f"unknown price status {value!r}")
            return names[key]
        return value
