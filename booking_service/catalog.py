"""
Read-only view of the service catalog.

The catalog service owns services and their pricing tiers; the booking core
only ever asks it for the pricing context of one service.
"""
import enum
from datetime import date, time
from decimal import Decimal
from typing import List, Literal, Optional, Protocol

import httpx
import pydantic
from pydantic import BaseModel, field_validator, model_validator

from .config import CATALOG_SERVICE_URL, CATALOG_HTTP_TIMEOUT
from .errors import CatalogUnavailable, NotFound, ValidationError


class BillingInterval(str, enum.Enum):
    FIXED = "fixed"
    HOURLY = "hourly"
    DAILY = "daily"


class PricingOption(BaseModel):
    id: str
    service_id: str
    label: str
    price: Decimal
    currency: str
    billing_interval: BillingInterval
    duration_minutes: Optional[int] = None
    sort_order: int = 0
    is_active: bool = True

    @field_validator("billing_interval", mode="before")
    @classmethod
    def _one_time_is_fixed(cls, value):
        # older listings still say one_time for package prices
        if value == "one_time":
            return BillingInterval.FIXED
        return value


class SurchargeRule(BaseModel):
    kind: Literal["weekend", "holiday", "after_hours"]
    label: Optional[str] = None
    percent: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None

    # holiday rules
    dates: List[date] = []

    # after_hours rules: local business window
    open_time: time = time(8, 0)
    close_time: time = time(18, 0)

    @model_validator(mode="after")
    def _percent_or_amount(self):
        if (self.percent is None) == (self.amount is None):
            raise ValueError("surcharge rule needs exactly one of percent or amount")
        return self


class DiscountRule(BaseModel):
    min_full_days: int
    percent: Decimal
    label: Optional[str] = None


class PricingContext(BaseModel):
    service_id: str
    vendor_id: str
    base_rate: Decimal
    unit: Literal["hour", "day", "fixed"]
    currency: str
    hourly_rate: Optional[Decimal] = None
    daily_rate: Optional[Decimal] = None
    timezone: str = "UTC"
    tiers: List[PricingOption] = []
    surcharge_rules: List[SurchargeRule] = []
    discount_rules: List[DiscountRule] = []

    def find_tier(self, tier_id: str, active_only: bool = True) -> PricingOption:
        for tier in self.tiers:
            if tier.id != tier_id:
                continue
            if tier.service_id != self.service_id:
                break
            if active_only and not tier.is_active:
                raise ValidationError(f"Pricing option {tier_id} is no longer offered")
            return tier
        raise ValidationError(f"Pricing option {tier_id} does not belong to service {self.service_id}")


class Catalog(Protocol):
    async def get_pricing_context(self, service_id: str) -> PricingContext:
        ...


class HttpCatalog:
    """Fetches pricing contexts from the catalog service over HTTP."""

    def __init__(
        self,
        base_url: str = CATALOG_SERVICE_URL,
        timeout: float = CATALOG_HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def get_pricing_context(self, service_id: str) -> PricingContext:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.get(f"/services/{service_id}/pricing-context")
        except httpx.TimeoutException as e:
            raise CatalogUnavailable(f"Timeout fetching pricing for service {service_id}") from e
        except httpx.HTTPError as e:
            raise CatalogUnavailable(f"Catalog unreachable: {e}") from e

        if response.status_code == 404:
            raise NotFound(f"Service {service_id} not found")
        if response.status_code != 200:
            raise CatalogUnavailable(
                f"Catalog answered {response.status_code} for service {service_id}"
            )

        try:
            return PricingContext.model_validate(response.json())
        except (ValueError, pydantic.ValidationError) as e:
            raise CatalogUnavailable(f"Malformed pricing context for service {service_id}") from e
