"""
Price computation for bookings.

compute_breakdown() is the only place a booking price is derived. The preview
endpoint and the lifecycle engine both call it so a quoted price and a
committed price cannot disagree.

Money is carried as Decimal and rounded half-up to cents at every line. The
only float in a breakdown is total_days, which is informational.
"""
import enum
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from fractions import Fraction
from typing import List, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict

from .catalog import BillingInterval, PricingContext, PricingOption, SurchargeRule
from .config import PLATFORM_FEE_RATE
from .errors import CurrencyMismatch, InvalidInterval

CENT = Decimal("0.01")
HOURS_PER_DAY = 24
MINUTES_PER_HOUR = 60
MINUTES_PER_DAY = HOURS_PER_DAY * MINUTES_PER_HOUR

# surcharges are always applied in this order
SURCHARGE_ORDER = ("weekend", "holiday", "after_hours")


class CalculationMethod(str, enum.Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    MIXED = "mixed"
    FIXED = "fixed"


class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    amount: Decimal


class PricingBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_hours: int
    total_days: float
    full_days: int
    extra_hours: int

    base_cost: Decimal
    daily_cost: Decimal
    hourly_cost: Decimal
    surcharges: List[LineItem]
    discount: Decimal

    subtotal: Decimal
    platform_fee: Decimal
    total: Decimal
    currency: str

    line_items: List[LineItem]
    calculation_method: CalculationMethod


@dataclass(frozen=True)
class Duration:
    minutes: Fraction
    total_hours: int
    total_days: float
    full_days: int
    extra_hours: int

    @property
    def billed_days(self) -> int:
        return max(1, math.ceil(self.minutes / MINUTES_PER_DAY))


@dataclass(frozen=True)
class Rates:
    hourly: Decimal
    daily: Decimal


def to_cents(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def measure(start: datetime, end: datetime) -> Duration:
    # subtract in UTC so a DST switch inside the interval does not shift the hour count
    delta = to_utc(end) - to_utc(start)
    if delta <= timedelta(0):
        raise InvalidInterval("Booking end must be after its start")

    minutes = Fraction(delta // timedelta(microseconds=1), 60_000_000)
    full_days = math.floor(minutes / MINUTES_PER_DAY)
    return Duration(
        minutes=minutes,
        total_hours=math.ceil(minutes / MINUTES_PER_HOUR),
        total_days=float(minutes / MINUTES_PER_DAY),
        full_days=full_days,
        extra_hours=math.ceil((minutes - full_days * MINUTES_PER_DAY) / MINUTES_PER_HOUR),
    )


def resolve_rates(context: PricingContext, tier: Optional[PricingOption]) -> Rates:
    hourly = context.hourly_rate
    daily = context.daily_rate

    if hourly is None and context.unit == "hour":
        hourly = context.base_rate
    if daily is None and context.unit == "day":
        daily = context.base_rate

    if tier is not None and tier.billing_interval == BillingInterval.HOURLY:
        hourly = tier.price
    if tier is not None and tier.billing_interval == BillingInterval.DAILY:
        daily = tier.price

    if hourly is None and daily is None:
        hourly = daily = Decimal("0")
    elif daily is None:
        daily = hourly * HOURS_PER_DAY
    elif hourly is None:
        hourly = to_cents(daily / HOURS_PER_DAY)

    return Rates(hourly=to_cents(hourly), daily=to_cents(daily))


def _money(amount: Decimal, currency: str) -> str:
    return f"{amount:.2f} {currency}"


def _percent(value: Decimal) -> str:
    value = value.normalize()
    if value.as_tuple().exponent > 0:
        value = value.quantize(Decimal(1))
    return f"{value:f}%"


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def _local_dates(start: datetime, end: datetime, zone: ZoneInfo):
    """Every local calendar date the half-open interval touches."""
    first = start.astimezone(zone).date()
    last = (end - timedelta(microseconds=1)).astimezone(zone).date()
    day = first
    while day <= last:
        yield day
        day += timedelta(days=1)


def _outside_business_hours(start: datetime, end: datetime, zone: ZoneInfo, rule: SurchargeRule) -> bool:
    local_start = start.astimezone(zone)
    local_end = end.astimezone(zone)
    if local_start.date() != local_end.date():
        return True
    return local_start.time() < rule.open_time or local_end.time() > rule.close_time


def _surcharge_amount(rule: SurchargeRule, base_cost: Decimal, matching_days: int, duration: Duration) -> Decimal:
    if rule.amount is not None:
        return to_cents(rule.amount)
    if rule.kind == "after_hours":
        return to_cents(base_cost * rule.percent / 100)
    billed = duration.billed_days
    matching = min(matching_days, billed)
    return to_cents(base_cost * rule.percent * matching / (100 * billed))


def compute_surcharges(
    context: PricingContext,
    method: CalculationMethod,
    base_cost: Decimal,
    start: datetime,
    end: datetime,
    duration: Duration,
) -> list[LineItem]:
    zone = ZoneInfo(context.timezone)
    dates = list(_local_dates(start, end, zone))
    items = []

    for kind in SURCHARGE_ORDER:
        for rule in context.surcharge_rules:
            if rule.kind != kind:
                continue
            if rule.amount is not None and rule.currency and rule.currency != context.currency:
                raise CurrencyMismatch(
                    f"Surcharge in {rule.currency} cannot apply to a {context.currency} service"
                )

            if kind == "weekend":
                matching = sum(1 for d in dates if d.weekday() >= 5)
                default_label = "Weekend surcharge"
            elif kind == "holiday":
                holidays = set(rule.dates)
                matching = sum(1 for d in dates if d in holidays)
                default_label = "Holiday surcharge"
            else:
                if method != CalculationMethod.HOURLY:
                    continue
                matching = 1 if _outside_business_hours(start, end, zone, rule) else 0
                default_label = "After-hours surcharge"

            if not matching:
                continue

            amount = _surcharge_amount(rule, base_cost, matching, duration)
            if amount <= 0:
                continue

            label = rule.label or default_label
            if rule.percent is not None:
                label = f"{label} ({_percent(rule.percent)})"
            items.append(LineItem(label=label, amount=amount))

    return items


def compute_discount(context: PricingContext, base_cost: Decimal, full_days: int) -> Optional[LineItem]:
    applicable = [r for r in context.discount_rules if full_days >= r.min_full_days]
    if not applicable:
        return None

    rule = max(applicable, key=lambda r: (r.percent, r.min_full_days))
    amount = to_cents(base_cost * rule.percent / 100)
    if amount <= 0:
        return None

    label = rule.label or "Multi-day discount"
    return LineItem(label=f"{label} ({_percent(rule.percent)})", amount=amount)


def _fixed_breakdown(
    price: Decimal,
    label: str,
    currency: str,
    duration: Duration,
    fee_rate: Decimal,
) -> PricingBreakdown:
    subtotal = to_cents(price)
    platform_fee = to_cents(subtotal * fee_rate)
    zero = to_cents(0)
    return PricingBreakdown(
        total_hours=duration.total_hours,
        total_days=duration.total_days,
        full_days=duration.full_days,
        extra_hours=duration.extra_hours,
        base_cost=zero,
        daily_cost=zero,
        hourly_cost=zero,
        surcharges=[],
        discount=zero,
        subtotal=subtotal,
        platform_fee=platform_fee,
        total=subtotal + platform_fee,
        currency=currency,
        line_items=[
            LineItem(label=label, amount=subtotal),
            LineItem(label=f"Platform fee ({_percent(fee_rate * 100)})", amount=platform_fee),
        ],
        calculation_method=CalculationMethod.FIXED,
    )


def compute_breakdown(
    context: PricingContext,
    tier: Optional[PricingOption],
    start: datetime,
    end: datetime,
    fee_rate: Decimal = PLATFORM_FEE_RATE,
) -> PricingBreakdown:
    """
    Reduce a requested interval and an optional pricing tier to a billable breakdown.

    Raises InvalidInterval for an empty or negative interval and
    CurrencyMismatch when the tier (or a flat surcharge) is priced in another
    currency than the service.
    """
    duration = measure(start, end)
    start, end = to_utc(start), to_utc(end)
    fee_rate = Decimal(fee_rate)
    currency = context.currency

    if tier is not None and tier.currency != currency:
        raise CurrencyMismatch(
            f"Pricing option {tier.id} is priced in {tier.currency}, service uses {currency}"
        )

    if tier is not None and tier.billing_interval == BillingInterval.FIXED:
        return _fixed_breakdown(tier.price, tier.label, currency, duration, fee_rate)
    if tier is None and context.unit == "fixed":
        return _fixed_breakdown(context.base_rate, "Service", currency, duration, fee_rate)

    rates = resolve_rates(context, tier)
    daily_cost = to_cents(0)
    hourly_cost = to_cents(0)
    line_items = []

    if duration.full_days >= 1:
        daily_cost = to_cents(duration.full_days * rates.daily)
        line_items.append(LineItem(
            label=f"{_plural(duration.full_days, 'day')} @ {_money(rates.daily, currency)}/day",
            amount=daily_cost,
        ))
        if duration.extra_hours > 0:
            method = CalculationMethod.MIXED
            hourly_cost = to_cents(duration.extra_hours * rates.hourly)
            line_items.append(LineItem(
                label=f"{_plural(duration.extra_hours, 'extra hour')} @ {_money(rates.hourly, currency)}/hr",
                amount=hourly_cost,
            ))
        else:
            method = CalculationMethod.DAILY
    else:
        method = CalculationMethod.HOURLY
        hourly_cost = to_cents(duration.total_hours * rates.hourly)
        line_items.append(LineItem(
            label=f"{_plural(duration.total_hours, 'hour')} @ {_money(rates.hourly, currency)}/hr",
            amount=hourly_cost,
        ))

    base_cost = daily_cost + hourly_cost
    surcharges = compute_surcharges(context, method, base_cost, start, end, duration)
    line_items.extend(surcharges)

    discount_item = compute_discount(context, base_cost, duration.full_days)
    discount = discount_item.amount if discount_item else to_cents(0)
    if discount_item:
        line_items.append(LineItem(label=discount_item.label, amount=-discount))

    subtotal = base_cost + sum((s.amount for s in surcharges), Decimal("0")) - discount
    platform_fee = to_cents(subtotal * fee_rate)
    line_items.append(LineItem(label=f"Platform fee ({_percent(fee_rate * 100)})", amount=platform_fee))

    return PricingBreakdown(
        total_hours=duration.total_hours,
        total_days=duration.total_days,
        full_days=duration.full_days,
        extra_hours=duration.extra_hours,
        base_cost=base_cost,
        daily_cost=daily_cost,
        hourly_cost=hourly_cost,
        surcharges=surcharges,
        discount=discount,
        subtotal=subtotal,
        platform_fee=platform_fee,
        total=subtotal + platform_fee,
        currency=currency,
        line_items=line_items,
        calculation_method=method,
    )
