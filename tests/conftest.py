from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from booking_service import models  # noqa: F401  registers the bookings table
from booking_service.catalog import PricingContext, PricingOption
from booking_service.db import Base
from booking_service.errors import NotFound
from booking_service.lifecycle import BookingEngine
from booking_service.models import BookingStatus, SCHEDULED_STATUSES

VENDOR = "vendor-1"
CUSTOMER = "customer-1"
OTHER_CUSTOMER = "customer-2"
STRANGER = "someone-else"
SERVICE = "svc-photo"

# Monday
T0 = datetime(2030, 6, 3, 8, 0, tzinfo=timezone.utc)


def at(day: int, hour: int, minute: int = 0) -> datetime:
    """June 2030 in UTC; the 3rd is a Monday, the 8th a Saturday."""
    return datetime(2030, 6, day, hour, minute, tzinfo=timezone.utc)


def make_context(**overrides) -> PricingContext:
    data = dict(
        service_id=SERVICE,
        vendor_id=VENDOR,
        base_rate=Decimal("20"),
        unit="hour",
        currency="CHF",
        hourly_rate=Decimal("20"),
        daily_rate=Decimal("120"),
        tiers=[
            PricingOption(
                id="pkg-portrait", service_id=SERVICE, label="Portrait session",
                price=Decimal("250"), currency="CHF", billing_interval="fixed",
                duration_minutes=90, sort_order=1,
            ),
            PricingOption(
                id="tier-day", service_id=SERVICE, label="Day rate",
                price=Decimal("100"), currency="CHF", billing_interval="daily", sort_order=2,
            ),
            PricingOption(
                id="tier-retired", service_id=SERVICE, label="Old hourly",
                price=Decimal("15"), currency="CHF", billing_interval="hourly",
                sort_order=3, is_active=False,
            ),
            PricingOption(
                id="tier-eur", service_id=SERVICE, label="Euro package",
                price=Decimal("200"), currency="EUR", billing_interval="fixed", sort_order=4,
            ),
        ],
    )
    data.update(overrides)
    return PricingContext(**data)


class StaticCatalog:
    def __init__(self, *contexts: PricingContext):
        self.contexts = {c.service_id: c for c in contexts}

    async def get_pricing_context(self, service_id: str) -> PricingContext:
        try:
            return self.contexts[service_id]
        except KeyError:
            raise NotFound(f"Service {service_id} not found")


class RecordingNotifier:
    def __init__(self):
        self.changes = []
        self.queued = []

    async def on_booking_state_changed(self, booking, previous_status):
        self.changes.append((booking.booking_id, previous_status, booking.status))

    async def on_booking_queued(self, booking, position):
        self.queued.append((booking.booking_id, position))


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def assert_invariants(booking):
    assert booking.requested_end > booking.requested_start

    scheduled = booking.status in SCHEDULED_STATUSES
    assert (booking.confirmed_start is not None) == scheduled
    assert (booking.confirmed_end is not None) == scheduled

    negotiating = booking.status == BookingStatus.ALTERNATIVE_PROPOSED
    assert (booking.alternative_expires_at is not None) == negotiating
    assert (booking.alternative_start is not None) == negotiating
    assert (booking.alternative_end is not None) == negotiating


@pytest.fixture
async def session_factory(tmp_path):
    # file-backed with one connection per session so concurrent sessions really race
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def catalog():
    return StaticCatalog(make_context())


@pytest.fixture
def booking_engine(session_factory, catalog, notifier, clock):
    return BookingEngine(
        session_factory,
        catalog,
        notifier,
        fee_rate=Decimal("0.05"),
        offer_window=timedelta(hours=48),
        clock=clock,
    )
