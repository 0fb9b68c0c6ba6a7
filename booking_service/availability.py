"""
Vendor calendars: availability settings, manual blocks and open slots.

lock_vendor() is where writers that must not race a confirmation serialize.
Accepting a booking and writing a calendar block both call it first in their
transaction, so the row lock is held across their overlap checks until commit,
whichever process they run in.
"""
import logging
import uuid
from datetime import date, datetime, time, timedelta
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .catalog import Catalog
from .config import (
    DEFAULT_MAX_ADVANCE_DAYS,
    DEFAULT_MIN_NOTICE_HOURS,
    DEFAULT_SLOT_MINUTES,
    DEFAULT_VENDOR_TIMEZONE,
)
from .errors import Conflict, InvalidInterval, NotFound, ValidationError
from .models import BLOCKING_STATUSES, Booking, CalendarBlock, VendorAvailability, utcnow
from .pricing import to_utc
from .schemas import (
    DEFAULT_WORKING_HOURS,
    WEEKDAYS,
    AvailabilitySettings,
    AvailabilityUpdate,
    CalendarBlockCreate,
    CalendarBlockResponse,
    CalendarBlockUpdate,
    TimeSlot,
)

logger = logging.getLogger("booking-service")

LOCK_ATTEMPTS = 3


async def lock_vendor(db: AsyncSession, vendor_id: str):
    """Take the vendor's schedule row lock for the rest of the session's transaction."""
    for _ in range(LOCK_ATTEMPTS):
        res = await db.execute(
            update(VendorAvailability)
            .where(VendorAvailability.vendor_id == vendor_id)
            .values(revision=VendorAvailability.revision + 1)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount:
            return

        db.add(VendorAvailability(vendor_id=vendor_id))
        try:
            await db.flush()
            return
        except IntegrityError:
            # someone else created the row first; lock it by updating on the next pass
            await db.rollback()

    raise Conflict(f"Could not lock the schedule of vendor {vendor_id}")


def settings_view(vendor_id: str, row: VendorAvailability | None) -> AvailabilitySettings:
    if row is None:
        return AvailabilitySettings(
            vendor_id=vendor_id,
            timezone=DEFAULT_VENDOR_TIMEZONE,
            min_booking_notice_hours=DEFAULT_MIN_NOTICE_HOURS,
            max_booking_advance_days=DEFAULT_MAX_ADVANCE_DAYS,
            working_hours=DEFAULT_WORKING_HOURS,
        )
    return AvailabilitySettings(
        vendor_id=vendor_id,
        timezone=row.timezone,
        min_booking_notice_hours=row.min_booking_notice_hours,
        max_booking_advance_days=row.max_booking_advance_days,
        working_hours=row.working_hours or DEFAULT_WORKING_HOURS,
    )


async def load_settings(db: AsyncSession, vendor_id: str) -> AvailabilitySettings:
    return settings_view(vendor_id, await db.get(VendorAvailability, vendor_id))


def check_booking_window(settings: AvailabilitySettings, start: datetime, now: datetime):
    """A requested or proposed start must respect the vendor's notice and advance limits."""
    earliest = now + timedelta(hours=settings.min_booking_notice_hours)
    latest = now + timedelta(days=settings.max_booking_advance_days)
    if start < earliest:
        raise ValidationError(
            f"This vendor needs at least {settings.min_booking_notice_hours} hours notice"
        )
    if start > latest:
        raise ValidationError(
            f"This vendor takes bookings at most {settings.max_booking_advance_days} days ahead"
        )


def blocks_overlapping(vendor_id: str, service_id: str | None, start: datetime, end: datetime):
    stmt = select(CalendarBlock).where(
        CalendarBlock.vendor_id == vendor_id,
        CalendarBlock.start_time < end,
        CalendarBlock.end_time > start,
    )
    if service_id is not None:
        stmt = stmt.where(
            or_(CalendarBlock.service_id.is_(None), CalendarBlock.service_id == service_id)
        )
    return stmt


def free_slots(
    day: date,
    settings: AvailabilitySettings,
    busy: list[tuple[datetime, datetime]],
    duration: timedelta,
    earliest: datetime,
    latest: datetime,
) -> list[tuple[datetime, datetime]]:
    """Back-to-back slots inside the day's working hours that touch nothing busy."""
    hours = settings.working_hours.get(WEEKDAYS[day.weekday()])
    if hours is None or not hours.enabled:
        return []

    zone = ZoneInfo(settings.timezone)
    start = to_utc(datetime.combine(day, hours.start, tzinfo=zone))
    close = to_utc(datetime.combine(day, hours.end, tzinfo=zone))

    slots = []
    while start + duration <= close:
        end = start + duration
        taken = any(b_start < end and b_end > start for b_start, b_end in busy)
        if earliest <= start <= latest and not taken:
            slots.append((start, end))
        start = end
    return slots


def _check_timezone(name: str):
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"Unknown timezone {name}") from e


class VendorCalendar:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        catalog: Catalog,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessions = session_factory
        self._catalog = catalog
        self._clock = clock

    def _now(self) -> datetime:
        return to_utc(self._clock())

    # ---------- settings ----------

    async def get_settings(self, vendor_id: str) -> AvailabilitySettings:
        async with self._sessions() as db:
            return await load_settings(db, vendor_id)

    async def update_settings(self, vendor_id: str, changes: AvailabilityUpdate) -> AvailabilitySettings:
        if changes.timezone is not None:
            _check_timezone(changes.timezone)
        if changes.working_hours is not None:
            unknown = sorted(set(changes.working_hours) - set(WEEKDAYS))
            if unknown:
                raise ValidationError(f"Unknown weekday(s): {', '.join(unknown)}")

        async with self._sessions() as db:
            await lock_vendor(db, vendor_id)
            row = await db.get(VendorAvailability, vendor_id)

            for field in ("timezone", "min_booking_notice_hours", "max_booking_advance_days"):
                value = getattr(changes, field)
                if value is not None:
                    setattr(row, field, value)
            if changes.working_hours is not None:
                week = {**settings_view(vendor_id, row).working_hours, **changes.working_hours}
                row.working_hours = {day: hours.model_dump(mode="json") for day, hours in week.items()}
            row.updated_at = self._now()

            await db.commit()
            logger.info("availability updated for vendor %s", vendor_id)
            return settings_view(vendor_id, row)

    # ---------- blocks ----------

    async def _load_block(self, db: AsyncSession, block_id: str, vendor_id: str) -> CalendarBlock:
        res = await db.execute(
            select(CalendarBlock).where(
                CalendarBlock.block_id == block_id,
                CalendarBlock.vendor_id == vendor_id,
            )
        )
        block = res.scalar_one_or_none()
        if not block:
            raise NotFound(f"Calendar block {block_id} not found")
        return block

    async def list_blocks(
        self,
        vendor_id: str,
        start: datetime,
        end: datetime,
        service_id: str | None = None,
    ) -> list[CalendarBlockResponse]:
        start, end = to_utc(start), to_utc(end)
        if end <= start:
            raise InvalidInterval("end must be after start")

        async with self._sessions() as db:
            res = await db.execute(
                blocks_overlapping(vendor_id, service_id, start, end).order_by(CalendarBlock.start_time)
            )
            return [CalendarBlockResponse.from_model(b) for b in res.scalars().all()]

    async def create_block(self, vendor_id: str, data: CalendarBlockCreate) -> CalendarBlockResponse:
        start, end = to_utc(data.start_time), to_utc(data.end_time)
        if end <= start:
            raise InvalidInterval("end_time must be after start_time")

        async with self._sessions() as db:
            await lock_vendor(db, vendor_id)
            block = CalendarBlock(
                block_id=str(uuid.uuid4()),
                vendor_id=vendor_id,
                service_id=data.service_id,
                start_time=start,
                end_time=end,
                block_type=data.block_type,
                title=data.title,
                reason=data.reason,
                created_at=self._now(),
            )
            db.add(block)
            await db.commit()

        logger.info("vendor %s blocked %s - %s", vendor_id, start.isoformat(), end.isoformat())
        return CalendarBlockResponse.from_model(block)

    async def update_block(
        self, block_id: str, vendor_id: str, changes: CalendarBlockUpdate
    ) -> CalendarBlockResponse:
        async with self._sessions() as db:
            await lock_vendor(db, vendor_id)
            block = await self._load_block(db, block_id, vendor_id)

            start = to_utc(changes.start_time) if changes.start_time else to_utc(block.start_time)
            end = to_utc(changes.end_time) if changes.end_time else to_utc(block.end_time)
            if end <= start:
                raise InvalidInterval("end_time must be after start_time")

            block.start_time = start
            block.end_time = end
            for field in ("block_type", "title", "reason"):
                value = getattr(changes, field)
                if value is not None:
                    setattr(block, field, value)
            await db.commit()
            return CalendarBlockResponse.from_model(block)

    async def delete_block(self, block_id: str, vendor_id: str):
        async with self._sessions() as db:
            await lock_vendor(db, vendor_id)
            block = await self._load_block(db, block_id, vendor_id)
            await db.delete(block)
            await db.commit()

    # ---------- slots ----------

    async def available_slots(
        self,
        service_id: str,
        day: date,
        duration_minutes: int | None = None,
        pricing_option_id: str | None = None,
    ) -> list[TimeSlot]:
        context = await self._catalog.get_pricing_context(service_id)
        if duration_minutes is None and pricing_option_id:
            duration_minutes = context.find_tier(pricing_option_id).duration_minutes
        duration_minutes = duration_minutes or DEFAULT_SLOT_MINUTES
        if duration_minutes <= 0:
            raise ValidationError("duration must be positive")

        async with self._sessions() as db:
            settings = await load_settings(db, context.vendor_id)
            zone = ZoneInfo(settings.timezone)
            day_start = to_utc(datetime.combine(day, time(0), tzinfo=zone))
            day_end = to_utc(datetime.combine(day + timedelta(days=1), time(0), tzinfo=zone))

            booked = await db.execute(
                select(Booking.confirmed_start, Booking.confirmed_end).where(
                    Booking.vendor_id == context.vendor_id,
                    Booking.status.in_([s.value for s in BLOCKING_STATUSES]),
                    Booking.confirmed_start < day_end,
                    Booking.confirmed_end > day_start,
                )
            )
            blocked = await db.execute(blocks_overlapping(context.vendor_id, service_id, day_start, day_end))

            busy = [(to_utc(s), to_utc(e)) for s, e in booked.all()]
            busy += [(to_utc(b.start_time), to_utc(b.end_time)) for b in blocked.scalars().all()]

        now = self._now()
        slots = free_slots(
            day,
            settings,
            busy,
            timedelta(minutes=duration_minutes),
            earliest=now + timedelta(hours=settings.min_booking_notice_hours),
            latest=now + timedelta(days=settings.max_booking_advance_days),
        )
        return [TimeSlot(start=s, end=e) for s, e in slots]
