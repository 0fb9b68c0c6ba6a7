"""
Booking lifecycle engine.

BookingEngine is the only writer of a booking's status. Every transition
either commits completely (status, time fields and recomputed price) or not
at all, and reports failures as the typed errors from errors.py.

Concurrency:
  - every UPDATE carries the row version (SQLAlchemy version_id_col), so two
    writers racing on one booking cannot both win; the loser gets Conflict.
  - accept first takes the vendor's schedule row lock (availability.lock_vendor)
    and holds it through its overlap check and commit, so two colliding
    windows for the same vendor cannot both be confirmed, even from
    different processes.
  - the sweeps use conditional UPDATEs that re-check status and deadline at
    commit time.
"""
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from .availability import (
    VendorCalendar,
    blocks_overlapping,
    check_booking_window,
    load_settings,
    lock_vendor,
)
from .catalog import Catalog, PricingContext
from .config import (
    MAX_OFFER_WINDOW_HOURS,
    MIN_OFFER_WINDOW_HOURS,
    OFFER_WINDOW_HOURS,
    PLATFORM_FEE_RATE,
    SWEEP_BATCH_SIZE,
)
from .errors import (
    Conflict,
    InvalidInterval,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from .models import (
    BLOCKING_STATUSES,
    Booking,
    BookingStatus,
    utcnow,
)
from .notifier import NotificationDispatcher, Notifier, NullNotifier
from .pricing import PricingBreakdown, compute_breakdown, to_utc
from .schemas import BookingResponse

logger = logging.getLogger("booking-service")

CUSTOMER = "customer"
VENDOR = "vendor"


def new_booking_number(now: datetime) -> str:
    return f"BK-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


def _role(booking: Booking, actor_id: str) -> str:
    if actor_id == booking.vendor_id:
        return VENDOR
    if actor_id == booking.customer_id:
        return CUSTOMER
    raise PermissionDenied(f"{actor_id} is not a party to booking {booking.booking_id}")


def _require_reason(reason: str | None, action: str) -> str:
    if reason is None or not reason.strip():
        raise ValidationError(f"A reason is required to {action} a booking")
    return reason.strip()


def _clear_alternative(booking: Booking):
    booking.alternative_start = None
    booking.alternative_end = None
    booking.alternative_message = None
    booking.alternative_expires_at = None


def _clear_confirmed(booking: Booking):
    booking.confirmed_start = None
    booking.confirmed_end = None


def _store_price(booking: Booking, breakdown: PricingBreakdown):
    booking.pricing_breakdown = breakdown.model_dump(mode="json")
    booking.total_price = breakdown.total
    booking.currency = breakdown.currency


class BookingEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        catalog: Catalog,
        notifier: Notifier | None = None,
        *,
        fee_rate: Decimal = PLATFORM_FEE_RATE,
        offer_window: timedelta = timedelta(hours=OFFER_WINDOW_HOURS),
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessions = session_factory
        self._catalog = catalog
        self._fee_rate = Decimal(fee_rate)
        self._offer_window = offer_window
        self._clock = clock
        self.calendar = VendorCalendar(session_factory, catalog, clock)
        self.notifications = NotificationDispatcher(notifier or NullNotifier())

    def _now(self) -> datetime:
        return to_utc(self._clock())

    # ---------- pricing ----------

    async def _pricing_context(self, service_id: str) -> PricingContext:
        try:
            return await self._catalog.get_pricing_context(service_id)
        except NotFound as e:
            raise ValidationError(f"Unknown service {service_id}") from e

    async def preview_price(
        self,
        service_id: str,
        tier_id: str | None,
        start: datetime,
        end: datetime,
    ) -> PricingBreakdown:
        context = await self._pricing_context(service_id)
        tier = context.find_tier(tier_id) if tier_id else None
        return compute_breakdown(context, tier, start, end, fee_rate=self._fee_rate)

    async def quick_estimate(
        self,
        service_id: str,
        tier_id: str | None = None,
        hours: int = 1,
        days: int = 0,
    ) -> PricingBreakdown:
        if hours < 0 or days < 0:
            raise ValidationError("hours and days must not be negative")
        start = self._now()
        end = start + timedelta(days=days, hours=hours)
        return await self.preview_price(service_id, tier_id, start, end)

    # ---------- reads ----------

    async def _load(self, db: AsyncSession, booking_id: str) -> Booking:
        res = await db.execute(select(Booking).where(Booking.booking_id == booking_id))
        booking = res.scalar_one_or_none()
        if not booking:
            raise NotFound(f"Booking {booking_id} not found")
        return booking

    async def _queue_position(self, db: AsyncSession, booking: Booking) -> int | None:
        """1-based place behind already scheduled work, or None when nothing blocks it."""
        if booking.status != BookingStatus.PENDING:
            return None

        res = await db.execute(
            select(Booking.confirmed_start, Booking.confirmed_end).where(
                Booking.vendor_id == booking.vendor_id,
                Booking.status.in_([s.value for s in BLOCKING_STATUSES]),
                Booking.confirmed_start < booking.requested_end,
                Booking.confirmed_end > booking.requested_start,
            )
        )
        windows = res.all()
        if not windows:
            return None

        waiting = await db.execute(
            select(Booking.booking_id)
            .where(
                Booking.vendor_id == booking.vendor_id,
                Booking.status == BookingStatus.PENDING.value,
                or_(*[
                    and_(Booking.requested_start < w_end, Booking.requested_end > w_start)
                    for w_start, w_end in windows
                ]),
            )
            .order_by(Booking.created_at, Booking.booking_id)
        )
        queue = list(waiting.scalars().all())
        if booking.booking_id not in queue:
            # the snapshot left pending after it was loaded
            return None
        return queue.index(booking.booking_id) + 1

    async def get_booking(self, booking_id: str, actor_id: str) -> BookingResponse:
        async with self._sessions() as db:
            booking = await self._load(db, booking_id)
            _role(booking, actor_id)

        if self._offer_lapsed(booking, self._now()):
            await self._expire_one(booking_id, self._now())

        async with self._sessions() as db:
            booking = await self._load(db, booking_id)
            position = await self._queue_position(db, booking)
            return BookingResponse.from_model(booking, queue_position=position)

    async def _list(self, column, party_id: str, status: BookingStatus | None) -> list[BookingResponse]:
        async with self._sessions() as db:
            stmt = select(Booking).where(column == party_id)
            if status is not None:
                stmt = stmt.where(Booking.status == BookingStatus(status).value)
            res = await db.execute(stmt.order_by(Booking.created_at.desc(), Booking.booking_id))
            bookings = res.scalars().all()
            return [
                BookingResponse.from_model(b, queue_position=await self._queue_position(db, b))
                for b in bookings
            ]

    async def list_customer_bookings(
        self, customer_id: str, status: BookingStatus | None = None
    ) -> list[BookingResponse]:
        await self.sweep_expired_alternatives(customer_id=customer_id)
        return await self._list(Booking.customer_id, customer_id, status)

    async def list_vendor_bookings(
        self, vendor_id: str, status: BookingStatus | None = None
    ) -> list[BookingResponse]:
        await self.sweep_expired_alternatives(vendor_id=vendor_id)
        return await self._list(Booking.vendor_id, vendor_id, status)

    async def pending_count(self, vendor_id: str) -> int:
        async with self._sessions() as db:
            res = await db.execute(
                select(func.count()).select_from(Booking).where(
                    Booking.vendor_id == vendor_id,
                    Booking.status == BookingStatus.PENDING.value,
                )
            )
            return res.scalar_one()

    # ---------- transitions ----------

    def _offer_lapsed(self, booking: Booking, now: datetime) -> bool:
        return (
            booking.status == BookingStatus.ALTERNATIVE_PROPOSED
            and booking.alternative_expires_at is not None
            and now > to_utc(booking.alternative_expires_at)
        )

    @staticmethod
    def _check_expected(booking: Booking, expected_status: BookingStatus | None):
        if expected_status is not None and booking.status != BookingStatus(expected_status):
            raise Conflict(
                f"Booking {booking.booking_id} is {booking.status.value}, "
                f"expected {BookingStatus(expected_status).value}"
            )

    async def _commit(self, db: AsyncSession, booking: Booking):
        try:
            await db.commit()
        except StaleDataError as e:
            await db.rollback()
            raise Conflict(f"Booking {booking.booking_id} was modified concurrently") from e

    def _announce(self, booking: Booking, previous: BookingStatus | None, position: int | None = None) -> BookingResponse:
        view = BookingResponse.from_model(booking, queue_position=position)
        logger.info(
            "booking %s %s -> %s",
            view.booking_number,
            previous.value if previous else "new",
            view.status.value,
        )
        self.notifications.state_changed(view, previous)
        return view

    async def create_booking(
        self,
        customer_id: str,
        service_id: str,
        tier_id: str | None,
        start: datetime,
        end: datetime,
        customer_message: str | None = None,
        customer_phone: str | None = None,
        customer_address: str | None = None,
    ) -> BookingResponse:
        start, end = to_utc(start), to_utc(end)
        if end <= start:
            raise InvalidInterval("requested_end must be after requested_start")

        context = await self._pricing_context(service_id)
        if customer_id == context.vendor_id:
            raise ValidationError("Vendors cannot book their own service")
        tier = context.find_tier(tier_id) if tier_id else None
        breakdown = compute_breakdown(context, tier, start, end, fee_rate=self._fee_rate)

        now = self._now()
        booking = Booking(
            booking_id=str(uuid.uuid4()),
            booking_number=new_booking_number(now),
            customer_id=customer_id,
            vendor_id=context.vendor_id,
            service_id=service_id,
            pricing_option_id=tier.id if tier else None,
            requested_start=start,
            requested_end=end,
            customer_message=customer_message,
            customer_phone=customer_phone,
            customer_address=customer_address,
            created_at=now,
            updated_at=now,
        )
        booking._status = BookingStatus.PENDING.value
        _store_price(booking, breakdown)

        async with self._sessions() as db:
            check_booking_window(await load_settings(db, context.vendor_id), start, now)
            db.add(booking)
            await db.commit()
            position = await self._queue_position(db, booking)

        return self._announce(booking, None, position)

    async def accept_booking(
        self,
        booking_id: str,
        actor_id: str,
        message: str | None = None,
        expected_status: BookingStatus | None = None,
    ) -> BookingResponse:
        """
        Vendor accepts a pending request, or the customer accepts the vendor's
        alternative. Either way the accepted window becomes the confirmed one
        and the price is recomputed for it.
        """
        async with self._sessions() as db:
            snapshot = await self._load(db, booking_id)

        role = _role(snapshot, actor_id)
        if role == VENDOR:
            if snapshot.status != BookingStatus.PENDING:
                raise InvalidTransition(
                    f"Vendor can only accept a pending booking, this one is {snapshot.status.value}",
                    snapshot.status.value,
                )
            start, end = snapshot.requested_start, snapshot.requested_end
        else:
            if snapshot.status != BookingStatus.ALTERNATIVE_PROPOSED:
                raise InvalidTransition(
                    f"Customer can only accept a proposed alternative, this booking is {snapshot.status.value}",
                    snapshot.status.value,
                )
            if self._offer_lapsed(snapshot, self._now()):
                raise InvalidTransition("The proposed alternative has expired", snapshot.status.value)
            start, end = snapshot.alternative_start, snapshot.alternative_end
        self._check_expected(snapshot, expected_status)
        start, end = to_utc(start), to_utc(end)

        context = await self._pricing_context(snapshot.service_id)
        tier = (
            context.find_tier(snapshot.pricing_option_id, active_only=False)
            if snapshot.pricing_option_id
            else None
        )
        breakdown = compute_breakdown(context, tier, start, end, fee_rate=self._fee_rate)

        async with self._sessions() as db:
            await lock_vendor(db, snapshot.vendor_id)

            booking = await self._load(db, booking_id)
            if booking.version != snapshot.version:
                raise Conflict(f"Booking {booking_id} changed while it was being accepted")
            if role == CUSTOMER and self._offer_lapsed(booking, self._now()):
                raise InvalidTransition("The proposed alternative has expired", booking.status.value)

            clash = await db.execute(
                select(Booking.booking_number).where(
                    Booking.vendor_id == booking.vendor_id,
                    Booking.booking_id != booking.booking_id,
                    Booking.status.in_([s.value for s in BLOCKING_STATUSES]),
                    Booking.confirmed_start < end,
                    Booking.confirmed_end > start,
                ).limit(1)
            )
            other = clash.scalar_one_or_none()
            if other:
                raise Conflict(f"Vendor already has booking {other} in this time window")

            blocked = await db.execute(
                blocks_overlapping(booking.vendor_id, booking.service_id, start, end).limit(1)
            )
            block = blocked.scalar_one_or_none()
            if block:
                raise Conflict(f"Vendor has blocked this time window ({block.title or block.block_type})")

            now = self._now()
            previous = booking.status
            booking._status = BookingStatus.CONFIRMED.value
            booking.confirmed_start = start
            booking.confirmed_end = end
            booking.confirmed_at = now
            booking.updated_at = now
            if message:
                booking.vendor_message = message
            _clear_alternative(booking)
            _store_price(booking, breakdown)
            await self._commit(db, booking)

        view = self._announce(booking, previous)
        await self._announce_queue(booking.vendor_id, start, end)
        return view

    async def _announce_queue(self, vendor_id: str, start: datetime, end: datetime):
        """Tell every pending request that now waits behind a newly confirmed window."""
        try:
            async with self._sessions() as db:
                res = await db.execute(
                    select(Booking)
                    .where(
                        Booking.vendor_id == vendor_id,
                        Booking.status == BookingStatus.PENDING.value,
                        Booking.requested_start < end,
                        Booking.requested_end > start,
                    )
                    .order_by(Booking.created_at, Booking.booking_id)
                )
                waiting = res.scalars().all()
        except SQLAlchemyError:
            logger.exception("could not load the queue behind %s - %s for vendor %s", start, end, vendor_id)
            return

        for position, booking in enumerate(waiting, start=1):
            view = BookingResponse.from_model(booking, queue_position=position)
            self.notifications.queued(view, position)

    async def reject_booking(
        self,
        booking_id: str,
        actor_id: str,
        reason: str,
        expected_status: BookingStatus | None = None,
    ) -> BookingResponse:
        reason = _require_reason(reason, "reject")

        async with self._sessions() as db:
            booking = await self._load(db, booking_id)
            role = _role(booking, actor_id)

            if role == VENDOR and booking.status == BookingStatus.PENDING:
                pass
            elif role == CUSTOMER and booking.status == BookingStatus.ALTERNATIVE_PROPOSED:
                if self._offer_lapsed(booking, self._now()):
                    raise InvalidTransition("The proposed alternative has expired", booking.status.value)
            else:
                raise InvalidTransition(
                    f"{role.capitalize()} cannot reject a booking that is {booking.status.value}",
                    booking.status.value,
                )
            self._check_expected(booking, expected_status)

            previous = booking.status
            booking._status = BookingStatus.REJECTED.value
            booking.rejection_reason = reason
            booking.updated_at = self._now()
            _clear_alternative(booking)
            await self._commit(db, booking)

        return self._announce(booking, previous)

    async def propose_alternative(
        self,
        booking_id: str,
        vendor_id: str,
        alt_start: datetime,
        alt_end: datetime,
        message: str | None = None,
        expiry_hours: int | None = None,
        expected_status: BookingStatus | None = None,
    ) -> BookingResponse:
        alt_start, alt_end = to_utc(alt_start), to_utc(alt_end)
        if alt_end <= alt_start:
            raise InvalidInterval("alternative_end must be after alternative_start")

        window = self._offer_window
        if expiry_hours is not None:
            if not MIN_OFFER_WINDOW_HOURS <= expiry_hours <= MAX_OFFER_WINDOW_HOURS:
                raise ValidationError(
                    f"expiry_hours must be between {MIN_OFFER_WINDOW_HOURS} and {MAX_OFFER_WINDOW_HOURS}"
                )
            window = timedelta(hours=expiry_hours)

        async with self._sessions() as db:
            booking = await self._load(db, booking_id)
            if _role(booking, vendor_id) != VENDOR:
                raise PermissionDenied("Only the vendor can propose an alternative time")
            if booking.status != BookingStatus.PENDING:
                raise InvalidTransition(
                    f"Alternatives can only be proposed for pending bookings, this one is {booking.status.value}",
                    booking.status.value,
                )
            self._check_expected(booking, expected_status)

            now = self._now()
            check_booking_window(await load_settings(db, booking.vendor_id), alt_start, now)

            previous = booking.status
            booking._status = BookingStatus.ALTERNATIVE_PROPOSED.value
            booking.alternative_start = alt_start
            booking.alternative_end = alt_end
            booking.alternative_message = message
            booking.alternative_expires_at = now + window
            booking.updated_at = now
            await self._commit(db, booking)

        return self._announce(booking, previous)

    async def start_booking(self, booking_id: str, actor_id: str) -> BookingResponse:
        async with self._sessions() as db:
            booking = await self._load(db, booking_id)
            if _role(booking, actor_id) != VENDOR:
                raise PermissionDenied("Only the vendor can start a booking")
            if booking.status != BookingStatus.CONFIRMED:
                raise InvalidTransition(
                    f"Only confirmed bookings can start, this one is {booking.status.value}",
                    booking.status.value,
                )

            now = self._now()
            if now < to_utc(booking.confirmed_start):
                raise InvalidTransition("Booking cannot start before its confirmed start time", booking.status.value)

            previous = booking.status
            booking._status = BookingStatus.IN_PROGRESS.value
            booking.started_at = now
            booking.updated_at = now
            await self._commit(db, booking)

        return self._announce(booking, previous)

    async def complete_booking(self, booking_id: str, actor_id: str) -> BookingResponse:
        async with self._sessions() as db:
            booking = await self._load(db, booking_id)
            if _role(booking, actor_id) != VENDOR:
                raise PermissionDenied("Only the vendor can complete a booking")
            if booking.status not in (BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS):
                raise InvalidTransition(
                    f"Only confirmed or in-progress bookings can complete, this one is {booking.status.value}",
                    booking.status.value,
                )

            now = self._now()
            previous = booking.status
            booking._status = BookingStatus.COMPLETED.value
            booking.completed_at = now
            booking.updated_at = now
            await self._commit(db, booking)

        return self._announce(booking, previous)

    async def cancel_booking(
        self,
        booking_id: str,
        actor_id: str,
        reason: str,
        expected_status: BookingStatus | None = None,
    ) -> BookingResponse:
        reason = _require_reason(reason, "cancel")

        async with self._sessions() as db:
            booking = await self._load(db, booking_id)
            role = _role(booking, actor_id)
            if booking.is_terminal:
                raise InvalidTransition(
                    f"Booking is already {booking.status.value}",
                    booking.status.value,
                )
            self._check_expected(booking, expected_status)

            now = self._now()
            previous = booking.status
            booking._status = BookingStatus.CANCELLED.value
            booking.cancellation_reason = reason
            booking.cancelled_by = role
            booking.cancelled_at = now
            booking.updated_at = now
            _clear_alternative(booking)
            _clear_confirmed(booking)
            await self._commit(db, booking)

        return self._announce(booking, previous)

    # ---------- sweeps ----------

    async def _expire_one(self, booking_id: str, now: datetime) -> bool:
        async with self._sessions() as db:
            res = await db.execute(
                update(Booking)
                .where(
                    Booking.booking_id == booking_id,
                    Booking.status == BookingStatus.ALTERNATIVE_PROPOSED.value,
                    Booking.alternative_expires_at < now,
                )
                .values({
                    Booking._status: BookingStatus.EXPIRED.value,
                    Booking.alternative_start: None,
                    Booking.alternative_end: None,
                    Booking.alternative_message: None,
                    Booking.alternative_expires_at: None,
                    Booking.updated_at: now,
                    Booking.version: Booking.version + 1,
                })
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if res.rowcount != 1:
                return False
            booking = await self._load(db, booking_id)

        self._announce(booking, BookingStatus.ALTERNATIVE_PROPOSED)
        return True

    async def sweep_expired_alternatives(
        self,
        now: datetime | None = None,
        *,
        customer_id: str | None = None,
        vendor_id: str | None = None,
    ) -> int:
        """Move every lapsed counter-offer to expired. Returns how many moved."""
        now = to_utc(now) if now is not None else self._now()
        count = 0
        seen = set()

        while True:
            async with self._sessions() as db:
                stmt = select(Booking.booking_id).where(
                    Booking.status == BookingStatus.ALTERNATIVE_PROPOSED.value,
                    Booking.alternative_expires_at < now,
                )
                if customer_id is not None:
                    stmt = stmt.where(Booking.customer_id == customer_id)
                if vendor_id is not None:
                    stmt = stmt.where(Booking.vendor_id == vendor_id)
                if seen:
                    stmt = stmt.where(Booking.booking_id.not_in(seen))
                res = await db.execute(
                    stmt.order_by(Booking.alternative_expires_at).limit(SWEEP_BATCH_SIZE)
                )
                batch = list(res.scalars().all())

            if not batch:
                return count

            for booking_id in batch:
                seen.add(booking_id)
                if await self._expire_one(booking_id, now):
                    count += 1

    async def _start_one(self, booking_id: str, now: datetime) -> bool:
        async with self._sessions() as db:
            res = await db.execute(
                update(Booking)
                .where(
                    Booking.booking_id == booking_id,
                    Booking.status == BookingStatus.CONFIRMED.value,
                    Booking.confirmed_start <= now,
                )
                .values({
                    Booking._status: BookingStatus.IN_PROGRESS.value,
                    Booking.started_at: now,
                    Booking.updated_at: now,
                    Booking.version: Booking.version + 1,
                })
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if res.rowcount != 1:
                return False
            booking = await self._load(db, booking_id)

        self._announce(booking, BookingStatus.CONFIRMED)
        return True

    async def sweep_due_starts(self, now: datetime | None = None) -> int:
        """Move confirmed bookings whose start time has arrived to in_progress."""
        now = to_utc(now) if now is not None else self._now()
        count = 0
        seen = set()

        while True:
            async with self._sessions() as db:
                stmt = select(Booking.booking_id).where(
                    Booking.status == BookingStatus.CONFIRMED.value,
                    Booking.confirmed_start <= now,
                )
                if seen:
                    stmt = stmt.where(Booking.booking_id.not_in(seen))
                res = await db.execute(stmt.order_by(Booking.confirmed_start).limit(SWEEP_BATCH_SIZE))
                batch = list(res.scalars().all())

            if not batch:
                return count

            for booking_id in batch:
                seen.add(booking_id)
                if await self._start_one(booking_id, now):
                    count += 1
