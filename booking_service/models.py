import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, JSON, Numeric, String, Text
from sqlalchemy.ext.hybrid import hybrid_property

from .config import DEFAULT_MAX_ADVANCE_DAYS, DEFAULT_MIN_NOTICE_HOURS, DEFAULT_VENDOR_TIMEZONE
from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    ALTERNATIVE_PROPOSED = "alternative_proposed"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({
    BookingStatus.REJECTED,
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
    BookingStatus.EXPIRED,
})

# statuses that carry confirmed_start/confirmed_end
SCHEDULED_STATUSES = frozenset({
    BookingStatus.CONFIRMED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.COMPLETED,
})

# statuses that occupy the vendor's calendar for conflict detection
BLOCKING_STATUSES = frozenset({
    BookingStatus.CONFIRMED,
    BookingStatus.IN_PROGRESS,
})


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)
    booking_number = Column(String, unique=True, nullable=False, index=True)

    customer_id = Column(String, nullable=False, index=True)
    vendor_id = Column(String, nullable=False, index=True)
    service_id = Column(String, nullable=False)
    pricing_option_id = Column(String, nullable=True)

    requested_start = Column(DateTime(timezone=True), nullable=False)
    requested_end = Column(DateTime(timezone=True), nullable=False)

    confirmed_start = Column(DateTime(timezone=True), nullable=True)
    confirmed_end = Column(DateTime(timezone=True), nullable=True)

    alternative_start = Column(DateTime(timezone=True), nullable=True)
    alternative_end = Column(DateTime(timezone=True), nullable=True)
    alternative_message = Column(Text, nullable=True)
    alternative_expires_at = Column(DateTime(timezone=True), nullable=True, index=True)

    customer_message = Column(Text, nullable=True)
    customer_phone = Column(String, nullable=True)
    customer_address = Column(Text, nullable=True)
    vendor_message = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_by = Column(String, nullable=True)  # customer/vendor

    # written only by lifecycle.BookingEngine
    _status = Column("status", String, nullable=False, index=True)

    pricing_breakdown = Column(JSON, nullable=True)
    total_price = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    @hybrid_property
    def status(self) -> BookingStatus:
        return BookingStatus(self._status)

    @status.expression
    def status(cls):
        return cls._status

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<Booking(booking_id={self.booking_id}, number={self.booking_number}, status={self._status})>"


class VendorAvailability(Base):
    """
    A vendor's calendar settings.

    The row is also the vendor's schedule lock: a writer that must see a stable
    set of confirmed windows and blocks bumps `revision` first and holds the
    row lock until it commits.
    """

    __tablename__ = "vendor_availability"

    vendor_id = Column(String, primary_key=True)
    timezone = Column(String, nullable=False, default=DEFAULT_VENDOR_TIMEZONE)
    min_booking_notice_hours = Column(Integer, nullable=False, default=DEFAULT_MIN_NOTICE_HOURS)
    max_booking_advance_days = Column(Integer, nullable=False, default=DEFAULT_MAX_ADVANCE_DAYS)
    working_hours = Column(JSON, nullable=True)  # None means the default week

    revision = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class CalendarBlock(Base):
    __tablename__ = "calendar_blocks"

    id = Column(Integer, primary_key=True)
    block_id = Column(String, unique=True, nullable=False, index=True)
    vendor_id = Column(String, nullable=False, index=True)
    service_id = Column(String, nullable=True)  # None blocks every service

    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    block_type = Column(String, nullable=False, default="unavailable")
    title = Column(String, nullable=True)
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<CalendarBlock(block_id={self.block_id}, vendor_id={self.vendor_id})>"
