from datetime import datetime, time
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from .models import Booking, BookingStatus, CalendarBlock
from .pricing import PricingBreakdown, to_utc


def _utc(value: datetime | None) -> datetime | None:
    return to_utc(value) if value is not None else None


class PricePreviewRequest(BaseModel):
    service_id: str
    pricing_option_id: str | None = None
    start_time: datetime
    end_time: datetime


class PriceEstimateResponse(BaseModel):
    estimate: Decimal
    currency: str
    note: str
    breakdown: PricingBreakdown


class CreateBookingRequest(BaseModel):
    service_id: str
    pricing_option_id: str | None = None
    requested_start: datetime
    requested_end: datetime
    customer_message: str | None = None
    customer_phone: str | None = None
    customer_address: str | None = None


class AcceptBookingRequest(BaseModel):
    message: str | None = None
    expected_status: BookingStatus | None = None


class RejectBookingRequest(BaseModel):
    reason: str = ""
    expected_status: BookingStatus | None = None


class ProposeAlternativeRequest(BaseModel):
    alternative_start: datetime
    alternative_end: datetime
    message: str | None = None
    expiry_hours: int | None = None
    expected_status: BookingStatus | None = None


class CancelBookingRequest(BaseModel):
    reason: str = ""
    expected_status: BookingStatus | None = None


class PendingCountResponse(BaseModel):
    count: int


class BookingResponse(BaseModel):
    booking_id: str
    booking_number: str
    status: BookingStatus

    customer_id: str
    vendor_id: str
    service_id: str
    pricing_option_id: str | None = None

    requested_start: datetime
    requested_end: datetime
    confirmed_start: datetime | None = None
    confirmed_end: datetime | None = None
    alternative_start: datetime | None = None
    alternative_end: datetime | None = None
    alternative_message: str | None = None
    alternative_expires_at: datetime | None = None

    customer_message: str | None = None
    customer_phone: str | None = None
    customer_address: str | None = None
    vendor_message: str | None = None
    rejection_reason: str | None = None
    cancellation_reason: str | None = None
    cancelled_by: str | None = None

    queue_position: int | None = None

    pricing_breakdown: PricingBreakdown | None = None
    total_price: Decimal | None = None
    currency: str | None = None

    version: int
    created_at: datetime
    updated_at: datetime | None = None
    confirmed_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @classmethod
    def from_model(cls, booking: Booking, queue_position: int | None = None) -> "BookingResponse":
        return cls(
            booking_id=booking.booking_id,
            booking_number=booking.booking_number,
            status=booking.status,
            customer_id=booking.customer_id,
            vendor_id=booking.vendor_id,
            service_id=booking.service_id,
            pricing_option_id=booking.pricing_option_id,
            requested_start=_utc(booking.requested_start),
            requested_end=_utc(booking.requested_end),
            confirmed_start=_utc(booking.confirmed_start),
            confirmed_end=_utc(booking.confirmed_end),
            alternative_start=_utc(booking.alternative_start),
            alternative_end=_utc(booking.alternative_end),
            alternative_message=booking.alternative_message,
            alternative_expires_at=_utc(booking.alternative_expires_at),
            customer_message=booking.customer_message,
            customer_phone=booking.customer_phone,
            customer_address=booking.customer_address,
            vendor_message=booking.vendor_message,
            rejection_reason=booking.rejection_reason,
            cancellation_reason=booking.cancellation_reason,
            cancelled_by=booking.cancelled_by,
            queue_position=queue_position,
            pricing_breakdown=booking.pricing_breakdown,
            total_price=booking.total_price,
            currency=booking.currency,
            version=booking.version,
            created_at=_utc(booking.created_at),
            updated_at=_utc(booking.updated_at),
            confirmed_at=_utc(booking.confirmed_at),
            started_at=_utc(booking.started_at),
            completed_at=_utc(booking.completed_at),
            cancelled_at=_utc(booking.cancelled_at),
        )


WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


class WorkingDay(BaseModel):
    enabled: bool = True
    start: time
    end: time

    @model_validator(mode="after")
    def _opens_before_it_closes(self):
        if self.enabled and self.end <= self.start:
            raise ValueError("working day must end after it starts")
        return self


DEFAULT_WORKING_HOURS = {
    **{day: WorkingDay(start=time(9, 0), end=time(17, 0)) for day in WEEKDAYS[:5]},
    **{day: WorkingDay(enabled=False, start=time(10, 0), end=time(14, 0)) for day in WEEKDAYS[5:]},
}


class AvailabilitySettings(BaseModel):
    vendor_id: str
    timezone: str
    min_booking_notice_hours: int
    max_booking_advance_days: int
    working_hours: dict[str, WorkingDay]


class AvailabilityUpdate(BaseModel):
    timezone: str | None = None
    min_booking_notice_hours: int | None = Field(default=None, ge=0)
    max_booking_advance_days: int | None = Field(default=None, ge=1)
    working_hours: dict[str, WorkingDay] | None = None


class CalendarBlockCreate(BaseModel):
    start_time: datetime
    end_time: datetime
    block_type: str = "unavailable"
    title: str | None = None
    reason: str | None = None
    service_id: str | None = None


class CalendarBlockUpdate(BaseModel):
    start_time: datetime | None = None
    end_time: datetime | None = None
    block_type: str | None = None
    title: str | None = None
    reason: str | None = None


class CalendarBlockResponse(BaseModel):
    block_id: str
    vendor_id: str
    service_id: str | None = None
    start_time: datetime
    end_time: datetime
    block_type: str
    title: str | None = None
    reason: str | None = None
    created_at: datetime

    @classmethod
    def from_model(cls, block: CalendarBlock) -> "CalendarBlockResponse":
        return cls(
            block_id=block.block_id,
            vendor_id=block.vendor_id,
            service_id=block.service_id,
            start_time=to_utc(block.start_time),
            end_time=to_utc(block.end_time),
            block_type=block.block_type,
            title=block.title,
            reason=block.reason,
            created_at=to_utc(block.created_at),
        )


class TimeSlot(BaseModel):
    start: datetime
    end: datetime
