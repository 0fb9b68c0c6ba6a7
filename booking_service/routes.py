from datetime import date, datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from .errors import (
    BookingError,
    CatalogUnavailable,
    Conflict,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from .lifecycle import BookingEngine
from .models import BookingStatus
from .pricing import PricingBreakdown
from .schemas import (
    AcceptBookingRequest,
    AvailabilitySettings,
    AvailabilityUpdate,
    BookingResponse,
    CalendarBlockCreate,
    CalendarBlockResponse,
    CalendarBlockUpdate,
    CancelBookingRequest,
    CreateBookingRequest,
    PendingCountResponse,
    PriceEstimateResponse,
    PricePreviewRequest,
    ProposeAlternativeRequest,
    RejectBookingRequest,
    TimeSlot,
)

router = APIRouter()

_STATUS_CODES = [
    (ValidationError, 400),
    (PermissionDenied, 403),
    (NotFound, 404),
    (InvalidTransition, 409),
    (Conflict, 409),
    (CatalogUnavailable, 503),
]


def get_booking_engine(request: Request) -> BookingEngine:
    return request.app.state.booking_engine


def current_actor(x_user_sub: str | None = Header(default=None, alias="X-User-Sub")) -> str:
    if not x_user_sub:
        raise HTTPException(status_code=401, detail="Missing X-User-Sub header")
    return x_user_sub


def to_http(exc: BookingError) -> HTTPException:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return HTTPException(
                status_code=status_code,
                detail={"code": exc.code, "message": exc.message},
            )
    return HTTPException(status_code=500, detail={"code": exc.code, "message": exc.message})


@router.post("/bookings/calculate-price", response_model=PricingBreakdown)
async def calculate_price(data: PricePreviewRequest, engine: BookingEngine = Depends(get_booking_engine)):
    try:
        return await engine.preview_price(
            data.service_id, data.pricing_option_id, data.start_time, data.end_time
        )
    except BookingError as e:
        raise to_http(e)


@router.get("/services/{service_id}/price-estimate", response_model=PriceEstimateResponse)
async def price_estimate(
    service_id: str,
    pricing_option_id: str | None = None,
    hours: int = Query(default=1, ge=0),
    days: int = Query(default=0, ge=0),
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        breakdown = await engine.quick_estimate(service_id, pricing_option_id, hours=hours, days=days)
    except BookingError as e:
        raise to_http(e)

    parts = []
    if days:
        parts.append(f"{days} day(s)")
    if hours:
        parts.append(f"{hours} hour(s)")
    return PriceEstimateResponse(
        estimate=breakdown.total,
        currency=breakdown.currency,
        note=f"Estimated price for {' '.join(parts)}",
        breakdown=breakdown,
    )


@router.post("/bookings", response_model=BookingResponse, status_code=201)
async def create_booking(
    data: CreateBookingRequest,
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.create_booking(
            customer_id=actor,
            service_id=data.service_id,
            tier_id=data.pricing_option_id,
            start=data.requested_start,
            end=data.requested_end,
            customer_message=data.customer_message,
            customer_phone=data.customer_phone,
            customer_address=data.customer_address,
        )
    except BookingError as e:
        raise to_http(e)


@router.get("/bookings/my", response_model=list[BookingResponse])
async def my_bookings(
    status: BookingStatus | None = None,
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    return await engine.list_customer_bookings(actor, status)


@router.get("/vendor/bookings", response_model=list[BookingResponse])
async def vendor_bookings(
    status: BookingStatus | None = None,
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    return await engine.list_vendor_bookings(actor, status)


@router.get("/vendor/bookings/pending-count", response_model=PendingCountResponse)
async def vendor_pending_count(
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    return PendingCountResponse(count=await engine.pending_count(actor))


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.get_booking(booking_id, actor)
    except BookingError as e:
        raise to_http(e)


@router.post("/bookings/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: str,
    data: AcceptBookingRequest | None = None,
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    data = data or AcceptBookingRequest()
    try:
        return await engine.accept_booking(
            booking_id,
            actor,
            message=data.message,
            expected_status=data.expected_status,
        )
    except BookingError as e:
        raise to_http(e)


@router.post("/bookings/{booking_id}/accept-alternative", response_model=BookingResponse)
async def accept_alternative(
    booking_id: str,
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.accept_booking(
            booking_id, actor, expected_status=BookingStatus.ALTERNATIVE_PROPOSED
        )
    except BookingError as e:
        raise to_http(e)


@router.post("/bookings/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: str,
    data: RejectBookingRequest,
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.reject_booking(
            booking_id, actor, data.reason, expected_status=data.expected_status
        )
    except BookingError as e:
        raise to_http(e)


@router.post("/bookings/{booking_id}/propose-alternative", response_model=BookingResponse)
async def propose_alternative(
    booking_id: str,
    data: ProposeAlternativeRequest,
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.propose_alternative(
            booking_id,
            actor,
            data.alternative_start,
            data.alternative_end,
            data.message,
            expiry_hours=data.expiry_hours,
            expected_status=data.expected_status,
        )
    except BookingError as e:
        raise to_http(e)


@router.post("/bookings/{booking_id}/start", response_model=BookingResponse)
async def start_booking(
    booking_id: str,
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.start_booking(booking_id, actor)
    except BookingError as e:
        raise to_http(e)


@router.post("/bookings/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: str,
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.complete_booking(booking_id, actor)
    except BookingError as e:
        raise to_http(e)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    data: CancelBookingRequest,
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.cancel_booking(
            booking_id, actor, data.reason, expected_status=data.expected_status
        )
    except BookingError as e:
        raise to_http(e)


@router.get("/vendor/availability", response_model=AvailabilitySettings)
async def get_availability(
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    return await engine.calendar.get_settings(actor)


@router.put("/vendor/availability", response_model=AvailabilitySettings)
async def update_availability(
    data: AvailabilityUpdate,
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.calendar.update_settings(actor, data)
    except BookingError as e:
        raise to_http(e)


@router.get("/vendor/calendar/blocks", response_model=list[CalendarBlockResponse])
async def list_calendar_blocks(
    start_date: datetime,
    end_date: datetime,
    service_id: str | None = None,
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.calendar.list_blocks(actor, start_date, end_date, service_id)
    except BookingError as e:
        raise to_http(e)


@router.post("/vendor/calendar/blocks", response_model=CalendarBlockResponse, status_code=201)
async def create_calendar_block(
    data: CalendarBlockCreate,
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.calendar.create_block(actor, data)
    except BookingError as e:
        raise to_http(e)


@router.patch("/vendor/calendar/blocks/{block_id}", response_model=CalendarBlockResponse)
async def update_calendar_block(
    block_id: str,
    data: CalendarBlockUpdate,
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.calendar.update_block(block_id, actor, data)
    except BookingError as e:
        raise to_http(e)


@router.delete("/vendor/calendar/blocks/{block_id}")
async def delete_calendar_block(
    block_id: str,
    actor: str = Depends(current_actor),
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        await engine.calendar.delete_block(block_id, actor)
    except BookingError as e:
        raise to_http(e)
    return {"success": True}


@router.get("/services/{service_id}/available-slots", response_model=list[TimeSlot])
async def available_slots(
    service_id: str,
    day: date = Query(alias="date"),
    duration: int | None = Query(default=None, gt=0),
    pricing_option_id: str | None = None,
    engine: BookingEngine = Depends(get_booking_engine),
):
    try:
        return await engine.calendar.available_slots(service_id, day, duration, pricing_option_id)
    except BookingError as e:
        raise to_http(e)
