from datetime import date, datetime, time, timedelta, timezone

import pytest

from booking_service.availability import free_slots, settings_view
from booking_service.errors import InvalidInterval, NotFound, ValidationError
from booking_service.schemas import (
    AvailabilityUpdate,
    CalendarBlockCreate,
    CalendarBlockUpdate,
    WorkingDay,
)

from conftest import CUSTOMER, OTHER_CUSTOMER, SERVICE, T0, VENDOR, at

# Monday; Zurich is on summer time, so 09:00 local is 07:00 UTC
MONDAY = date(2030, 6, 10)
SATURDAY = date(2030, 6, 8)


def starts(slots):
    return [(s.start.hour, s.start.minute) for s in slots]


async def test_settings_default_until_the_vendor_saves_some(booking_engine):
    settings = await booking_engine.calendar.get_settings(VENDOR)

    assert settings.timezone == "Europe/Zurich"
    assert settings.min_booking_notice_hours == 24
    assert settings.max_booking_advance_days == 90
    assert settings.working_hours["mon"] == WorkingDay(start=time(9), end=time(17))
    assert not settings.working_hours["sun"].enabled


async def test_update_merges_working_hours(booking_engine):
    updated = await booking_engine.calendar.update_settings(
        VENDOR,
        AvailabilityUpdate(
            min_booking_notice_hours=2,
            working_hours={"sat": WorkingDay(start=time(10), end=time(14))},
        ),
    )
    assert updated.min_booking_notice_hours == 2
    assert updated.working_hours["sat"].enabled
    assert updated.working_hours["mon"].start == time(9)

    reread = await booking_engine.calendar.get_settings(VENDOR)
    assert reread == updated


async def test_update_rejects_unknown_timezone_and_weekday(booking_engine):
    with pytest.raises(ValidationError):
        await booking_engine.calendar.update_settings(VENDOR, AvailabilityUpdate(timezone="Mars/Olympus"))
    with pytest.raises(ValidationError):
        await booking_engine.calendar.update_settings(
            VENDOR, AvailabilityUpdate(working_hours={"funday": WorkingDay(start=time(9), end=time(10))})
        )


def test_working_day_must_close_after_it_opens():
    with pytest.raises(ValueError):
        WorkingDay(start=time(17), end=time(9))
    assert not WorkingDay(enabled=False, start=time(17), end=time(9)).enabled


async def test_booking_needs_the_vendors_notice(booking_engine):
    with pytest.raises(ValidationError, match="24 hours notice"):
        await booking_engine.create_booking(CUSTOMER, SERVICE, None, at(3, 20), at(3, 22))


async def test_booking_too_far_ahead_is_rejected(booking_engine):
    start = T0 + timedelta(days=91)
    with pytest.raises(ValidationError, match="90 days ahead"):
        await booking_engine.create_booking(CUSTOMER, SERVICE, None, start, start + timedelta(hours=2))


async def test_short_notice_is_fine_once_the_vendor_allows_it(booking_engine):
    await booking_engine.calendar.update_settings(VENDOR, AvailabilityUpdate(min_booking_notice_hours=0))

    booking = await booking_engine.create_booking(CUSTOMER, SERVICE, None, at(3, 9), at(3, 10))
    assert booking.requested_start == at(3, 9)


async def test_alternative_must_respect_the_notice_too(booking_engine):
    booking = await booking_engine.create_booking(CUSTOMER, SERVICE, None, at(5, 9), at(5, 12))

    with pytest.raises(ValidationError):
        await booking_engine.propose_alternative(booking.booking_id, VENDOR, at(3, 14), at(3, 16))


async def test_block_lifecycle(booking_engine):
    calendar = booking_engine.calendar
    block = await calendar.create_block(
        VENDOR,
        CalendarBlockCreate(start_time=at(6, 8), end_time=at(6, 12), title="Workshop", reason="Training"),
    )
    assert block.vendor_id == VENDOR
    assert block.block_type == "unavailable"
    assert block.start_time == at(6, 8)

    listed = await calendar.list_blocks(VENDOR, at(6, 0), at(7, 0))
    assert [b.block_id for b in listed] == [block.block_id]
    assert await calendar.list_blocks(VENDOR, at(7, 0), at(8, 0)) == []

    moved = await calendar.update_block(
        block.block_id, VENDOR, CalendarBlockUpdate(end_time=at(6, 13), title="Long workshop")
    )
    assert moved.end_time == at(6, 13)
    assert moved.title == "Long workshop"
    assert moved.reason == "Training"

    await calendar.delete_block(block.block_id, VENDOR)
    assert await calendar.list_blocks(VENDOR, at(6, 0), at(7, 0)) == []


async def test_blocks_belong_to_their_vendor(booking_engine):
    calendar = booking_engine.calendar
    block = await calendar.create_block(VENDOR, CalendarBlockCreate(start_time=at(6, 8), end_time=at(6, 12)))

    with pytest.raises(NotFound):
        await calendar.update_block(block.block_id, "vendor-2", CalendarBlockUpdate(title="mine now"))
    with pytest.raises(NotFound):
        await calendar.delete_block(block.block_id, "vendor-2")
    assert await calendar.list_blocks("vendor-2", at(6, 0), at(7, 0)) == []


async def test_block_intervals_are_checked(booking_engine):
    calendar = booking_engine.calendar
    with pytest.raises(InvalidInterval):
        await calendar.create_block(VENDOR, CalendarBlockCreate(start_time=at(6, 12), end_time=at(6, 8)))

    block = await calendar.create_block(VENDOR, CalendarBlockCreate(start_time=at(6, 8), end_time=at(6, 12)))
    with pytest.raises(InvalidInterval):
        await calendar.update_block(block.block_id, VENDOR, CalendarBlockUpdate(start_time=at(6, 13)))
    with pytest.raises(InvalidInterval):
        await calendar.list_blocks(VENDOR, at(7, 0), at(6, 0))


async def test_listing_blocks_for_a_service_keeps_vendor_wide_ones(booking_engine):
    calendar = booking_engine.calendar
    everything = await calendar.create_block(VENDOR, CalendarBlockCreate(start_time=at(6, 8), end_time=at(6, 9)))
    await calendar.create_block(
        VENDOR, CalendarBlockCreate(start_time=at(6, 10), end_time=at(6, 11), service_id="svc-video")
    )

    listed = await calendar.list_blocks(VENDOR, at(6, 0), at(7, 0), service_id=SERVICE)
    assert [b.block_id for b in listed] == [everything.block_id]
    assert len(await calendar.list_blocks(VENDOR, at(6, 0), at(7, 0))) == 2


async def test_slots_skip_bookings_and_blocks(booking_engine):
    booking = await booking_engine.create_booking(CUSTOMER, SERVICE, None, at(10, 9), at(10, 11))
    await booking_engine.accept_booking(booking.booking_id, VENDOR)
    await booking_engine.calendar.create_block(
        VENDOR, CalendarBlockCreate(start_time=at(10, 13), end_time=at(10, 14))
    )
    # a request that is still pending does not take the time
    await booking_engine.create_booking(OTHER_CUSTOMER, SERVICE, None, at(10, 14), at(10, 15))

    slots = await booking_engine.calendar.available_slots(SERVICE, MONDAY)
    assert starts(slots) == [(7, 0), (8, 0), (11, 0), (12, 0), (14, 0)]
    assert all(s.end - s.start == timedelta(hours=1) for s in slots)


async def test_slot_length_follows_the_package(booking_engine):
    booking = await booking_engine.create_booking(CUSTOMER, SERVICE, None, at(10, 9), at(10, 11))
    await booking_engine.accept_booking(booking.booking_id, VENDOR)
    await booking_engine.calendar.create_block(
        VENDOR, CalendarBlockCreate(start_time=at(10, 13), end_time=at(10, 14))
    )

    slots = await booking_engine.calendar.available_slots(SERVICE, MONDAY, pricing_option_id="pkg-portrait")
    assert starts(slots) == [(7, 0), (11, 30)]

    slots = await booking_engine.calendar.available_slots(SERVICE, MONDAY, duration_minutes=240)
    assert starts(slots) == []


async def test_no_slots_on_days_off_or_inside_the_notice(booking_engine):
    assert await booking_engine.calendar.available_slots(SERVICE, SATURDAY) == []

    tomorrow = await booking_engine.calendar.available_slots(SERVICE, date(2030, 6, 4))
    assert starts(tomorrow)[0] == (8, 0)
    assert len(tomorrow) == 7

    assert await booking_engine.calendar.available_slots(SERVICE, date(2030, 6, 3)) == []


async def test_slots_for_unknown_service_are_not_found(booking_engine):
    with pytest.raises(NotFound):
        await booking_engine.calendar.available_slots("nope", MONDAY)


def test_free_slots_use_the_vendors_timezone():
    settings = settings_view(VENDOR, None).model_copy(update={"timezone": "America/New_York"})
    now = datetime(2030, 6, 1, tzinfo=timezone.utc)

    slots = free_slots(
        MONDAY, settings, [], timedelta(hours=4),
        earliest=now, latest=now + timedelta(days=90),
    )
    # 09:00 to 17:00 EDT is 13:00 to 21:00 UTC
    assert slots == [
        (datetime(2030, 6, 10, 13, tzinfo=timezone.utc), datetime(2030, 6, 10, 17, tzinfo=timezone.utc)),
        (datetime(2030, 6, 10, 17, tzinfo=timezone.utc), datetime(2030, 6, 10, 21, tzinfo=timezone.utc)),
    ]
