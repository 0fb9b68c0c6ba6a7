import httpx
import pytest

from booking_service.main import app
from booking_service.routes import get_booking_engine

from conftest import CUSTOMER, SERVICE, STRANGER, VENDOR, at


@pytest.fixture
async def client(booking_engine):
    app.dependency_overrides[get_booking_engine] = lambda: booking_engine
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def as_user(sub):
    return {"X-User-Sub": sub}


async def create(client, start=None, end=None):
    res = await client.post(
        "/bookings",
        json={
            "service_id": SERVICE,
            "requested_start": (start or at(4, 9)).isoformat(),
            "requested_end": (end or at(4, 17, 30)).isoformat(),
            "customer_message": "Front door code is 1234",
        },
        headers=as_user(CUSTOMER),
    )
    assert res.status_code == 201, res.text
    return res.json()


async def test_health(client):
    res = await client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"


async def test_calculate_price(client):
    res = await client.post(
        "/bookings/calculate-price",
        json={
            "service_id": SERVICE,
            "start_time": at(4, 9).isoformat(),
            "end_time": at(4, 17, 30).isoformat(),
        },
    )
    assert res.status_code == 200
    body = res.json()
    assert body["calculation_method"] == "hourly"
    assert body["total_hours"] == 9
    assert body["total"] == "189.00"
    assert body["line_items"][-1]["label"] == "Platform fee (5%)"


async def test_calculate_price_rejects_reversed_interval(client):
    res = await client.post(
        "/bookings/calculate-price",
        json={
            "service_id": SERVICE,
            "start_time": at(4, 10).isoformat(),
            "end_time": at(4, 9).isoformat(),
        },
    )
    assert res.status_code == 400
    assert res.json()["detail"]["code"] == "invalid_interval"


async def test_price_estimate(client):
    res = await client.get(f"/services/{SERVICE}/price-estimate", params={"hours": 3})
    assert res.status_code == 200
    body = res.json()
    assert body["estimate"] == "63.00"
    assert body["currency"] == "CHF"
    assert body["note"] == "Estimated price for 3 hour(s)"


async def test_unknown_service_estimate_is_a_bad_request(client):
    res = await client.get("/services/nope/price-estimate")
    assert res.status_code == 400


async def test_requests_need_an_identity(client):
    res = await client.post(
        "/bookings",
        json={
            "service_id": SERVICE,
            "requested_start": at(4, 9).isoformat(),
            "requested_end": at(4, 10).isoformat(),
        },
    )
    assert res.status_code == 401
    assert (await client.get("/bookings/my")).status_code == 401


async def test_booking_flow(client):
    booking = await create(client)
    booking_id = booking["booking_id"]
    assert booking["status"] == "pending"
    assert booking["total_price"] == "189.00"

    res = await client.get("/vendor/bookings/pending-count", headers=as_user(VENDOR))
    assert res.json() == {"count": 1}

    res = await client.post(f"/bookings/{booking_id}/accept", headers=as_user(VENDOR))
    assert res.status_code == 200
    assert res.json()["status"] == "confirmed"
    assert res.json()["confirmed_start"] == booking["requested_start"]

    res = await client.post(
        f"/bookings/{booking_id}/cancel",
        json={"reason": "Plans changed"},
        headers=as_user(CUSTOMER),
    )
    assert res.status_code == 200
    assert res.json()["status"] == "cancelled"
    assert res.json()["cancelled_by"] == "customer"

    res = await client.get("/bookings/my", headers=as_user(CUSTOMER))
    assert [b["booking_id"] for b in res.json()] == [booking_id]


async def test_alternative_flow(client):
    booking = await create(client)
    booking_id = booking["booking_id"]

    res = await client.post(
        f"/bookings/{booking_id}/propose-alternative",
        json={
            "alternative_start": at(5, 9).isoformat(),
            "alternative_end": at(5, 12).isoformat(),
            "message": "Wednesday morning?",
        },
        headers=as_user(VENDOR),
    )
    assert res.status_code == 200
    assert res.json()["status"] == "alternative_proposed"

    res = await client.post(f"/bookings/{booking_id}/accept-alternative", headers=as_user(CUSTOMER))
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "confirmed"
    assert body["total_price"] == "63.00"
    assert body["alternative_start"] is None


async def test_accept_alternative_on_pending_booking_is_an_invalid_transition(client):
    booking = await create(client)
    res = await client.post(
        f"/bookings/{booking['booking_id']}/accept-alternative", headers=as_user(CUSTOMER)
    )
    assert res.status_code == 409
    assert res.json()["detail"]["code"] == "invalid_transition"


async def test_errors_map_to_status_codes(client):
    booking = await create(client)
    booking_id = booking["booking_id"]

    res = await client.post(f"/bookings/{booking_id}/reject", json={"reason": ""}, headers=as_user(VENDOR))
    assert res.status_code == 400
    assert res.json()["detail"]["code"] == "validation_error"

    res = await client.post(f"/bookings/{booking_id}/accept", headers=as_user(CUSTOMER))
    assert res.status_code == 409
    assert res.json()["detail"]["code"] == "invalid_transition"

    res = await client.get(f"/bookings/{booking_id}", headers=as_user(STRANGER))
    assert res.status_code == 403

    res = await client.get("/bookings/does-not-exist", headers=as_user(CUSTOMER))
    assert res.status_code == 404

    res = await client.get(f"/bookings/{booking_id}", headers=as_user(CUSTOMER))
    assert res.json()["status"] == "pending"


async def test_request_id_is_echoed(client):
    res = await client.get("/health", headers={"X-Request-Id": "req-42"})
    assert res.headers["X-Request-Id"] == "req-42"


async def test_vendor_availability_settings(client):
    res = await client.get("/vendor/availability", headers=as_user(VENDOR))
    assert res.status_code == 200
    assert res.json()["min_booking_notice_hours"] == 24
    assert res.json()["working_hours"]["mon"] == {"enabled": True, "start": "09:00:00", "end": "17:00:00"}

    res = await client.put(
        "/vendor/availability",
        json={"min_booking_notice_hours": 0, "timezone": "Europe/Berlin"},
        headers=as_user(VENDOR),
    )
    assert res.status_code == 200
    assert res.json()["min_booking_notice_hours"] == 0
    assert res.json()["timezone"] == "Europe/Berlin"

    res = await client.put("/vendor/availability", json={"timezone": "Nowhere/Land"}, headers=as_user(VENDOR))
    assert res.status_code == 400
    assert res.json()["detail"]["code"] == "validation_error"


async def test_calendar_block_routes(client):
    res = await client.post(
        "/vendor/calendar/blocks",
        json={"start_time": at(6, 8).isoformat(), "end_time": at(6, 12).isoformat(), "title": "Holiday"},
        headers=as_user(VENDOR),
    )
    assert res.status_code == 201
    block_id = res.json()["block_id"]

    res = await client.get(
        "/vendor/calendar/blocks",
        params={"start_date": at(6, 0).isoformat(), "end_date": at(7, 0).isoformat()},
        headers=as_user(VENDOR),
    )
    assert [b["block_id"] for b in res.json()] == [block_id]

    res = await client.patch(
        f"/vendor/calendar/blocks/{block_id}", json={"reason": "Family"}, headers=as_user(VENDOR)
    )
    assert res.status_code == 200
    assert res.json()["reason"] == "Family"

    res = await client.delete(f"/vendor/calendar/blocks/{block_id}", headers=as_user(STRANGER))
    assert res.status_code == 404

    res = await client.delete(f"/vendor/calendar/blocks/{block_id}", headers=as_user(VENDOR))
    assert res.json() == {"success": True}


async def test_available_slots_route(client):
    res = await client.get(f"/services/{SERVICE}/available-slots", params={"date": "2030-06-10"})
    assert res.status_code == 200
    slots = res.json()
    assert len(slots) == 8
    assert slots[0]["start"].startswith("2030-06-10T07:00:00")

    res = await client.get("/services/nope/available-slots", params={"date": "2030-06-10"})
    assert res.status_code == 404

    res = await client.get(f"/services/{SERVICE}/available-slots", params={"date": "2030-06-10", "duration": 0})
    assert res.status_code == 422
