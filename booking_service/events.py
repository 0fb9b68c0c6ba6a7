import json
import uuid
from datetime import datetime, timezone

from .schemas import BookingResponse


def build_event(event_type: str, data: dict) -> dict:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }


def booking_event(event_type: str, booking: BookingResponse, **extra) -> dict:
    """Envelope for a booking change; the payload is the booking as the API shows it."""
    data = booking.model_dump(mode="json", exclude={"pricing_breakdown"})
    data.update(extra)
    return build_event(event_type, data)


def to_json(event: dict) -> str:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False)
