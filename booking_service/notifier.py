import asyncio
import logging
from typing import Protocol

from .events import booking_event, to_json
from .models import BookingStatus
from .publisher import RabbitPublisher
from .schemas import BookingResponse

logger = logging.getLogger("booking-service")


class Notifier(Protocol):
    """Hook for the messaging/notification subsystem. Return values are ignored."""

    async def on_booking_state_changed(
        self, booking: BookingResponse, previous_status: BookingStatus | None
    ) -> None:
        ...

    async def on_booking_queued(self, booking: BookingResponse, position: int) -> None:
        ...


class NullNotifier:
    async def on_booking_state_changed(self, booking, previous_status):
        return None

    async def on_booking_queued(self, booking, position):
        return None


class EventNotifier:
    """Publishes booking changes as domain events on the topic exchange."""

    def __init__(self, publisher: RabbitPublisher):
        self._publisher = publisher

    async def on_booking_state_changed(self, booking, previous_status):
        routing_key = f"booking.{booking.status.value}"
        event = booking_event(
            routing_key,
            booking,
            previous_status=previous_status.value if previous_status else None,
        )
        await self._publisher.publish(routing_key, to_json(event))

    async def on_booking_queued(self, booking, position):
        event = booking_event("booking.queued", booking, queue_position=position)
        await self._publisher.publish("booking.queued", to_json(event))


class NotificationDispatcher:
    """
    Runs notifier calls as background tasks once a transition has committed.

    A failing notifier is logged and otherwise ignored: it can never roll back
    or fail the transition that triggered it.
    """

    def __init__(self, notifier: Notifier):
        self._notifier = notifier
        self._tasks: set[asyncio.Task] = set()

    def state_changed(self, booking: BookingResponse, previous_status: BookingStatus | None):
        self._spawn(
            self._notifier.on_booking_state_changed(booking, previous_status),
            f"state change {booking.booking_id} -> {booking.status.value}",
        )

    def queued(self, booking: BookingResponse, position: int):
        self._spawn(
            self._notifier.on_booking_queued(booking, position),
            f"queue position {position} for {booking.booking_id}",
        )

    def _spawn(self, coro, description: str):
        task = asyncio.create_task(self._guard(coro, description))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, coro, description: str):
        try:
            await coro
        except Exception:
            logger.exception("notification failed: %s", description)

    async def drain(self):
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
