import asyncio
import logging

from .config import SWEEP_INTERVAL_SECONDS
from .lifecycle import BookingEngine

logger = logging.getLogger("booking-service")


async def run_sweeps(engine: BookingEngine) -> tuple[int, int]:
    """One pass: expire lapsed counter-offers, then start bookings that are due."""
    expired = await engine.sweep_expired_alternatives()
    started = await engine.sweep_due_starts()
    if expired or started:
        logger.info("sweep expired=%d started=%d", expired, started)
    return expired, started


async def sweep_loop(
    engine: BookingEngine,
    stop_event: asyncio.Event,
    interval: float = SWEEP_INTERVAL_SECONDS,
):
    while not stop_event.is_set():
        try:
            await run_sweeps(engine)
        except Exception:
            # each booking is its own commit, so a failed pass leaves nothing half-expired
            logger.exception("sweep pass failed, retrying in %.0fs", interval)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
