import asyncio
import logging

from fastapi import FastAPI

from .catalog import HttpCatalog
from .config import DATABASE_URL, LOG_LEVEL
from .db import Base, SessionLocal, engine
from .expiry_worker import sweep_loop
from .lifecycle import BookingEngine
from .middleware import RequestLoggingMiddleware
from .notifier import EventNotifier
from .publisher import publisher
from .routes import router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("booking-service")

app = FastAPI(title="Booking Service")
app.add_middleware(RequestLoggingMiddleware)
app.include_router(router)

app.state.booking_engine = BookingEngine(
    SessionLocal,
    HttpCatalog(),
    EventNotifier(publisher),
)

_stop_event = asyncio.Event()
_sweep_task = None


@app.get("/health")
async def health():
    return {"status": "ok", "service": "booking-service", "events_enabled": publisher.enabled}


@app.on_event("startup")
async def startup():
    global _sweep_task
    if DATABASE_URL.startswith("sqlite"):
        # local runs have no migration step
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    try:
        await publisher.connect()
    except Exception as e:
        logger.warning("RabbitMQ connect failed at startup; continuing: %s", e)

    _sweep_task = asyncio.create_task(sweep_loop(app.state.booking_engine, _stop_event))


@app.on_event("shutdown")
async def shutdown():
    _stop_event.set()
    if _sweep_task:
        await _sweep_task
    await app.state.booking_engine.notifications.drain()
    await publisher.close()
    await engine.dispose()
