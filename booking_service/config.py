import os
from decimal import Decimal

DATABASE_URL = os.getenv("BOOKING_DATABASE_URL") or "sqlite+aiosqlite:///./bookings.db"

RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events

CATALOG_SERVICE_URL = os.getenv("CATALOG_SERVICE_URL") or "http://catalog-service:8000"
CATALOG_HTTP_TIMEOUT = float(os.getenv("CATALOG_HTTP_TIMEOUT") or "2.0")

# Marketplace cut applied on top of the subtotal
PLATFORM_FEE_RATE = Decimal(os.getenv("PLATFORM_FEE_RATE") or "0.10")

# How long a vendor counter-offer stays open for the customer
OFFER_WINDOW_HOURS = int(os.getenv("OFFER_WINDOW_HOURS") or "48")
MIN_OFFER_WINDOW_HOURS = 1
MAX_OFFER_WINDOW_HOURS = 168

SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS") or "30")
SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE") or "50")

LOG_LEVEL = os.getenv("LOG_LEVEL") or "INFO"

# Vendor availability defaults, used until a vendor saves their own settings
DEFAULT_VENDOR_TIMEZONE = os.getenv("DEFAULT_VENDOR_TIMEZONE") or "Europe/Zurich"
DEFAULT_MIN_NOTICE_HOURS = int(os.getenv("DEFAULT_MIN_NOTICE_HOURS") or "24")
DEFAULT_MAX_ADVANCE_DAYS = int(os.getenv("DEFAULT_MAX_ADVANCE_DAYS") or "90")
DEFAULT_SLOT_MINUTES = int(os.getenv("DEFAULT_SLOT_MINUTES") or "60")
