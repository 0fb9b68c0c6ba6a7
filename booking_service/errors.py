class BookingError(Exception):
    """Base class for every failure the booking core reports to its callers."""

    code = "booking_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BookingError):
    """Malformed or missing input. Always fixable by the caller, never retried."""

    code = "validation_error"


class InvalidInterval(ValidationError):
    code = "invalid_interval"


class CurrencyMismatch(ValidationError):
    code = "currency_mismatch"


class InvalidTransition(BookingError):
    """The operation is not legal from the booking's current status."""

    code = "invalid_transition"

    def __init__(self, message: str, current_status: str | None = None):
        super().__init__(message)
        self.current_status = current_status


class Conflict(BookingError):
    """Lost a race: an overlapping confirmed window or a concurrent write.

    Safe to retry once after re-reading the booking.
    """

    code = "conflict"


class NotFound(BookingError):
    code = "not_found"


class PermissionDenied(BookingError):
    code = "permission_denied"


class CatalogUnavailable(BookingError):
    code = "catalog_unavailable"
