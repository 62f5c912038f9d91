"""
Error taxonomy for the reservation core.

Each error carries the HTTP status and a machine-readable code so the API
layer can render it without knowing the individual failure.
"""
from typing import Any, Dict, Optional


class BookingError(Exception):
    status_code = 500
    code = "BOOKING_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(BookingError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(BookingError):
    status_code = 409
    code = "CONFLICT"


class InvalidStateError(BookingError):
    status_code = 409
    code = "INVALID_STATE"


class HoldExpiredError(BookingError):
    """The hold passed its expiry before confirmation. Caller should re-quote."""

    status_code = 410
    code = "HOLD_EXPIRED"


class ForbiddenError(BookingError):
    status_code = 403
    code = "FORBIDDEN"


class ValidationError(BookingError):
    status_code = 400
    code = "VALIDATION_ERROR"


class PaymentError(BookingError):
    status_code = 402
    code = "PAYMENT_FAILED"
