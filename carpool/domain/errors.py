"""
Booking error taxonomy.

Every error carries a stable ``code`` that clients can branch on and the
HTTP status the API layer renders it with.

* Capacity   -- ``INSUFFICIENT_SEATS``: retry with fewer seats / another ride.
* Contention -- ``LOCKED``: transient, retry shortly.
* State      -- ``INVALID_STATE``: stale client view, never retried.
* Security   -- ``INVALID_CODE`` / ``CODE_EXPIRED``.
* Not found  -- terminal.
* Infra      -- ``STORE_UNAVAILABLE``: aborted with no partial effect.
"""

from __future__ import annotations

from typing import Any, Optional


class BookingError(Exception):
    """Base class for all booking-domain failures."""

    code = "BOOKING_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code, "details": self.details}


# ── Capacity / contention ─────────────────────────────────────────────


class InsufficientSeats(BookingError):
    code = "INSUFFICIENT_SEATS"
    status_code = 409


class ResourceLocked(BookingError):
    code = "LOCKED"
    status_code = 423


# ── State ─────────────────────────────────────────────────────────────


class InvalidState(BookingError):
    code = "INVALID_STATE"
    status_code = 409


class NoShowTooEarly(BookingError):
    code = "TOO_EARLY"
    status_code = 409


class CancellationClosed(BookingError):
    code = "CANCELLATION_CLOSED"
    status_code = 409


class BookingExists(BookingError):
    code = "BOOKING_EXISTS"
    status_code = 409


class RideNotBookable(BookingError):
    code = "RIDE_NOT_AVAILABLE"
    status_code = 409


class BookingTooLate(BookingError):
    code = "BOOKING_TOO_LATE"
    status_code = 409


# ── Security ──────────────────────────────────────────────────────────


class InvalidCode(BookingError):
    code = "INVALID_CODE"
    status_code = 400


class CodeExpired(BookingError):
    code = "CODE_EXPIRED"
    status_code = 410


# ── Authorisation / validation ────────────────────────────────────────


class NotBookingParty(BookingError):
    code = "FORBIDDEN"
    status_code = 403


class PassengerNotEligible(BookingError):
    code = "PASSENGER_NOT_ELIGIBLE"
    status_code = 403


class OwnRideBooking(BookingError):
    code = "CANNOT_BOOK_OWN_RIDE"
    status_code = 400


class ValidationFailed(BookingError):
    code = "VALIDATION_ERROR"
    status_code = 422


# ── Not found ─────────────────────────────────────────────────────────


class BookingNotFound(BookingError):
    code = "BOOKING_NOT_FOUND"
    status_code = 404


class RideNotFound(BookingError):
    code = "RIDE_NOT_FOUND"
    status_code = 404


# ── Infrastructure ────────────────────────────────────────────────────


class StoreUnavailable(BookingError):
    code = "STORE_UNAVAILABLE"
    status_code = 503


class LockStoreUnavailable(StoreUnavailable):
    """The lock backend could not be reached; no lock was granted."""
