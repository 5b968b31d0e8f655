"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``Booking``: enforces valid lifecycle transitions
  (PENDING -> CONFIRMED -> IN_PROGRESS -> COMPLETED, with CANCELLED and
  NO_SHOW as the failure exits).
- ``Ride.can_accommodate`` / ``Ride.seats_consistent`` encapsulate the
  seat-counter invariants.

Entities are detached snapshots returned by the repositories; the stores
remain the only source of truth.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Optional

from .clock import is_expired
from .enums import (
    BOARDABLE_STATUSES,
    BOOKING_TRANSITIONS,
    TERMINAL_RIDE_STATUSES,
    BookingStatus,
    PaymentStatus,
    RideStatus,
)
from .verification import codes_match


class InvalidStateTransition(Exception):
    """Raised when a booking status change violates the state machine."""


@dataclass
class Ride:
    id: str
    driver_id: str
    departure_date: date
    departure_at: datetime
    total_seats: int
    available_seats: int
    booked_seats: int = 0
    price_per_seat: float = 0.0
    status: RideStatus = RideStatus.ACTIVE
    pickup_points: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RIDE_STATUSES

    def can_accommodate(self, seats: int) -> bool:
        return self.status == RideStatus.ACTIVE and self.available_seats >= seats

    def seats_consistent(self) -> bool:
        return (
            0 <= self.available_seats <= self.total_seats
            and self.available_seats + self.booked_seats == self.total_seats
        )


@dataclass
class Booking:
    id: str
    ride_id: str
    passenger_id: str
    driver_id: str
    seats: int
    price_per_seat: float
    total_amount: float
    verification_code: str
    verification_expiry: datetime
    departure_at: datetime
    reference: str = ""
    pickup_point_id: Optional[str] = None
    status: BookingStatus = BookingStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    amount_received: float = 0.0
    is_late_cancellation: bool = False
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    no_show_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    no_show_at: Optional[datetime] = None

    @property
    def departure_date(self) -> date:
        return self.departure_at.date()

    def redacted(self) -> Booking:
        """Copy safe to hand out: the boarding code is blanked."""
        return replace(self, verification_code="")

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.passenger_id, self.driver_id)

    def can_transition_to(self, new_status: BookingStatus) -> bool:
        return new_status in BOOKING_TRANSITIONS.get(self.status, set())

    def transition_to(self, new_status: BookingStatus) -> None:
        """Move to *new_status* if the transition is legal, else raise."""
        if not self.can_transition_to(new_status):
            raise InvalidStateTransition(
                f"Cannot transition from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def code_expired(self, now: datetime) -> bool:
        return is_expired(self.verification_expiry, now)

    def code_usable(self, code: str | None, now: datetime) -> bool:
        return (
            self.status in BOARDABLE_STATUSES
            and not self.code_expired(now)
            and codes_match(self.verification_code, code)
        )
