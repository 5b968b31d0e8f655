"""Domain enumerations and state-transition rules."""

import enum


class RideStatus(str, enum.Enum):
    ACTIVE = "active"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# Seat counters are frozen once a ride reaches one of these
TERMINAL_RIDE_STATUSES: frozenset[RideStatus] = frozenset(
    {RideStatus.COMPLETED, RideStatus.CANCELLED, RideStatus.EXPIRED}
)


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"  # driver acknowledged cash
    WAIVED = "waived"


# State machine: maps current status -> set of valid next statuses
BOOKING_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {
        BookingStatus.CONFIRMED,
        BookingStatus.IN_PROGRESS,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    },
    BookingStatus.CONFIRMED: {
        BookingStatus.IN_PROGRESS,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    },
    BookingStatus.IN_PROGRESS: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
    BookingStatus.NO_SHOW: set(),
}

# Bookings in these states hold seats on their ride
ACTIVE_BOOKING_STATUSES: frozenset[BookingStatus] = frozenset(
    {BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS}
)

# Bookings that will never change again
FINISHED_BOOKING_STATUSES: frozenset[BookingStatus] = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW}
)

# A verification code can only be presented from these states
BOARDABLE_STATUSES: frozenset[BookingStatus] = frozenset(
    {BookingStatus.PENDING, BookingStatus.CONFIRMED}
)


def sources_for(target: BookingStatus) -> set[BookingStatus]:
    """All statuses from which *target* may legally be entered."""
    return {src for src, nxt in BOOKING_TRANSITIONS.items() if target in nxt}


class BookingRole(str, enum.Enum):
    """Which side of a booking a user is listing from."""

    PASSENGER = "passenger"
    DRIVER = "driver"
