"""
SQLAlchemy ORM models  (maps to PostgreSQL).

Tables
------
* ``users``     -- read-only directory of passengers and drivers
* ``rides``     -- driver offers with the seat counter pair
* ``bookings``  -- append-only reservation records

Constraints
-----------
* CHECKs on ``rides`` pin ``0 <= available_seats <= total_seats`` and
  ``available_seats + booked_seats = total_seats`` so even a buggy caller
  cannot persist an oversold ride.
* **B-Tree** on ``bookings.ride_id``, ``bookings.passenger_id`` and
  ``bookings.status`` for the secondary lookups.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    TypeDecorator,
    func,
)

from .database import Base
from carpool.domain.enums import BookingStatus, PaymentStatus, RideStatus


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamps on every backend.

    PostgreSQL keeps the offset natively; SQLite drops it, so values are
    stored as naive UTC there and re-tagged on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return value
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return value
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _enum(enum_cls):
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=20,
    )


class UserModel(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)
    name = Column(String(120), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(UTCDateTime, server_default=func.now())


class RideModel(Base):
    __tablename__ = "rides"

    id = Column(String(36), primary_key=True)
    driver_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    departure_date = Column(Date, nullable=False)
    departure_at = Column(UTCDateTime, nullable=False)

    total_seats = Column(Integer, nullable=False)
    available_seats = Column(Integer, nullable=False)
    booked_seats = Column(Integer, default=0, nullable=False)

    price_per_seat = Column(Float, default=0.0, nullable=False)
    pickup_points = Column(JSON, default=list, nullable=False)
    status = Column(_enum(RideStatus), default=RideStatus.ACTIVE, nullable=False)

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("available_seats >= 0", name="ck_rides_available_non_negative"),
        CheckConstraint(
            "available_seats <= total_seats", name="ck_rides_available_within_total"
        ),
        CheckConstraint(
            "available_seats + booked_seats = total_seats", name="ck_rides_seat_mirror"
        ),
        Index("idx_rides_departure_date", "departure_date"),
        Index("idx_rides_status", "status"),
        Index("idx_rides_driver", "driver_id"),
    )


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True)
    reference = Column(String(16), unique=True, nullable=False)
    ride_id = Column(String(36), ForeignKey("rides.id"), nullable=False)
    passenger_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    driver_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    pickup_point_id = Column(String(64), nullable=True)

    seats = Column(Integer, nullable=False)
    price_per_seat = Column(Float, nullable=False)
    total_amount = Column(Float, nullable=False)
    departure_at = Column(UTCDateTime, nullable=False)

    verification_code = Column(String(16), nullable=False)
    verification_expiry = Column(UTCDateTime, nullable=False)
    code_regenerated_at = Column(UTCDateTime, nullable=True)

    status = Column(_enum(BookingStatus), default=BookingStatus.PENDING, nullable=False)
    payment_status = Column(
        _enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False
    )
    amount_received = Column(Float, default=0.0, nullable=False)

    is_late_cancellation = Column(Boolean, default=False, nullable=False)
    cancelled_by = Column(String(36), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    no_show_reason = Column(String(500), nullable=True)

    created_at = Column(UTCDateTime, nullable=False)
    confirmed_at = Column(UTCDateTime, nullable=True)
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    no_show_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("seats > 0", name="ck_bookings_seats_positive"),
        Index("idx_bookings_ride", "ride_id"),
        Index("idx_bookings_passenger", "passenger_id"),
        Index("idx_bookings_driver", "driver_id"),
        Index("idx_bookings_status", "status"),
    )
