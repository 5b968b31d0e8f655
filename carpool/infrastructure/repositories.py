"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Reads return detached domain entities.

Every mutation is a single conditional UPDATE:

* ``RideInventoryRepository.adjust_seats`` only applies when the resulting
  ``available_seats`` stays within ``[0, total_seats]`` on a non-terminal
  ride -- the store refuses to oversell even if the lock were bypassed.
* ``BookingRepository.transition`` only applies when the row is still in
  one of the expected source states, making state checks atomic per record.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import BookingModel, RideModel, UserModel
from carpool.domain.entities import Booking, Ride
from carpool.domain.enums import (
    ACTIVE_BOOKING_STATUSES,
    BOARDABLE_STATUSES,
    TERMINAL_RIDE_STATUSES,
    BookingStatus,
    PaymentStatus,
    RideStatus,
)
from carpool.domain.errors import (
    BookingNotFound,
    InsufficientSeats,
    InvalidCode,
    InvalidState,
    RideNotBookable,
    RideNotFound,
)


def _ride_entity(row: RideModel) -> Ride:
    return Ride(
        id=row.id,
        driver_id=row.driver_id,
        departure_date=row.departure_date,
        departure_at=row.departure_at,
        total_seats=row.total_seats,
        available_seats=row.available_seats,
        booked_seats=row.booked_seats,
        price_per_seat=row.price_per_seat,
        status=RideStatus(row.status),
        pickup_points=list(row.pickup_points or []),
    )


def _booking_entity(row: BookingModel) -> Booking:
    return Booking(
        id=row.id,
        reference=row.reference,
        ride_id=row.ride_id,
        passenger_id=row.passenger_id,
        driver_id=row.driver_id,
        pickup_point_id=row.pickup_point_id,
        seats=row.seats,
        price_per_seat=row.price_per_seat,
        total_amount=row.total_amount,
        departure_at=row.departure_at,
        verification_code=row.verification_code,
        verification_expiry=row.verification_expiry,
        status=BookingStatus(row.status),
        payment_status=PaymentStatus(row.payment_status),
        amount_received=row.amount_received,
        is_late_cancellation=row.is_late_cancellation,
        cancelled_by=row.cancelled_by,
        cancellation_reason=row.cancellation_reason,
        no_show_reason=row.no_show_reason,
        created_at=row.created_at,
        confirmed_at=row.confirmed_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        cancelled_at=row.cancelled_at,
        no_show_at=row.no_show_at,
    )


class RideInventoryRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_ride(
        self,
        *,
        driver_id: str,
        departure_at: datetime,
        total_seats: int,
        price_per_seat: float = 0.0,
        pickup_points: Optional[list[str]] = None,
        ride_id: Optional[str] = None,
        status: RideStatus = RideStatus.ACTIVE,
    ) -> Ride:
        """Create a ride with every seat available."""
        row = RideModel(
            id=ride_id or str(uuid.uuid4()),
            driver_id=driver_id,
            departure_date=departure_at.date(),
            departure_at=departure_at,
            total_seats=total_seats,
            available_seats=total_seats,
            booked_seats=0,
            price_per_seat=price_per_seat,
            pickup_points=list(pickup_points or []),
            status=status,
        )
        self.session.add(row)
        await self.session.flush()
        return _ride_entity(row)

    async def _fetch(self, ride_id: str) -> Optional[RideModel]:
        return await self.session.get(RideModel, ride_id, populate_existing=True)

    async def get_ride(self, ride_id: str, departure_date: Optional[date] = None) -> Ride:
        row = await self._fetch(ride_id)
        if row is None or (
            departure_date is not None and row.departure_date != departure_date
        ):
            raise RideNotFound(f"Ride {ride_id} not found")
        return _ride_entity(row)

    async def get_many(self, ride_ids: Iterable[str]) -> dict[str, Ride]:
        ids = list(ride_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(RideModel).where(RideModel.id.in_(ids))
        )
        return {row.id: _ride_entity(row) for row in result.scalars().all()}

    async def adjust_seats(self, ride_id: str, departure_date: date, delta: int) -> Ride:
        """
        Conditionally apply ``available += delta`` / ``booked -= delta``.

        Negative *delta* reserves seats, positive releases them.  Nothing is
        written unless the result stays within ``[0, total_seats]``.
        """
        result = await self.session.execute(
            update(RideModel)
            .where(
                RideModel.id == ride_id,
                RideModel.departure_date == departure_date,
                RideModel.status.not_in(list(TERMINAL_RIDE_STATUSES)),
                RideModel.available_seats + delta >= 0,
                RideModel.available_seats + delta <= RideModel.total_seats,
            )
            .values(
                available_seats=RideModel.available_seats + delta,
                booked_seats=RideModel.booked_seats - delta,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return await self.get_ride(ride_id)

        current = await self.get_ride(ride_id, departure_date)
        if current.is_terminal:
            raise RideNotBookable(
                f"Ride is {current.status.value}; seats can no longer change",
                details={"ride_id": ride_id},
            )
        raise InsufficientSeats(
            f"Only {current.available_seats} seats available"
            if delta < 0
            else "Seat release would exceed ride capacity",
            details={
                "ride_id": ride_id,
                "available_seats": current.available_seats,
                "requested_change": delta,
            },
        )

    async def find_expirable(self, cutoff: datetime) -> list[Ride]:
        """Non-terminal rides that departed before *cutoff*."""
        result = await self.session.execute(
            select(RideModel)
            .where(
                RideModel.status.in_([RideStatus.ACTIVE, RideStatus.IN_PROGRESS]),
                RideModel.departure_at < cutoff,
            )
            .order_by(RideModel.departure_at)
        )
        return [_ride_entity(row) for row in result.scalars().all()]

    async def set_status(
        self, ride_id: str, sources: Iterable[RideStatus], status: RideStatus
    ) -> bool:
        result = await self.session.execute(
            update(RideModel)
            .where(RideModel.id == ride_id, RideModel.status.in_(list(sources)))
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class BookingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, booking: Booking) -> Booking:
        row = BookingModel(
            id=booking.id,
            reference=booking.reference,
            ride_id=booking.ride_id,
            passenger_id=booking.passenger_id,
            driver_id=booking.driver_id,
            pickup_point_id=booking.pickup_point_id,
            seats=booking.seats,
            price_per_seat=booking.price_per_seat,
            total_amount=booking.total_amount,
            departure_at=booking.departure_at,
            verification_code=booking.verification_code,
            verification_expiry=booking.verification_expiry,
            status=booking.status,
            payment_status=booking.payment_status,
            amount_received=booking.amount_received,
            created_at=booking.created_at,
        )
        self.session.add(row)
        await self.session.flush()
        return _booking_entity(row)

    async def get_by_id(self, booking_id: str) -> Booking:
        row = await self.session.get(BookingModel, booking_id, populate_existing=True)
        if row is None:
            raise BookingNotFound(f"Booking {booking_id} not found")
        return _booking_entity(row)

    async def get_by_reference(self, reference: str) -> Booking:
        result = await self.session.execute(
            select(BookingModel).where(BookingModel.reference == reference)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise BookingNotFound(f"No booking with reference {reference}")
        return _booking_entity(row)

    async def find_by_driver(self, driver_id: str) -> list[Booking]:
        result = await self.session.execute(
            select(BookingModel)
            .where(BookingModel.driver_id == driver_id)
            .order_by(BookingModel.departure_at)
        )
        return [_booking_entity(row) for row in result.scalars().all()]

    async def find_by_ride(self, ride_id: str) -> list[Booking]:
        result = await self.session.execute(
            select(BookingModel)
            .where(BookingModel.ride_id == ride_id)
            .order_by(BookingModel.created_at)
        )
        return [_booking_entity(row) for row in result.scalars().all()]

    async def find_by_passenger(
        self, passenger_id: str, statuses: Optional[Iterable[BookingStatus]] = None
    ) -> list[Booking]:
        query = select(BookingModel).where(BookingModel.passenger_id == passenger_id)
        if statuses:
            query = query.where(BookingModel.status.in_(list(statuses)))
        result = await self.session.execute(query.order_by(BookingModel.departure_at))
        return [_booking_entity(row) for row in result.scalars().all()]

    async def find_active_for_passenger(
        self, passenger_id: str, ride_id: str
    ) -> Optional[Booking]:
        result = await self.session.execute(
            select(BookingModel)
            .where(
                BookingModel.passenger_id == passenger_id,
                BookingModel.ride_id == ride_id,
                BookingModel.status.in_(list(ACTIVE_BOOKING_STATUSES)),
            )
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return _booking_entity(row) if row else None

    async def transition(
        self,
        booking_id: str,
        sources: Iterable[BookingStatus],
        target: BookingStatus,
        expected_code: Optional[str] = None,
        **fields,
    ) -> Booking:
        """
        Move *booking_id* to *target* iff it is currently in *sources*.

        With *expected_code* the row must also still carry that verification
        code, so a concurrent regeneration invalidates an in-flight boarding.
        """
        allowed = list(sources)
        query = update(BookingModel).where(
            BookingModel.id == booking_id, BookingModel.status.in_(allowed)
        )
        if expected_code is not None:
            query = query.where(BookingModel.verification_code == expected_code)
        result = await self.session.execute(
            query.values(status=target, **fields).execution_options(
                synchronize_session=False
            )
        )
        if result.rowcount == 0:
            current = await self.get_by_id(booking_id)
            if expected_code is not None and current.status in allowed:
                raise InvalidCode("Verification code was regenerated")
            raise InvalidState(
                f"Cannot move booking from {current.status.value} to {target.value}",
                details={"booking_id": booking_id, "status": current.status.value},
            )
        return await self.get_by_id(booking_id)

    async def rotate_code(
        self, booking_id: str, code: str, expiry: datetime, at: datetime
    ) -> Booking:
        result = await self.session.execute(
            update(BookingModel)
            .where(
                BookingModel.id == booking_id,
                BookingModel.status.in_(list(BOARDABLE_STATUSES)),
            )
            .values(
                verification_code=code,
                verification_expiry=expiry,
                code_regenerated_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = await self.get_by_id(booking_id)
            raise InvalidState(
                f"Verification code not available for status {current.status.value}",
                details={"booking_id": booking_id, "status": current.status.value},
            )
        return await self.get_by_id(booking_id)


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_user(
        self,
        *,
        name: str,
        email: str,
        user_id: Optional[str] = None,
        is_verified: bool = True,
        is_active: bool = True,
    ) -> UserModel:
        user = UserModel(
            id=user_id or str(uuid.uuid4()),
            name=name,
            email=email,
            is_verified=is_verified,
            is_active=is_active,
        )
        self.session.add(user)
        await self.session.flush()
        return user

    async def get_by_id(self, user_id: str) -> Optional[UserModel]:
        return await self.session.get(UserModel, user_id)
