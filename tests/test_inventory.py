"""Repository tests: conditional seat updates and conditional transitions."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from carpool.domain.enums import BookingStatus, RideStatus
from carpool.domain.errors import (
    InsufficientSeats,
    InvalidCode,
    InvalidState,
    RideNotBookable,
    RideNotFound,
)
from carpool.infrastructure.models import RideModel
from carpool.infrastructure.repositories import (
    BookingRepository,
    RideInventoryRepository,
)
from tests.conftest import read_ride


class TestAdjustSeats:
    @pytest.mark.asyncio
    async def test_reserve_and_release_mirror(self, session_factory, ride):
        async with session_factory() as session:
            repo = RideInventoryRepository(session)
            after = await repo.adjust_seats(ride.id, ride.departure_date, -3)
            assert (after.available_seats, after.booked_seats) == (1, 3)
            after = await repo.adjust_seats(ride.id, ride.departure_date, 2)
            assert (after.available_seats, after.booked_seats) == (3, 1)
            await session.commit()

        stored = await read_ride(session_factory, ride.id)
        assert stored.seats_consistent()
        assert stored.available_seats == 3

    @pytest.mark.asyncio
    async def test_refuses_to_go_negative(self, session_factory, ride):
        async with session_factory() as session:
            with pytest.raises(InsufficientSeats) as exc:
                await RideInventoryRepository(session).adjust_seats(
                    ride.id, ride.departure_date, -5
                )
        assert exc.value.details["available_seats"] == 4
        assert (await read_ride(session_factory, ride.id)).available_seats == 4

    @pytest.mark.asyncio
    async def test_refuses_to_exceed_total(self, session_factory, ride):
        async with session_factory() as session:
            with pytest.raises(InsufficientSeats):
                await RideInventoryRepository(session).adjust_seats(
                    ride.id, ride.departure_date, 1
                )

    @pytest.mark.asyncio
    async def test_frozen_on_terminal_ride(self, session_factory, ride):
        async with session_factory() as session:
            repo = RideInventoryRepository(session)
            await repo.set_status(ride.id, [RideStatus.ACTIVE], RideStatus.EXPIRED)
            with pytest.raises(RideNotBookable):
                await repo.adjust_seats(ride.id, ride.departure_date, -1)

    @pytest.mark.asyncio
    async def test_wrong_partition_is_not_found(self, session_factory, ride):
        async with session_factory() as session:
            with pytest.raises(RideNotFound):
                await RideInventoryRepository(session).adjust_seats(
                    ride.id, ride.departure_date + timedelta(days=1), -1
                )

    @pytest.mark.asyncio
    async def test_check_constraint_blocks_direct_oversell(self, session_factory, ride):
        async with session_factory() as session:
            row = await session.get(RideModel, ride.id)
            row.available_seats = -1
            row.booked_seats = 5
            with pytest.raises(IntegrityError):
                await session.flush()


class TestRideQueries:
    @pytest.mark.asyncio
    async def test_get_many_skips_unknown(self, session_factory, ride):
        async with session_factory() as session:
            found = await RideInventoryRepository(session).get_many([ride.id, "ghost"])
        assert list(found) == [ride.id]

    @pytest.mark.asyncio
    async def test_find_expirable(self, session_factory, ride):
        async with session_factory() as session:
            repo = RideInventoryRepository(session)
            assert await repo.find_expirable(ride.departure_at) == []
            due = await repo.find_expirable(ride.departure_at + timedelta(minutes=1))
        assert [r.id for r in due] == [ride.id]

    @pytest.mark.asyncio
    async def test_set_status_is_conditional(self, session_factory, ride):
        async with session_factory() as session:
            repo = RideInventoryRepository(session)
            assert await repo.set_status(
                ride.id, [RideStatus.ACTIVE], RideStatus.CANCELLED
            )
            assert not await repo.set_status(
                ride.id, [RideStatus.ACTIVE], RideStatus.EXPIRED
            )


class TestBookingTransitions:
    @pytest.mark.asyncio
    async def test_transition_only_from_sources(
        self, controller, session_factory, ride, passenger
    ):
        receipt = await controller.reserve(passenger, ride.id)
        async with session_factory() as session:
            repo = BookingRepository(session)
            moved = await repo.transition(
                receipt.booking.id, [BookingStatus.PENDING], BookingStatus.CONFIRMED
            )
            assert moved.status == BookingStatus.CONFIRMED
            with pytest.raises(InvalidState):
                await repo.transition(
                    receipt.booking.id, [BookingStatus.PENDING], BookingStatus.CONFIRMED
                )

    @pytest.mark.asyncio
    async def test_transition_guarded_by_code(
        self, controller, session_factory, ride, passenger
    ):
        receipt = await controller.reserve(passenger, ride.id)
        async with session_factory() as session:
            with pytest.raises(InvalidCode):
                await BookingRepository(session).transition(
                    receipt.booking.id,
                    [BookingStatus.PENDING],
                    BookingStatus.IN_PROGRESS,
                    expected_code="ROTATED",
                )

    @pytest.mark.asyncio
    async def test_find_active_for_passenger(
        self, controller, session_factory, ride, passenger
    ):
        receipt = await controller.reserve(passenger, ride.id)
        async with session_factory() as session:
            repo = BookingRepository(session)
            active = await repo.find_active_for_passenger(passenger, ride.id)
            assert active.id == receipt.booking.id
            await repo.transition(
                receipt.booking.id, [BookingStatus.PENDING], BookingStatus.CANCELLED
            )
            assert await repo.find_active_for_passenger(passenger, ride.id) is None
