"""
Concurrency safety tests.

Demonstrates:
1. N concurrent reservations on S seats yield exactly S successes.
2. Two passengers racing for the last seat: one wins, one gets
   ``INSUFFICIENT_SEATS``.
3. Concurrent double-cancel credits the seats once.
4. The distributed lock is fail-closed and refuses stale releases.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from carpool.domain.enums import BookingStatus
from carpool.domain.errors import (
    InsufficientSeats,
    InvalidState,
    LockStoreUnavailable,
    ResourceLocked,
)
from carpool.infrastructure.locks import LockManager, seat_lock_key
from carpool.infrastructure.repositories import BookingRepository
from tests.conftest import add_ride, read_ride


class TestConcurrentReservations:
    @pytest.mark.asyncio
    async def test_no_oversell_under_contention(
        self, controller, session_factory, driver, passengers, clock
    ):
        ride = await add_ride(
            session_factory, driver, clock.now() + timedelta(hours=3), total_seats=4
        )

        results = await asyncio.gather(
            *[controller.reserve(p, ride.id) for p in passengers],
            return_exceptions=True,
        )

        won = [r for r in results if not isinstance(r, Exception)]
        lost = [r for r in results if isinstance(r, Exception)]
        assert len(won) == 4
        assert len(lost) == len(passengers) - 4
        assert all(isinstance(e, InsufficientSeats) for e in lost)

        after = await read_ride(session_factory, ride.id)
        assert after.available_seats == 0
        assert after.booked_seats == 4
        assert after.seats_consistent()

        async with session_factory() as session:
            bookings = await BookingRepository(session).find_by_ride(ride.id)
        assert len(bookings) == 4

    @pytest.mark.asyncio
    async def test_race_for_last_seat(
        self, controller, session_factory, driver, passengers, clock
    ):
        ride = await add_ride(
            session_factory, driver, clock.now() + timedelta(hours=3), total_seats=1
        )

        results = await asyncio.gather(
            controller.reserve(passengers[0], ride.id),
            controller.reserve(passengers[1], ride.id),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], InsufficientSeats)
        after = await read_ride(session_factory, ride.id)
        assert (after.available_seats, after.booked_seats) == (0, 1)

    @pytest.mark.asyncio
    async def test_multi_seat_requests_never_overlap(
        self, controller, session_factory, driver, passengers, clock
    ):
        ride = await add_ride(
            session_factory, driver, clock.now() + timedelta(hours=3), total_seats=4
        )

        results = await asyncio.gather(
            controller.reserve(passengers[0], ride.id, seats=3),
            controller.reserve(passengers[1], ride.id, seats=2),
            return_exceptions=True,
        )

        won = [r for r in results if not isinstance(r, Exception)]
        assert len(won) == 1
        after = await read_ride(session_factory, ride.id)
        assert after.booked_seats == won[0].booking.seats
        assert after.seats_consistent()

    @pytest.mark.asyncio
    async def test_concurrent_double_cancel_credits_once(
        self, controller, session_factory, ride, passenger, driver
    ):
        receipt = await controller.reserve(passenger, ride.id, seats=2)

        results = await asyncio.gather(
            controller.cancel(passenger, receipt.booking.id),
            controller.cancel(driver, receipt.booking.id),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidState)
        after = await read_ride(session_factory, ride.id)
        assert (after.available_seats, after.booked_seats) == (4, 0)

    @pytest.mark.asyncio
    async def test_cancel_and_reserve_interleave(
        self, controller, session_factory, driver, passengers, clock
    ):
        ride = await add_ride(
            session_factory, driver, clock.now() + timedelta(hours=3), total_seats=2
        )
        first = await controller.reserve(passengers[0], ride.id, seats=2)

        await asyncio.gather(
            controller.cancel(passengers[0], first.booking.id),
            *[controller.reserve(p, ride.id) for p in passengers[1:4]],
            return_exceptions=True,
        )

        after = await read_ride(session_factory, ride.id)
        assert after.seats_consistent()
        async with session_factory() as session:
            bookings = await BookingRepository(session).find_by_ride(ride.id)
        active = [b for b in bookings if b.status == BookingStatus.PENDING]
        assert sum(b.seats for b in active) == after.booked_seats


class TestLockFailures:
    @pytest.mark.asyncio
    async def test_busy_lock_reports_locked(
        self, make_controller, session_factory, redis, ride, passenger
    ):
        controller = make_controller(lock_retry_attempts=2, lock_retry_base_delay_ms=1)
        redis.store[seat_lock_key(ride.id)] = "another-worker"

        with pytest.raises(ResourceLocked) as exc:
            await controller.reserve(passenger, ride.id)
        assert exc.value.code == "LOCKED"

        after = await read_ride(session_factory, ride.id)
        assert after.booked_seats == 0
        # Someone else's lock is left alone
        assert redis.store[seat_lock_key(ride.id)] == "another-worker"

    @pytest.mark.asyncio
    async def test_lock_store_down_fails_closed(
        self, controller, session_factory, redis, ride, passenger
    ):
        redis.set.side_effect = RedisConnectionError("connection refused")

        with pytest.raises(LockStoreUnavailable) as exc:
            await controller.reserve(passenger, ride.id)
        assert exc.value.code == "STORE_UNAVAILABLE"

        after = await read_ride(session_factory, ride.id)
        assert after.booked_seats == 0
        async with session_factory() as session:
            assert await BookingRepository(session).find_by_ride(ride.id) == []


class TestLockManager:
    """Redis lock semantics (in-memory Redis double)."""

    @pytest.mark.asyncio
    async def test_acquire_then_busy(self, locks):
        token = await locks.acquire("lock:seat:r1", ttl=10)
        assert token
        assert await locks.acquire("lock:seat:r1", ttl=10) is None

    @pytest.mark.asyncio
    async def test_acquire_passes_nx_and_ttl(self, locks, redis):
        await locks.acquire("lock:seat:r1", ttl=12)
        _, kwargs = redis.set.call_args
        assert kwargs == {"nx": True, "ex": 12}

    @pytest.mark.asyncio
    async def test_release_by_owner(self, locks, redis):
        token = await locks.acquire("lock:seat:r1")
        assert await locks.release("lock:seat:r1", token) is True
        assert "lock:seat:r1" not in redis.store

    @pytest.mark.asyncio
    async def test_stale_release_refused(self, locks, redis):
        stale = await locks.acquire("lock:seat:r1")
        # TTL lapsed and another worker took over
        redis.store["lock:seat:r1"] = "new-owner"

        assert await locks.release("lock:seat:r1", stale) is False
        assert redis.store["lock:seat:r1"] == "new-owner"

    @pytest.mark.asyncio
    async def test_release_swallows_store_errors(self):
        redis = AsyncMock()
        redis.eval = AsyncMock(side_effect=RedisConnectionError("down"))
        assert await LockManager(redis).release("lock:seat:r1", "tok") is False

    @pytest.mark.asyncio
    async def test_retry_exhaustion_raises_locked(self, locks, redis):
        redis.store["lock:seat:r1"] = "holder"
        with pytest.raises(ResourceLocked):
            await locks.acquire_with_retry("lock:seat:r1", attempts=3, base_delay=0.001)
        assert redis.set.await_count == 3

    @pytest.mark.asyncio
    async def test_retry_succeeds_when_freed(self, locks, redis):
        redis.store["lock:seat:r1"] = "holder"

        async def free_soon():
            await asyncio.sleep(0.01)
            del redis.store["lock:seat:r1"]

        freer = asyncio.create_task(free_soon())
        token = await locks.acquire_with_retry(
            "lock:seat:r1", attempts=100, base_delay=0.005
        )
        await freer
        assert redis.store["lock:seat:r1"] == token

    @pytest.mark.asyncio
    async def test_with_lock_releases_on_exception(self, locks, redis):
        async def boom():
            assert "lock:seat:r1" in redis.store
            raise ValueError("inside critical section")

        with pytest.raises(ValueError):
            await locks.with_lock("lock:seat:r1", 5, boom)
        assert "lock:seat:r1" not in redis.store

    @pytest.mark.asyncio
    async def test_with_lock_returns_result(self, locks, redis):
        async def work():
            return 42

        assert await locks.with_lock("lock:seat:r1", 5, work) == 42
        assert redis.store == {}

    @pytest.mark.asyncio
    async def test_with_lock_fails_fast_when_held(self, locks, redis):
        redis.store["lock:seat:r1"] = "holder"
        work = AsyncMock()
        with pytest.raises(ResourceLocked):
            await locks.with_lock("lock:seat:r1", 5, work)
        work.assert_not_called()
