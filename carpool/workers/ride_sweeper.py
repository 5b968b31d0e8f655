"""
Background Ride Sweeper
=======================

Runs every ``SWEEP_INTERVAL_SECONDS`` (default 300 s) and closes rides whose
departure lies more than ``RIDE_EXPIRY_AFTER_MINUTES`` in the past.

* A ride on which somebody actually travelled (any booking reached
  confirmed, in_progress or completed) becomes ``completed``.
* Anything else becomes ``expired``.

Once a ride is terminal its seat counters are frozen; late cancellations and
no-shows on it still transition the booking but no longer credit seats.

Concurrency safety
------------------
* **Redis singleton lock** (``lock:ride-sweeper``) ensures only one API
  process runs a cycle at a time.
* Each ride is closed under its own seat lock, so the status flip is
  ordered with respect to in-flight reservations.  A ride whose lock is
  busy is simply retried next cycle.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carpool.config import settings
from carpool.domain.clock import Clock, add_minutes
from carpool.domain.entities import Ride
from carpool.domain.enums import BookingStatus, RideStatus
from carpool.domain.errors import ResourceLocked
from carpool.infrastructure.database import async_session_factory
from carpool.infrastructure.locks import LockManager, seat_lock_key
from carpool.infrastructure.redis_client import get_redis
from carpool.infrastructure.repositories import (
    BookingRepository,
    RideInventoryRepository,
)

logger = logging.getLogger(__name__)

SWEEPER_LOCK_KEY = "lock:ride-sweeper"

# A ride counts as having happened if any booking got this far
_TRAVELLED_STATUSES = {
    BookingStatus.CONFIRMED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.COMPLETED,
}

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_sweeper_loop() -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop())
    logger.info("Ride sweeper started (interval=%ds)", settings.sweep_interval_seconds)


async def stop_sweeper_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Ride sweeper stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop() -> None:
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            locks = LockManager(await get_redis(), settings.lock_ttl_seconds)
            await run_sweep_cycle(async_session_factory, locks)
        except Exception:
            logger.exception("Unhandled error in sweep cycle")
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.sweep_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass  # next cycle


def _closing_status(bookings) -> RideStatus:
    if any(b.status in _TRAVELLED_STATUSES for b in bookings):
        return RideStatus.COMPLETED
    return RideStatus.EXPIRED


async def run_sweep_cycle(
    session_factory: async_sessionmaker[AsyncSession],
    locks: LockManager,
    clock: Optional[Clock] = None,
    expiry_after_minutes: Optional[int] = None,
) -> int:
    """Execute one sweep.  Returns the number of rides closed."""
    clock = clock or Clock()
    if expiry_after_minutes is None:
        expiry_after_minutes = settings.ride_expiry_after_minutes

    token = await locks.acquire(SWEEPER_LOCK_KEY, ttl=60)
    if not token:
        logger.debug("Sweeper lock held by another worker; skipping cycle")
        return 0

    closed = 0
    try:
        cutoff = add_minutes(clock.now(), -expiry_after_minutes)
        async with session_factory() as session:
            candidates = await RideInventoryRepository(session).find_expirable(cutoff)

        for ride in candidates:
            try:
                async with locks.hold(seat_lock_key(ride.id)):
                    if await _close_ride(session_factory, ride):
                        closed += 1
            except ResourceLocked:
                logger.debug("Ride %s busy; retrying next cycle", ride.id)

        if closed:
            logger.info("Sweep cycle: %d rides closed", closed)
    finally:
        await locks.release(SWEEPER_LOCK_KEY, token)

    return closed


async def _close_ride(
    session_factory: async_sessionmaker[AsyncSession], ride: Ride
) -> bool:
    async with session_factory() as session:
        async with session.begin():
            bookings = await BookingRepository(session).find_by_ride(ride.id)
            status = _closing_status(bookings)
            changed = await RideInventoryRepository(session).set_status(
                ride.id, [RideStatus.ACTIVE, RideStatus.IN_PROGRESS], status
            )
    if changed:
        logger.info("Ride %s closed as %s", ride.id, status.value)
    return changed
