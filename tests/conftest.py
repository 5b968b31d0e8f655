"""
Shared test fixtures.

Uses a file-backed SQLite database (via aiosqlite) per test so the
controller can open independent connections exactly as it would against
PostgreSQL, without Docker.  Redis is replaced by an ``AsyncMock`` that keeps
keys in a dict and honours ``SET NX`` plus the compare-and-delete release
script.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from carpool.config import Settings
from carpool.domain.clock import Clock
from carpool.domain.entities import Ride
from carpool.infrastructure.database import Base, build_session_factory
from carpool.infrastructure.locks import LockManager
from carpool.infrastructure.notifications import NotificationDispatcher
from carpool.infrastructure.repositories import (
    BookingRepository,
    RideInventoryRepository,
    UserRepository,
)
from carpool.services.booking_controller import BookingController
from carpool.services.collaborators import SqlUserDirectory

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


# ── Doubles ───────────────────────────────────────────────────────────


class FrozenClock(Clock):
    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now

    def advance(self, **delta: float) -> None:
        self._now += timedelta(**delta)


class RecordingSink:
    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


def make_fake_redis() -> AsyncMock:
    """In-memory Redis double covering what the lock manager uses."""
    store: dict[str, str] = {}

    async def _set(key, value, nx=False, ex=None):
        if nx and key in store:
            return None
        store[key] = value
        return True

    async def _get(key):
        return store.get(key)

    async def _eval(script, numkeys, key, token):
        if store.get(key) == token:
            del store[key]
            return 1
        return 0

    redis = AsyncMock()
    redis.set = AsyncMock(side_effect=_set)
    redis.get = AsyncMock(side_effect=_get)
    redis.eval = AsyncMock(side_effect=_eval)
    redis.publish = AsyncMock(return_value=1)
    redis.ping = AsyncMock(return_value=True)
    redis.store = store
    return redis


# ── Stores ────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Create tables in a fresh database file, yield a session factory."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'carpool.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def redis() -> AsyncMock:
    return make_fake_redis()


@pytest.fixture
def locks(redis) -> LockManager:
    return LockManager(redis, default_ttl=30)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def notifications(sink) -> NotificationDispatcher:
    return NotificationDispatcher(sink)


@pytest.fixture
def config() -> Settings:
    # Generous retries so contention in tests resolves to capacity outcomes
    return Settings(lock_retry_attempts=400, lock_retry_base_delay_ms=5)


@pytest.fixture
def make_controller(session_factory, locks, notifications, config, clock):
    def _make(**overrides) -> BookingController:
        cfg = config.model_copy(update=overrides) if overrides else config
        return BookingController(
            session_factory,
            locks,
            SqlUserDirectory(session_factory),
            notifications,
            config=cfg,
            clock=clock,
        )

    return _make


@pytest.fixture
def controller(make_controller) -> BookingController:
    return make_controller()


# ── Data helpers ──────────────────────────────────────────────────────


async def add_user(
    session_factory,
    name: str,
    email: str,
    is_verified: bool = True,
    is_active: bool = True,
) -> str:
    async with session_factory() as session:
        user = await UserRepository(session).create_user(
            name=name, email=email, is_verified=is_verified, is_active=is_active
        )
        await session.commit()
        return user.id


async def add_ride(
    session_factory,
    driver_id: str,
    departure_at: datetime,
    total_seats: int = 4,
    price_per_seat: float = 50.0,
    pickup_points: Optional[list[str]] = None,
) -> Ride:
    async with session_factory() as session:
        ride = await RideInventoryRepository(session).create_ride(
            driver_id=driver_id,
            departure_at=departure_at,
            total_seats=total_seats,
            price_per_seat=price_per_seat,
            pickup_points=pickup_points or ["main-gate", "library"],
        )
        await session.commit()
        return ride


async def read_ride(session_factory, ride_id: str) -> Ride:
    async with session_factory() as session:
        return await RideInventoryRepository(session).get_ride(ride_id)


async def read_booking(session_factory, booking_id: str):
    async with session_factory() as session:
        return await BookingRepository(session).get_by_id(booking_id)


# ── Seeded data ───────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def driver(session_factory) -> str:
    return await add_user(session_factory, "Dana Driver", "dana@campus.test")


@pytest_asyncio.fixture
async def passengers(session_factory) -> list[str]:
    return [
        await add_user(session_factory, f"Student {i}", f"student{i}@campus.test")
        for i in range(10)
    ]


@pytest.fixture
def passenger(passengers) -> str:
    return passengers[0]


@pytest_asyncio.fixture
async def ride(session_factory, driver, clock) -> Ride:
    """Four seats at 50.0 each, departing three hours from "now"."""
    return await add_ride(
        session_factory, driver, clock.now() + timedelta(hours=3), total_seats=4
    )
