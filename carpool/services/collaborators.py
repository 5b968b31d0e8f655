"""
Interfaces to the systems around the booking core.

* ``UserDirectory``     -- is the passenger allowed to book at all?
* ``NotificationSink``  -- one-way event delivery.
* ``RankingEngine``     -- proposes candidate ride ids; advisory only, the
  controller re-validates every candidate against the inventory store.
"""

from __future__ import annotations

from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carpool.domain.errors import StoreUnavailable
from carpool.infrastructure.repositories import UserRepository


class UserDirectory(Protocol):
    async def is_verified_and_active(self, user_id: str) -> bool: ...


class NotificationSink(Protocol):
    async def notify(self, event: str, payload: dict[str, Any]) -> None: ...


class RankingEngine(Protocol):
    async def find_candidates(self, criteria: dict[str, Any]) -> list[str]: ...


class SqlUserDirectory:
    """Reads the ``users`` table maintained by the account service."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def is_verified_and_active(self, user_id: str) -> bool:
        try:
            async with self.session_factory() as session:
                user = await UserRepository(session).get_by_id(user_id)
        except SQLAlchemyError as exc:
            raise StoreUnavailable("User directory unavailable") from exc
        return bool(user and user.is_verified and user.is_active)
