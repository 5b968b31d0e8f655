"""FastAPI dependency injection helpers."""

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from carpool.infrastructure.database import async_session_factory
from carpool.services.booking_controller import BookingController


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async DB session; commit on success, rollback on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_controller(request: Request) -> BookingController:
    """The controller wired up in the application lifespan."""
    return request.app.state.controller
