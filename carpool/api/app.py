"""
FastAPI application factory.

* Registers routes for bookings, rides and admin.
* Wires the booking controller (Redis lock manager, SQL stores, and the
  configured event sink) and starts / stops the ride sweeper via lifespan events.
* Renders every ``BookingError`` as ``{"detail", "code", "details"}`` with
  the error's HTTP status.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from carpool.api.middleware import limiter
from carpool.api.routes import admin, bookings, rides
from carpool.config import settings
from carpool.domain.errors import BookingError
from carpool.infrastructure.database import async_session_factory
from carpool.infrastructure.locks import LockManager
from carpool.infrastructure.notifications import (
    NotificationDispatcher,
    build_notification_sink,
)
from carpool.infrastructure.redis_client import close_redis, get_redis
from carpool.services.booking_controller import BookingController
from carpool.services.collaborators import SqlUserDirectory
from carpool.workers import ride_sweeper as _sweeper

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the controller and start the sweeper on startup; stop on shutdown."""
    redis = await get_redis()
    notifications = NotificationDispatcher(build_notification_sink(settings, redis))
    app.state.redis = redis
    app.state.notifications = notifications
    app.state.controller = BookingController(
        async_session_factory,
        LockManager(redis, settings.lock_ttl_seconds),
        SqlUserDirectory(async_session_factory),
        notifications,
    )
    await _sweeper.start_sweeper_loop()
    yield
    await _sweeper.stop_sweeper_loop()
    await notifications.drain()
    await close_redis()


async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    app = FastAPI(
        title="Campus Carpool Booking API",
        description=(
            "Seat reservations for student carpools.  Guarantees no "
            "overselling under concurrent requests, verifies passengers at "
            "pickup with one-time codes, and tracks every booking from "
            "request to cash settlement."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(BookingError, booking_error_handler)

    # Routers
    app.include_router(bookings.router, prefix="/api/v1")
    app.include_router(rides.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
