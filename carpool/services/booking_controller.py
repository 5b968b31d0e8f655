"""
Booking Lifecycle Controller
============================

Owns every state change of a reservation and every change to a ride's seat
counters.

State machine (see ``carpool.domain.enums.BOOKING_TRANSITIONS``)
-----------------------------------------------------------------
  pending     --confirm-->   confirmed
  pending|confirmed --board(code)--> in_progress
  in_progress --complete-->  completed*
  pending|confirmed --cancel (either party)--> cancelled*
  in_progress --cancel (driver only)-->        cancelled*
  pending|confirmed --no_show (driver, after grace)--> no_show*

Concurrency safety
------------------
* **Redis per-ride lock** (``lock:seat:{ride_id}``) totally orders reserve,
  cancel and no-show on the same ride.  Capacity is re-read *after* the lock
  is held, never before.
* **Conditional UPDATE** on the seat counters refuses to oversell even
  without the lock; the booking row and the seat change commit in one
  transaction, so a failure leaves neither visible.
* confirm / board / complete do not touch seats and rely only on the
  single-row conditional status update.

The controller is stateless: no seat counts or bookings are cached between
calls, so any number of workers can share the same stores.
"""

from __future__ import annotations

import logging
import math
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carpool.config import Settings, settings as default_settings
from carpool.domain.clock import Clock, add_hours, add_minutes, is_expired
from carpool.domain.entities import Booking, Ride
from carpool.domain.enums import (
    BOARDABLE_STATUSES,
    FINISHED_BOOKING_STATUSES,
    BookingRole,
    BookingStatus,
    PaymentStatus,
    RideStatus,
    sources_for,
)
from carpool.domain.errors import (
    BookingError,
    BookingExists,
    BookingTooLate,
    CancellationClosed,
    CodeExpired,
    InsufficientSeats,
    InvalidCode,
    InvalidState,
    NoShowTooEarly,
    NotBookingParty,
    OwnRideBooking,
    PassengerNotEligible,
    RideNotBookable,
    StoreUnavailable,
    ValidationFailed,
)
from carpool.domain.verification import generate_code, generate_reference, normalise
from carpool.infrastructure.locks import LockManager, seat_lock_key
from carpool.infrastructure.notifications import NotificationDispatcher
from carpool.infrastructure.repositories import (
    BookingRepository,
    RideInventoryRepository,
)
from carpool.services.collaborators import RankingEngine, UserDirectory

logger = logging.getLogger(__name__)


# ── Results ───────────────────────────────────────────────────────────


@dataclass
class ReservationReceipt:
    booking: Booking
    verification_code: str
    expires_at: datetime
    total_amount: float


@dataclass
class CancellationResult:
    booking: Booking
    is_late_cancellation: bool


@dataclass
class CodeReissue:
    booking_id: str
    verification_code: str
    expires_at: datetime


@dataclass
class BookingView:
    booking: Booking
    is_driver: bool
    is_passenger: bool
    can_cancel: bool


@dataclass
class BookingPage:
    bookings: list[Booking]
    page: int
    limit: int
    total_count: int
    total_pages: int


@dataclass
class FailedCompletion:
    booking_id: str
    code: str
    message: str


@dataclass
class BulkCompletion:
    ride_id: str
    completed: list[str] = field(default_factory=list)
    failed: list[FailedCompletion] = field(default_factory=list)


@dataclass
class RideBookingSummary:
    ride: Ride
    bookings: list[Booking]
    active_bookings: int
    seats_booked: int
    expected_cash: float


@dataclass
class Availability:
    ride: Ride
    requested_seats: int
    can_book: bool
    total_price: float
    reasons: list[str] = field(default_factory=list)


# ── Controller ────────────────────────────────────────────────────────


class BookingController:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: LockManager,
        users: UserDirectory,
        notifications: NotificationDispatcher,
        *,
        config: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        ranking: Optional[RankingEngine] = None,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.users = users
        self.notifications = notifications
        self.config = config or default_settings
        self.clock = clock or Clock()
        self.ranking = ranking

    # ── Reservation ───────────────────────────────────────────────

    async def reserve(
        self,
        passenger_id: str,
        ride_id: str,
        seats: int = 1,
        pickup_point_id: Optional[str] = None,
    ) -> ReservationReceipt:
        """Claim *seats* on *ride_id* and issue a boarding code."""
        if not 1 <= seats <= self.config.max_seats_per_booking:
            raise ValidationFailed(
                f"Between 1 and {self.config.max_seats_per_booking} seats per booking",
                details={"field": "seats"},
            )
        if not await self.users.is_verified_and_active(passenger_id):
            raise PassengerNotEligible(
                "Passenger must be verified and active to book rides"
            )

        # Fail fast before contending for the lock
        async with self._unit_of_work() as session:
            ride = await RideInventoryRepository(session).get_ride(ride_id)
            self._validate_ride_for_booking(ride, passenger_id, seats, pickup_point_id)
            await self._ensure_no_active_booking(
                BookingRepository(session), passenger_id, ride_id
            )

        async with self._ride_lock(ride_id):
            async with self._unit_of_work() as session:
                rides = RideInventoryRepository(session)
                bookings = BookingRepository(session)

                # Re-read under the lock; the pre-check above may be stale
                ride = await rides.get_ride(ride_id)
                self._validate_ride_for_booking(
                    ride, passenger_id, seats, pickup_point_id
                )
                await self._ensure_no_active_booking(bookings, passenger_id, ride_id)

                await rides.adjust_seats(ride.id, ride.departure_date, -seats)

                now = self.clock.now()
                booking = await bookings.create(
                    Booking(
                        id=str(uuid.uuid4()),
                        reference=generate_reference(),
                        ride_id=ride.id,
                        passenger_id=passenger_id,
                        driver_id=ride.driver_id,
                        pickup_point_id=pickup_point_id,
                        seats=seats,
                        price_per_seat=ride.price_per_seat,
                        total_amount=round(ride.price_per_seat * seats, 2),
                        departure_at=ride.departure_at,
                        verification_code=generate_code(
                            self.config.verification_code_length
                        ),
                        verification_expiry=add_hours(
                            now, self.config.verification_code_ttl_hours
                        ),
                        created_at=now,
                    )
                )

        logger.info(
            "Booking %s created: %d seat(s) on ride %s for passenger %s",
            booking.id,
            seats,
            ride_id,
            passenger_id,
        )
        self._emit("booking.created", booking)
        return ReservationReceipt(
            booking=booking.redacted(),
            verification_code=booking.verification_code,
            expires_at=booking.verification_expiry,
            total_amount=booking.total_amount,
        )

    # ── Transitions without seat effect ───────────────────────────

    async def confirm(self, driver_id: str, booking_id: str) -> Booking:
        async with self._unit_of_work() as session:
            repo = BookingRepository(session)
            booking = await repo.get_by_id(booking_id)
            self._require_driver(booking, driver_id, "confirm")
            self._require_transition(booking, BookingStatus.CONFIRMED)
            updated = await repo.transition(
                booking_id,
                sources_for(BookingStatus.CONFIRMED),
                BookingStatus.CONFIRMED,
                confirmed_at=self.clock.now(),
            )

        logger.info("Booking %s confirmed by driver %s", booking_id, driver_id)
        self._emit("booking.confirmed", updated)
        return updated.redacted()

    async def board(self, driver_id: str, booking_id: str, code: str) -> Booking:
        """Verify the passenger's code in person and start their trip."""
        async with self._unit_of_work() as session:
            repo = BookingRepository(session)
            booking = await repo.get_by_id(booking_id)
            self._require_driver(booking, driver_id, "start")
            self._require_transition(booking, BookingStatus.IN_PROGRESS)

            now = self.clock.now()
            if not booking.code_usable(code, now):
                if booking.code_expired(now):
                    raise CodeExpired(
                        "Verification code has expired; "
                        "ask the passenger to regenerate it"
                    )
                logger.warning("Invalid verification code for booking %s", booking_id)
                raise InvalidCode("Invalid verification code")

            updated = await repo.transition(
                booking_id,
                sources_for(BookingStatus.IN_PROGRESS),
                BookingStatus.IN_PROGRESS,
                expected_code=booking.verification_code,
                started_at=now,
            )

        logger.info("Booking %s boarded; passenger verified", booking_id)
        self._emit("booking.started", updated)
        return updated.redacted()

    async def complete(
        self,
        driver_id: str,
        booking_id: str,
        cash_received: bool = True,
        amount_received: Optional[float] = None,
    ) -> Booking:
        if amount_received is not None and amount_received < 0:
            raise ValidationFailed(
                "Amount received cannot be negative",
                details={"field": "amount_received"},
            )

        async with self._unit_of_work() as session:
            repo = BookingRepository(session)
            booking = await repo.get_by_id(booking_id)
            self._require_driver(booking, driver_id, "complete")
            self._require_transition(booking, BookingStatus.COMPLETED)

            if cash_received:
                payment = PaymentStatus.CONFIRMED
                amount = (
                    amount_received
                    if amount_received is not None
                    else booking.total_amount
                )
            else:
                payment = PaymentStatus.WAIVED
                amount = 0.0

            updated = await repo.transition(
                booking_id,
                sources_for(BookingStatus.COMPLETED),
                BookingStatus.COMPLETED,
                completed_at=self.clock.now(),
                payment_status=payment,
                amount_received=amount,
            )

        logger.info(
            "Booking %s completed (payment=%s, amount=%.2f)",
            booking_id,
            payment.value,
            amount,
        )
        self._emit("booking.completed", updated)
        return updated.redacted()

    async def complete_all_for_ride(
        self, driver_id: str, ride_id: str
    ) -> BulkCompletion:
        """
        Complete every in-progress booking on the driver's ride, with cash
        received.  Each booking is completed on its own; one failure does
        not stop the rest.
        """
        async with self._unit_of_work() as session:
            ride = await RideInventoryRepository(session).get_ride(ride_id)
            if ride.driver_id != driver_id:
                raise NotBookingParty(
                    "Not authorized to complete bookings for this ride"
                )
            bookings = await BookingRepository(session).find_by_ride(ride_id)

        result = BulkCompletion(ride_id=ride_id)
        for booking in bookings:
            if booking.status != BookingStatus.IN_PROGRESS:
                continue
            try:
                await self.complete(driver_id, booking.id, cash_received=True)
            except BookingError as exc:
                logger.warning(
                    "Could not complete booking %s: %s", booking.id, exc.message
                )
                result.failed.append(
                    FailedCompletion(
                        booking_id=booking.id, code=exc.code, message=exc.message
                    )
                )
            else:
                result.completed.append(booking.id)

        logger.info(
            "Ride %s: completed %d booking(s), %d failed",
            ride_id,
            len(result.completed),
            len(result.failed),
        )
        return result

    # ── Transitions that release seats ────────────────────────────

    async def cancel(
        self, actor_id: str, booking_id: str, reason: str = ""
    ) -> CancellationResult:
        async with self._unit_of_work() as session:
            booking = await BookingRepository(session).get_by_id(booking_id)

        if not booking.is_party(actor_id):
            raise NotBookingParty("Not authorized to cancel this booking")
        self._require_transition(booking, BookingStatus.CANCELLED)

        is_driver = actor_id == booking.driver_id
        if booking.status == BookingStatus.IN_PROGRESS and not is_driver:
            raise NotBookingParty("Only the driver can cancel a ride in progress")

        now = self.clock.now()
        if booking.status in BOARDABLE_STATUSES and is_expired(booking.departure_at, now):
            raise CancellationClosed(
                "Ride has already departed; the driver may mark a no-show instead"
            )

        deadline = add_minutes(
            booking.departure_at, -self.config.cancellation_deadline_minutes
        )
        is_late = is_expired(deadline, now)
        sources = (
            sources_for(BookingStatus.CANCELLED) if is_driver else set(BOARDABLE_STATUSES)
        )

        updated = await self._release_seats(
            booking,
            sources,
            BookingStatus.CANCELLED,
            cancelled_at=now,
            cancelled_by=actor_id,
            cancellation_reason=reason or None,
            is_late_cancellation=is_late,
        )

        logger.info(
            "Booking %s cancelled by %s (late=%s)",
            booking_id,
            "driver" if is_driver else "passenger",
            is_late,
        )
        self._emit(
            "booking.cancelled",
            updated,
            cancelled_by="driver" if is_driver else "passenger",
            reason=reason,
        )
        return CancellationResult(
            booking=updated.redacted(), is_late_cancellation=is_late
        )

    async def mark_no_show(
        self, driver_id: str, booking_id: str, reason: str = ""
    ) -> Booking:
        async with self._unit_of_work() as session:
            booking = await BookingRepository(session).get_by_id(booking_id)

        self._require_driver(booking, driver_id, "mark no-show for")
        self._require_transition(booking, BookingStatus.NO_SHOW)

        now = self.clock.now()
        grace_end = add_minutes(booking.departure_at, self.config.no_show_grace_minutes)
        if not is_expired(grace_end, now):
            raise NoShowTooEarly(
                f"Please wait until {self.config.no_show_grace_minutes} minutes "
                "after departure time",
                details={"available_at": grace_end.isoformat()},
            )

        updated = await self._release_seats(
            booking,
            sources_for(BookingStatus.NO_SHOW),
            BookingStatus.NO_SHOW,
            no_show_at=now,
            no_show_reason=reason or None,
        )

        logger.info("Booking %s marked no-show by driver %s", booking_id, driver_id)
        self._emit("booking.no_show", updated)
        return updated.redacted()

    async def _release_seats(
        self,
        booking: Booking,
        sources: Iterable[BookingStatus],
        target: BookingStatus,
        **fields: Any,
    ) -> Booking:
        """
        Transition *booking* and hand its seats back, atomically, under the
        ride lock.  The status check runs first, so a second cancel fails
        before any seat is credited.
        """
        async with self._ride_lock(booking.ride_id):
            async with self._unit_of_work() as session:
                rides = RideInventoryRepository(session)
                updated = await BookingRepository(session).transition(
                    booking.id, sources, target, **fields
                )
                ride = await rides.get_ride(booking.ride_id)
                if ride.is_terminal:
                    logger.info(
                        "Ride %s is %s; seat counters stay frozen",
                        ride.id,
                        ride.status.value,
                    )
                else:
                    await rides.adjust_seats(ride.id, ride.departure_date, booking.seats)
        return updated

    # ── Verification code ─────────────────────────────────────────

    async def regenerate_code(self, passenger_id: str, booking_id: str) -> CodeReissue:
        """Rotate code and expiry without touching the lifecycle state."""
        async with self._unit_of_work() as session:
            repo = BookingRepository(session)
            booking = await repo.get_by_id(booking_id)
            if booking.passenger_id != passenger_id:
                raise NotBookingParty("Not authorized to regenerate this code")
            if booking.status not in BOARDABLE_STATUSES:
                raise InvalidState(
                    f"Cannot regenerate code for booking with status: "
                    f"{booking.status.value}",
                    details={"status": booking.status.value},
                )
            now = self.clock.now()
            updated = await repo.rotate_code(
                booking_id,
                generate_code(self.config.verification_code_length),
                add_hours(now, self.config.verification_code_ttl_hours),
                now,
            )

        logger.info("Verification code regenerated for booking %s", booking_id)
        return CodeReissue(
            booking_id=updated.id,
            verification_code=updated.verification_code,
            expires_at=updated.verification_expiry,
        )

    # ── Queries ───────────────────────────────────────────────────

    async def get_booking(self, user_id: str, booking_id: str) -> BookingView:
        """Party-only view.  The boarding code is never part of it."""
        async with self._unit_of_work() as session:
            booking = await BookingRepository(session).get_by_id(booking_id)
        return self._view(booking, user_id)

    async def get_booking_by_reference(
        self, user_id: str, reference: str
    ) -> BookingView:
        async with self._unit_of_work() as session:
            booking = await BookingRepository(session).get_by_reference(
                normalise(reference)
            )
        return self._view(booking, user_id)

    async def upcoming_bookings(
        self, user_id: str, role: BookingRole = BookingRole.PASSENGER, limit: int = 10
    ) -> list[Booking]:
        """Boardable bookings that have not departed yet, soonest first."""
        if limit < 1:
            raise ValidationFailed("limit must be positive", details={"field": "limit"})
        now = self.clock.now()
        bookings = await self._bookings_for(user_id, role)
        upcoming = [
            b
            for b in bookings
            if b.status in BOARDABLE_STATUSES and not is_expired(b.departure_at, now)
        ]
        upcoming.sort(key=lambda b: b.departure_at)
        return [b.redacted() for b in upcoming[:limit]]

    async def past_bookings(
        self,
        user_id: str,
        role: BookingRole = BookingRole.PASSENGER,
        page: int = 1,
        limit: int = 20,
    ) -> BookingPage:
        """Finished or departed bookings, most recent departure first."""
        if page < 1 or limit < 1:
            raise ValidationFailed(
                "page and limit must be positive", details={"field": "page"}
            )
        now = self.clock.now()
        bookings = await self._bookings_for(user_id, role)
        past = [
            b
            for b in bookings
            if b.status in FINISHED_BOOKING_STATUSES or is_expired(b.departure_at, now)
        ]
        past.sort(key=lambda b: b.departure_at, reverse=True)
        start = (page - 1) * limit
        return BookingPage(
            bookings=[b.redacted() for b in past[start : start + limit]],
            page=page,
            limit=limit,
            total_count=len(past),
            total_pages=math.ceil(len(past) / limit),
        )

    async def list_passenger_bookings(
        self,
        passenger_id: str,
        statuses: Optional[Iterable[BookingStatus]] = None,
    ) -> list[Booking]:
        async with self._unit_of_work() as session:
            bookings = await BookingRepository(session).find_by_passenger(
                passenger_id, statuses
            )
        return [b.redacted() for b in bookings]

    async def ride_bookings(self, driver_id: str, ride_id: str) -> RideBookingSummary:
        """Driver view of everyone booked on a ride."""
        async with self._unit_of_work() as session:
            ride = await RideInventoryRepository(session).get_ride(ride_id)
            if ride.driver_id != driver_id:
                raise NotBookingParty("Not authorized to view bookings for this ride")
            bookings = await BookingRepository(session).find_by_ride(ride_id)

        active = [
            b
            for b in bookings
            if b.status
            in (BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS)
        ]
        return RideBookingSummary(
            ride=ride,
            bookings=[b.redacted() for b in bookings],
            active_bookings=len(active),
            seats_booked=sum(b.seats for b in active),
            expected_cash=round(sum(b.total_amount for b in active), 2),
        )

    async def check_availability(self, ride_id: str, seats: int = 1) -> Availability:
        async with self._unit_of_work() as session:
            ride = await RideInventoryRepository(session).get_ride(ride_id)
        reasons = self._unavailability_reasons(ride, seats)
        return Availability(
            ride=ride,
            requested_seats=seats,
            can_book=not reasons,
            total_price=round(ride.price_per_seat * seats, 2),
            reasons=reasons,
        )

    async def filter_bookable(self, ride_ids: Iterable[str], seats: int = 1) -> list[Ride]:
        """Keep candidates that can take *seats* right now, preserving order."""
        ordered = list(dict.fromkeys(ride_ids))
        async with self._unit_of_work() as session:
            rides = await RideInventoryRepository(session).get_many(ordered)
        return [
            rides[rid]
            for rid in ordered
            if rid in rides and not self._unavailability_reasons(rides[rid], seats)
        ]

    async def suggest_rides(self, criteria: dict[str, Any], seats: int = 1) -> list[Ride]:
        """Ranking-engine candidates, re-validated against live inventory."""
        if self.ranking is None:
            return []
        candidates = await self.ranking.find_candidates(criteria)
        return await self.filter_bookable(candidates, seats)

    # ── Internals ─────────────────────────────────────────────────

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[AsyncSession]:
        """One transaction; commit on success, rollback on any error."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            logger.exception("Booking store error")
            raise StoreUnavailable(
                "Booking store unavailable, please try again later"
            ) from exc

    def _ride_lock(self, ride_id: str):
        return self.locks.hold(
            seat_lock_key(ride_id),
            ttl=self.config.lock_ttl_seconds,
            attempts=self.config.lock_retry_attempts,
            base_delay=self.config.lock_retry_base_delay_ms / 1000,
        )

    def _validate_ride_for_booking(
        self,
        ride: Ride,
        passenger_id: str,
        seats: int,
        pickup_point_id: Optional[str],
    ) -> None:
        if ride.driver_id == passenger_id:
            raise OwnRideBooking("You cannot book your own ride")
        if ride.status != RideStatus.ACTIVE:
            raise RideNotBookable(
                f"Ride is not available for booking (status: {ride.status.value})"
            )
        cutoff = add_minutes(self.clock.now(), self.config.min_advance_minutes)
        if ride.departure_at < cutoff:
            raise BookingTooLate(
                f"Booking must be made at least {self.config.min_advance_minutes} "
                "minutes before departure"
            )
        if pickup_point_id and pickup_point_id not in ride.pickup_points:
            raise ValidationFailed(
                "Pickup point not found for this ride",
                details={"field": "pickup_point_id"},
            )
        if ride.available_seats < seats:
            raise InsufficientSeats(
                f"Only {ride.available_seats} seats available",
                details={"available_seats": ride.available_seats, "requested": seats},
            )

    async def _ensure_no_active_booking(
        self, repo: BookingRepository, passenger_id: str, ride_id: str
    ) -> None:
        existing = await repo.find_active_for_passenger(passenger_id, ride_id)
        if existing:
            raise BookingExists(
                "You already have a booking for this ride",
                details={"existing_booking_id": existing.id},
            )

    def _view(self, booking: Booking, user_id: str) -> BookingView:
        if not booking.is_party(user_id):
            raise NotBookingParty("Not authorized to view this booking")
        return BookingView(
            booking=booking.redacted(),
            is_driver=booking.driver_id == user_id,
            is_passenger=booking.passenger_id == user_id,
            can_cancel=self._can_cancel(booking, user_id),
        )

    async def _bookings_for(self, user_id: str, role: BookingRole) -> list[Booking]:
        async with self._unit_of_work() as session:
            repo = BookingRepository(session)
            if role == BookingRole.DRIVER:
                return await repo.find_by_driver(user_id)
            return await repo.find_by_passenger(user_id)

    @staticmethod
    def _require_driver(booking: Booking, driver_id: str, action: str) -> None:
        if booking.driver_id != driver_id:
            raise NotBookingParty(f"Not authorized to {action} this booking")

    @staticmethod
    def _require_transition(booking: Booking, target: BookingStatus) -> None:
        if not booking.can_transition_to(target):
            raise InvalidState(
                f"Cannot move booking from {booking.status.value} to {target.value}",
                details={"booking_id": booking.id, "status": booking.status.value},
            )

    def _can_cancel(self, booking: Booking, user_id: str) -> bool:
        if not booking.can_transition_to(BookingStatus.CANCELLED):
            return False
        if booking.status == BookingStatus.IN_PROGRESS:
            return booking.driver_id == user_id
        return not is_expired(booking.departure_at, self.clock.now())

    def _unavailability_reasons(self, ride: Ride, seats: int) -> list[str]:
        reasons = []
        if ride.status != RideStatus.ACTIVE:
            reasons.append(f"Ride status is {ride.status.value}")
        if ride.available_seats < seats:
            reasons.append(f"Only {ride.available_seats} seats available")
        now = self.clock.now()
        if is_expired(ride.departure_at, now):
            reasons.append("Ride has already departed")
        elif ride.departure_at < add_minutes(now, self.config.min_advance_minutes):
            reasons.append(
                f"Booking deadline passed ({self.config.min_advance_minutes} min "
                "before departure)"
            )
        return reasons

    def _emit(self, event: str, booking: Booking, **extra: Any) -> None:
        payload = {
            "booking_id": booking.id,
            "reference": booking.reference,
            "ride_id": booking.ride_id,
            "passenger_id": booking.passenger_id,
            "driver_id": booking.driver_id,
            "seats": booking.seats,
            "status": booking.status.value,
            **extra,
        }
        try:
            self.notifications.emit(event, payload)
        except Exception:
            logger.exception("Could not schedule %s notification", event)
