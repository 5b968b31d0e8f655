"""
Booking endpoints
=================

POST /api/v1/bookings                               -- reserve seats (201)
GET  /api/v1/bookings?passenger_id=&status=         -- passenger's bookings
GET  /api/v1/bookings/upcoming?user_id=&role=&limit= -- not yet departed
GET  /api/v1/bookings/past?user_id=&role=&page=      -- finished or departed
GET  /api/v1/bookings/by-reference/{reference}?user_id= -- lookup by BK- ref
GET  /api/v1/bookings/{booking_id}?user_id=         -- party-only detail view
POST /api/v1/bookings/{booking_id}/confirm          -- driver accepts
POST /api/v1/bookings/{booking_id}/board            -- driver verifies code
POST /api/v1/bookings/{booking_id}/complete         -- driver closes the trip
POST /api/v1/bookings/{booking_id}/cancel           -- either party
POST /api/v1/bookings/{booking_id}/no-show          -- driver, after grace
POST /api/v1/bookings/{booking_id}/verification-code -- passenger rotates code

Domain failures propagate as ``BookingError`` and are rendered by the
application-level handler.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from carpool.api.dependencies import get_controller
from carpool.api.middleware import limiter
from carpool.api.schemas import (
    BoardRequest,
    BookingCreateRequest,
    BookingDetailResponse,
    BookingPageResponse,
    BookingResponse,
    CancellationResponse,
    CancelRequest,
    CodeRegenerateRequest,
    CodeReissueResponse,
    CompleteRequest,
    DriverActionRequest,
    NoShowRequest,
    ReservationResponse,
)
from carpool.config import settings
from carpool.domain.enums import BookingRole, BookingStatus
from carpool.services.booking_controller import BookingController

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post(
    "",
    status_code=201,
    response_model=ReservationResponse,
    summary="Reserve seats on a ride",
)
@limiter.limit(settings.rate_limit)
async def create_booking(
    request: Request,
    body: BookingCreateRequest,
    controller: BookingController = Depends(get_controller),
):
    receipt = await controller.reserve(
        body.passenger_id, body.ride_id, body.seats, body.pickup_point_id
    )
    return ReservationResponse(
        booking_id=receipt.booking.id,
        reference=receipt.booking.reference,
        verification_code=receipt.verification_code,
        expires_at=receipt.expires_at,
        total_amount=receipt.total_amount,
        status=receipt.booking.status,
    )


@router.get(
    "",
    response_model=list[BookingResponse],
    summary="List a passenger's bookings",
)
@limiter.limit(settings.rate_limit)
async def list_bookings(
    request: Request,
    passenger_id: str,
    status: Optional[list[BookingStatus]] = Query(None),
    controller: BookingController = Depends(get_controller),
):
    return await controller.list_passenger_bookings(passenger_id, status)


@router.get(
    "/upcoming",
    response_model=list[BookingResponse],
    summary="Bookings that have not departed yet",
)
@limiter.limit(settings.rate_limit)
async def upcoming_bookings(
    request: Request,
    user_id: str,
    role: BookingRole = BookingRole.PASSENGER,
    limit: int = Query(10, ge=1, le=100),
    controller: BookingController = Depends(get_controller),
):
    return await controller.upcoming_bookings(user_id, role, limit)


@router.get(
    "/past",
    response_model=BookingPageResponse,
    summary="Finished or departed bookings, newest first",
)
@limiter.limit(settings.rate_limit)
async def past_bookings(
    request: Request,
    user_id: str,
    role: BookingRole = BookingRole.PASSENGER,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    controller: BookingController = Depends(get_controller),
):
    result = await controller.past_bookings(user_id, role, page, limit)
    return BookingPageResponse(
        bookings=[BookingResponse.model_validate(b) for b in result.bookings],
        page=result.page,
        limit=result.limit,
        total_count=result.total_count,
        total_pages=result.total_pages,
    )


@router.get(
    "/by-reference/{reference}",
    response_model=BookingDetailResponse,
    summary="Look a booking up by its BK- reference",
)
@limiter.limit(settings.rate_limit)
async def get_booking_by_reference(
    request: Request,
    reference: str,
    user_id: str,
    controller: BookingController = Depends(get_controller),
):
    view = await controller.get_booking_by_reference(user_id, reference)
    return BookingDetailResponse(
        booking=BookingResponse.model_validate(view.booking),
        is_driver=view.is_driver,
        is_passenger=view.is_passenger,
        can_cancel=view.can_cancel,
    )


@router.get(
    "/{booking_id}",
    response_model=BookingDetailResponse,
    summary="Booking detail for the passenger or driver",
)
@limiter.limit(settings.rate_limit)
async def get_booking(
    request: Request,
    booking_id: str,
    user_id: str,
    controller: BookingController = Depends(get_controller),
):
    view = await controller.get_booking(user_id, booking_id)
    return BookingDetailResponse(
        booking=BookingResponse.model_validate(view.booking),
        is_driver=view.is_driver,
        is_passenger=view.is_passenger,
        can_cancel=view.can_cancel,
    )


@router.post(
    "/{booking_id}/confirm",
    response_model=BookingResponse,
    summary="Driver confirms a pending booking",
)
@limiter.limit(settings.rate_limit)
async def confirm_booking(
    request: Request,
    booking_id: str,
    body: DriverActionRequest,
    controller: BookingController = Depends(get_controller),
):
    return await controller.confirm(body.driver_id, booking_id)


@router.post(
    "/{booking_id}/board",
    response_model=BookingResponse,
    summary="Driver verifies the passenger's code and starts the trip",
)
@limiter.limit(settings.rate_limit)
async def board_booking(
    request: Request,
    booking_id: str,
    body: BoardRequest,
    controller: BookingController = Depends(get_controller),
):
    return await controller.board(body.driver_id, booking_id, body.verification_code)


@router.post(
    "/{booking_id}/complete",
    response_model=BookingResponse,
    summary="Driver completes the trip and records cash",
)
@limiter.limit(settings.rate_limit)
async def complete_booking(
    request: Request,
    booking_id: str,
    body: CompleteRequest,
    controller: BookingController = Depends(get_controller),
):
    return await controller.complete(
        body.driver_id, booking_id, body.cash_received, body.amount_received
    )


@router.post(
    "/{booking_id}/cancel",
    response_model=CancellationResponse,
    summary="Cancel a booking and release its seats",
)
@limiter.limit(settings.rate_limit)
async def cancel_booking(
    request: Request,
    booking_id: str,
    body: CancelRequest,
    controller: BookingController = Depends(get_controller),
):
    result = await controller.cancel(body.user_id, booking_id, body.reason)
    return CancellationResponse(
        booking=BookingResponse.model_validate(result.booking),
        is_late_cancellation=result.is_late_cancellation,
    )


@router.post(
    "/{booking_id}/no-show",
    response_model=BookingResponse,
    summary="Driver marks the passenger as a no-show",
)
@limiter.limit(settings.rate_limit)
async def mark_no_show(
    request: Request,
    booking_id: str,
    body: NoShowRequest,
    controller: BookingController = Depends(get_controller),
):
    return await controller.mark_no_show(body.driver_id, booking_id, body.reason)


@router.post(
    "/{booking_id}/verification-code",
    response_model=CodeReissueResponse,
    summary="Passenger regenerates their boarding code",
)
@limiter.limit(settings.rate_limit)
async def regenerate_code(
    request: Request,
    booking_id: str,
    body: CodeRegenerateRequest,
    controller: BookingController = Depends(get_controller),
):
    reissue = await controller.regenerate_code(body.passenger_id, booking_id)
    return CodeReissueResponse(
        booking_id=reissue.booking_id,
        verification_code=reissue.verification_code,
        expires_at=reissue.expires_at,
    )
