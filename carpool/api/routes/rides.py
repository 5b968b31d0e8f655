"""
Ride endpoints
==============

GET  /api/v1/rides/{ride_id}/availability?seats= -- can N seats be booked now?
GET  /api/v1/rides/{ride_id}/bookings?driver_id= -- driver's passenger list
POST /api/v1/rides/bookable                      -- filter candidate rides
POST /api/v1/rides/{ride_id}/complete-all        -- driver settles every boarded passenger
"""

from fastapi import APIRouter, Depends, Query, Request

from carpool.api.dependencies import get_controller
from carpool.api.middleware import limiter
from carpool.api.schemas import (
    AvailabilityResponse,
    BookableRidesRequest,
    BookingResponse,
    BulkCompletionResponse,
    DriverActionRequest,
    RideBookingsResponse,
    RideResponse,
)
from carpool.config import settings
from carpool.services.booking_controller import BookingController

router = APIRouter(prefix="/rides", tags=["rides"])


@router.get(
    "/{ride_id}/availability",
    response_model=AvailabilityResponse,
    summary="Check seat availability on a ride",
)
@limiter.limit(settings.rate_limit)
async def ride_availability(
    request: Request,
    ride_id: str,
    seats: int = Query(1, ge=1),
    controller: BookingController = Depends(get_controller),
):
    result = await controller.check_availability(ride_id, seats)
    return AvailabilityResponse(
        ride_id=result.ride.id,
        requested_seats=result.requested_seats,
        available_seats=result.ride.available_seats,
        can_book=result.can_book,
        total_price=result.total_price,
        status=result.ride.status,
        departure_at=result.ride.departure_at,
        reasons=result.reasons,
    )


@router.get(
    "/{ride_id}/bookings",
    response_model=RideBookingsResponse,
    summary="List bookings on the driver's ride",
)
@limiter.limit(settings.rate_limit)
async def ride_bookings(
    request: Request,
    ride_id: str,
    driver_id: str,
    controller: BookingController = Depends(get_controller),
):
    summary = await controller.ride_bookings(driver_id, ride_id)
    return RideBookingsResponse(
        ride=RideResponse.model_validate(summary.ride),
        bookings=[BookingResponse.model_validate(b) for b in summary.bookings],
        active_bookings=summary.active_bookings,
        seats_booked=summary.seats_booked,
        expected_cash=summary.expected_cash,
    )


@router.post(
    "/bookable",
    response_model=list[RideResponse],
    summary="Keep only candidate rides that can take the requested seats",
    description=(
        "Ride ids usually come from the search/ranking service; each one is "
        "re-checked against live seat inventory and ride status."
    ),
)
@limiter.limit(settings.rate_limit)
async def bookable_rides(
    request: Request,
    body: BookableRidesRequest,
    controller: BookingController = Depends(get_controller),
):
    return await controller.filter_bookable(body.ride_ids, body.seats)


@router.post(
    "/{ride_id}/complete-all",
    response_model=BulkCompletionResponse,
    summary="Complete every in-progress booking on the driver's ride",
)
@limiter.limit(settings.rate_limit)
async def complete_all_bookings(
    request: Request,
    ride_id: str,
    body: DriverActionRequest,
    controller: BookingController = Depends(get_controller),
):
    return await controller.complete_all_for_ride(body.driver_id, ride_id)
