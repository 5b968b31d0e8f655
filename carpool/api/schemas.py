"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field

from carpool.domain.enums import BookingStatus, PaymentStatus, RideStatus


# ── Requests ──────────────────────────────────────────────────────────


class BookingCreateRequest(BaseModel):
    passenger_id: str = Field(..., min_length=1)
    ride_id: str = Field(..., min_length=1)
    seats: int = Field(1, ge=1)
    pickup_point_id: Optional[str] = None


class DriverActionRequest(BaseModel):
    driver_id: str = Field(..., min_length=1)


class BoardRequest(DriverActionRequest):
    verification_code: str = Field(..., min_length=1, max_length=16)


class CompleteRequest(DriverActionRequest):
    cash_received: bool = True
    amount_received: Optional[float] = Field(None, ge=0)


class NoShowRequest(DriverActionRequest):
    reason: str = Field("", max_length=500)


class CancelRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    reason: str = Field("", max_length=500)


class CodeRegenerateRequest(BaseModel):
    passenger_id: str = Field(..., min_length=1)


class BookableRidesRequest(BaseModel):
    ride_ids: list[str] = Field(..., max_length=100)
    seats: int = Field(1, ge=1)


# ── Responses ─────────────────────────────────────────────────────────


class BookingResponse(BaseModel):
    id: str
    reference: str
    ride_id: str
    passenger_id: str
    driver_id: str
    pickup_point_id: Optional[str] = None
    seats: int
    price_per_seat: float
    total_amount: float
    departure_at: datetime
    status: BookingStatus
    payment_status: PaymentStatus
    amount_received: float
    is_late_cancellation: bool
    cancellation_reason: Optional[str] = None
    no_show_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    no_show_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ReservationResponse(BaseModel):
    booking_id: str
    reference: str
    verification_code: str
    expires_at: datetime
    total_amount: float
    status: BookingStatus


class BookingDetailResponse(BaseModel):
    booking: BookingResponse
    is_driver: bool
    is_passenger: bool
    can_cancel: bool


class CancellationResponse(BaseModel):
    booking: BookingResponse
    is_late_cancellation: bool


class CodeReissueResponse(BaseModel):
    booking_id: str
    verification_code: str
    expires_at: datetime


class RideResponse(BaseModel):
    id: str
    driver_id: str
    departure_date: date
    departure_at: datetime
    total_seats: int
    available_seats: int
    booked_seats: int
    price_per_seat: float
    status: RideStatus
    pickup_points: list[str] = []

    model_config = {"from_attributes": True}


class AvailabilityResponse(BaseModel):
    ride_id: str
    requested_seats: int
    available_seats: int
    can_book: bool
    total_price: float
    status: RideStatus
    departure_at: datetime
    reasons: list[str] = []


class RideBookingsResponse(BaseModel):
    ride: RideResponse
    bookings: list[BookingResponse]
    active_bookings: int
    seats_booked: int
    expected_cash: float


class HealthResponse(BaseModel):
    status: str = "ok"
    database: str = "ok"
    redis: str = "ok"


class BookingPageResponse(BaseModel):
    bookings: list[BookingResponse]
    page: int
    limit: int
    total_count: int
    total_pages: int


class FailedCompletionResponse(BaseModel):
    booking_id: str
    code: str
    message: str

    model_config = {"from_attributes": True}


class BulkCompletionResponse(BaseModel):
    ride_id: str
    completed: list[str]
    failed: list[FailedCompletionResponse]

    model_config = {"from_attributes": True}
