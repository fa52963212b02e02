# backend/classbook/schemas/booking.py
"""Request and response schemas for reservations, bookings and the waitlist."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import Field, field_validator

from ..core.enums import BookingOutcome, PaymentMode
from ..models.booking import Booking
from ..models.waitlist import WaitlistEntry
from ..services.booking_ledger import ReservationResult
from .base import StandardizedModel, StrictRequestModel


class ReservationCreate(StrictRequestModel):
    payment_mode: PaymentMode = PaymentMode.DIRECT
    package_id: Optional[str] = Field(default=None, max_length=26)


class BookingCancel(StrictRequestModel):
    """Schema for cancelling a booking."""

    reason: Optional[str] = Field(default=None, max_length=500, description="Cancellation reason")

    @field_validator("reason")
    @classmethod
    def clean_reason(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class InstanceCancel(BookingCancel):
    pass


class OutcomeUpdate(StrictRequestModel):
    outcome: BookingOutcome


class BookingResponse(StandardizedModel):
    id: str
    instance_id: str
    user_id: str
    state: str
    payment_mode: str
    package_id: Optional[str] = None
    via_waitlist: bool = False
    created_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingResponse":
        return cls.model_validate(booking)


class WaitlistEntryResponse(StandardizedModel):
    id: str
    instance_id: str
    user_id: str
    status: str
    position: Optional[int] = None
    payment_mode: str
    booking_id: Optional[str] = None
    joined_at: Optional[datetime] = None
    promotion_expires_at: Optional[datetime] = None

    @classmethod
    def from_entry(cls, entry: WaitlistEntry) -> "WaitlistEntryResponse":
        return cls.model_validate(entry)


class ReservationResponse(StandardizedModel):
    result: Literal["booked", "waitlisted"]
    booking: Optional[BookingResponse] = None
    waitlist_entry: Optional[WaitlistEntryResponse] = None

    @classmethod
    def from_result(cls, result: ReservationResult) -> "ReservationResponse":
        return cls(
            result=result.status,
            booking=BookingResponse.from_booking(result.booking) if result.booking else None,
            waitlist_entry=(
                WaitlistEntryResponse.from_entry(result.waitlist_entry)
                if result.waitlist_entry
                else None
            ),
        )


class AvailabilityResponse(StandardizedModel):
    instance_id: str
    status: str
    starts_at: datetime
    capacity: int
    occupied_seats: int
    free_seats: int
    waitlist_length: int


class InstanceResponse(StandardizedModel):
    id: str
    template_id: str
    instructor_id: str
    start_time: datetime
    duration_minutes: int
    capacity: int
    occupied_seats: int
    status: str
    cancelled_at: Optional[datetime] = None
