# backend/classbook/routes/v1/bookings.py
"""
Booking routes - API v1

Endpoints:
    POST /{booking_id}/cancel - Cancel a booking (owner or operator)
    POST /{booking_id}/outcome - Record attended / no_show (operator only)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Path

from ...api.dependencies import (
    get_booking_ledger,
    get_current_user_id,
    get_is_operator,
    require_operator,
)
from ...core.exceptions import DomainException
from ...schemas.booking import BookingCancel, BookingResponse, OutcomeUpdate
from ...services.booking_ledger import BookingLedgerService
from .errors import handle_domain_exception
from .instances import ULID_PATH_PATTERN

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bookings-v1"])


@router.post(
    "/{booking_id}/cancel",
    response_model=BookingResponse,
    responses={404: {"description": "Booking not found"}},
)
def cancel_booking(
    booking_id: str = Path(..., pattern=ULID_PATH_PATTERN, description="Booking ULID"),
    cancel_data: Optional[BookingCancel] = Body(default=None),
    user_id: str = Depends(get_current_user_id),
    is_operator: bool = Depends(get_is_operator),
    ledger: BookingLedgerService = Depends(get_booking_ledger),
) -> BookingResponse:
    """Cancel a booking."""
    cancel_data = cancel_data or BookingCancel()
    try:
        booking = ledger.cancel(
            booking_id, user_id, as_operator=is_operator, reason=cancel_data.reason
        )
        return BookingResponse.from_booking(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/outcome",
    response_model=BookingResponse,
    dependencies=[Depends(require_operator)],
)
def record_outcome(
    booking_id: str = Path(..., pattern=ULID_PATH_PATTERN, description="Booking ULID"),
    payload: OutcomeUpdate = Body(...),
    ledger: BookingLedgerService = Depends(get_booking_ledger),
) -> BookingResponse:
    try:
        return BookingResponse.from_booking(ledger.mark_outcome(booking_id, payload.outcome))
    except DomainException as e:
        handle_domain_exception(e)
