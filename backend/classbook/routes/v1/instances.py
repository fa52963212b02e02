# backend/classbook/routes/v1/instances.py
"""
Scheduled instance routes - API v1

Endpoints:
    POST /{instance_id}/reservations - Book a seat or join the waitlist
    GET /{instance_id}/availability - Seats and waitlist length
    POST /{instance_id}/cancel - Cancel the class (operator only)
    DELETE /{instance_id}/waitlist - Leave the waitlist
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Path, status

from ...api.dependencies import (
    get_booking_ledger,
    get_class_catalog,
    get_current_user_id,
    get_waitlist_manager,
    require_operator,
)
from ...core.exceptions import DomainException
from ...schemas.booking import (
    AvailabilityResponse,
    InstanceCancel,
    InstanceResponse,
    ReservationCreate,
    ReservationResponse,
    WaitlistEntryResponse,
)
from ...services.booking_ledger import BookingLedgerService
from ...services.class_catalog import ClassCatalogService
from ...services.waitlist_manager import WaitlistManagerService
from .errors import handle_domain_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["instances-v1"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


@router.post(
    "/{instance_id}/reservations",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"description": "Instance not found"}, 409: {"description": "Conflict"}},
)
def create_reservation(
    instance_id: str = Path(..., pattern=ULID_PATH_PATTERN, description="Instance ULID"),
    payload: Optional[ReservationCreate] = Body(default=None),
    user_id: str = Depends(get_current_user_id),
    ledger: BookingLedgerService = Depends(get_booking_ledger),
) -> ReservationResponse:
    """Reserve a seat; a full class puts the user on the waitlist instead."""
    payload = payload or ReservationCreate()
    try:
        result = ledger.reserve_seat_with_retry(
            instance_id, user_id, payload.payment_mode, package_id=payload.package_id
        )
        return ReservationResponse.from_result(result)
    except DomainException as e:
        handle_domain_exception(e)


@router.get("/{instance_id}/availability", response_model=AvailabilityResponse)
def get_availability(
    instance_id: str = Path(..., pattern=ULID_PATH_PATTERN, description="Instance ULID"),
    catalog: ClassCatalogService = Depends(get_class_catalog),
) -> AvailabilityResponse:
    try:
        return AvailabilityResponse(**catalog.get_availability(instance_id).to_dict())
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{instance_id}/cancel",
    response_model=InstanceResponse,
    dependencies=[Depends(require_operator)],
)
def cancel_instance(
    instance_id: str = Path(..., pattern=ULID_PATH_PATTERN, description="Instance ULID"),
    payload: Optional[InstanceCancel] = Body(default=None),
    user_id: str = Depends(get_current_user_id),
    catalog: ClassCatalogService = Depends(get_class_catalog),
) -> InstanceResponse:
    """Cancel a class, refunding bookings and clearing its waitlist."""
    payload = payload or InstanceCancel()
    try:
        instance = catalog.cancel_instance(
            instance_id, acting_user_id=user_id, reason=payload.reason
        )
        return InstanceResponse.model_validate(instance)
    except DomainException as e:
        handle_domain_exception(e)


@router.delete("/{instance_id}/waitlist", response_model=WaitlistEntryResponse)
def leave_waitlist(
    instance_id: str = Path(..., pattern=ULID_PATH_PATTERN, description="Instance ULID"),
    user_id: str = Depends(get_current_user_id),
    waitlist: WaitlistManagerService = Depends(get_waitlist_manager),
) -> WaitlistEntryResponse:
    try:
        return WaitlistEntryResponse.from_entry(waitlist.leave(instance_id, user_id))
    except DomainException as e:
        handle_domain_exception(e)
