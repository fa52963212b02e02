# backend/classbook/routes/v1/waitlist.py
"""
Waitlist routes - API v1

Endpoints:
    POST /{entry_id}/confirm - Accept a waitlist promotion
"""

from fastapi import APIRouter, Depends, Path

from ...api.dependencies import get_current_user_id, get_waitlist_manager
from ...core.exceptions import DomainException
from ...schemas.booking import WaitlistEntryResponse
from ...services.waitlist_manager import WaitlistManagerService
from .errors import handle_domain_exception
from .instances import ULID_PATH_PATTERN

router = APIRouter(tags=["waitlist-v1"])


@router.post("/{entry_id}/confirm", response_model=WaitlistEntryResponse)
def confirm_promotion(
    entry_id: str = Path(..., pattern=ULID_PATH_PATTERN, description="Waitlist entry ULID"),
    user_id: str = Depends(get_current_user_id),
    waitlist: WaitlistManagerService = Depends(get_waitlist_manager),
) -> WaitlistEntryResponse:
    try:
        return WaitlistEntryResponse.from_entry(waitlist.confirm_promotion(entry_id, user_id))
    except DomainException as e:
        handle_domain_exception(e)
