# backend/classbook/api/dependencies.py
"""
FastAPI dependencies.

Identity is resolved upstream; the gateway forwards the acting user in
X-User-Id and the operator capability in X-Operator.
"""

from typing import Generator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from ..database import get_db as original_get_db
from ..services.booking_ledger import BookingLedgerService
from ..services.class_catalog import ClassCatalogService
from ..services.notifications import LoggingNotificationPort, NotificationPort
from ..services.waitlist_manager import WaitlistManagerService

_default_notifier = LoggingNotificationPort()


def get_db() -> Generator[Session, None, None]:
    """Get database session dependency."""
    yield from original_get_db()


def get_notifier() -> NotificationPort:
    return _default_notifier


def get_current_user_id(x_user_id: str = Header(default="", alias="X-User-Id")) -> str:
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Missing X-User-Id header", "code": "UNAUTHENTICATED"},
        )
    return user_id


def get_is_operator(x_operator: str = Header(default="", alias="X-Operator")) -> bool:
    return x_operator.strip().lower() in {"1", "true", "yes"}


def require_operator(is_operator: bool = Depends(get_is_operator)) -> None:
    if not is_operator:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": "Operator capability required", "code": "OPERATOR_REQUIRED"},
        )


def get_booking_ledger(
    db: Session = Depends(get_db),
    notifier: NotificationPort = Depends(get_notifier),
) -> BookingLedgerService:
    return BookingLedgerService(db, notifier)


def get_waitlist_manager(
    db: Session = Depends(get_db),
    notifier: NotificationPort = Depends(get_notifier),
) -> WaitlistManagerService:
    return WaitlistManagerService(db, notifier)


def get_class_catalog(
    db: Session = Depends(get_db),
    notifier: NotificationPort = Depends(get_notifier),
) -> ClassCatalogService:
    return ClassCatalogService(db, notifier)
