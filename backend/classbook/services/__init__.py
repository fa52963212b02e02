"""Service layer: the booking engine's public operations."""

from .base import BaseService
from .booking_ledger import BookingLedgerService, ReservationResult
from .class_catalog import ClassCatalogService, InstanceAvailability
from .credit_ledger import CreditLedgerService
from .notifications import LoggingNotificationPort, NotificationOutbox, NotificationPort
from .waitlist_manager import WaitlistManagerService

__all__ = [
    "BaseService",
    "BookingLedgerService",
    "ClassCatalogService",
    "CreditLedgerService",
    "InstanceAvailability",
    "LoggingNotificationPort",
    "NotificationOutbox",
    "NotificationPort",
    "ReservationResult",
    "WaitlistManagerService",
]
