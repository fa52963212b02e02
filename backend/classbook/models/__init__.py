"""ORM models; importing this package registers every table on Base.metadata."""

from .booking import Booking
from .catalog import ClassTemplate, RecurringSchedule, ScheduledInstance
from .credit import UserPackage
from .waitlist import ACTIVE_WAITLIST_STATUSES, WaitlistEntry

__all__ = [
    "ACTIVE_WAITLIST_STATUSES",
    "Booking",
    "ClassTemplate",
    "RecurringSchedule",
    "ScheduledInstance",
    "UserPackage",
    "WaitlistEntry",
]
