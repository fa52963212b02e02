# backend/classbook/core/enums.py
"""
Core enums for the class booking engine.

All enums inherit from (str, Enum) so values persist as plain strings
and compare equal to the raw column values.
"""

from enum import Enum


class Difficulty(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class InstanceStatus(str, Enum):
    """Scheduled instance lifecycle."""

    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingState(str, Enum):
    """Booking lifecycle states."""

    CONFIRMED = "confirmed"  # Holds a seat
    CANCELLED = "cancelled"
    ATTENDED = "attended"
    NO_SHOW = "no_show"


class BookingOutcome(str, Enum):
    """Terminal outcomes recorded after an instance ends."""

    ATTENDED = "attended"
    NO_SHOW = "no_show"


class PaymentMode(str, Enum):
    CREDIT = "credit"
    DIRECT = "direct"


class WaitlistStatus(str, Enum):
    """
    Waitlist entry statuses.

    Only WAITING entries carry a queue position. PROMOTED entries own a
    booking that is pending user confirmation until promotion_expires_at.
    """

    WAITING = "waiting"
    PROMOTED = "promoted"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    EXPIRED = "expired"
    LEFT = "left"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class NotificationKind(str, Enum):
    PROMOTED = "promoted"
    CANCELLED = "cancelled"
    INSTANCE_CANCELLED = "instance_cancelled"
    REMINDER_DUE = "reminder_due"
    SEAT_FREED = "seat_freed"
    PROMOTION_EXPIRED = "promotion_expired"
