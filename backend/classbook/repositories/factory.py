# backend/classbook/repositories/factory.py
"""
Repository Factory for the class booking engine.

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

# Avoid circular imports
if TYPE_CHECKING:
    from .booking_repository import BookingRepository
    from .credit_repository import CreditRepository
    from .instance_repository import InstanceRepository, ScheduleRepository, TemplateRepository
    from .waitlist_repository import WaitlistRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_instance_repository(db: Session) -> "InstanceRepository":
        """Create repository for scheduled instances and seat accounting."""
        from .instance_repository import InstanceRepository

        return InstanceRepository(db)

    @staticmethod
    def create_template_repository(db: Session) -> "TemplateRepository":
        from .instance_repository import TemplateRepository

        return TemplateRepository(db)

    @staticmethod
    def create_schedule_repository(db: Session) -> "ScheduleRepository":
        from .instance_repository import ScheduleRepository

        return ScheduleRepository(db)

    @staticmethod
    def create_booking_repository(db: Session) -> "BookingRepository":
        """Create repository for booking queries."""
        from .booking_repository import BookingRepository

        return BookingRepository(db)

    @staticmethod
    def create_waitlist_repository(db: Session) -> "WaitlistRepository":
        """Create repository for waitlist queue operations."""
        from .waitlist_repository import WaitlistRepository

        return WaitlistRepository(db)

    @staticmethod
    def create_credit_repository(db: Session) -> "CreditRepository":
        """Create repository for credit packages."""
        from .credit_repository import CreditRepository

        return CreditRepository(db)
