# backend/classbook/repositories/booking_repository.py
"""
Booking Repository for the class booking engine.

Read helpers used by the booking ledger. State changes go through the
Booking model methods inside a ledger transaction.
"""

from datetime import datetime
import logging
from typing import List, Optional, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import BookingState, InstanceStatus
from ..core.exceptions import RepositoryException
from ..models.booking import Booking
from ..models.catalog import ScheduledInstance
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BookingRepository(BaseRepository[Booking]):
    """Repository for booking queries."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)
        self.logger = logging.getLogger(__name__)

    def get_confirmed_for_user(self, instance_id: str, user_id: str) -> Optional[Booking]:
        try:
            return (
                self.db.query(Booking)
                .filter(
                    Booking.instance_id == instance_id,
                    Booking.user_id == user_id,
                    Booking.state == BookingState.CONFIRMED.value,
                )
                .populate_existing()
                .first()
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to look up booking for user %s: %s", user_id, exc)
            raise RepositoryException("Failed to look up booking") from exc

    def list_for_instance(
        self, instance_id: str, states: Optional[List[str]] = None
    ) -> List[Booking]:
        query = self._build_query().filter(Booking.instance_id == instance_id)
        if states:
            query = query.filter(Booking.state.in_(states))
        query = query.order_by(Booking.created_at.asc(), Booking.id.asc())
        return cast(List[Booking], self._execute_query(query))

    def list_due_for_reminder(self, now: datetime, horizon: datetime) -> List[Booking]:
        """Confirmed, unreminded bookings whose class starts in (now, horizon]."""
        query = (
            self._build_query()
            .join(ScheduledInstance, ScheduledInstance.id == Booking.instance_id)
            .filter(
                Booking.state == BookingState.CONFIRMED.value,
                Booking.reminder_sent_at.is_(None),
                ScheduledInstance.status == InstanceStatus.SCHEDULED.value,
                ScheduledInstance.start_time > now,
                ScheduledInstance.start_time <= horizon,
            )
            .order_by(ScheduledInstance.start_time.asc(), Booking.id.asc())
        )
        return cast(List[Booking], self._execute_query(query))
