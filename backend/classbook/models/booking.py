# backend/classbook/models/booking.py
"""
Booking model.

A booking in state CONFIRMED holds exactly one seat on its instance; the
ledger keeps ScheduledInstance.occupied_seats equal to the number of
confirmed bookings. A partial unique index allows at most one confirmed
booking per (instance, user).
"""

from datetime import datetime, timezone
import logging
from typing import Any, Optional

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func, text
import ulid

from ..core.enums import BookingState, PaymentMode
from ..database import Base

logger = logging.getLogger(__name__)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    instance_id = Column(String(26), ForeignKey("scheduled_instances.id"), nullable=False, index=True)
    user_id = Column(String(26), nullable=False, index=True)

    state = Column(String(20), nullable=False, default=BookingState.CONFIRMED.value, index=True)
    payment_mode = Column(String(20), nullable=False, default=PaymentMode.DIRECT.value)
    package_id = Column(String(26), ForeignKey("user_packages.id"), nullable=True)
    via_waitlist = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    outcome_recorded_at = Column(DateTime(timezone=True), nullable=True)
    reminder_sent_at = Column(DateTime(timezone=True), nullable=True)

    # Cancellation tracking
    cancelled_by_id = Column(String(26), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    instance = relationship("ScheduledInstance")
    package = relationship("UserPackage")

    __table_args__ = (
        CheckConstraint(
            "state IN ('confirmed', 'cancelled', 'attended', 'no_show')",
            name="ck_bookings_state",
        ),
        CheckConstraint("payment_mode IN ('credit', 'direct')", name="ck_bookings_payment_mode"),
        Index(
            "uq_bookings_confirmed_per_user",
            "instance_id",
            "user_id",
            unique=True,
            postgresql_where=text("state = 'confirmed'"),
            sqlite_where=text("state = 'confirmed'"),
        ),
    )

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not self.state:
            self.state = BookingState.CONFIRMED.value
        logger.info(f"Creating booking for user {self.user_id} on instance {self.instance_id}")

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id}: instance={self.instance_id}, user={self.user_id}, "
            f"state={self.state}, mode={self.payment_mode}>"
        )

    def cancel(
        self,
        cancelled_by_user_id: str,
        reason: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> None:
        """Cancel this booking. Seat and credit bookkeeping belongs to the ledger."""
        self.state = BookingState.CANCELLED.value
        self.cancelled_at = now or datetime.now(timezone.utc)
        self.cancelled_by_id = cancelled_by_user_id
        self.cancellation_reason = reason
        logger.info(f"Booking {self.id} cancelled by user {cancelled_by_user_id}")

    def record_outcome(self, outcome: str, *, now: Optional[datetime] = None) -> None:
        self.state = outcome
        self.outcome_recorded_at = now or datetime.now(timezone.utc)

    @property
    def is_confirmed(self) -> bool:
        return self.state == BookingState.CONFIRMED.value

    @property
    def is_credit_funded(self) -> bool:
        return self.payment_mode == PaymentMode.CREDIT.value and self.package_id is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "user_id": self.user_id,
            "state": self.state,
            "payment_mode": self.payment_mode,
            "package_id": self.package_id,
            "via_waitlist": bool(self.via_waitlist),
            "created_at": self.created_at,
            "cancelled_at": self.cancelled_at,
        }
