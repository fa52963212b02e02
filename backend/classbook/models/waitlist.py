# backend/classbook/models/waitlist.py
"""
Waitlist model.

WAITING entries of one instance carry positions 1..N with no gaps. Once an
entry leaves the queue (promoted, left, skipped, cancelled) its position is
cleared and the remaining entries are renumbered by the waitlist manager.
A promoted entry keeps a link to its booking and the deadline by which the
user must confirm it.
"""

from datetime import datetime
import logging
from typing import Any, Optional

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.sql import func, text
import ulid

from ..core.enums import PaymentMode, WaitlistStatus
from ..core.timezone_utils import ensure_utc
from ..database import Base

logger = logging.getLogger(__name__)

ACTIVE_WAITLIST_STATUSES = (WaitlistStatus.WAITING.value, WaitlistStatus.PROMOTED.value)


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    instance_id = Column(String(26), ForeignKey("scheduled_instances.id"), nullable=False, index=True)
    user_id = Column(String(26), nullable=False, index=True)
    payment_mode = Column(String(20), nullable=False, default=PaymentMode.DIRECT.value)

    # Queue management
    position = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False, default=WaitlistStatus.WAITING.value, index=True)

    # Promotion details
    booking_id = Column(String(26), ForeignKey("bookings.id"), nullable=True)
    promoted_at = Column(DateTime(timezone=True), nullable=True)
    promotion_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    joined_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_waitlist_active_per_user",
            "instance_id",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('waiting', 'promoted')"),
            sqlite_where=text("status IN ('waiting', 'promoted')"),
        ),
        Index("ix_waitlist_instance_position", "instance_id", "position"),
    )

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not self.status:
            self.status = WaitlistStatus.WAITING.value

    def __repr__(self) -> str:
        return (
            f"<WaitlistEntry {self.id}: instance={self.instance_id}, user={self.user_id}, "
            f"position={self.position}, status={self.status}>"
        )

    @property
    def is_waiting(self) -> bool:
        return self.status == WaitlistStatus.WAITING.value

    @property
    def is_pending_promotion(self) -> bool:
        return self.status == WaitlistStatus.PROMOTED.value

    def promotion_deadline(self) -> Optional[datetime]:
        return ensure_utc(self.promotion_expires_at)
