# backend/classbook/models/catalog.py
"""
Class catalog models.

ClassTemplate describes a kind of class. RecurringSchedule places a template
on a weekly slot. ScheduledInstance is one concrete occurrence with its own
capacity; duration and capacity are snapshotted from the template when the
instance is created, so template edits only reach future instances.

occupied_seats is written exclusively by the booking ledger.
"""

from datetime import datetime, timedelta
import logging
from typing import Any, Optional, cast

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..core.enums import Difficulty, InstanceStatus
from ..core.timezone_utils import ensure_utc
from ..database import Base

logger = logging.getLogger(__name__)


class ClassTemplate(Base):
    __tablename__ = "class_templates"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    difficulty = Column(String(20), nullable=False, default=Difficulty.BEGINNER.value)
    default_duration_minutes = Column(Integer, nullable=False, default=60)
    default_capacity = Column(Integer, nullable=False, default=10)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    instances = relationship("ScheduledInstance", back_populates="template")

    __table_args__ = (
        CheckConstraint(
            "difficulty IN ('beginner', 'intermediate', 'advanced')",
            name="ck_class_templates_difficulty",
        ),
        CheckConstraint("default_duration_minutes > 0", name="ck_class_templates_duration"),
        CheckConstraint("default_capacity > 0", name="ck_class_templates_capacity"),
    )

    def __repr__(self) -> str:
        return f"<ClassTemplate {self.id}: {self.name} ({self.difficulty})>"


class RecurringSchedule(Base):
    """Weekly slot for a template. day_of_week follows date.weekday(): 0 is Monday."""

    __tablename__ = "recurring_schedules"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    template_id = Column(String(26), ForeignKey("class_templates.id"), nullable=False)
    instructor_id = Column(String(26), nullable=False)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)  # UTC wall time
    duration_minutes = Column(Integer, nullable=True)
    capacity = Column(Integer, nullable=True)
    effective_from = Column(Date, nullable=False)
    effective_until = Column(Date, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    template = relationship("ClassTemplate")

    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_schedules_weekday"),
    )


class ScheduledInstance(Base):
    __tablename__ = "scheduled_instances"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    template_id = Column(String(26), ForeignKey("class_templates.id"), nullable=False, index=True)
    schedule_id = Column(String(26), ForeignKey("recurring_schedules.id"), nullable=True)
    instructor_id = Column(String(26), nullable=False, index=True)

    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False)
    capacity = Column(Integer, nullable=False)
    occupied_seats = Column(Integer, nullable=False, default=0)

    status = Column(String(20), nullable=False, default=InstanceStatus.SCHEDULED.value, index=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    template = relationship("ClassTemplate", back_populates="instances")

    __table_args__ = (
        CheckConstraint(
            "status IN ('scheduled', 'in_progress', 'completed', 'cancelled')",
            name="ck_scheduled_instances_status",
        ),
        CheckConstraint("capacity > 0", name="ck_scheduled_instances_capacity"),
        CheckConstraint("occupied_seats >= 0", name="ck_scheduled_instances_occupied_min"),
        CheckConstraint(
            "occupied_seats <= capacity", name="ck_scheduled_instances_occupied_max"
        ),
        UniqueConstraint("schedule_id", "start_time", name="uq_scheduled_instances_slot"),
    )

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if self.occupied_seats is None:
            self.occupied_seats = 0
        if not self.status:
            self.status = InstanceStatus.SCHEDULED.value

    def __repr__(self) -> str:
        return (
            f"<ScheduledInstance {self.id}: start={self.start_time}, "
            f"seats={self.occupied_seats}/{self.capacity}, status={self.status}>"
        )

    @property
    def starts_at(self) -> datetime:
        return cast(datetime, ensure_utc(self.start_time))

    @property
    def ends_at(self) -> datetime:
        return self.starts_at + timedelta(minutes=int(self.duration_minutes))

    @property
    def free_seats(self) -> int:
        return max(0, int(self.capacity) - int(self.occupied_seats or 0))

    def not_bookable_reason(self, now: datetime) -> Optional[str]:
        """Why a new booking cannot be taken right now, or None when it can."""
        if self.status != InstanceStatus.SCHEDULED.value:
            return f"Class is not open for booking (status: {self.status})"
        if self.starts_at <= now:
            return "Class has already started"
        return None
