# backend/classbook/services/class_catalog.py
"""
Class Catalog for the class booking engine.

Templates, weekly schedules and the scheduled instances generated from
them. Read-mostly; the mutation that matters to bookings is
cancel_instance, which closes the class, refunds every confirmed booking
and clears the waitlist under the instance lock.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
import logging
from typing import Any, Dict, List, Optional, cast

from sqlalchemy.orm import Session

from ..core.enums import Difficulty, InstanceStatus
from ..core.exceptions import InvalidInstanceState, NotFound, ValidationException
from ..core.instance_lock import instance_lock
from ..core.timezone_utils import ensure_utc, utc_now
from ..models.catalog import ClassTemplate, RecurringSchedule, ScheduledInstance
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .notifications import NotificationPort

logger = logging.getLogger(__name__)

_TEMPLATE_MUTABLE_FIELDS = {
    "name",
    "description",
    "difficulty",
    "default_duration_minutes",
    "default_capacity",
}


@dataclass
class InstanceAvailability:
    instance_id: str
    status: str
    starts_at: datetime
    capacity: int
    occupied_seats: int
    free_seats: int
    waitlist_length: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "status": self.status,
            "starts_at": self.starts_at,
            "capacity": self.capacity,
            "occupied_seats": self.occupied_seats,
            "free_seats": self.free_seats,
            "waitlist_length": self.waitlist_length,
        }


class ClassCatalogService(BaseService):
    """Templates, schedules and scheduled instances."""

    def __init__(self, db: Session, notifier: Optional[NotificationPort] = None):
        super().__init__(db, notifier)
        self.template_repository = RepositoryFactory.create_template_repository(db)
        self.schedule_repository = RepositoryFactory.create_schedule_repository(db)
        self.instance_repository = RepositoryFactory.create_instance_repository(db)
        self.waitlist_repository = RepositoryFactory.create_waitlist_repository(db)

    # Templates

    def get_template(self, template_id: str) -> ClassTemplate:
        template = self.template_repository.get_by_id(template_id)
        if template is None:
            raise NotFound("ClassTemplate", template_id)
        return template

    @staticmethod
    def _validate_template_values(values: Dict[str, Any]) -> None:
        if "difficulty" in values:
            try:
                values["difficulty"] = Difficulty(values["difficulty"]).value
            except ValueError as exc:
                raise ValidationException(
                    "Unknown difficulty", details={"difficulty": values["difficulty"]}
                ) from exc
        if "default_duration_minutes" in values and int(values["default_duration_minutes"]) <= 0:
            raise ValidationException("Duration must be a positive number of minutes")
        if "default_capacity" in values and int(values["default_capacity"]) <= 0:
            raise ValidationException("Capacity must be at least one seat")
        if "name" in values and not (values["name"] or "").strip():
            raise ValidationException("Template name is required")

    @BaseService.measure_operation("create_template")
    def create_template(
        self,
        name: str,
        *,
        difficulty: str = Difficulty.BEGINNER.value,
        default_duration_minutes: int = 60,
        default_capacity: int = 10,
        description: Optional[str] = None,
    ) -> ClassTemplate:
        values: Dict[str, Any] = {
            "name": name,
            "difficulty": difficulty,
            "default_duration_minutes": default_duration_minutes,
            "default_capacity": default_capacity,
            "description": description,
        }
        self._validate_template_values(values)
        with self.transaction():
            template = self.template_repository.create(is_active=True, **values)
        self.log_operation("create_template", template_id=template.id)
        return template

    @BaseService.measure_operation("update_template")
    def update_template(self, template_id: str, **changes: Any) -> ClassTemplate:
        """
        Edit a template. Existing instances keep the duration and capacity
        they were created with; only instances created afterwards see the
        new values.
        """
        unknown = set(changes) - _TEMPLATE_MUTABLE_FIELDS
        if unknown:
            raise ValidationException(
                "Unknown template fields", details={"fields": sorted(unknown)}
            )
        self._validate_template_values(changes)
        with self.transaction():
            template = self.get_template(template_id)
            for key, value in changes.items():
                setattr(template, key, value)
        return template

    @BaseService.measure_operation("deactivate_template")
    def deactivate_template(self, template_id: str) -> ClassTemplate:
        with self.transaction():
            template = self.get_template(template_id)
            template.is_active = False
        return template

    # Schedules

    @BaseService.measure_operation("create_schedule")
    def create_schedule(
        self,
        template_id: str,
        instructor_id: str,
        day_of_week: int,
        start_time: time,
        effective_from: date,
        *,
        effective_until: Optional[date] = None,
        duration_minutes: Optional[int] = None,
        capacity: Optional[int] = None,
    ) -> RecurringSchedule:
        """Weekly slot; day_of_week follows date.weekday() (0 is Monday)."""
        if not 0 <= day_of_week <= 6:
            raise ValidationException("day_of_week must be between 0 (Monday) and 6 (Sunday)")
        if effective_until is not None and effective_until < effective_from:
            raise ValidationException("effective_until must not be before effective_from")
        with self.transaction():
            self.get_template(template_id)
            schedule = self.schedule_repository.create(
                template_id=template_id,
                instructor_id=instructor_id,
                day_of_week=day_of_week,
                start_time=start_time,
                effective_from=effective_from,
                effective_until=effective_until,
                duration_minutes=duration_minutes,
                capacity=capacity,
                is_active=True,
            )
        return schedule

    @BaseService.measure_operation("generate_instances")
    def generate_instances(self, start_date: date, end_date: date) -> List[ScheduledInstance]:
        """
        Materialise instances for every active schedule between start_date
        and end_date inclusive. Slots that already have an instance are left
        alone, so running it twice creates nothing new.
        """
        if end_date < start_date:
            raise ValidationException("end_date must not be before start_date")

        created: List[ScheduledInstance] = []
        with self.transaction():
            for schedule in self.schedule_repository.list_active():
                template = schedule.template
                day = start_date
                while day <= end_date:
                    if (
                        day.weekday() == schedule.day_of_week
                        and day >= schedule.effective_from
                        and (schedule.effective_until is None or day <= schedule.effective_until)
                    ):
                        starts = datetime.combine(day, schedule.start_time, tzinfo=timezone.utc)
                        if not self.instance_repository.exists_for_slot(schedule.id, starts):
                            created.append(
                                self.instance_repository.create(
                                    template_id=template.id,
                                    schedule_id=schedule.id,
                                    instructor_id=schedule.instructor_id,
                                    start_time=starts,
                                    duration_minutes=schedule.duration_minutes
                                    or template.default_duration_minutes,
                                    capacity=schedule.capacity or template.default_capacity,
                                    occupied_seats=0,
                                    status=InstanceStatus.SCHEDULED.value,
                                )
                            )
                    day += timedelta(days=1)

        self.logger.info(
            "Generated scheduled instances",
            extra={"count": len(created), "start_date": str(start_date), "end_date": str(end_date)},
        )
        return created

    # Instances

    def get_instance(self, instance_id: str) -> ScheduledInstance:
        instance = self.instance_repository.get_for_update(instance_id)
        if instance is None:
            raise NotFound("ScheduledInstance", instance_id)
        return instance

    def list_instances(
        self,
        start: datetime,
        end: datetime,
        *,
        status: Optional[str] = None,
        template_id: Optional[str] = None,
    ) -> List[ScheduledInstance]:
        return self.instance_repository.list_between(
            cast(datetime, ensure_utc(start)),
            cast(datetime, ensure_utc(end)),
            status=status,
            template_id=template_id,
        )

    @BaseService.measure_operation("schedule_instance")
    def schedule_instance(
        self,
        template_id: str,
        instructor_id: str,
        start_time: datetime,
        *,
        duration_minutes: Optional[int] = None,
        capacity: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> ScheduledInstance:
        """Create a one-off instance, snapshotting template defaults."""
        if capacity is not None and capacity <= 0:
            raise ValidationException("Capacity must be at least one seat")
        if duration_minutes is not None and duration_minutes <= 0:
            raise ValidationException("Duration must be a positive number of minutes")

        with self.transaction():
            template = self.get_template(template_id)
            if not template.is_active:
                raise ValidationException(
                    "Template is no longer active", details={"template_id": template_id}
                )
            instance = self.instance_repository.create(
                template_id=template.id,
                instructor_id=instructor_id,
                start_time=ensure_utc(start_time),
                duration_minutes=duration_minutes or template.default_duration_minutes,
                capacity=capacity or template.default_capacity,
                occupied_seats=0,
                status=InstanceStatus.SCHEDULED.value,
                notes=notes,
            )
        return instance

    def _transition(self, instance_id: str, expected: List[str], target: str, action: str) -> ScheduledInstance:
        with instance_lock(instance_id), self.transaction():
            instance = self.get_instance(instance_id)
            if instance.status == target:
                return instance
            if not self.instance_repository.set_status(instance_id, expected, target):
                raise InvalidInstanceState(instance_id, str(instance.status), action)
            instance = self.get_instance(instance_id)
        return instance

    @BaseService.measure_operation("start_instance")
    def start_instance(self, instance_id: str) -> ScheduledInstance:
        return self._transition(
            instance_id,
            [InstanceStatus.SCHEDULED.value],
            InstanceStatus.IN_PROGRESS.value,
            "start",
        )

    @BaseService.measure_operation("complete_instance")
    def complete_instance(self, instance_id: str) -> ScheduledInstance:
        return self._transition(
            instance_id,
            [InstanceStatus.SCHEDULED.value, InstanceStatus.IN_PROGRESS.value],
            InstanceStatus.COMPLETED.value,
            "complete",
        )

    @BaseService.measure_operation("advance_instance_states")
    def advance_instance_states(self, *, now: Optional[datetime] = None) -> Dict[str, int]:
        """Start instances whose start time has passed and complete those that have ended."""
        current = now or utc_now()
        counts = {"started": 0, "completed": 0}

        with self.transaction():
            due_ids = [i.id for i in self.instance_repository.list_due_to_start(current)]
        for instance_id in due_ids:
            instance = self.start_instance(instance_id)
            if instance.status == InstanceStatus.IN_PROGRESS.value:
                counts["started"] += 1

        with self.transaction():
            ended_ids = [
                i.id for i in self.instance_repository.list_in_progress() if i.ends_at <= current
            ]
        for instance_id in ended_ids:
            instance = self.complete_instance(instance_id)
            if instance.status == InstanceStatus.COMPLETED.value:
                counts["completed"] += 1

        if counts["started"] or counts["completed"]:
            self.logger.info("Advanced instance states", extra=counts)
        return counts

    @BaseService.measure_operation("get_availability")
    def get_availability(self, instance_id: str) -> InstanceAvailability:
        with self.transaction():
            instance = self.get_instance(instance_id)
            waiting = self.waitlist_repository.max_position(instance_id)
        return InstanceAvailability(
            instance_id=instance.id,
            status=str(instance.status),
            starts_at=instance.starts_at,
            capacity=int(instance.capacity),
            occupied_seats=int(instance.occupied_seats),
            free_seats=instance.free_seats,
            waitlist_length=waiting,
        )

    @BaseService.measure_operation("cancel_instance")
    def cancel_instance(
        self,
        instance_id: str,
        *,
        acting_user_id: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ScheduledInstance:
        """
        Cancel a class: close it to new bookings, cancel and refund every
        confirmed booking, and clear the waitlist. Each affected user gets an
        INSTANCE_CANCELLED notification; nobody is promoted.

        The status change and the whole cascade share one transaction.
        Calling it again on a cancelled instance sweeps up any booking or
        entry still open and is otherwise a no-op.

        Raises:
            InvalidInstanceState: the instance has already completed
        """
        from .booking_ledger import SYSTEM_ACTOR_ID, BookingLedgerService

        current = now or utc_now()
        actor = acting_user_id or SYSTEM_ACTOR_ID
        ledger = BookingLedgerService(self.db, self.notifier)

        with self.notification_scope() as box, instance_lock(instance_id):
            with self.transaction(box):
                instance = self.get_instance(instance_id)
                if instance.status != InstanceStatus.CANCELLED.value:
                    if not self.instance_repository.set_status(
                        instance_id,
                        [InstanceStatus.SCHEDULED.value, InstanceStatus.IN_PROGRESS.value],
                        InstanceStatus.CANCELLED.value,
                    ):
                        raise InvalidInstanceState(instance_id, str(instance.status), "cancel")
                    instance.cancelled_at = current

                cancelled = ledger.cancel_all_for_instance(
                    instance_id, box, acting_user_id=actor, reason=reason, now=current
                )
                cleared = ledger.waitlist.clear_for_instance(instance_id, box, now=current)

        if cancelled or cleared:
            self.logger.info(
                "Instance cancelled",
                extra={
                    "instance_id": instance_id,
                    "bookings_cancelled": cancelled,
                    "waitlist_cleared": cleared,
                },
            )
        return self.get_instance(instance_id)


__all__ = ["ClassCatalogService", "InstanceAvailability"]
