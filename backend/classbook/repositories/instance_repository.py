# backend/classbook/repositories/instance_repository.py
"""
Instance Repository for the class booking engine.

Seat accounting is done with conditional UPDATE statements. The database
evaluates the capacity guard and the increment in one statement, so the
row can never be observed above capacity regardless of what other sessions
are doing.
"""

from datetime import datetime
import logging
from typing import List, Optional, cast

from sqlalchemy import and_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import InstanceStatus
from ..core.exceptions import RepositoryException
from ..models.catalog import ClassTemplate, RecurringSchedule, ScheduledInstance
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class InstanceRepository(BaseRepository[ScheduledInstance]):
    """Repository for scheduled class instances."""

    def __init__(self, db: Session):
        super().__init__(db, ScheduledInstance)
        self.logger = logging.getLogger(__name__)

    def _expire_cached(self, instance_id: str) -> None:
        key = self.db.identity_key(ScheduledInstance, instance_id)
        cached = self.db.identity_map.get(key)
        if cached is not None:
            self.db.expire(cached, ["occupied_seats"])

    def try_reserve_seat(self, instance_id: str) -> bool:
        """
        Take one seat if the instance is scheduled and not full.

        Returns:
            True when the seat was taken, False when the guard rejected it
        """
        try:
            result = self.db.execute(
                update(ScheduledInstance)
                .where(
                    and_(
                        ScheduledInstance.id == instance_id,
                        ScheduledInstance.status == InstanceStatus.SCHEDULED.value,
                        ScheduledInstance.occupied_seats < ScheduledInstance.capacity,
                    )
                )
                .values(occupied_seats=ScheduledInstance.occupied_seats + 1)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to reserve seat on %s: %s", instance_id, exc)
            raise RepositoryException("Failed to reserve seat") from exc
        self._expire_cached(instance_id)
        return bool(result.rowcount == 1)

    def release_seat(self, instance_id: str) -> bool:
        """Give back one seat. Returns False if no seat was held."""
        try:
            result = self.db.execute(
                update(ScheduledInstance)
                .where(
                    and_(
                        ScheduledInstance.id == instance_id,
                        ScheduledInstance.occupied_seats > 0,
                    )
                )
                .values(occupied_seats=ScheduledInstance.occupied_seats - 1)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to release seat on %s: %s", instance_id, exc)
            raise RepositoryException("Failed to release seat") from exc
        self._expire_cached(instance_id)
        return bool(result.rowcount == 1)

    def set_status(self, instance_id: str, expected: List[str], new_status: str) -> bool:
        """Move an instance to new_status only if it is currently in one of expected."""
        try:
            result = self.db.execute(
                update(ScheduledInstance)
                .where(
                    and_(
                        ScheduledInstance.id == instance_id,
                        ScheduledInstance.status.in_(expected),
                    )
                )
                .values(status=new_status)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to update status of %s: %s", instance_id, exc)
            raise RepositoryException("Failed to update instance status") from exc
        key = self.db.identity_key(ScheduledInstance, instance_id)
        cached = self.db.identity_map.get(key)
        if cached is not None:
            self.db.expire(cached, ["status"])
        return bool(result.rowcount == 1)

    def exists_for_slot(self, schedule_id: str, start_time: datetime) -> bool:
        try:
            return (
                self.db.query(ScheduledInstance.id)
                .filter(
                    ScheduledInstance.schedule_id == schedule_id,
                    ScheduledInstance.start_time == start_time,
                )
                .first()
                is not None
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to check slot for schedule %s: %s", schedule_id, exc)
            raise RepositoryException("Failed to check schedule slot") from exc

    def list_between(
        self,
        start: datetime,
        end: datetime,
        *,
        status: Optional[str] = None,
        template_id: Optional[str] = None,
    ) -> List[ScheduledInstance]:
        query = self._build_query().filter(
            ScheduledInstance.start_time >= start,
            ScheduledInstance.start_time < end,
        )
        if status:
            query = query.filter(ScheduledInstance.status == status)
        if template_id:
            query = query.filter(ScheduledInstance.template_id == template_id)
        query = query.order_by(ScheduledInstance.start_time.asc(), ScheduledInstance.id.asc())
        return cast(List[ScheduledInstance], self._execute_query(query))

    def list_due_to_start(self, now: datetime) -> List[ScheduledInstance]:
        query = self._build_query().filter(
            ScheduledInstance.status == InstanceStatus.SCHEDULED.value,
            ScheduledInstance.start_time <= now,
        )
        return cast(List[ScheduledInstance], self._execute_query(query))

    def list_in_progress(self) -> List[ScheduledInstance]:
        query = self._build_query().filter(
            ScheduledInstance.status == InstanceStatus.IN_PROGRESS.value
        )
        return cast(List[ScheduledInstance], self._execute_query(query))


class TemplateRepository(BaseRepository[ClassTemplate]):
    def __init__(self, db: Session):
        super().__init__(db, ClassTemplate)

    def list_active(self) -> List[ClassTemplate]:
        query = self._build_query().filter(ClassTemplate.is_active.is_(True))
        return cast(List[ClassTemplate], self._execute_query(query.order_by(ClassTemplate.name)))


class ScheduleRepository(BaseRepository[RecurringSchedule]):
    def __init__(self, db: Session):
        super().__init__(db, RecurringSchedule)

    def list_active(self) -> List[RecurringSchedule]:
        query = (
            self._build_query()
            .join(ClassTemplate, ClassTemplate.id == RecurringSchedule.template_id)
            .filter(
                RecurringSchedule.is_active.is_(True),
                ClassTemplate.is_active.is_(True),
            )
            .order_by(RecurringSchedule.id.asc())
        )
        return cast(List[RecurringSchedule], self._execute_query(query))
