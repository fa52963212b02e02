# backend/classbook/repositories/waitlist_repository.py
"""
Waitlist Repository for the class booking engine.

Positions are only meaningful for WAITING entries. Callers hold the
per-instance lock around every read-modify-write below, so
max_position() + 1 and close_gap() cannot interleave with another writer
on the same instance.
"""

from datetime import datetime
import logging
from typing import List, Optional, cast

from sqlalchemy import and_, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import WaitlistStatus
from ..core.exceptions import RepositoryException
from ..models.waitlist import ACTIVE_WAITLIST_STATUSES, WaitlistEntry
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class WaitlistRepository(BaseRepository[WaitlistEntry]):
    """Repository for waitlist queue operations."""

    def __init__(self, db: Session):
        super().__init__(db, WaitlistEntry)
        self.logger = logging.getLogger(__name__)

    def get_active_for_user(self, instance_id: str, user_id: str) -> Optional[WaitlistEntry]:
        """Waiting or promoted entry of this user, if any."""
        try:
            return (
                self.db.query(WaitlistEntry)
                .filter(
                    WaitlistEntry.instance_id == instance_id,
                    WaitlistEntry.user_id == user_id,
                    WaitlistEntry.status.in_(ACTIVE_WAITLIST_STATUSES),
                )
                .populate_existing()
                .first()
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to look up waitlist entry: %s", exc)
            raise RepositoryException("Failed to look up waitlist entry") from exc

    def max_position(self, instance_id: str) -> int:
        query = self.db.query(func.max(WaitlistEntry.position)).filter(
            WaitlistEntry.instance_id == instance_id,
            WaitlistEntry.status == WaitlistStatus.WAITING.value,
        )
        return int(self._execute_scalar(query) or 0)

    def get_head(self, instance_id: str) -> Optional[WaitlistEntry]:
        try:
            return (
                self.db.query(WaitlistEntry)
                .filter(
                    WaitlistEntry.instance_id == instance_id,
                    WaitlistEntry.status == WaitlistStatus.WAITING.value,
                )
                .order_by(WaitlistEntry.position.asc(), WaitlistEntry.joined_at.asc())
                .populate_existing()
                .first()
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to read waitlist head for %s: %s", instance_id, exc)
            raise RepositoryException("Failed to read waitlist head") from exc

    def list_waiting(self, instance_id: str) -> List[WaitlistEntry]:
        query = (
            self._build_query()
            .filter(
                WaitlistEntry.instance_id == instance_id,
                WaitlistEntry.status == WaitlistStatus.WAITING.value,
            )
            .order_by(WaitlistEntry.position.asc())
            .populate_existing()
        )
        return cast(List[WaitlistEntry], self._execute_query(query))

    def list_active(self, instance_id: str) -> List[WaitlistEntry]:
        query = (
            self._build_query()
            .filter(
                WaitlistEntry.instance_id == instance_id,
                WaitlistEntry.status.in_(ACTIVE_WAITLIST_STATUSES),
            )
            .order_by(WaitlistEntry.joined_at.asc(), WaitlistEntry.id.asc())
        )
        return cast(List[WaitlistEntry], self._execute_query(query))

    def close_gap(self, instance_id: str, removed_position: int) -> int:
        """Shift every waiting entry behind removed_position forward by one."""
        try:
            result = self.db.execute(
                update(WaitlistEntry)
                .where(
                    and_(
                        WaitlistEntry.instance_id == instance_id,
                        WaitlistEntry.status == WaitlistStatus.WAITING.value,
                        WaitlistEntry.position > removed_position,
                    )
                )
                .values(position=WaitlistEntry.position - 1)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to renumber waitlist for %s: %s", instance_id, exc)
            raise RepositoryException("Failed to renumber waitlist") from exc
        for entry in list(self.db.identity_map.values()):
            if isinstance(entry, WaitlistEntry) and entry.instance_id == instance_id:
                self.db.expire(entry, ["position"])
        return int(result.rowcount or 0)

    def get_by_booking_id(self, booking_id: str) -> Optional[WaitlistEntry]:
        return self.find_one_by(booking_id=booking_id)

    def list_promotions_due(self, now: datetime) -> List[WaitlistEntry]:
        query = (
            self._build_query()
            .filter(
                WaitlistEntry.status == WaitlistStatus.PROMOTED.value,
                WaitlistEntry.promotion_expires_at.isnot(None),
                WaitlistEntry.promotion_expires_at <= now,
            )
            .order_by(WaitlistEntry.promotion_expires_at.asc(), WaitlistEntry.id.asc())
        )
        return cast(List[WaitlistEntry], self._execute_query(query))
