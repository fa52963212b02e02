# backend/classbook/repositories/credit_repository.py
"""
Credit Repository for the class booking engine.

Encapsulates package selection and the conditional updates that move
credits_remaining. A credit is only taken when the guard (remaining > 0,
not expired) still holds at write time.
"""

from datetime import datetime
import logging
from typing import List, Optional, cast

from sqlalchemy import and_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.credit import UserPackage
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class CreditRepository(BaseRepository[UserPackage]):
    """Repository for user credit packages."""

    def __init__(self, db: Session):
        super().__init__(db, UserPackage)
        self.logger = logging.getLogger(__name__)

    def _expire_cached(self, package_id: str) -> None:
        key = self.db.identity_key(UserPackage, package_id)
        cached = self.db.identity_map.get(key)
        if cached is not None:
            self.db.expire(cached, ["credits_remaining"])

    def get_usable_packages(
        self, *, user_id: str, now: datetime, template_id: Optional[str] = None
    ) -> List[UserPackage]:
        """Packages with credit left, soonest-expiring first."""
        try:
            packages = (
                self.db.query(UserPackage)
                .filter(
                    and_(
                        UserPackage.user_id == user_id,
                        UserPackage.credits_remaining > 0,
                        UserPackage.expires_at > now,
                    )
                )
                .order_by(
                    UserPackage.expires_at.asc(),
                    UserPackage.purchased_at.asc(),
                    UserPackage.id.asc(),
                )
                .populate_existing()
                .all()
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to get usable packages: %s", str(exc))
            raise RepositoryException("Failed to get usable packages") from exc
        return [p for p in packages if p.allows_template(template_id)]

    def try_consume(self, package_id: str, now: datetime) -> bool:
        try:
            result = self.db.execute(
                update(UserPackage)
                .where(
                    and_(
                        UserPackage.id == package_id,
                        UserPackage.credits_remaining > 0,
                        UserPackage.expires_at > now,
                    )
                )
                .values(credits_remaining=UserPackage.credits_remaining - 1)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to consume credit from %s: %s", package_id, exc)
            raise RepositoryException("Failed to consume credit") from exc
        self._expire_cached(package_id)
        return bool(result.rowcount == 1)

    def try_refund(self, package_id: str) -> bool:
        try:
            result = self.db.execute(
                update(UserPackage)
                .where(
                    and_(
                        UserPackage.id == package_id,
                        UserPackage.credits_remaining < UserPackage.credits_purchased,
                    )
                )
                .values(credits_remaining=UserPackage.credits_remaining + 1)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to refund credit to %s: %s", package_id, exc)
            raise RepositoryException("Failed to refund credit") from exc
        self._expire_cached(package_id)
        return bool(result.rowcount == 1)

    def zero_expired(self, now: datetime) -> int:
        """Zero credits_remaining on every package past its expiry."""
        try:
            result = self.db.execute(
                update(UserPackage)
                .where(
                    and_(
                        UserPackage.expires_at <= now,
                        UserPackage.credits_remaining > 0,
                    )
                )
                .values(credits_remaining=0)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to expire stale packages: %s", exc)
            raise RepositoryException("Failed to expire stale packages") from exc
        for obj in list(self.db.identity_map.values()):
            if isinstance(obj, UserPackage):
                self.db.expire(obj, ["credits_remaining"])
        return int(result.rowcount or 0)

    def list_for_user(self, user_id: str) -> List[UserPackage]:
        query = self._build_query().filter(UserPackage.user_id == user_id)
        query = query.order_by(UserPackage.expires_at.asc(), UserPackage.id.asc())
        return cast(List[UserPackage], self._execute_query(query))
