# backend/classbook/services/credit_ledger.py
"""Credit package ledger: grants, consumption, refunds and expiry."""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import InsufficientCredit, NotFound, ValidationException
from ..core.timezone_utils import utc_now
from ..models.credit import UserPackage
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .notifications import NotificationPort

logger = logging.getLogger(__name__)


class CreditLedgerService(BaseService):
    """
    Sole writer of UserPackage.credits_remaining.

    consume() and refund() never open a transaction of their own. The
    booking ledger calls them inside the unit of work that also moves the
    seat, so the two changes commit or roll back together.
    """

    def __init__(self, db: Session, notifier: Optional[NotificationPort] = None):
        super().__init__(db, notifier)
        self.credit_repository = RepositoryFactory.create_credit_repository(db)

    @BaseService.measure_operation("credit_grant_package")
    def grant_package(
        self,
        user_id: str,
        credits: int,
        validity_days: Optional[int] = None,
        *,
        name: Optional[str] = None,
        allowed_template_ids: Optional[List[str]] = None,
        now: Optional[datetime] = None,
        use_transaction: bool = True,
    ) -> UserPackage:
        """Create a package of credits valid for validity_days from now."""
        if credits <= 0:
            raise ValidationException("A package must contain at least one credit")
        days = validity_days if validity_days is not None else settings.default_package_validity_days
        if days <= 0:
            raise ValidationException("Package validity must be at least one day")

        purchased_at = now or utc_now()

        def _grant() -> UserPackage:
            package = self.credit_repository.create(
                user_id=user_id,
                name=name,
                credits_purchased=credits,
                credits_remaining=credits,
                allowed_template_ids=list(allowed_template_ids) if allowed_template_ids else None,
                purchased_at=purchased_at,
                expires_at=purchased_at + timedelta(days=days),
            )
            self.logger.info(
                "Granted credit package",
                extra={"user_id": user_id, "package_id": package.id, "credits": credits},
            )
            return package

        if use_transaction:
            with self.transaction():
                return _grant()
        return _grant()

    def find_usable_package(
        self,
        user_id: str,
        *,
        template_id: Optional[str] = None,
        package_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[UserPackage]:
        """The package consume() would draw from, without drawing."""
        current = now or utc_now()
        packages = self.credit_repository.get_usable_packages(
            user_id=user_id, now=current, template_id=template_id
        )
        if package_id is not None:
            return next((p for p in packages if p.id == package_id), None)
        return packages[0] if packages else None

    def consume(
        self,
        user_id: str,
        package_id: Optional[str] = None,
        *,
        template_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UserPackage:
        """
        Take one credit, soonest-expiring package first.

        Runs inside the caller's transaction.

        Raises:
            InsufficientCredit: no unexpired package with credit is usable
        """
        current = now or utc_now()
        candidates = self.credit_repository.get_usable_packages(
            user_id=user_id, now=current, template_id=template_id
        )
        if package_id is not None:
            candidates = [p for p in candidates if p.id == package_id]

        for package in candidates:
            # Another session may have drained this package since the read
            if self.credit_repository.try_consume(package.id, current):
                self.logger.debug(
                    "Consumed credit",
                    extra={"user_id": user_id, "package_id": package.id},
                )
                return package

        raise InsufficientCredit(user_id, package_id)

    def refund(self, user_id: str, package_id: str) -> bool:
        """
        Return one credit to the package it came from.

        Runs inside the caller's transaction. A package past expiry still
        receives the credit; the next expiry sweep zeroes it.
        """
        package = self.credit_repository.get_by_id(package_id)
        if package is None or package.user_id != user_id:
            raise NotFound("UserPackage", package_id)
        refunded = self.credit_repository.try_refund(package_id)
        if not refunded:
            self.logger.warning(
                "Refund skipped, package already full",
                extra={"user_id": user_id, "package_id": package_id},
            )
        return refunded

    @BaseService.measure_operation("credit_balance")
    def get_balance(self, user_id: str, *, now: Optional[datetime] = None) -> int:
        """Usable credits across all unexpired packages."""
        packages = self.credit_repository.get_usable_packages(user_id=user_id, now=now or utc_now())
        return sum(int(p.credits_remaining) for p in packages)

    def list_packages(self, user_id: str) -> List[UserPackage]:
        return self.credit_repository.list_for_user(user_id)

    @BaseService.measure_operation("credit_expire_stale")
    def expire_stale_packages(self, *, now: Optional[datetime] = None) -> int:
        """Zero out credits on expired packages. Returns packages touched."""
        with self.transaction():
            count = self.credit_repository.zero_expired(now or utc_now())
        if count:
            self.logger.info("Expired stale credit packages", extra={"count": count})
        return count


__all__ = ["CreditLedgerService"]
