# backend/classbook/models/credit.py
"""
Credit package model.

A UserPackage is a purchased bundle of class credits with a hard expiry.
credits_remaining is written exclusively by the credit ledger.
"""

from datetime import datetime
from typing import Optional, cast

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func
import ulid

from ..core.timezone_utils import ensure_utc
from ..database import Base


class UserPackage(Base):
    __tablename__ = "user_packages"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    user_id = Column(String(26), nullable=False, index=True)
    name = Column(String(200), nullable=True)

    credits_purchased = Column(Integer, nullable=False)
    credits_remaining = Column(Integer, nullable=False)
    # None means usable for any class template
    allowed_template_ids = Column(JSON, nullable=True)

    purchased_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("credits_purchased > 0", name="ck_user_packages_purchased"),
        CheckConstraint("credits_remaining >= 0", name="ck_user_packages_remaining_min"),
        CheckConstraint(
            "credits_remaining <= credits_purchased", name="ck_user_packages_remaining_max"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<UserPackage {self.id}: user={self.user_id}, "
            f"remaining={self.credits_remaining}/{self.credits_purchased}, expires={self.expires_at}>"
        )

    @property
    def expires(self) -> datetime:
        return cast(datetime, ensure_utc(self.expires_at))

    def is_expired(self, now: datetime) -> bool:
        return self.expires <= now

    def allows_template(self, template_id: Optional[str]) -> bool:
        if not self.allowed_template_ids or template_id is None:
            return True
        return template_id in self.allowed_template_ids
