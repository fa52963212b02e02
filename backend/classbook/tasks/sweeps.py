# backend/classbook/tasks/sweeps.py
"""
Periodic sweeps.

Each task opens its own session, runs one idempotent core operation and
returns how much it did. Failures are logged and retried by Celery.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, TypeVar

from sqlalchemy.orm import Session

from classbook.database import SessionLocal
from classbook.services.booking_ledger import BookingLedgerService
from classbook.services.class_catalog import ClassCatalogService
from classbook.services.credit_ledger import CreditLedgerService
from classbook.services.waitlist_manager import WaitlistManagerService
from classbook.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _run_sweep(task: Any, name: str, work: Callable[[Session], T]) -> T:
    db = SessionLocal()
    try:
        result = work(db)
        logger.info("Sweep completed", extra={"sweep": name, "result": result})
        return result
    except Exception as exc:
        logger.exception("Sweep failed", extra={"sweep": name})
        raise task.retry(exc=exc)
    finally:
        db.close()


@celery_app.task(name="classbook.sweeps.expire_promotions", bind=True, max_retries=3)
def expire_promotions(self: Any) -> int:
    """Expire waitlist promotions that were not confirmed in time."""
    return _run_sweep(
        self, "expire_promotions", lambda db: WaitlistManagerService(db).expire_due_promotions()
    )


@celery_app.task(name="classbook.sweeps.expire_stale_packages", bind=True, max_retries=3)
def expire_stale_packages(self: Any) -> int:
    return _run_sweep(
        self, "expire_stale_packages", lambda db: CreditLedgerService(db).expire_stale_packages()
    )


@celery_app.task(name="classbook.sweeps.send_reminders", bind=True, max_retries=3)
def send_reminders(self: Any) -> int:
    return _run_sweep(
        self, "send_reminders", lambda db: BookingLedgerService(db).send_reminders()
    )


@celery_app.task(name="classbook.sweeps.advance_instance_states", bind=True, max_retries=3)
def advance_instance_states(self: Any) -> Dict[str, int]:
    return _run_sweep(
        self,
        "advance_instance_states",
        lambda db: ClassCatalogService(db).advance_instance_states(),
    )
