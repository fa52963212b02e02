"""
Tests for the periodic Celery sweeps, called directly against the test database.
"""

from datetime import timedelta

import pytest

from classbook.core.enums import BookingState, InstanceStatus, WaitlistStatus
from classbook.core.timezone_utils import utc_now
from classbook.models import Booking, ScheduledInstance, WaitlistEntry
from classbook.services.credit_ledger import CreditLedgerService
from classbook.tasks import sweeps
from tests.helpers import assert_seat_invariant, package_remaining


@pytest.fixture(autouse=True)
def _sweeps_use_test_db(monkeypatch, session_factory):
    monkeypatch.setattr(sweeps, "SessionLocal", session_factory)


def test_expire_promotions_moves_seat_to_next_entry(
    ledger, make_instance, session_factory
) -> None:
    instance = make_instance(capacity=1, starts_in=timedelta(days=3))
    booking = ledger.reserve_seat(instance.id, "user-a").booking
    entry_b = ledger.reserve_seat(instance.id, "user-b").waitlist_entry
    entry_c = ledger.reserve_seat(instance.id, "user-c").waitlist_entry
    # Promote user-b with a window that has already closed
    ledger.cancel(booking.id, "user-a", now=utc_now() - timedelta(hours=25))

    assert sweeps.expire_promotions() == 1
    assert sweeps.expire_promotions() == 0

    session = session_factory()
    try:
        expired = session.get(WaitlistEntry, entry_b.id)
        promoted = session.get(WaitlistEntry, entry_c.id)
        assert expired.status == WaitlistStatus.EXPIRED.value
        assert session.get(Booking, expired.booking_id).state == BookingState.CANCELLED.value
        assert promoted.status == WaitlistStatus.PROMOTED.value
    finally:
        session.close()
    assert assert_seat_invariant(session_factory, instance.id)["occupied"] == 1


def test_send_reminders(ledger, make_instance) -> None:
    soon = make_instance(starts_in=timedelta(minutes=30))
    ledger.reserve_seat(soon.id, "user-a")

    assert sweeps.send_reminders() == 1
    assert sweeps.send_reminders() == 0


def test_advance_instance_states(make_instance, session_factory) -> None:
    started = make_instance(starts_in=timedelta(minutes=-10), duration_minutes=60)
    finished = make_instance(starts_in=timedelta(hours=-3), duration_minutes=60)

    assert sweeps.advance_instance_states() == {"started": 2, "completed": 1}

    session = session_factory()
    try:
        assert session.get(ScheduledInstance, started.id).status == InstanceStatus.IN_PROGRESS.value
        assert session.get(ScheduledInstance, finished.id).status == InstanceStatus.COMPLETED.value
    finally:
        session.close()


def test_expire_stale_packages(credits, grant, session_factory) -> None:
    stale = credits.grant_package("user-a", 5, 30, now=utc_now() - timedelta(days=100))
    fresh = grant("user-a", 5)

    assert sweeps.expire_stale_packages() == 1

    assert package_remaining(session_factory, stale.id) == 0
    assert package_remaining(session_factory, fresh.id) == 5


def test_sweep_failure_is_raised_for_retry(monkeypatch) -> None:
    def _boom(self, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(CreditLedgerService, "expire_stale_packages", _boom)

    with pytest.raises(RuntimeError):
        sweeps.expire_stale_packages()
