"""
Integration tests for reservations, cancellations and attendance outcomes.
"""

from datetime import timedelta

import pytest

from classbook.core.enums import (
    BookingState,
    InstanceStatus,
    NotificationKind,
    PaymentMode,
    WaitlistStatus,
)
from classbook.core.exceptions import (
    ConcurrentCapacityExceeded,
    DuplicateBooking,
    DuplicateWaitlistEntry,
    ForbiddenException,
    InstanceNotBookable,
    InsufficientCredit,
    InvalidBookingState,
    NotFound,
    OutcomeAlreadyRecorded,
    OutcomeTooEarly,
)
from classbook.core.timezone_utils import ensure_utc, utc_now
from classbook.services.booking_ledger import BookingLedgerService, ReservationResult
from tests.helpers import (
    FailingNotifier,
    assert_dense_positions,
    assert_seat_invariant,
    package_remaining,
    seat_snapshot,
    waiting_positions,
)


class TestReserveSeat:
    def test_books_when_seats_are_free(self, ledger, make_instance, session_factory) -> None:
        instance = make_instance(capacity=2)

        result = ledger.reserve_seat(instance.id, "user-a")

        assert result.is_booked
        assert result.booking.state == BookingState.CONFIRMED.value
        assert result.booking.payment_mode == PaymentMode.DIRECT.value
        assert result.booking.package_id is None
        snapshot = assert_seat_invariant(session_factory, instance.id)
        assert snapshot["occupied"] == 1

    def test_credit_booking_draws_one_credit(
        self, ledger, make_instance, grant, session_factory
    ) -> None:
        instance = make_instance()
        package = grant("user-a", 3)

        result = ledger.reserve_seat(instance.id, "user-a", PaymentMode.CREDIT)

        assert result.booking.package_id == package.id
        assert package_remaining(session_factory, package.id) == 2

    def test_full_instance_routes_to_waitlist(
        self, ledger, make_instance, session_factory
    ) -> None:
        instance = make_instance(capacity=1)
        ledger.reserve_seat(instance.id, "user-a")

        second = ledger.reserve_seat(instance.id, "user-b")
        third = ledger.reserve_seat(instance.id, "user-c")

        assert second.is_waitlisted and third.is_waitlisted
        assert second.waitlist_entry.position == 1
        assert third.waitlist_entry.position == 2
        assert second.waitlist_entry.status == WaitlistStatus.WAITING.value
        snapshot = assert_seat_invariant(session_factory, instance.id)
        assert snapshot["occupied"] == 1

    def test_credit_user_is_not_charged_while_waiting(
        self, ledger, make_instance, grant, session_factory
    ) -> None:
        instance = make_instance(capacity=1)
        ledger.reserve_seat(instance.id, "user-a")
        package = grant("user-b", 2)

        result = ledger.reserve_seat(instance.id, "user-b", PaymentMode.CREDIT)

        assert result.is_waitlisted
        assert result.waitlist_entry.payment_mode == PaymentMode.CREDIT.value
        assert package_remaining(session_factory, package.id) == 2

    def test_duplicate_booking_is_rejected(self, ledger, make_instance, session_factory) -> None:
        instance = make_instance(capacity=3)
        ledger.reserve_seat(instance.id, "user-a")

        with pytest.raises(DuplicateBooking):
            ledger.reserve_seat(instance.id, "user-a")
        assert seat_snapshot(session_factory, instance.id)["occupied"] == 1

    def test_waiting_user_cannot_queue_twice(self, ledger, make_instance) -> None:
        instance = make_instance(capacity=1)
        ledger.reserve_seat(instance.id, "user-a")
        ledger.reserve_seat(instance.id, "user-b")

        with pytest.raises(DuplicateWaitlistEntry):
            ledger.reserve_seat(instance.id, "user-b")

    def test_waiting_user_takes_free_seat_directly(
        self, ledger, waitlist, make_instance, session_factory
    ) -> None:
        instance = make_instance(capacity=1)
        first = ledger.reserve_seat(instance.id, "user-a")
        queued_b = ledger.reserve_seat(instance.id, "user-b").waitlist_entry
        queued_c = ledger.reserve_seat(instance.id, "user-c").waitlist_entry
        ledger.cancel(first.booking.id, "user-a", promote=False)

        result = ledger.reserve_seat(instance.id, "user-b")

        assert result.is_booked
        entry_b = waitlist.get_entry(queued_b.id)
        assert entry_b.status == WaitlistStatus.CONFIRMED.value
        assert entry_b.position is None
        assert entry_b.booking_id == result.booking.id
        assert waitlist.get_entry(queued_c.id).position == 1
        assert_dense_positions(session_factory, instance.id)
        assert_seat_invariant(session_factory, instance.id)

    def test_insufficient_credit_takes_no_seat(
        self, ledger, make_instance, session_factory
    ) -> None:
        instance = make_instance()

        with pytest.raises(InsufficientCredit):
            ledger.reserve_seat(instance.id, "user-a", "credit")

        snapshot = seat_snapshot(session_factory, instance.id)
        assert snapshot["occupied"] == 0
        assert snapshot["confirmed"] == 0

    def test_insufficient_credit_also_blocks_waitlist(
        self, ledger, make_instance, session_factory
    ) -> None:
        instance = make_instance(capacity=1)
        ledger.reserve_seat(instance.id, "user-a")

        with pytest.raises(InsufficientCredit):
            ledger.reserve_seat(instance.id, "user-b", PaymentMode.CREDIT)
        assert waiting_positions(session_factory, instance.id) == []

    def test_started_instance_is_not_bookable(self, ledger, make_instance) -> None:
        instance = make_instance(starts_in=timedelta(minutes=-5))

        with pytest.raises(InstanceNotBookable):
            ledger.reserve_seat(instance.id, "user-a")

    def test_cancelled_instance_is_not_bookable(self, ledger, catalog, make_instance) -> None:
        instance = make_instance()
        catalog.cancel_instance(instance.id)

        with pytest.raises(InstanceNotBookable) as exc_info:
            ledger.reserve_seat(instance.id, "user-a")
        assert exc_info.value.details["status"] == InstanceStatus.CANCELLED.value

    def test_unknown_instance(self, ledger) -> None:
        with pytest.raises(NotFound):
            ledger.reserve_seat("01HZZZZZZZZZZZZZZZZZZZZZZZ", "user-a")


class TestReserveWithRetry:
    def test_lost_race_is_retried(self, ledger, make_instance, monkeypatch) -> None:
        instance = make_instance()
        real_reserve = ledger.reserve_seat
        calls = []

        def _flaky(*args, **kwargs) -> ReservationResult:
            calls.append(args)
            if len(calls) == 1:
                raise ConcurrentCapacityExceeded(instance.id)
            return real_reserve(*args, **kwargs)

        monkeypatch.setattr(ledger, "reserve_seat", _flaky)

        result = ledger.reserve_seat_with_retry(instance.id, "user-a", backoff_seconds=0)

        assert result.is_booked
        assert len(calls) == 2

    def test_gives_up_after_max_attempts(self, ledger, make_instance, monkeypatch) -> None:
        instance = make_instance()
        attempts = []

        def _always_conflict(*args, **kwargs) -> ReservationResult:
            attempts.append(1)
            raise ConcurrentCapacityExceeded(instance.id)

        monkeypatch.setattr(ledger, "reserve_seat", _always_conflict)

        with pytest.raises(ConcurrentCapacityExceeded):
            ledger.reserve_seat_with_retry(
                instance.id, "user-a", max_attempts=3, backoff_seconds=0
            )
        assert len(attempts) == 3

    def test_business_errors_are_not_retried(self, ledger, make_instance) -> None:
        instance = make_instance()
        ledger.reserve_seat(instance.id, "user-a")

        with pytest.raises(DuplicateBooking):
            ledger.reserve_seat_with_retry(instance.id, "user-a", backoff_seconds=0)


class TestCancel:
    def test_owner_cancel_frees_seat_and_refunds(
        self, ledger, make_instance, grant, notifier, session_factory
    ) -> None:
        instance = make_instance(capacity=2)
        package = grant("user-a", 1)
        booking = ledger.reserve_seat(instance.id, "user-a", PaymentMode.CREDIT).booking
        assert package_remaining(session_factory, package.id) == 0

        cancelled = ledger.cancel(booking.id, "user-a", reason="Can't make it")

        assert cancelled.state == BookingState.CANCELLED.value
        assert cancelled.cancelled_by_id == "user-a"
        assert cancelled.cancellation_reason == "Can't make it"
        assert package_remaining(session_factory, package.id) == 1
        snapshot = assert_seat_invariant(session_factory, instance.id)
        assert snapshot["occupied"] == 0

        [cancel_note] = notifier.of_kind(NotificationKind.CANCELLED)
        assert cancel_note["user_id"] == "user-a"
        assert cancel_note["payload"]["credit_refunded"] is True

    def test_seat_freed_goes_to_instructor_when_nobody_waits(
        self, ledger, make_instance, notifier
    ) -> None:
        instance = make_instance(capacity=2, instructor_id="instructor-7")
        booking = ledger.reserve_seat(instance.id, "user-a").booking

        ledger.cancel(booking.id, "user-a")

        [freed] = notifier.of_kind(NotificationKind.SEAT_FREED)
        assert freed["user_id"] == "instructor-7"
        assert freed["payload"]["free_seats"] == 2

    def test_cancel_promotes_waitlist_head_instead_of_freeing(
        self, ledger, waitlist, make_instance, notifier, session_factory
    ) -> None:
        instance = make_instance(capacity=1)
        booking = ledger.reserve_seat(instance.id, "user-a").booking
        entry_b = ledger.reserve_seat(instance.id, "user-b").waitlist_entry
        entry_c = ledger.reserve_seat(instance.id, "user-c").waitlist_entry

        ledger.cancel(booking.id, "user-a")

        promoted = waitlist.get_entry(entry_b.id)
        assert promoted.status == WaitlistStatus.PROMOTED.value
        assert promoted.position is None
        assert promoted.promotion_deadline() is not None
        assert waitlist.get_entry(entry_c.id).position == 1
        assert notifier.of_kind(NotificationKind.SEAT_FREED) == []
        [promotion] = notifier.of_kind(NotificationKind.PROMOTED)
        assert promotion["user_id"] == "user-b"
        assert promotion["payload"]["booking_id"] == promoted.booking_id
        assert isinstance(promotion["payload"]["confirm_by"], str)

        promoted_booking = ledger.get_booking(promoted.booking_id)
        assert promoted_booking.is_confirmed
        assert promoted_booking.via_waitlist is True
        snapshot = assert_seat_invariant(session_factory, instance.id)
        assert snapshot["occupied"] == 1
        assert_dense_positions(session_factory, instance.id)

    def test_cancel_without_promotion_leaves_seat_free(
        self, ledger, make_instance, notifier, session_factory
    ) -> None:
        instance = make_instance(capacity=1)
        booking = ledger.reserve_seat(instance.id, "user-a").booking
        ledger.reserve_seat(instance.id, "user-b")

        ledger.cancel(booking.id, "user-a", promote=False)

        assert seat_snapshot(session_factory, instance.id)["occupied"] == 0
        assert waiting_positions(session_factory, instance.id) == [1]
        assert notifier.of_kind(NotificationKind.PROMOTED) == []

    def test_other_user_cannot_cancel(self, ledger, make_instance) -> None:
        instance = make_instance()
        booking = ledger.reserve_seat(instance.id, "user-a").booking

        with pytest.raises(ForbiddenException):
            ledger.cancel(booking.id, "user-b")

    def test_operator_can_cancel_any_booking(self, ledger, make_instance) -> None:
        instance = make_instance()
        booking = ledger.reserve_seat(instance.id, "user-a").booking

        cancelled = ledger.cancel(booking.id, "operator-1", as_operator=True)

        assert cancelled.cancelled_by_id == "operator-1"

    def test_cancelling_twice_is_rejected(self, ledger, make_instance, session_factory) -> None:
        instance = make_instance()
        booking = ledger.reserve_seat(instance.id, "user-a").booking
        ledger.cancel(booking.id, "user-a")

        with pytest.raises(InvalidBookingState):
            ledger.cancel(booking.id, "user-a")
        assert seat_snapshot(session_factory, instance.id)["occupied"] == 0

    def test_user_can_rebook_after_cancelling(self, ledger, make_instance) -> None:
        instance = make_instance()
        booking = ledger.reserve_seat(instance.id, "user-a").booking
        ledger.cancel(booking.id, "user-a")

        result = ledger.reserve_seat(instance.id, "user-a")

        assert result.is_booked
        assert result.booking.id != booking.id

    def test_direct_payment_cancel_refunds_nothing(
        self, ledger, make_instance, grant, notifier, session_factory
    ) -> None:
        instance = make_instance()
        package = grant("user-a", 2)
        booking = ledger.reserve_seat(instance.id, "user-a", PaymentMode.DIRECT).booking

        ledger.cancel(booking.id, "user-a")

        assert package_remaining(session_factory, package.id) == 2
        [note] = notifier.of_kind(NotificationKind.CANCELLED)
        assert note["payload"]["credit_refunded"] is False

    def test_owner_cannot_cancel_after_class_completed(
        self, ledger, catalog, make_instance, grant, session_factory
    ) -> None:
        instance = make_instance()
        package = grant("user-a", 1)
        booking = ledger.reserve_seat(instance.id, "user-a", PaymentMode.CREDIT).booking
        catalog.complete_instance(instance.id)

        with pytest.raises(InstanceNotBookable) as exc_info:
            ledger.cancel(booking.id, "user-a")

        assert exc_info.value.details["status"] == InstanceStatus.COMPLETED.value
        assert ledger.get_booking(booking.id).state == BookingState.CONFIRMED.value
        assert package_remaining(session_factory, package.id) == 0

    def test_owner_cannot_cancel_class_in_progress(
        self, ledger, catalog, make_instance
    ) -> None:
        instance = make_instance()
        booking = ledger.reserve_seat(instance.id, "user-a").booking
        catalog.start_instance(instance.id)

        with pytest.raises(InstanceNotBookable):
            ledger.cancel(booking.id, "user-a")

    def test_operator_can_cancel_class_in_progress(
        self, ledger, catalog, make_instance, session_factory
    ) -> None:
        instance = make_instance()
        booking = ledger.reserve_seat(instance.id, "user-a").booking
        catalog.start_instance(instance.id)

        cancelled = ledger.cancel(booking.id, "desk-1", as_operator=True)

        assert cancelled.state == BookingState.CANCELLED.value
        assert assert_seat_invariant(session_factory, instance.id)["occupied"] == 0

    def test_cancel_uses_the_given_clock(self, ledger, make_instance) -> None:
        instance = make_instance()
        booking = ledger.reserve_seat(instance.id, "user-a").booking
        at = utc_now() - timedelta(hours=3)

        cancelled = ledger.cancel(booking.id, "user-a", now=at)

        assert ensure_utc(cancelled.cancelled_at) == at
        assert ensure_utc(ledger.get_booking(booking.id).cancelled_at) == at


class TestMarkOutcome:
    def _booked(self, ledger, make_instance):
        instance = make_instance(capacity=2, starts_in=timedelta(hours=2), duration_minutes=45)
        booking = ledger.reserve_seat(instance.id, "user-a").booking
        return instance, booking

    def test_outcome_before_end_is_rejected(self, ledger, make_instance) -> None:
        _, booking = self._booked(ledger, make_instance)

        with pytest.raises(OutcomeTooEarly):
            ledger.mark_outcome(booking.id, "attended")

    def test_attended_releases_seat(self, ledger, make_instance, session_factory) -> None:
        instance, booking = self._booked(ledger, make_instance)
        after_class = instance.ends_at + timedelta(minutes=1)

        updated = ledger.mark_outcome(booking.id, "attended", now=after_class)

        assert updated.state == BookingState.ATTENDED.value
        assert updated.outcome_recorded_at is not None
        snapshot = assert_seat_invariant(session_factory, instance.id)
        assert snapshot["occupied"] == 0

    def test_repeating_same_outcome_is_a_no_op(
        self, ledger, make_instance, session_factory
    ) -> None:
        instance, booking = self._booked(ledger, make_instance)
        after_class = instance.ends_at + timedelta(minutes=1)
        ledger.mark_outcome(booking.id, "no_show", now=after_class)

        again = ledger.mark_outcome(booking.id, "no_show", now=after_class)

        assert again.state == BookingState.NO_SHOW.value
        assert seat_snapshot(session_factory, instance.id)["occupied"] == 0

    def test_conflicting_outcome_is_rejected(self, ledger, make_instance) -> None:
        instance, booking = self._booked(ledger, make_instance)
        after_class = instance.ends_at + timedelta(minutes=1)
        ledger.mark_outcome(booking.id, "attended", now=after_class)

        with pytest.raises(OutcomeAlreadyRecorded) as exc_info:
            ledger.mark_outcome(booking.id, "no_show", now=after_class)
        assert exc_info.value.details["recorded"] == "attended"

    def test_cancelled_booking_has_no_outcome(self, ledger, make_instance) -> None:
        instance, booking = self._booked(ledger, make_instance)
        ledger.cancel(booking.id, "user-a")

        with pytest.raises(InvalidBookingState):
            ledger.mark_outcome(booking.id, "attended", now=instance.ends_at + timedelta(hours=1))

    def test_unknown_outcome_value(self, ledger, make_instance) -> None:
        _, booking = self._booked(ledger, make_instance)
        with pytest.raises(ValueError):
            ledger.mark_outcome(booking.id, "late")

    def test_outcome_uses_the_given_clock(self, ledger, make_instance) -> None:
        instance, booking = self._booked(ledger, make_instance)
        after_class = instance.ends_at + timedelta(minutes=7)

        updated = ledger.mark_outcome(booking.id, "attended", now=after_class)

        assert ensure_utc(updated.outcome_recorded_at) == after_class
        assert ensure_utc(ledger.get_booking(booking.id).outcome_recorded_at) == after_class


class TestReminders:
    def test_reminder_sent_once_per_booking(
        self, ledger, make_instance, notifier
    ) -> None:
        soon = make_instance(starts_in=timedelta(minutes=30))
        later = make_instance(starts_in=timedelta(days=3))
        ledger.reserve_seat(soon.id, "user-a")
        ledger.reserve_seat(later.id, "user-a")

        assert ledger.send_reminders() == 1
        assert ledger.send_reminders() == 0

        [reminder] = notifier.of_kind(NotificationKind.REMINDER_DUE)
        assert reminder["user_id"] == "user-a"
        assert reminder["payload"]["instance_id"] == soon.id
        assert reminder["payload"]["starts_at"] == soon.starts_at.isoformat()

    def test_cancelled_bookings_get_no_reminder(self, ledger, make_instance) -> None:
        soon = make_instance(starts_in=timedelta(minutes=20))
        booking = ledger.reserve_seat(soon.id, "user-a").booking
        ledger.cancel(booking.id, "user-a")

        assert ledger.send_reminders() == 0


def test_notifications_are_sent_after_lock_release(
    ledger: BookingLedgerService, make_instance, grant, notifier
) -> None:
    instance = make_instance(capacity=1)
    grant("user-b", 2)
    booking = ledger.reserve_seat(instance.id, "user-a").booking
    ledger.reserve_seat(instance.id, "user-b", PaymentMode.CREDIT)

    ledger.cancel(booking.id, "user-a")

    assert {NotificationKind.CANCELLED, NotificationKind.PROMOTED} <= set(notifier.kinds())
    assert all(call["lock_held"] is False for call in notifier.calls)


def test_failing_notifier_does_not_undo_cancellation(
    db, make_instance, session_factory
) -> None:
    instance = make_instance(capacity=1)
    failing = BookingLedgerService(db, FailingNotifier())
    booking = failing.reserve_seat(instance.id, "user-a").booking

    failing.cancel(booking.id, "user-a")

    assert failing.get_booking(booking.id).state == BookingState.CANCELLED.value
    assert seat_snapshot(session_factory, instance.id)["occupied"] == 0


def test_confirmed_promotion_cancelled_by_owner_is_declined(
    ledger, waitlist, make_instance
) -> None:
    instance = make_instance(capacity=1)
    booking = ledger.reserve_seat(instance.id, "user-a").booking
    entry = ledger.reserve_seat(instance.id, "user-b").waitlist_entry
    ledger.cancel(booking.id, "user-a")
    promoted = waitlist.get_entry(entry.id)

    ledger.cancel(promoted.booking_id, "user-b")

    assert waitlist.get_entry(entry.id).status == WaitlistStatus.DECLINED.value
    assert waitlist.get_entry(entry.id).resolved_at is not None


def test_cancel_on_full_class_keeps_occupancy(
    ledger, waitlist, make_instance, session_factory
) -> None:
    instance = make_instance(capacity=3)
    bookings = [ledger.reserve_seat(instance.id, f"user-{n}").booking for n in range(3)]
    head = ledger.reserve_seat(instance.id, "waiter-1").waitlist_entry
    second = ledger.reserve_seat(instance.id, "waiter-2").waitlist_entry

    ledger.cancel(bookings[0].id, "user-0")

    assert waitlist.get_entry(head.id).status == WaitlistStatus.PROMOTED.value
    assert waitlist.get_entry(second.id).position == 1
    snapshot = assert_seat_invariant(session_factory, instance.id)
    assert snapshot["occupied"] == 3


def test_last_credit_cannot_be_spent_twice(ledger, make_instance, grant, session_factory) -> None:
    first = make_instance()
    second = make_instance()
    package = grant("user-a", 1)

    ledger.reserve_seat(first.id, "user-a", PaymentMode.CREDIT)
    assert package_remaining(session_factory, package.id) == 0

    with pytest.raises(InsufficientCredit):
        ledger.reserve_seat(second.id, "user-a", PaymentMode.CREDIT)
    assert seat_snapshot(session_factory, second.id)["confirmed"] == 0
