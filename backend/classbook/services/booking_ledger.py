# backend/classbook/services/booking_ledger.py
"""
Booking Ledger for the class booking engine.

Owns Booking state and ScheduledInstance.occupied_seats. Every operation
that touches a seat runs under the per-instance lock, and every seat change
is a conditional UPDATE inside the same transaction as the booking row and
any credit movement, so a reader never sees one without the other.

Notifications raised here are dispatched only after the transaction has
committed and the instance lock has been released.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
import random
import time
from typing import TYPE_CHECKING, List, Literal, Optional, Union

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import (
    BookingOutcome,
    BookingState,
    InstanceStatus,
    NotificationKind,
    PaymentMode,
    WaitlistStatus,
)
from ..core.exceptions import (
    ConcurrentCapacityExceeded,
    DuplicateBooking,
    DuplicateWaitlistEntry,
    ForbiddenException,
    InstanceLockTimeout,
    InstanceNotBookable,
    InsufficientCredit,
    InvalidBookingState,
    NotFound,
    OutcomeAlreadyRecorded,
    OutcomeTooEarly,
)
from ..core.instance_lock import instance_lock
from ..core.timezone_utils import ensure_utc, utc_now
from ..models.booking import Booking
from ..models.catalog import ScheduledInstance
from ..models.waitlist import WaitlistEntry
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .credit_ledger import CreditLedgerService
from .notifications import NotificationOutbox, NotificationPort

if TYPE_CHECKING:
    from .waitlist_manager import WaitlistManagerService

logger = logging.getLogger(__name__)

SYSTEM_ACTOR_ID = "system"


@dataclass
class ReservationResult:
    """Outcome of reserve_seat: a confirmed booking or a waitlist entry."""

    status: Literal["booked", "waitlisted"]
    booking: Optional[Booking] = None
    waitlist_entry: Optional[WaitlistEntry] = None

    @property
    def is_booked(self) -> bool:
        return self.status == "booked"

    @property
    def is_waitlisted(self) -> bool:
        return self.status == "waitlisted"


def _retry_delay(attempt: int, base_seconds: float) -> float:
    base = base_seconds * (2 ** (attempt - 1))
    return base + random.uniform(0, base_seconds * 0.5)


class BookingLedgerService(BaseService):
    """Reservations, cancellations and attendance outcomes."""

    def __init__(
        self,
        db: Session,
        notifier: Optional[NotificationPort] = None,
        credit_ledger: Optional[CreditLedgerService] = None,
        waitlist: Optional["WaitlistManagerService"] = None,
    ):
        super().__init__(db, notifier)
        self.instance_repository = RepositoryFactory.create_instance_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.waitlist_repository = RepositoryFactory.create_waitlist_repository(db)
        self.credit_ledger = credit_ledger or CreditLedgerService(db, self.notifier)
        self._waitlist = waitlist

    @property
    def waitlist(self) -> "WaitlistManagerService":
        if self._waitlist is None:
            from .waitlist_manager import WaitlistManagerService

            self._waitlist = WaitlistManagerService(self.db, self.notifier, ledger=self)
        return self._waitlist

    def _get_instance(self, instance_id: str) -> ScheduledInstance:
        instance = self.instance_repository.get_for_update(instance_id)
        if instance is None:
            raise NotFound("ScheduledInstance", instance_id)
        return instance

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            raise NotFound("Booking", booking_id)
        return booking

    def list_instance_bookings(
        self, instance_id: str, states: Optional[List[str]] = None
    ) -> List[Booking]:
        return self.booking_repository.list_for_instance(instance_id, states)

    def _create_booking(
        self,
        instance: ScheduledInstance,
        user_id: str,
        payment_mode: PaymentMode,
        *,
        package_id: Optional[str],
        now: datetime,
        via_waitlist: bool = False,
    ) -> Booking:
        """Take a seat, draw a credit if needed, and write the booking. Caller commits."""
        if not self.instance_repository.try_reserve_seat(instance.id):
            raise ConcurrentCapacityExceeded(instance.id)

        drawn_package_id = None
        if payment_mode == PaymentMode.CREDIT:
            package = self.credit_ledger.consume(
                user_id, package_id, template_id=instance.template_id, now=now
            )
            drawn_package_id = package.id

        return self.booking_repository.create(
            instance_id=instance.id,
            user_id=user_id,
            state=BookingState.CONFIRMED.value,
            payment_mode=payment_mode.value,
            package_id=drawn_package_id,
            via_waitlist=via_waitlist,
            created_at=now,
        )

    @BaseService.measure_operation("reserve_seat")
    def reserve_seat(
        self,
        instance_id: str,
        user_id: str,
        payment_mode: Union[PaymentMode, str] = PaymentMode.DIRECT,
        *,
        package_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReservationResult:
        """
        Book a seat, or join the waitlist when the class is full.

        Raises:
            NotFound: unknown instance
            InstanceNotBookable: instance not scheduled or already started
            DuplicateBooking: user already holds a confirmed booking
            InsufficientCredit: credit mode without a usable package
            ConcurrentCapacityExceeded: the last seat was taken mid-reservation
        """
        mode = PaymentMode(payment_mode)
        current = now or utc_now()
        booking: Optional[Booking] = None

        with instance_lock(instance_id):
            with self.transaction():
                instance = self._get_instance(instance_id)
                reason = instance.not_bookable_reason(current)
                if reason:
                    raise InstanceNotBookable(instance.id, str(instance.status), reason)

                if self.booking_repository.get_confirmed_for_user(instance_id, user_id):
                    raise DuplicateBooking(instance_id, user_id)

                queued = self.waitlist_repository.get_active_for_user(instance_id, user_id)
                if queued is not None and not queued.is_waiting:
                    raise DuplicateBooking(instance_id, user_id)

                if mode == PaymentMode.CREDIT and (
                    self.credit_ledger.find_usable_package(
                        user_id,
                        template_id=instance.template_id,
                        package_id=package_id,
                        now=current,
                    )
                    is None
                ):
                    raise InsufficientCredit(user_id, package_id)

                if instance.free_seats > 0:
                    try:
                        booking = self._create_booking(
                            instance, user_id, mode, package_id=package_id, now=current
                        )
                    except ConcurrentCapacityExceeded:
                        prometheus_metrics.record_reservation("conflict")
                        raise
                    if queued is not None:
                        self.waitlist.withdraw_for_booking(queued, booking, now=current)
                elif queued is not None:
                    raise DuplicateWaitlistEntry(instance_id, user_id)

            if booking is not None:
                prometheus_metrics.record_reservation("booked")
                self.logger.info(
                    "Seat reserved",
                    extra={
                        "instance_id": instance_id,
                        "user_id": user_id,
                        "booking_id": booking.id,
                        "payment_mode": mode.value,
                    },
                )
                return ReservationResult(status="booked", booking=booking)

            entry = self.waitlist.enqueue(instance_id, user_id, mode, now=current)

        prometheus_metrics.record_reservation("waitlisted")
        return ReservationResult(status="waitlisted", waitlist_entry=entry)

    def reserve_seat_with_retry(
        self,
        instance_id: str,
        user_id: str,
        payment_mode: Union[PaymentMode, str] = PaymentMode.DIRECT,
        *,
        package_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> ReservationResult:
        """
        reserve_seat with bounded retries on the retryable conflicts.

        A lost race for the last seat is retried; the retry then finds the
        class full and lands on the waitlist.
        """
        attempts = max_attempts or settings.reserve_max_attempts
        base_delay = (
            settings.reserve_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        )

        attempt = 1
        while True:
            try:
                return self.reserve_seat(
                    instance_id, user_id, payment_mode, package_id=package_id, now=now
                )
            except (ConcurrentCapacityExceeded, InstanceLockTimeout) as exc:
                if attempt >= attempts:
                    raise

                delay = _retry_delay(attempt, base_delay)
                self.logger.warning(
                    "Reservation conflict, retrying",
                    extra={
                        "event": "reserve_retry",
                        "instance_id": instance_id,
                        "attempt": attempt,
                        "delay": delay,
                        "error": exc.code,
                    },
                )
                time.sleep(delay)
                attempt += 1

    def book_promoted_user(
        self,
        instance: ScheduledInstance,
        user_id: str,
        payment_mode: Union[PaymentMode, str],
        *,
        now: datetime,
    ) -> Booking:
        """
        Book the waitlist head directly, skipping the book-or-queue branch.

        Runs inside the caller's transaction with the instance lock held.
        """
        reason = instance.not_bookable_reason(now)
        if reason:
            raise InstanceNotBookable(instance.id, str(instance.status), reason)
        if self.booking_repository.get_confirmed_for_user(instance.id, user_id):
            raise DuplicateBooking(instance.id, user_id)
        return self._create_booking(
            instance,
            user_id,
            PaymentMode(payment_mode),
            package_id=None,
            now=now,
            via_waitlist=True,
        )

    @BaseService.measure_operation("cancel_booking")
    def cancel(
        self,
        booking_id: str,
        acting_user_id: str,
        *,
        as_operator: bool = False,
        reason: Optional[str] = None,
        promote: bool = True,
        outbox: Optional[NotificationOutbox] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Cancel a confirmed booking, free its seat and refund its credit.

        The freed seat is offered to the waitlist head before this returns.
        SEAT_FREED goes to the instructor only if nobody could be promoted.
        Owners can cancel only while the class is still scheduled; operators
        can cancel at any time.

        Raises:
            NotFound: unknown booking
            ForbiddenException: actor is neither the owner nor an operator
            InvalidBookingState: booking is not confirmed
            InstanceNotBookable: owner cancel after the class started or ended
        """
        current = now or utc_now()
        booking = self.get_booking(booking_id)
        if not as_operator and booking.user_id != acting_user_id:
            raise ForbiddenException(
                "Only the booking owner or an operator can cancel this booking",
                code="CANCEL_FORBIDDEN",
                details={"booking_id": booking_id},
            )
        instance_id = str(booking.instance_id)

        with self.notification_scope(outbox) as box, instance_lock(instance_id):
            with self.transaction(box):
                locked = self.booking_repository.get_for_update(booking_id)
                if locked is None:
                    raise NotFound("Booking", booking_id)
                booking = locked
                if not booking.is_confirmed:
                    raise InvalidBookingState(booking.id, str(booking.state), "cancel")
                if not as_operator:
                    instance = self._get_instance(instance_id)
                    if instance.status != InstanceStatus.SCHEDULED.value:
                        raise InstanceNotBookable(
                            instance.id,
                            str(instance.status),
                            f"Class can no longer be cancelled (status: {instance.status})",
                        )

                self.cancel_locked(booking, acting_user_id, box, reason=reason, now=current)

            self.logger.info(
                "Booking cancelled",
                extra={
                    "booking_id": booking_id,
                    "instance_id": instance_id,
                    "cancelled_by": acting_user_id,
                },
            )
            if promote:
                self.offer_freed_seat(instance_id, box, now=current)

        return booking

    def cancel_locked(
        self,
        booking: Booking,
        acting_user_id: str,
        outbox: NotificationOutbox,
        *,
        reason: Optional[str] = None,
        notification_kind: NotificationKind = NotificationKind.CANCELLED,
        entry_status: Optional[WaitlistStatus] = None,
        now: datetime,
    ) -> bool:
        """
        Cancel a row-locked, confirmed booking inside the caller's transaction.

        Frees the seat, refunds the credit and resolves a pending promotion
        tied to the booking. Nobody is promoted here. Returns True if a
        credit went back to its package.
        """
        instance_id = str(booking.instance_id)
        booking.cancel(acting_user_id, reason, now=now)
        self.booking_repository.flush()
        self.instance_repository.release_seat(instance_id)

        refunded = False
        if booking.is_credit_funded:
            refunded = self.credit_ledger.refund(booking.user_id, booking.package_id)

        if entry_status is None:
            entry_status = (
                WaitlistStatus.DECLINED
                if acting_user_id == booking.user_id
                else WaitlistStatus.CANCELLED
            )
        self.waitlist.close_promotion_for_booking(booking.id, entry_status, now=now)

        outbox.add(
            booking.user_id,
            notification_kind,
            booking_id=booking.id,
            instance_id=instance_id,
            cancelled_by=acting_user_id,
            reason=reason,
            credit_refunded=refunded,
        )
        return refunded

    def offer_freed_seat(
        self, instance_id: str, outbox: NotificationOutbox, *, now: datetime
    ) -> Optional[WaitlistEntry]:
        """Promote the waitlist head, or tell the instructor a seat is open."""
        promoted = self.waitlist.promote_if_pending(instance_id, outbox=outbox, now=now)
        if promoted is None:
            with self.transaction(outbox):
                instance = self._get_instance(instance_id)
                if instance.free_seats > 0:
                    outbox.add(
                        str(instance.instructor_id),
                        NotificationKind.SEAT_FREED,
                        instance_id=instance_id,
                        free_seats=instance.free_seats,
                    )
        return promoted

    def cancel_all_for_instance(
        self,
        instance_id: str,
        outbox: NotificationOutbox,
        *,
        acting_user_id: str = SYSTEM_ACTOR_ID,
        reason: Optional[str] = None,
        now: datetime,
    ) -> int:
        """
        Cancel and refund every confirmed booking without promoting anyone.

        Runs inside the caller's transaction with the instance lock held, so
        the whole batch commits or rolls back together.
        """
        bookings = self.booking_repository.list_for_instance(
            instance_id, [BookingState.CONFIRMED.value]
        )
        cancelled = 0
        for listed in bookings:
            booking = self.booking_repository.get_for_update(listed.id)
            if booking is None or not booking.is_confirmed:
                continue
            self.cancel_locked(
                booking,
                acting_user_id,
                outbox,
                reason=reason,
                notification_kind=NotificationKind.INSTANCE_CANCELLED,
                entry_status=WaitlistStatus.CANCELLED,
                now=now,
            )
            cancelled += 1
        return cancelled

    @BaseService.measure_operation("mark_outcome")
    def mark_outcome(
        self,
        booking_id: str,
        outcome: Union[BookingOutcome, str],
        *,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Record attended or no_show once the class has ended.

        Repeating the recorded outcome is a no-op. The seat is released
        when the booking leaves the confirmed state.

        Raises:
            OutcomeAlreadyRecorded: a different outcome was recorded earlier
            OutcomeTooEarly: the class has not ended yet
            InvalidBookingState: the booking was cancelled
        """
        requested = BookingOutcome(outcome)
        current = now or utc_now()
        booking = self.get_booking(booking_id)

        with instance_lock(str(booking.instance_id)):
            with self.transaction():
                locked = self.booking_repository.get_for_update(booking_id)
                if locked is None:
                    raise NotFound("Booking", booking_id)
                booking = locked

                if booking.state == requested.value:
                    return booking
                if booking.state in (BookingState.ATTENDED.value, BookingState.NO_SHOW.value):
                    raise OutcomeAlreadyRecorded(booking.id, str(booking.state), requested.value)
                if not booking.is_confirmed:
                    raise InvalidBookingState(booking.id, str(booking.state), "record an outcome for")

                instance = self._get_instance(str(booking.instance_id))
                if current < instance.ends_at:
                    raise OutcomeTooEarly(booking.id, instance.ends_at.isoformat())

                booking.record_outcome(requested.value, now=current)
                self.booking_repository.flush()
                self.instance_repository.release_seat(instance.id)
                self.waitlist.close_promotion_for_booking(
                    booking.id, WaitlistStatus.CONFIRMED, now=current
                )

        self.logger.info(
            "Booking outcome recorded",
            extra={"booking_id": booking_id, "outcome": requested.value},
        )
        return booking

    @BaseService.measure_operation("send_reminders")
    def send_reminders(self, *, now: Optional[datetime] = None) -> int:
        """Emit REMINDER_DUE once per confirmed booking starting within the lead time."""
        current = now or utc_now()
        horizon = current + timedelta(minutes=settings.reminder_lead_minutes)

        with self.notification_scope() as box:
            with self.transaction(box):
                due = self.booking_repository.list_due_for_reminder(current, horizon)
                for booking in due:
                    booking.reminder_sent_at = current
                    box.add(
                        booking.user_id,
                        NotificationKind.REMINDER_DUE,
                        booking_id=booking.id,
                        instance_id=booking.instance_id,
                        starts_at=ensure_utc(booking.instance.start_time),
                    )
        if due:
            self.logger.info("Booking reminders queued", extra={"count": len(due)})
        return len(due)


__all__ = ["BookingLedgerService", "ReservationResult", "SYSTEM_ACTOR_ID"]
