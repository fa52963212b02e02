# backend/classbook/services/waitlist_manager.py
"""
Waitlist Manager for the class booking engine.

Owns WaitlistEntry.position. Waiting entries of an instance are numbered
1..N in join order; whenever an entry leaves the queue its position is
cleared and every entry behind it moves up by one, in the same transaction
and under the same per-instance lock as the reservation path.

Promotion offers a freed seat to the head of the queue. The promoted user
gets a confirmed booking straight away and has promotion_window_hours to
confirm it; an unconfirmed promotion is expired by the periodic sweep,
which cancels the booking and offers the seat to the next entry.
"""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import TYPE_CHECKING, List, Optional, Union

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import NotificationKind, PaymentMode, WaitlistStatus
from ..core.exceptions import (
    ConcurrentCapacityExceeded,
    DuplicateBooking,
    DuplicateWaitlistEntry,
    ForbiddenException,
    InstanceNotBookable,
    InsufficientCredit,
    NotFound,
    PromotionExpired,
    ValidationException,
)
from ..core.instance_lock import instance_lock
from ..core.timezone_utils import utc_now
from ..models.booking import Booking
from ..models.waitlist import WaitlistEntry
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .notifications import NotificationOutbox, NotificationPort

if TYPE_CHECKING:
    from .booking_ledger import BookingLedgerService

logger = logging.getLogger(__name__)


class WaitlistManagerService(BaseService):
    """FIFO waitlist per scheduled instance."""

    def __init__(
        self,
        db: Session,
        notifier: Optional[NotificationPort] = None,
        ledger: Optional["BookingLedgerService"] = None,
    ):
        super().__init__(db, notifier)
        self.waitlist_repository = RepositoryFactory.create_waitlist_repository(db)
        self.instance_repository = RepositoryFactory.create_instance_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self._ledger = ledger

    @property
    def ledger(self) -> "BookingLedgerService":
        if self._ledger is None:
            from .booking_ledger import BookingLedgerService

            self._ledger = BookingLedgerService(self.db, self.notifier, waitlist=self)
        return self._ledger

    def get_entry(self, entry_id: str) -> WaitlistEntry:
        entry = self.waitlist_repository.get_by_id(entry_id)
        if entry is None:
            raise NotFound("WaitlistEntry", entry_id)
        return entry

    def list_queue(self, instance_id: str) -> List[WaitlistEntry]:
        """Waiting entries in position order."""
        return self.waitlist_repository.list_waiting(instance_id)

    def queue_length(self, instance_id: str) -> int:
        return self.waitlist_repository.max_position(instance_id)

    # Position bookkeeping. Callers hold the instance lock and own the transaction.

    def _take_out_of_queue(
        self, entry: WaitlistEntry, status: WaitlistStatus, now: datetime
    ) -> None:
        removed_position = entry.position
        entry.status = status.value
        entry.position = None
        entry.resolved_at = now
        self.waitlist_repository.flush()
        if removed_position is not None:
            self.waitlist_repository.close_gap(str(entry.instance_id), int(removed_position))

    def withdraw_for_booking(
        self, entry: WaitlistEntry, booking: Booking, *, now: datetime
    ) -> None:
        """Close a waiting entry whose user just booked a free seat directly."""
        entry.booking_id = booking.id
        self._take_out_of_queue(entry, WaitlistStatus.CONFIRMED, now)

    def close_promotion_for_booking(
        self, booking_id: str, status: WaitlistStatus, *, now: datetime
    ) -> Optional[WaitlistEntry]:
        """Resolve a pending promotion whose booking left the confirmed state."""
        entry = self.waitlist_repository.get_by_booking_id(booking_id)
        if entry is None or not entry.is_pending_promotion:
            return None
        entry.status = status.value
        entry.promotion_expires_at = None
        entry.resolved_at = now
        self.waitlist_repository.flush()
        return entry

    def _mark_promoted(self, entry: WaitlistEntry, booking: Booking, now: datetime) -> None:
        entry.booking_id = booking.id
        entry.promoted_at = now
        entry.promotion_expires_at = now + timedelta(hours=settings.promotion_window_hours)
        self._take_out_of_queue(entry, WaitlistStatus.PROMOTED, now)

    @BaseService.measure_operation("waitlist_enqueue")
    def enqueue(
        self,
        instance_id: str,
        user_id: str,
        payment_mode: Union[PaymentMode, str] = PaymentMode.DIRECT,
        *,
        now: Optional[datetime] = None,
    ) -> WaitlistEntry:
        """
        Append the user to the back of the queue.

        Raises:
            NotFound: unknown instance
            InstanceNotBookable: instance not scheduled or already started
            DuplicateWaitlistEntry: user already queued or booked
        """
        mode = PaymentMode(payment_mode)
        current = now or utc_now()

        with instance_lock(instance_id), self.transaction():
            instance = self.instance_repository.get_for_update(instance_id)
            if instance is None:
                raise NotFound("ScheduledInstance", instance_id)
            reason = instance.not_bookable_reason(current)
            if reason:
                raise InstanceNotBookable(instance.id, str(instance.status), reason)

            if self.booking_repository.get_confirmed_for_user(
                instance_id, user_id
            ) or self.waitlist_repository.get_active_for_user(instance_id, user_id):
                raise DuplicateWaitlistEntry(instance_id, user_id)

            entry = self.waitlist_repository.create(
                instance_id=instance_id,
                user_id=user_id,
                payment_mode=mode.value,
                position=self.waitlist_repository.max_position(instance_id) + 1,
                status=WaitlistStatus.WAITING.value,
                joined_at=current,
            )

        self.logger.info(
            "Joined waitlist",
            extra={"instance_id": instance_id, "user_id": user_id, "position": entry.position},
        )
        return entry

    @BaseService.measure_operation("waitlist_leave")
    def leave(
        self, instance_id: str, user_id: str, *, now: Optional[datetime] = None
    ) -> WaitlistEntry:
        """Remove a waiting user from the queue and close the gap."""
        current = now or utc_now()
        with instance_lock(instance_id), self.transaction():
            entry = self.waitlist_repository.get_active_for_user(instance_id, user_id)
            if entry is None:
                raise NotFound("WaitlistEntry", f"{instance_id}:{user_id}")
            if not entry.is_waiting:
                raise ValidationException(
                    "A promoted entry is released by cancelling its booking",
                    code="WAITLIST_ENTRY_PROMOTED",
                    details={"entry_id": entry.id},
                )
            self._take_out_of_queue(entry, WaitlistStatus.LEFT, current)
        return entry

    @BaseService.measure_operation("waitlist_promote")
    def promote_if_pending(
        self,
        instance_id: str,
        *,
        outbox: Optional[NotificationOutbox] = None,
        now: Optional[datetime] = None,
    ) -> Optional[WaitlistEntry]:
        """
        Offer a free seat to the head of the queue.

        A head that can no longer be booked (no usable credit, already
        booked) is skipped and the next entry is tried. Each candidate is
        removed from the queue either way, so the loop ends after at most
        one pass over the queue. Safe to call with an empty queue.

        Returns:
            The promoted entry, or None if nobody was promoted
        """
        current = now or utc_now()

        with self.notification_scope(outbox) as box, instance_lock(instance_id):
            while True:
                head_id: Optional[str] = None
                try:
                    with self.transaction(box):
                        instance = self.instance_repository.get_for_update(instance_id)
                        if instance is None or instance.free_seats <= 0:
                            return None
                        head = self.waitlist_repository.get_head(instance_id)
                        if head is None:
                            return None
                        head_id = head.id

                        booking = self.ledger.book_promoted_user(
                            instance, str(head.user_id), str(head.payment_mode), now=current
                        )
                        self._mark_promoted(head, booking, current)
                        box.add(
                            head.user_id,
                            NotificationKind.PROMOTED,
                            entry_id=head.id,
                            booking_id=booking.id,
                            instance_id=instance_id,
                            confirm_by=head.promotion_expires_at,
                        )
                except (InsufficientCredit, DuplicateBooking) as exc:
                    prometheus_metrics.record_promotion("skipped")
                    self.logger.warning(
                        "Skipping waitlist entry that can no longer be booked",
                        extra={"instance_id": instance_id, "entry_id": head_id, "reason": exc.code},
                    )
                    self._skip_entry(head_id, box, current)
                    continue
                except (InstanceNotBookable, ConcurrentCapacityExceeded) as exc:
                    prometheus_metrics.record_promotion("stopped")
                    self.logger.warning(
                        "Waitlist promotion stopped",
                        extra={"instance_id": instance_id, "entry_id": head_id, "reason": exc.code},
                    )
                    return None

                prometheus_metrics.record_promotion("promoted")
                self.logger.info(
                    "Promoted waitlist entry",
                    extra={"instance_id": instance_id, "entry_id": head.id, "booking_id": booking.id},
                )
                return head

    def _skip_entry(
        self, entry_id: Optional[str], outbox: NotificationOutbox, now: datetime
    ) -> None:
        if entry_id is None:
            return
        with self.transaction(outbox):
            entry = self.waitlist_repository.get_for_update(entry_id)
            if entry is not None and entry.is_waiting:
                self._take_out_of_queue(entry, WaitlistStatus.SKIPPED, now)

    @BaseService.measure_operation("waitlist_confirm_promotion")
    def confirm_promotion(
        self, entry_id: str, user_id: str, *, now: Optional[datetime] = None
    ) -> WaitlistEntry:
        """
        Accept a promotion within its window. Confirming twice is a no-op.

        Raises:
            ForbiddenException: entry belongs to another user
            PromotionExpired: the window has passed
        """
        current = now or utc_now()
        entry = self.get_entry(entry_id)
        if entry.user_id != user_id:
            raise ForbiddenException(
                "Only the waitlisted user can confirm this promotion",
                code="CONFIRM_FORBIDDEN",
                details={"entry_id": entry_id},
            )

        with instance_lock(str(entry.instance_id)), self.transaction():
            locked = self.waitlist_repository.get_for_update(entry_id)
            if locked is None:
                raise NotFound("WaitlistEntry", entry_id)
            entry = locked
            if entry.status == WaitlistStatus.CONFIRMED.value:
                return entry
            if entry.status == WaitlistStatus.EXPIRED.value:
                raise PromotionExpired(entry.id)
            if not entry.is_pending_promotion:
                raise ValidationException(
                    "Waitlist entry is not awaiting confirmation",
                    code="WAITLIST_ENTRY_NOT_PROMOTED",
                    details={"entry_id": entry.id, "status": entry.status},
                )
            deadline = entry.promotion_deadline()
            if deadline is not None and deadline <= current:
                raise PromotionExpired(entry.id)

            entry.status = WaitlistStatus.CONFIRMED.value
            entry.promotion_expires_at = None
            entry.resolved_at = current

        self.logger.info("Promotion confirmed", extra={"entry_id": entry_id, "user_id": user_id})
        return entry

    @BaseService.measure_operation("waitlist_expire_promotion")
    def expire_promotion(
        self,
        entry_id: str,
        *,
        now: Optional[datetime] = None,
        outbox: Optional[NotificationOutbox] = None,
    ) -> bool:
        """
        Expire one unconfirmed promotion whose window has passed.

        The entry is marked expired and its booking cancelled and refunded
        in one transaction; the freed seat then goes to the next entry.
        Calling it early, twice, or on a confirmed entry does nothing.

        Returns:
            True if the promotion was expired by this call
        """
        from .booking_ledger import SYSTEM_ACTOR_ID

        current = now or utc_now()
        entry = self.get_entry(entry_id)
        instance_id = str(entry.instance_id)
        seat_freed = False

        with self.notification_scope(outbox) as box, instance_lock(instance_id):
            with self.transaction(box):
                locked = self.waitlist_repository.get_for_update(entry_id)
                deadline = locked.promotion_deadline() if locked is not None else None
                if (
                    locked is None
                    or not locked.is_pending_promotion
                    or deadline is None
                    or deadline > current
                ):
                    return False

                booking_id = locked.booking_id
                box.add(
                    locked.user_id,
                    NotificationKind.PROMOTION_EXPIRED,
                    entry_id=locked.id,
                    instance_id=instance_id,
                    booking_id=booking_id,
                )
                booking = (
                    self.booking_repository.get_for_update(str(booking_id))
                    if booking_id is not None
                    else None
                )
                if booking is not None and booking.is_confirmed:
                    self.ledger.cancel_locked(
                        booking,
                        SYSTEM_ACTOR_ID,
                        box,
                        reason="Waitlist promotion was not confirmed in time",
                        entry_status=WaitlistStatus.EXPIRED,
                        now=current,
                    )
                    seat_freed = True
                else:
                    locked.status = WaitlistStatus.EXPIRED.value
                    locked.promotion_expires_at = None
                    locked.resolved_at = current

            prometheus_metrics.record_promotion("expired")
            self.logger.info(
                "Promotion expired",
                extra={"entry_id": entry_id, "instance_id": instance_id, "booking_id": booking_id},
            )
            if seat_freed:
                self.ledger.offer_freed_seat(instance_id, box, now=current)
        return True

    def expire_due_promotions(self, *, now: Optional[datetime] = None) -> int:
        """Expire every promotion past its window. Returns how many were expired."""
        current = now or utc_now()
        with self.transaction():
            due_ids = [e.id for e in self.waitlist_repository.list_promotions_due(current)]

        expired = 0
        for entry_id in due_ids:
            if self.expire_promotion(entry_id, now=current):
                expired += 1
        return expired

    def clear_for_instance(
        self, instance_id: str, outbox: NotificationOutbox, *, now: datetime
    ) -> int:
        """
        Close every open entry of a cancelled instance and notify its users.

        Runs inside the caller's transaction with the instance lock held.
        """
        entries = self.waitlist_repository.list_active(instance_id)
        for entry in entries:
            entry.status = WaitlistStatus.CANCELLED.value
            entry.position = None
            entry.promotion_expires_at = None
            entry.resolved_at = now
            outbox.add(
                entry.user_id,
                NotificationKind.INSTANCE_CANCELLED,
                entry_id=entry.id,
                instance_id=instance_id,
            )
        self.waitlist_repository.flush()
        return len(entries)


__all__ = ["WaitlistManagerService"]
