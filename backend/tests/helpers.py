"""Assertion helpers and notifier doubles shared by the test modules."""

import threading
from typing import Any, Dict, List

from sqlalchemy.orm import sessionmaker

from classbook.core import instance_lock as instance_lock_module
from classbook.core.enums import BookingState, NotificationKind, WaitlistStatus
from classbook.models import Booking, ScheduledInstance, UserPackage, WaitlistEntry


class RecordingNotifier:
    """NotificationPort that records every call and whether the instance lock was held."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def notify(self, user_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        instance_id = payload.get("instance_id")
        held = bool(instance_id) and instance_lock_module.is_held(str(instance_id))
        with self._lock:
            self.calls.append(
                {"user_id": user_id, "kind": kind, "payload": payload, "lock_held": held}
            )

    def kinds(self) -> List[NotificationKind]:
        return [c["kind"] for c in self.calls]

    def for_user(self, user_id: str) -> List[NotificationKind]:
        return [c["kind"] for c in self.calls if c["user_id"] == user_id]

    def of_kind(self, kind: NotificationKind) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["kind"] == kind]

    def clear(self) -> None:
        with self._lock:
            self.calls.clear()


class FailingNotifier:
    def notify(self, user_id: str, kind: NotificationKind, payload: Dict[str, Any]) -> None:
        raise RuntimeError("notification gateway down")


def seat_snapshot(session_factory: sessionmaker, instance_id: str) -> Dict[str, int]:
    """Read occupied/capacity/confirmed from a separate session."""
    session = session_factory()
    try:
        instance = session.get(ScheduledInstance, instance_id)
        confirmed = (
            session.query(Booking)
            .filter(
                Booking.instance_id == instance_id,
                Booking.state == BookingState.CONFIRMED.value,
            )
            .count()
        )
        return {
            "occupied": int(instance.occupied_seats),
            "capacity": int(instance.capacity),
            "confirmed": confirmed,
        }
    finally:
        session.close()


def assert_seat_invariant(session_factory: sessionmaker, instance_id: str) -> Dict[str, int]:
    snapshot = seat_snapshot(session_factory, instance_id)
    assert 0 <= snapshot["occupied"] <= snapshot["capacity"]
    assert snapshot["occupied"] == snapshot["confirmed"]
    return snapshot


def waiting_positions(session_factory: sessionmaker, instance_id: str) -> List[int]:
    session = session_factory()
    try:
        rows = (
            session.query(WaitlistEntry.position)
            .filter(
                WaitlistEntry.instance_id == instance_id,
                WaitlistEntry.status == WaitlistStatus.WAITING.value,
            )
            .all()
        )
        return sorted(int(r[0]) for r in rows)
    finally:
        session.close()


def assert_dense_positions(session_factory: sessionmaker, instance_id: str) -> List[int]:
    positions = waiting_positions(session_factory, instance_id)
    assert positions == list(range(1, len(positions) + 1))
    return positions


def package_remaining(session_factory: sessionmaker, package_id: str) -> int:
    session = session_factory()
    try:
        return int(session.get(UserPackage, package_id).credits_remaining)
    finally:
        session.close()
