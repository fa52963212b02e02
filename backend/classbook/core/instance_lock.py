"""
Per-instance mutual exclusion.

Reservation, cancellation, enqueue and promotion for one scheduled instance
are serialized under a lock keyed by the instance id; different instances
never contend. An in-process lock is always taken. With the redis backend a
Redis lock is layered on top so separate worker processes serialize too.

The lock is re-entrant per thread: cancel() promotes the waitlist head while
still holding the lock it took for the cancellation.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
from typing import Callable, Dict, Iterator, Optional

from redis import Redis
from redis.exceptions import LockError, RedisError

from classbook.core.config import settings
from classbook.core.exceptions import InstanceLockTimeout
from classbook.monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

_LOCAL_LOCKS: Dict[str, "_LocalLock"] = {}
_LOCAL_LOCKS_GUARD = threading.Lock()
_HELD = threading.local()

_SYNC_REDIS: Optional[Redis] = None
_SYNC_REDIS_LOCK = threading.Lock()


def _lock_key(instance_id: str) -> str:
    return f"instance:{instance_id}:mutex"


def _namespaced_key(key: str) -> str:
    return f"classbook:lock:{key}"


def _held_counts() -> Dict[str, int]:
    counts = getattr(_HELD, "counts", None)
    if counts is None:
        counts = {}
        _HELD.counts = counts
    return counts


class _LocalLock:
    """In-process lock plus the number of threads holding or waiting on it."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


def _checkout_local(key: str) -> threading.Lock:
    with _LOCAL_LOCKS_GUARD:
        entry = _LOCAL_LOCKS.get(key)
        if entry is None:
            entry = _LocalLock()
            _LOCAL_LOCKS[key] = entry
        entry.users += 1
        return entry.lock


def _checkin_local(key: str) -> None:
    # The last user out drops the entry so idle instances do not pile up.
    with _LOCAL_LOCKS_GUARD:
        entry = _LOCAL_LOCKS.get(key)
        if entry is None:
            return
        entry.users -= 1
        if entry.users <= 0:
            del _LOCAL_LOCKS[key]


def _get_sync_redis() -> Optional[Redis]:
    global _SYNC_REDIS
    if settings.instance_lock_backend != "redis" or not settings.redis_url:
        return None
    if _SYNC_REDIS is not None:
        return _SYNC_REDIS
    with _SYNC_REDIS_LOCK:
        if _SYNC_REDIS is not None:
            return _SYNC_REDIS
        try:
            client = Redis.from_url(settings.redis_url, decode_responses=True)
            client.ping()
        except RedisError as exc:
            logger.warning("instance_lock_redis_unavailable: %s", exc)
            return None
        _SYNC_REDIS = client
        return _SYNC_REDIS


def is_held(instance_id: str) -> bool:
    """True when the calling thread currently holds the instance lock."""
    return _held_counts().get(_lock_key(instance_id), 0) > 0


def _acquire(
    instance_id: str, key: str, ttl_s: int, wait_s: float
) -> Callable[[], None]:
    local = _checkout_local(key)
    if not local.acquire(timeout=wait_s):
        _checkin_local(key)
        prometheus_metrics.record_instance_lock("acquire", "timeout")
        raise InstanceLockTimeout(instance_id, wait_s)

    def _release_local() -> None:
        local.release()
        _checkin_local(key)

    client = _get_sync_redis()
    if client is None:
        prometheus_metrics.record_instance_lock("acquire", "success")
        return _release_local

    try:
        distributed = client.lock(_namespaced_key(key), timeout=ttl_s, blocking_timeout=wait_s)
        acquired = distributed.acquire()
    except RedisError as exc:
        # Redis outage degrades to in-process serialization; the conditional
        # seat update still rejects over-capacity writes from other processes.
        prometheus_metrics.record_instance_lock("acquire", "redis_unavailable")
        logger.warning(
            "instance_lock_redis_acquire_failed",
            extra={"instance_id": instance_id, "error": str(exc)},
        )
        return _release_local

    if not acquired:
        _release_local()
        prometheus_metrics.record_instance_lock("acquire", "timeout")
        raise InstanceLockTimeout(instance_id, wait_s)

    prometheus_metrics.record_instance_lock("acquire", "success")

    def _release() -> None:
        try:
            distributed.release()
        except (LockError, RedisError) as exc:
            prometheus_metrics.record_instance_lock("release", "error")
            logger.warning(
                "instance_lock_redis_release_failed",
                extra={"instance_id": instance_id, "error": str(exc)},
            )
        finally:
            _release_local()

    return _release


@contextmanager
def instance_lock(
    instance_id: str,
    *,
    ttl_s: Optional[int] = None,
    wait_s: Optional[float] = None,
) -> Iterator[None]:
    """
    Hold the lock for one scheduled instance.

    Raises:
        InstanceLockTimeout: if the lock is not acquired within wait_s
    """
    key = _lock_key(instance_id)
    held = _held_counts()
    if held.get(key):
        held[key] += 1
        try:
            yield
        finally:
            held[key] -= 1
        return

    release = _acquire(
        instance_id,
        key,
        ttl_s or settings.instance_lock_ttl_seconds,
        wait_s or settings.instance_lock_wait_seconds,
    )
    held[key] = 1
    try:
        yield
    finally:
        held.pop(key, None)
        release()
        prometheus_metrics.record_instance_lock("release", "success")
