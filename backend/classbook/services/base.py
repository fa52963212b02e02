# backend/classbook/services/base.py
"""
Base Service Pattern for the class booking engine.

Provides common functionality for all service classes including:
- Transaction management
- Notification scoping (dispatch after commit and lock release)
- Logging
- Performance monitoring
"""

from contextlib import contextmanager
from functools import wraps
import logging
import time
from typing import Any, Callable, Iterator, Optional, TypeVar, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import ServiceException
from ..monitoring.prometheus_metrics import prometheus_metrics
from .notifications import LoggingNotificationPort, NotificationOutbox, NotificationPort

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class BaseService:
    """
    Base class for all service layer components.

    Services built on the same Session share its transaction, so
    transaction() blocks are never nested: each public operation opens
    its own and helpers called from inside one rely on the caller's.
    """

    def __init__(self, db: Session, notifier: Optional[NotificationPort] = None):
        """
        Initialize base service.

        Args:
            db: Database session
            notifier: Port that receives user notifications; logs when omitted
        """
        self.db = db
        self.notifier: NotificationPort = notifier or LoggingNotificationPort()
        self.logger = logging.getLogger(self.__class__.__name__)

    @contextmanager
    def transaction(self, outbox: Optional[NotificationOutbox] = None) -> Iterator[Session]:
        """
        Context manager for database transactions.

        Notifications staged on outbox inside the block are released for
        dispatch only if the commit succeeds.

        Usage:
            with self.transaction(outbox):
                # Do multiple operations
                self.db.add(entity)
                # Note: commit is handled automatically
        """
        try:
            yield self.db
            self.db.commit()
            self.logger.debug("Transaction committed successfully")
        except SQLAlchemyError as e:
            self.logger.error(f"Transaction failed: {str(e)}")
            self.db.rollback()
            if outbox is not None:
                outbox.rollback()
            raise ServiceException(f"Database operation failed: {str(e)}")
        except Exception as e:
            self.logger.debug(f"Transaction rolled back: {type(e).__name__}")
            self.db.rollback()
            if outbox is not None:
                outbox.rollback()
            raise
        if outbox is not None:
            outbox.mark_committed()

    @contextmanager
    def notification_scope(
        self, outbox: Optional[NotificationOutbox] = None
    ) -> Iterator[NotificationOutbox]:
        """
        Yield an outbox for one logical operation.

        When the caller passes its own outbox the notifications join it and
        the caller dispatches. Otherwise a fresh outbox is dispatched when the
        block exits, which must be outside any instance lock.
        """
        if outbox is not None:
            yield outbox
            return
        own = NotificationOutbox(self.notifier)
        try:
            yield own
        finally:
            own.dispatch()

    @staticmethod
    def measure_operation(operation_name: str) -> Callable[[F], F]:
        """
        Decorator to measure operation performance.

        Usage:
            @BaseService.measure_operation("reserve_seat")
            def reserve_seat(self, ...):
                # Method implementation
        """

        def decorator(func: F) -> F:
            @wraps(func)
            def wrapper(self: "BaseService", *args: Any, **kwargs: Any) -> Any:
                start_time = time.time()
                success = False
                error_type = None

                try:
                    result = func(self, *args, **kwargs)
                    success = True
                    return result
                except Exception as e:
                    error_type = type(e).__name__
                    raise
                finally:
                    elapsed = time.time() - start_time

                    # Only log if it's actually slow
                    if elapsed > 1.0:
                        self.logger.warning(
                            f"Slow operation detected: {operation_name} took {elapsed:.2f}s"
                        )

                    prometheus_metrics.record_service_operation(
                        service=self.__class__.__name__,
                        operation=operation_name,
                        duration=elapsed,
                        status="success" if success else "error",
                        error_type=error_type,
                    )

            setattr(wrapper, "_operation_name", operation_name)
            setattr(wrapper, "_is_measured", True)
            return cast(F, wrapper)

        return decorator

    def log_operation(self, operation: str, **context: Any) -> None:
        """Log an operation with context."""
        self.logger.info(f"Operation: {operation}", extra={"operation": operation, **context})

