# backend/classbook/core/exceptions.py
"""
Domain-specific exceptions for the class booking engine.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
                "retryable": self.retryable,
            },
        )


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ForbiddenException(DomainException):
    """Raised when the acting user lacks permission for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


# Booking engine errors


class NotFound(NotFoundException):
    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            message=f"{entity} not found",
            code="NOT_FOUND",
            details={"entity": entity, "id": entity_id},
        )


class InstanceNotBookable(BusinessRuleException):
    """Raised when the instance is not in a bookable state."""

    def __init__(self, instance_id: str, status_value: str, reason: Optional[str] = None):
        super().__init__(
            message=reason or f"Class is not open for booking (status: {status_value})",
            code="INSTANCE_NOT_BOOKABLE",
            details={"instance_id": instance_id, "status": status_value},
        )


class DuplicateBooking(ConflictException):
    def __init__(self, instance_id: str, user_id: str):
        super().__init__(
            message="You already have a booking for this class",
            code="DUPLICATE_BOOKING",
            details={"instance_id": instance_id, "user_id": user_id},
        )


class DuplicateWaitlistEntry(ConflictException):
    def __init__(self, instance_id: str, user_id: str):
        super().__init__(
            message="You are already on the waitlist or booked for this class",
            code="DUPLICATE_WAITLIST_ENTRY",
            details={"instance_id": instance_id, "user_id": user_id},
        )


class InsufficientCredit(BusinessRuleException):
    def __init__(self, user_id: str, package_id: Optional[str] = None):
        super().__init__(
            message="No usable class credits available",
            code="INSUFFICIENT_CREDIT",
            details={"user_id": user_id, "package_id": package_id},
        )


class ConcurrentCapacityExceeded(ConflictException):
    """
    Raised when the atomic seat reservation lost a race for the last seat.

    Callers retry reserve_seat, which then routes to the waitlist.
    """

    retryable = True

    def __init__(self, instance_id: str):
        super().__init__(
            message="The last seat was taken while booking, please retry",
            code="CONCURRENT_CAPACITY_EXCEEDED",
            details={"instance_id": instance_id},
        )


class OutcomeAlreadyRecorded(ConflictException):
    def __init__(self, booking_id: str, recorded: str, requested: str):
        super().__init__(
            message=f"Outcome already recorded as {recorded}",
            code="OUTCOME_ALREADY_RECORDED",
            details={"booking_id": booking_id, "recorded": recorded, "requested": requested},
        )


class OutcomeTooEarly(BusinessRuleException):
    def __init__(self, booking_id: str, ends_at: str):
        super().__init__(
            message="Attendance can only be recorded after the class has ended",
            code="OUTCOME_TOO_EARLY",
            details={"booking_id": booking_id, "ends_at": ends_at},
        )


class InvalidBookingState(BusinessRuleException):
    def __init__(self, booking_id: str, state: str, action: str):
        super().__init__(
            message=f"Cannot {action} a booking in state {state}",
            code="INVALID_BOOKING_STATE",
            details={"booking_id": booking_id, "state": state, "action": action},
        )


class InvalidInstanceState(BusinessRuleException):
    def __init__(self, instance_id: str, status_value: str, action: str):
        super().__init__(
            message=f"Cannot {action} a class in status {status_value}",
            code="INVALID_INSTANCE_STATE",
            details={"instance_id": instance_id, "status": status_value, "action": action},
        )


class PromotionExpired(BusinessRuleException):
    def __init__(self, entry_id: str):
        super().__init__(
            message="The waitlist offer has expired",
            code="PROMOTION_EXPIRED",
            details={"entry_id": entry_id},
        )


class InstanceLockTimeout(ConflictException):
    """Raised when the per-instance lock could not be acquired in time."""

    retryable = True

    def __init__(self, instance_id: str, waited_s: float):
        super().__init__(
            message="Class is busy, please retry",
            code="INSTANCE_LOCK_TIMEOUT",
            details={"instance_id": instance_id, "waited_seconds": waited_s},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """
