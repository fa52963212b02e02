"""
Prometheus metrics for the class booking engine.

Service timings are fed by the @measure_operation decorator; domain
counters track reservation, promotion, lock and notification outcomes.
"""

from threading import Lock
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "classbook_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "classbook_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "classbook_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

instance_lock_total = Counter(
    "classbook_instance_lock_total",
    "Per-instance lock operations",
    ["action", "outcome"],
    registry=REGISTRY,
)

reservations_total = Counter(
    "classbook_reservations_total",
    "Seat reservation outcomes",
    ["outcome"],
    registry=REGISTRY,
)

promotions_total = Counter(
    "classbook_waitlist_promotions_total",
    "Waitlist promotion outcomes",
    ["outcome"],
    registry=REGISTRY,
)

notifications_total = Counter(
    "classbook_notifications_total",
    "Notification dispatch outcomes",
    ["kind", "status"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    _cache_lock: Lock = Lock()

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'BookingLedgerService')
            operation: Operation/method name (e.g., 'reserve_seat')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()

        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_instance_lock(action: str, outcome: str) -> None:
        instance_lock_total.labels(action=action, outcome=outcome).inc()

    @staticmethod
    def record_reservation(outcome: str) -> None:
        reservations_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_promotion(outcome: str) -> None:
        promotions_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_notification(kind: str, status: str) -> None:
        notifications_total.labels(kind=kind, status=status).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        with PrometheusMetrics._cache_lock:
            return generate_latest(REGISTRY)

    @staticmethod
    def get_content_type() -> str:
        return CONTENT_TYPE_LATEST


prometheus_metrics = PrometheusMetrics()
