"""Prometheus metrics for adapter operations."""

from typing import Optional

from prometheus_client import Counter, Gauge, Histogram

OPERATIONS = Counter(
    "dms_adapter_operations_total",
    "Total number of adapter operations",
    ["adapter", "operation", "status"],
)
OPERATION_ERRORS = Counter(
    "dms_adapter_operation_errors_total",
    "Total number of adapter operation errors",
    ["adapter", "operation", "kind"],
)
OPERATION_DURATION = Histogram(
    "dms_adapter_operation_duration_seconds",
    "Duration of adapter operations in seconds",
    ["adapter", "operation"],
)
HEALTH_STATUS = Gauge(
    "dms_adapter_health_status",
    "Status of adapter health check (1 = healthy, 0 = unhealthy)",
    ["adapter"],
)


def record_operation(
    adapter: str,
    operation: str,
    duration: float,
    error_kind: Optional[str] = None,
) -> None:
    OPERATION_DURATION.labels(adapter=adapter, operation=operation).observe(duration)
    OPERATIONS.labels(
        adapter=adapter,
        operation=operation,
        status="error" if error_kind else "success",
    ).inc()
    if error_kind:
        OPERATION_ERRORS.labels(adapter=adapter, operation=operation, kind=error_kind).inc()


def record_health(adapter: str, healthy: bool) -> None:
    HEALTH_STATUS.labels(adapter=adapter).set(1 if healthy else 0)
