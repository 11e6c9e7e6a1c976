"""OpenTelemetry and Prometheus instrumentation."""

from .metrics import record_health, record_operation
from .setup import build_resource, setup_telemetry
from .tracing import error_kind, get_tracer, span, traced

__all__ = [
    "setup_telemetry",
    "build_resource",
    "span",
    "traced",
    "get_tracer",
    "error_kind",
    "record_operation",
    "record_health",
]
