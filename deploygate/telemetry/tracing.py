"""Span helpers for adapter operations and registry tasks."""

import functools
import inspect
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from .. import __version__
from ..errors import DMSError

TRACER_NAME = "deploygate"


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(TRACER_NAME, __version__)


def error_kind(exc: BaseException) -> str:
    """Classify an exception the way operation metrics and spans label it."""
    if isinstance(exc, DMSError):
        return exc.kind
    return "internal"


@contextmanager
def span(name: str, attributes: Optional[dict[str, Any]] = None) -> Iterator[trace.Span]:
    """
    Open a span around a block.

    A block that raises marks the span failed, records the exception and tags
    the span with ``dms.error_kind``. Task cancellation leaves the status unset.
    """
    with get_tracer().start_as_current_span(
        name,
        attributes=attributes,
        record_exception=False,
        set_status_on_exception=False,
    ) as current:
        try:
            yield current
        except Exception as e:
            current.set_attribute("dms.error_kind", error_kind(e))
            current.set_status(Status(StatusCode.ERROR, str(e)))
            current.record_exception(e)
            raise
        current.set_status(Status(StatusCode.OK))


def traced(
    name: Optional[str] = None,
    attributes: Optional[dict[str, Any]] = None,
) -> Callable:
    """
    Decorator to run a coroutine function inside a span.

    Args:
        name: Span name (defaults to the function's qualified name)
        attributes: Additional span attributes

    Example:
        @traced("registry.check_health")
        async def check_health(self):
            ...
    """

    def decorator(func: Callable) -> Callable:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"traced only wraps coroutine functions, got {func!r}")
        span_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            with span(span_name, {"code.function": func.__qualname__, **(attributes or {})}):
                return await func(*args, **kwargs)

        return wrapper

    return decorator
