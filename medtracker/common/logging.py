import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Literal

from opentelemetry import trace

from .config import ServiceSettings


_PLACEHOLDER = "-"
_LOG_FORMAT = (
    "%(asctime)s | %(levelname)s | %(name)s | trace_id=%(trace_id)s span_id=%(span_id)s "
    "| actor=%(actor)s | %(message)s"
)

_ACTOR: ContextVar[str] = ContextVar("medtracker_log_actor", default=_PLACEHOLDER)


def _format_trace_id(value: int, length: int) -> str:
    return format(value, f"0{length}x")


class TraceContextFilter(logging.Filter):
    """Populate trace/span identifiers when OpenTelemetry is active."""

    def filter(self, record: logging.LogRecord) -> bool:
        span = trace.get_current_span()
        span_context = span.get_span_context() if span is not None else None
        if span_context is not None and span_context.is_valid:
            record.trace_id = _format_trace_id(span_context.trace_id, 32)
            record.span_id = _format_trace_id(span_context.span_id, 16)
        else:
            record.trace_id = _PLACEHOLDER
            record.span_id = _PLACEHOLDER
        return True


class ActorContextFilter(logging.Filter):
    """Stamp records with the actor bound through :func:`bound_actor`."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.actor = _ACTOR.get()
        return True


@contextmanager
def bound_actor(label: str) -> Iterator[None]:
    """Attach ``label`` to every record logged inside the block."""

    token = _ACTOR.set(label or _PLACEHOLDER)
    try:
        yield
    finally:
        _ACTOR.reset(token)


def current_actor() -> str:
    return _ACTOR.get()


def _attach(target: logging.Filterer, filter_type: type[logging.Filter], instance: logging.Filter) -> None:
    if not any(isinstance(f, filter_type) for f in target.filters):
        target.addFilter(instance)


def configure_logging(settings: ServiceSettings) -> None:
    """Configure root logging level, format and context filters."""

    logging_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = settings.log_level
    logging.basicConfig(level=logging_level, format=_LOG_FORMAT)
    root_logger = logging.getLogger()
    trace_filter = next(
        (f for f in root_logger.filters if isinstance(f, TraceContextFilter)),
        None,
    ) or TraceContextFilter()
    actor_filter = next(
        (f for f in root_logger.filters if isinstance(f, ActorContextFilter)),
        None,
    ) or ActorContextFilter()
    _attach(root_logger, TraceContextFilter, trace_filter)
    _attach(root_logger, ActorContextFilter, actor_filter)
    for handler in root_logger.handlers:
        _attach(handler, TraceContextFilter, trace_filter)
        _attach(handler, ActorContextFilter, actor_filter)
