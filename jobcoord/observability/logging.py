"""
Structured logging for the coordination layer.

Library modules log through the standard library with ``extra={...}``
fields. ``setup_logging`` routes those records through structlog so that
lock and lease fields, the bound worker context and the active trace all
end up in one rendered event.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from opentelemetry import trace

from jobcoord.config import get_settings

# Fields attached by the lock provider and the fetched job lease
LOCK_FIELDS = ("resource", "path", "waited", "remaining", "timeout")
LEASE_FIELDS = ("queue_item_id", "job_id", "queue")

# Chatty third-party loggers kept at WARNING
QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncpg")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Attach the current OpenTelemetry trace and span IDs, if recording."""
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def group_coordination_fields(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Nest lock and lease fields under ``lock`` and ``lease`` keys.

    Keeps the top level of an event free for the message, level and trace
    context, and lets log queries filter on e.g. ``lock.resource``.
    """
    for group, fields in (("lock", LOCK_FIELDS), ("lease", LEASE_FIELDS)):
        values = {field: event_dict.pop(field) for field in fields if field in event_dict}
        if values:
            event_dict.setdefault(group, {}).update(values)
    return event_dict


def setup_logging(level: str | None = None, log_format: str | None = None) -> None:
    """
    Configure structlog and the root logger.

    Args:
        level: Log level name. Defaults to the configured ``log_level``.
        log_format: ``json`` or ``console``. Defaults to the configured
            ``log_format``.
    """
    settings = get_settings()
    level = level or settings.log_level
    log_format = log_format or settings.log_format

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
        group_coordination_fields,
    ]

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_context(**kwargs: Any) -> None:
    """Bind fields to every subsequent log event in this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


@contextmanager
def lease_context(fetched: Any) -> Iterator[None]:
    """
    Bind a fetched job's identity for the duration of the block.

    Every log event emitted while the job runs, including those from job
    handlers, carries the queue record ID, job ID and queue name.
    """
    with structlog.contextvars.bound_contextvars(
        queue_item_id=fetched.id,
        job_id=fetched.job_id,
        queue=fetched.queue,
    ):
        yield
