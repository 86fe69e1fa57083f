"""
Structured logging setup using structlog.

Every process (api, worker, reaper) renders stdlib and structlog records
through one processor chain. Records are tagged with the process component
and queue mode, and a job being executed binds its identity into the
context so handler logs can be traced back to the job.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from opentelemetry import trace

from memorymesh.config import get_settings
from memorymesh.types.job import Job

# Extra fields never written in clear text.
SENSITIVE_KEYS = frozenset({"api_key", "authorization", "token", "access_token", "password"})
REDACTED = "[redacted]"


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Add OpenTelemetry trace context to log records.

    Args:
        logger: The logger instance.
        method_name: The method name being called.
        event_dict: The event dictionary.

    Returns:
        The event dictionary with trace context added.
    """
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask credentials passed through ``extra``."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def deployment_tagger(component: str) -> structlog.types.Processor:
    """
    Build a processor tagging records with where they were emitted.

    Args:
        component: Process role, e.g. ``api``, ``worker`` or ``reaper``.
    """
    settings = get_settings()
    tags = {
        "component": component,
        "environment": settings.environment.value,
        "queue_mode": settings.queue_mode.value,
    }

    def tag(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        for key, value in tags.items():
            event_dict.setdefault(key, value)
        return event_dict

    return tag


def setup_logging(component: str = "api") -> None:
    """
    Configure structured logging for a MemoryMesh process.

    Standard library loggers (``logging.getLogger(__name__)``) are rendered
    through the same processors, with ``extra`` fields preserved.

    Args:
        component: Process role recorded on every log line.
    """
    settings = get_settings()

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        deployment_tagger(component),
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
        redact_secrets,
    ]

    if settings.log_format == "json":
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
    root_logger.setLevel(log_level)

    # Broker and HTTP client chatter
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


@contextmanager
def job_log_context(job: Job, worker_id: str) -> Iterator[None]:
    """
    Bind a job's identity to every log record emitted inside the block.

    Bindings live in contextvars, so concurrent jobs running as separate
    asyncio tasks never see each other's fields.
    """
    with structlog.contextvars.bound_contextvars(
        job_id=job.id,
        queue=job.queue_name,
        job_type=job.job_type,
        attempt=job.attempts_made + 1,
        worker_id=worker_id,
    ):
        yield
