"""
Job handlers registry.

Handlers are registered per job type by the application that runs the
worker. Job handlers must be idempotent - they may be executed more than
once for the same job after a stall or a worker crash.
"""

import logging
from typing import Awaitable, Callable

from memorymesh.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[JobResult]]

# Handler registry
_handlers: dict[str, JobHandler] = {}


def register_handler(job_type: str) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Args:
        job_type: The job type this handler processes.

    Returns:
        Decorator function.

    Example:
        @register_handler(JobType.ANALYZE_IMAGE)
        async def analyze_image(context: JobContext) -> JobResult:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        _handlers[str(job_type)] = handler
        logger.info("Registered handler", extra={"job_type": str(job_type)})
        return handler
    return decorator


def get_handler(job_type: str) -> JobHandler | None:
    """
    Get the handler for a job type.

    Args:
        job_type: The job type.

    Returns:
        The handler function or None if not found.
    """
    return _handlers.get(str(job_type))


def list_handlers() -> list[str]:
    """List all registered job types."""
    return list(_handlers.keys())


def unregister_handler(job_type: str) -> None:
    """Remove a handler. Unknown job types are ignored."""
    _handlers.pop(str(job_type), None)


async def execute_job(context: JobContext) -> JobResult:
    """
    Execute a job using the handler registered for its type.

    A missing handler or a handler exception is reported as a failed result,
    so the queue applies its retry policy.

    Args:
        context: The job context.

    Returns:
        JobResult from the handler.
    """
    handler = get_handler(context.job_type)

    if handler is None:
        logger.error(
            "No handler for job type",
            extra={"job_id": context.job_id, "job_type": context.job_type},
        )
        return JobResult(
            success=False,
            error=f"No handler registered for job type: {context.job_type}",
        )

    try:
        return await handler(context)
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": context.job_id, "job_type": context.job_type, "error": str(e)},
        )
        return JobResult(
            success=False,
            error=f"Handler exception: {e}",
        )
