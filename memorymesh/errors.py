"""
Error taxonomy.

Infrastructure unavailability is recovered locally wherever a degraded mode
exists; only caller misuse is raised straight back to the caller.
"""


class MemoryMeshError(Exception):
    """Base class for all errors raised by this package."""


class QueueUnavailable(MemoryMeshError):
    """The broker is unreachable or the registry was initialized without queues."""

    def __init__(self, message: str, queue_name: str | None = None):
        super().__init__(message)
        self.queue_name = queue_name


class DispatchError(MemoryMeshError):
    """Caller misuse of the dispatch API. Always surfaced."""


class UnknownQueue(DispatchError):
    """The named queue is not registered."""

    def __init__(self, queue_name: str):
        super().__init__(f"Unknown queue: {queue_name}")
        self.queue_name = queue_name


class InvalidJobType(DispatchError):
    """The job type is not legal for the target queue."""

    def __init__(self, queue_name: str, job_type: str):
        super().__init__(f"Job type '{job_type}' is not valid for queue '{queue_name}'")
        self.queue_name = queue_name
        self.job_type = job_type


class InvalidPayload(DispatchError):
    """The payload is not a JSON-serializable mapping."""


class JobExecutionFailed(MemoryMeshError):
    """A job exhausted its attempts. Delivered through the queue's failed event."""

    def __init__(self, job_id: str, queue_name: str, attempts: int, reason: str | None):
        super().__init__(
            f"Job {job_id} in {queue_name} failed after {attempts} attempts: {reason}"
        )
        self.job_id = job_id
        self.queue_name = queue_name
        self.attempts = attempts
        self.reason = reason


class JobStalled(MemoryMeshError):
    """A job lost its lock without completing or failing."""

    def __init__(self, job_id: str, queue_name: str, stalled_count: int):
        super().__init__(f"Job {job_id} in {queue_name} stalled ({stalled_count}x)")
        self.job_id = job_id
        self.queue_name = queue_name
        self.stalled_count = stalled_count


class CacheUnavailable(MemoryMeshError):
    """The shared cache tier is unreachable. Never surfaced to cache callers."""


class OutboxItemFailed(MemoryMeshError):
    """A sync attempt for an outbox item did not succeed."""

    def __init__(self, message: str, item_id: str | None = None):
        super().__init__(message)
        self.item_id = item_id
