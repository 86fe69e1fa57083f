"""
Job-related type definitions for internal use.
"""

import time
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, Field

from memorymesh.constants import (
    DEFAULT_BACKOFF_DELAY_MS,
    DEFAULT_KEEP_COMPLETED,
    DEFAULT_KEEP_FAILED,
    DEFAULT_MAX_ATTEMPTS,
    JobState,
)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class BackoffPolicy(BaseModel):
    """Delay applied between successive attempts of a failed job."""

    type: Literal["exponential", "fixed"] = "exponential"
    delay_ms: int = Field(default=DEFAULT_BACKOFF_DELAY_MS, ge=0)

    def delay_for(self, attempts_made: int) -> int:
        """
        Delay before the next attempt, given how many attempts have failed.

        Exponential backoff doubles from ``delay_ms``: 2000, 4000, 8000...
        """
        if self.type == "fixed" or attempts_made <= 0:
            return self.delay_ms
        return self.delay_ms * 2 ** (attempts_made - 1)


class RetentionPolicy(BaseModel):
    """How many terminal jobs a queue keeps. None keeps everything."""

    completed: int | None = Field(default=DEFAULT_KEEP_COMPLETED, ge=0)
    failed: int | None = Field(default=DEFAULT_KEEP_FAILED, ge=0)


class JobOptions(BaseModel):
    """
    Per-job options.

    Queues carry a full set of defaults; callers pass partial options and
    only the fields they set override the defaults.
    """

    attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1, le=25)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)
    delay_ms: int = Field(default=0, ge=0)
    cache_key: str | None = None
    cache_ttl_seconds: int | None = Field(default=None, ge=1)


def merge_job_options(
    defaults: JobOptions,
    overrides: JobOptions | dict[str, Any] | None,
) -> JobOptions:
    """
    Merge caller options over queue defaults, field by field.

    Args:
        defaults: The queue's default options.
        overrides: Caller options; only explicitly set fields are applied.

    Returns:
        A new JobOptions instance.
    """
    if overrides is None:
        return defaults.model_copy(deep=True)
    if isinstance(overrides, dict):
        overrides = JobOptions.model_validate(overrides)
    merged = defaults.model_dump()
    merged.update(overrides.model_dump(exclude_unset=True))
    return JobOptions.model_validate(merged)


class Job(BaseModel):
    """
    A job as stored by a queue.

    Timestamps are epoch milliseconds. The queue owns every field except
    payload and options, which are fixed at admission.
    """

    id: str
    queue_name: str
    job_type: str
    payload: dict[str, Any]
    options: JobOptions
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    stalled_count: int = 0
    submitted_at: int
    available_at: int | None = None
    processed_at: int | None = None
    finished_at: int | None = None
    failed_reason: str | None = None
    result: Any = None

    @property
    def is_terminal(self) -> bool:
        """Check if the job reached completed or failed."""
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.options.attempts - self.attempts_made)


@dataclass(frozen=True)
class JobHandle:
    """
    What submitters get back. Never exposes queue-internal state.

    ``noop`` marks the degraded-mode handle returned when no broker is
    available; ``skipped`` marks a submission answered from the cache.
    """

    id: str | None
    queue_name: str
    job_type: str
    submitted_at: int
    noop: bool = False
    skipped: bool = False

    @classmethod
    def for_job(cls, job: Job) -> "JobHandle":
        """Create a handle for an admitted job."""
        return cls(
            id=job.id,
            queue_name=job.queue_name,
            job_type=job.job_type,
            submitted_at=job.submitted_at,
        )

    @classmethod
    def degraded(cls, queue_name: str, job_type: str) -> "JobHandle":
        """Create a no-op handle for a job that was never admitted."""
        return cls(
            id=None,
            queue_name=queue_name,
            job_type=job_type,
            submitted_at=now_ms(),
            noop=True,
        )

    @classmethod
    def cached(cls, queue_name: str, job_type: str) -> "JobHandle":
        """Create a handle for a submission skipped because its result is cached."""
        return cls(
            id=None,
            queue_name=queue_name,
            job_type=job_type,
            submitted_at=now_ms(),
            skipped=True,
        )


class QueueStats(BaseModel):
    """Point-in-time counts for one queue."""

    queue: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    error: str | None = None


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: Any = None
    error: str | None = None
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and utilities for the handler.
    """

    job_id: str
    queue_name: str
    job_type: str
    attempt: int
    max_attempts: int
    payload: dict[str, Any]
    worker_id: str

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)
