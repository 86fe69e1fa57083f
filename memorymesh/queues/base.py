"""
Queue contract and the retry/stall policy shared by every backend.

A backend only stores and moves jobs; the decisions about what happens after
a failure or a lost lock are made here, so the memory and Redis backends
follow one state machine.
"""

import inspect
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Callable, Iterable
from typing import Any

from memorymesh.constants import (
    DEFAULT_MAX_ATTEMPTS,
    NOTIFICATION_MAX_ATTEMPTS,
    JobState,
    QueueEvent,
    QueueName,
)
from memorymesh.errors import JobExecutionFailed, JobStalled
from memorymesh.types.job import Job, JobOptions, QueueStats, now_ms

logger = logging.getLogger(__name__)

# Type alias for event listeners. Listeners may be sync or async.
QueueListener = Callable[..., Any]

STALLED_LIMIT_REASON = "job stalled more than allowable limit"


def default_job_options(queue_name: str) -> JobOptions:
    """
    Default options for a named queue.

    Every queue retries 3 times with exponential backoff from 2s and keeps
    the last 100 completed / 50 failed jobs. Notifications retry 5 times.
    """
    attempts = (
        NOTIFICATION_MAX_ATTEMPTS
        if queue_name == QueueName.NOTIFICATION
        else DEFAULT_MAX_ATTEMPTS
    )
    return JobOptions(attempts=attempts)


class Queue(ABC):
    """
    A named, durable, FIFO job queue.

    Public operations are implemented here on top of a handful of storage
    primitives each backend provides.
    """

    def __init__(
        self,
        name: str,
        defaults: JobOptions | None = None,
        *,
        stalled_interval_ms: int = 30_000,
        max_stalled_count: int = 1,
        clock: Callable[[], int] | None = None,
    ):
        """
        Initialize the queue.

        Args:
            name: Queue name.
            defaults: Default job options. Derived from the name if omitted.
            stalled_interval_ms: Lock duration for active jobs.
            max_stalled_count: Stalls tolerated before a job is failed.
            clock: Epoch milliseconds source.
        """
        self.name = name
        self.defaults = defaults or default_job_options(name)
        self.stalled_interval_ms = stalled_interval_ms
        self.max_stalled_count = max_stalled_count
        self._now = clock or now_ms
        self._listeners: dict[QueueEvent, list[QueueListener]] = defaultdict(list)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: QueueEvent, listener: QueueListener) -> None:
        """Register a listener for a queue event."""
        self._listeners[QueueEvent(event)].append(listener)

    async def emit(self, event: QueueEvent, *args: Any) -> None:
        """
        Call every listener for an event.

        Listener errors are logged and swallowed: a broker-level event must
        never take down the process that observes it.
        """
        for listener in list(self._listeners.get(event, ())):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Queue event listener raised",
                    extra={"queue": self.name, "event": str(event)},
                )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def add(self, job_type: str, payload: dict[str, Any], options: JobOptions) -> Job:
        """
        Admit a job.

        Args:
            job_type: Job name workers match on.
            payload: Opaque job payload.
            options: Fully merged job options.

        Returns:
            The stored job.
        """
        now = self._now()
        job = Job(
            id=await self._next_id(),
            queue_name=self.name,
            job_type=str(job_type),
            payload=payload,
            options=options,
            submitted_at=now,
        )
        if options.delay_ms > 0:
            job.state = JobState.DELAYED
            job.available_at = now + options.delay_ms
        await self._insert(job)
        return job

    async def fetch_next(self, worker_id: str) -> Job | None:
        """
        Move the oldest waiting job to active and lock it for a worker.

        Delayed jobs whose backoff has elapsed are promoted first.
        """
        await self._promote_delayed()
        return await self._claim_next(worker_id)

    async def complete(
        self, job_id: str, result: Any = None, *, worker_id: str | None = None
    ) -> Job | None:
        """
        Mark an active job as completed. The successful run counts as an attempt.

        Args:
            job_id: Job to complete.
            result: Handler output to store on the job.
            worker_id: Worker finishing the job. When given, the call is
                refused unless that worker still holds the lock.

        Returns:
            The updated job, or None if the job is not active or the lock
            belongs to someone else.
        """
        job = await self.get_job(job_id)
        if job is None or job.state != JobState.ACTIVE:
            return None

        job.attempts_made += 1
        job.state = JobState.COMPLETED
        job.finished_at = self._now()
        job.failed_reason = None
        job.result = result
        if not await self._store_completion(job, worker_id):
            logger.warning(
                "Completion refused, lock not held",
                extra={"queue": self.name, "job_id": job_id, "worker_id": worker_id},
            )
            return None
        await self.emit(QueueEvent.COMPLETED, job)
        return job

    async def fail(self, job_id: str, error: str, *, worker_id: str | None = None) -> Job | None:
        """
        Record a failed attempt of an active job.

        The job is delayed for its backoff if attempts remain, otherwise it
        is failed for good and a failed event carries JobExecutionFailed.
        With ``worker_id`` the call is refused unless that worker still holds
        the lock, so a worker whose lock lapsed cannot burn an attempt of a
        job another worker has since claimed.

        Returns:
            The updated job, or None if the job is not active or the lock
            belongs to someone else.
        """
        job = await self.get_job(job_id)
        if job is None or job.state != JobState.ACTIVE:
            return None

        job.attempts_made += 1
        job.failed_reason = error

        if job.attempts_made < job.options.attempts:
            job.state = JobState.DELAYED
            job.available_at = self._now() + job.options.backoff.delay_for(job.attempts_made)
        else:
            job.state = JobState.FAILED
            job.available_at = None
            job.finished_at = self._now()

        if not await self._store_failure(job, worker_id):
            logger.warning(
                "Failure refused, lock not held",
                extra={"queue": self.name, "job_id": job_id, "worker_id": worker_id},
            )
            return None

        if job.state == JobState.FAILED:
            await self.emit(
                QueueEvent.FAILED,
                job,
                JobExecutionFailed(job.id, self.name, job.attempts_made, error),
            )
        return job

    async def recover_stalled(self) -> list[Job]:
        """
        Find active jobs whose lock expired and requeue or fail them.

        A stalled run does not count as an attempt. The first stall puts the
        job back in the wait list; beyond ``max_stalled_count`` it fails.

        Returns:
            The stalled jobs, in their new state.
        """
        recovered = []
        for job_id in await self._expired_active_ids():
            job = await self.get_job(job_id)
            if job is None or job.state != JobState.ACTIVE:
                continue

            job.stalled_count += 1
            job.state = JobState.STALLED
            await self.emit(
                QueueEvent.STALLED,
                job,
                JobStalled(job.id, self.name, job.stalled_count),
            )

            if job.stalled_count > self.max_stalled_count:
                job.state = JobState.FAILED
                job.failed_reason = STALLED_LIMIT_REASON
                job.finished_at = self._now()
            else:
                job.state = JobState.WAITING

            await self._store_stall(job)

            if job.state == JobState.FAILED:
                await self.emit(
                    QueueEvent.FAILED,
                    job,
                    JobExecutionFailed(job.id, self.name, job.attempts_made, STALLED_LIMIT_REASON),
                )
            recovered.append(job)

        return recovered

    async def report_error(self, error: Exception) -> None:
        """Emit an error event for a broker-level failure."""
        await self.emit(QueueEvent.ERROR, error)

    # ------------------------------------------------------------------
    # Storage primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def _next_id(self) -> str:
        """Allocate a job id."""

    @abstractmethod
    async def _insert(self, job: Job) -> None:
        """Store a new job in the wait list, or the delayed set if it is delayed."""

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        """Load a job by id. Returns a copy the caller may mutate."""

    @abstractmethod
    async def _promote_delayed(self) -> None:
        """Move delayed jobs that are due to the wait list."""

    @abstractmethod
    async def _claim_next(self, worker_id: str) -> Job | None:
        """Pop the oldest waiting job, mark it active and lock it."""

    @abstractmethod
    async def extend_lock(self, job_id: str, worker_id: str) -> bool:
        """Extend the lock on an active job held by ``worker_id``."""

    @abstractmethod
    async def _store_completion(self, job: Job, worker_id: str | None) -> bool:
        """
        Persist a completed job and apply completed retention.

        Returns False without writing when ``worker_id`` is given and does
        not hold a live lock on the job.
        """

    @abstractmethod
    async def _store_failure(self, job: Job, worker_id: str | None) -> bool:
        """Persist a failed attempt: job is either DELAYED or FAILED. Lock check as above."""

    @abstractmethod
    async def _store_stall(self, job: Job) -> None:
        """Persist a stalled job: job is either WAITING or FAILED."""

    @abstractmethod
    async def _expired_active_ids(self) -> list[str]:
        """Ids of active jobs whose lock has expired."""

    @abstractmethod
    async def get_counts(self) -> QueueStats:
        """Point-in-time counts per state."""

    @abstractmethod
    async def clean(self, states: Iterable[JobState | str], grace_ms: int = 0) -> int:
        """
        Remove jobs in the given states older than ``grace_ms``.

        Returns:
            Number of jobs removed.
        """

    async def close(self) -> None:
        """Release backend resources. The default has none."""
