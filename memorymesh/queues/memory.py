"""
In-process queue backend.

Used when no broker is configured at all. Jobs live only as long as the
process, so this is for development and tests.
"""

import itertools
from collections import deque
from collections.abc import Iterable

from memorymesh.constants import JobState
from memorymesh.queues.base import Queue
from memorymesh.types.job import Job, QueueStats


class MemoryQueue(Queue):
    """Queue backed by plain Python containers."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._ids = itertools.count(1)
        self._jobs: dict[str, Job] = {}
        self._wait: deque[str] = deque()
        # job_id -> (worker_id, lock_expires_at)
        self._active: dict[str, tuple[str, int]] = {}
        # job_id -> available_at
        self._delayed: dict[str, int] = {}
        # job_id -> finished_at, in finishing order
        self._completed: dict[str, int] = {}
        self._failed: dict[str, int] = {}

    async def _next_id(self) -> str:
        return str(next(self._ids))

    async def _insert(self, job: Job) -> None:
        self._jobs[job.id] = job.model_copy(deep=True)
        if job.state == JobState.DELAYED:
            self._delayed[job.id] = job.available_at or self._now()
        else:
            self._wait.append(job.id)

    async def get_job(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job is not None else None

    async def _promote_delayed(self) -> None:
        now = self._now()
        due = sorted(
            (available_at, job_id)
            for job_id, available_at in self._delayed.items()
            if available_at <= now
        )
        for _, job_id in due:
            del self._delayed[job_id]
            job = self._jobs[job_id]
            job.state = JobState.WAITING
            job.available_at = None
            self._wait.append(job_id)

    async def _claim_next(self, worker_id: str) -> Job | None:
        if not self._wait:
            return None
        job_id = self._wait.popleft()
        now = self._now()
        job = self._jobs[job_id]
        job.state = JobState.ACTIVE
        job.processed_at = now
        self._active[job_id] = (worker_id, now + self.stalled_interval_ms)
        return job.model_copy(deep=True)

    def _holds_lock(self, job_id: str, worker_id: str) -> bool:
        lock = self._active.get(job_id)
        return lock is not None and lock[0] == worker_id and lock[1] > self._now()

    async def extend_lock(self, job_id: str, worker_id: str) -> bool:
        if not self._holds_lock(job_id, worker_id):
            return False
        self._active[job_id] = (worker_id, self._now() + self.stalled_interval_ms)
        return True

    async def _store_completion(self, job: Job, worker_id: str | None) -> bool:
        if worker_id is not None and not self._holds_lock(job.id, worker_id):
            return False
        self._jobs[job.id] = job.model_copy(deep=True)
        self._active.pop(job.id, None)
        self._completed[job.id] = job.finished_at or self._now()
        self._trim(self._completed, job.options.retention.completed)
        return True

    async def _store_failure(self, job: Job, worker_id: str | None) -> bool:
        if worker_id is not None and not self._holds_lock(job.id, worker_id):
            return False
        self._jobs[job.id] = job.model_copy(deep=True)
        self._active.pop(job.id, None)
        if job.state == JobState.DELAYED:
            self._delayed[job.id] = job.available_at or self._now()
        else:
            self._failed[job.id] = job.finished_at or self._now()
            self._trim(self._failed, job.options.retention.failed)
        return True

    async def _store_stall(self, job: Job) -> None:
        self._jobs[job.id] = job.model_copy(deep=True)
        self._active.pop(job.id, None)
        if job.state == JobState.WAITING:
            self._wait.append(job.id)
        else:
            self._failed[job.id] = job.finished_at or self._now()
            self._trim(self._failed, job.options.retention.failed)

    async def _expired_active_ids(self) -> list[str]:
        now = self._now()
        return [job_id for job_id, (_, expires_at) in self._active.items() if expires_at <= now]

    def _trim(self, bucket: dict[str, int], keep: int | None) -> None:
        """Drop the oldest terminal jobs beyond the retention bound."""
        if keep is None:
            return
        while len(bucket) > keep:
            oldest = next(iter(bucket))
            del bucket[oldest]
            self._jobs.pop(oldest, None)

    async def get_counts(self) -> QueueStats:
        return QueueStats(
            queue=self.name,
            waiting=len(self._wait),
            active=len(self._active),
            completed=len(self._completed),
            failed=len(self._failed),
            delayed=len(self._delayed),
        )

    async def clean(self, states: Iterable[JobState | str], grace_ms: int = 0) -> int:
        cutoff = self._now() - grace_ms
        removed = 0

        for state in {JobState(s) for s in states}:
            if state == JobState.COMPLETED:
                doomed = [i for i, at in self._completed.items() if at <= cutoff]
                for job_id in doomed:
                    del self._completed[job_id]
            elif state == JobState.FAILED:
                doomed = [i for i, at in self._failed.items() if at <= cutoff]
                for job_id in doomed:
                    del self._failed[job_id]
            elif state == JobState.DELAYED:
                doomed = [i for i in self._delayed if self._jobs[i].submitted_at <= cutoff]
                for job_id in doomed:
                    del self._delayed[job_id]
            elif state == JobState.WAITING:
                doomed = [i for i in self._wait if self._jobs[i].submitted_at <= cutoff]
                kept = set(self._wait) - set(doomed)
                self._wait = deque(i for i in self._wait if i in kept)
            elif state == JobState.ACTIVE:
                doomed = [
                    i for i in self._active if (self._jobs[i].processed_at or 0) <= cutoff
                ]
                for job_id in doomed:
                    del self._active[job_id]
            else:
                continue

            for job_id in doomed:
                self._jobs.pop(job_id, None)
            removed += len(doomed)

        return removed
