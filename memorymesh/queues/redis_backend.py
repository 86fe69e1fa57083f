"""
Redis queue backend.

Key layout per queue, under ``{prefix}:{queue}:``:

    id            INCR counter for job ids
    job:{id}      hash with the serialized job
    wait          list, oldest job on the left
    active        list of jobs currently held by workers
    lock:{id}     worker id holding the job, expires after the stall interval
    delayed       sorted set scored by available_at
    completed     sorted set scored by finished_at
    failed        sorted set scored by finished_at
"""

import functools
import json
import logging
from collections.abc import Iterable
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from memorymesh.constants import JobState
from memorymesh.errors import QueueUnavailable
from memorymesh.queues.base import Queue
from memorymesh.types.job import Job, JobOptions, QueueStats

logger = logging.getLogger(__name__)


def _broker_call(method):
    """Translate broker failures into QueueUnavailable and emit an error event."""

    @functools.wraps(method)
    async def wrapper(self: "RedisQueue", *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except RedisError as e:
            error = QueueUnavailable(
                f"Broker call failed on queue {self.name}: {e}", queue_name=self.name
            )
            await self.report_error(error)
            raise error from e

    return wrapper


def _opt_int(value: str | None) -> int | None:
    return int(value) if value else None


def job_to_hash(job: Job) -> dict[str, str]:
    """Serialize a job into Redis hash fields."""
    return {
        "id": job.id,
        "queue_name": job.queue_name,
        "job_type": job.job_type,
        "payload": json.dumps(job.payload),
        "options": job.options.model_dump_json(),
        "state": str(job.state),
        "attempts_made": str(job.attempts_made),
        "stalled_count": str(job.stalled_count),
        "submitted_at": str(job.submitted_at),
        "available_at": "" if job.available_at is None else str(job.available_at),
        "processed_at": "" if job.processed_at is None else str(job.processed_at),
        "finished_at": "" if job.finished_at is None else str(job.finished_at),
        "failed_reason": job.failed_reason or "",
        "result": json.dumps(job.result),
    }


def job_from_hash(data: dict[str, str]) -> Job:
    """Deserialize a job from Redis hash fields."""
    return Job(
        id=data["id"],
        queue_name=data["queue_name"],
        job_type=data["job_type"],
        payload=json.loads(data["payload"]),
        options=JobOptions.model_validate_json(data["options"]),
        state=JobState(data["state"]),
        attempts_made=int(data.get("attempts_made") or 0),
        stalled_count=int(data.get("stalled_count") or 0),
        submitted_at=int(data["submitted_at"]),
        available_at=_opt_int(data.get("available_at")),
        processed_at=_opt_int(data.get("processed_at")),
        finished_at=_opt_int(data.get("finished_at")),
        failed_reason=data.get("failed_reason") or None,
        result=json.loads(data["result"]) if data.get("result") else None,
    )


class RedisQueue(Queue):
    """
    Queue stored in Redis.

    The client is shared between queues and owned by the registry, so
    ``close`` leaves it open.
    """

    def __init__(self, name: str, client: Redis, *args, prefix: str = "memorymesh", **kwargs):
        super().__init__(name, *args, **kwargs)
        self._client = client
        self._prefix = prefix

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix, self.name, *parts))

    def _job_key(self, job_id: str) -> str:
        return self._key("job", job_id)

    def _lock_key(self, job_id: str) -> str:
        return self._key("lock", job_id)

    @_broker_call
    async def _next_id(self) -> str:
        return str(await self._client.incr(self._key("id")))

    @_broker_call
    async def _insert(self, job: Job) -> None:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.id), mapping=job_to_hash(job))
            if job.state == JobState.DELAYED:
                pipe.zadd(self._key("delayed"), {job.id: job.available_at or job.submitted_at})
            else:
                pipe.rpush(self._key("wait"), job.id)
            await pipe.execute()

    @_broker_call
    async def get_job(self, job_id: str) -> Job | None:
        return await self._load(job_id)

    async def _load(self, job_id: str) -> Job | None:
        data = await self._client.hgetall(self._job_key(job_id))
        if not data:
            return None
        return job_from_hash(data)

    @_broker_call
    async def _promote_delayed(self) -> None:
        due = await self._client.zrangebyscore(self._key("delayed"), 0, self._now())
        for job_id in due:
            # ZREM decides which caller promotes the job
            if not await self._client.zrem(self._key("delayed"), job_id):
                continue
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hset(
                    self._job_key(job_id),
                    mapping={"state": str(JobState.WAITING), "available_at": ""},
                )
                pipe.rpush(self._key("wait"), job_id)
                await pipe.execute()

    @_broker_call
    async def _claim_next(self, worker_id: str) -> Job | None:
        job_id = await self._client.lmove(self._key("wait"), self._key("active"), "LEFT", "RIGHT")
        if job_id is None:
            return None

        async with self._client.pipeline(transaction=True) as pipe:
            pipe.set(self._lock_key(job_id), worker_id, px=self.stalled_interval_ms)
            pipe.hset(
                self._job_key(job_id),
                mapping={"state": str(JobState.ACTIVE), "processed_at": str(self._now())},
            )
            await pipe.execute()

        return await self._load(job_id)

    @_broker_call
    async def extend_lock(self, job_id: str, worker_id: str) -> bool:
        owner = await self._client.get(self._lock_key(job_id))
        if owner != worker_id:
            return False
        return bool(
            await self._client.set(
                self._lock_key(job_id), worker_id, px=self.stalled_interval_ms, xx=True
            )
        )

    async def _move_from_active(
        self, job: Job, worker_id: str | None, target: str, score: int
    ) -> bool:
        """
        Move an active job into a sorted set, writing its hash.

        With ``worker_id`` the lock key is watched and the move is aborted
        unless that worker holds the lock up to EXEC.
        """
        lock_key = self._lock_key(job.id)
        async with self._client.pipeline(transaction=True) as pipe:
            if worker_id is not None:
                await pipe.watch(lock_key)
                if await pipe.get(lock_key) != worker_id:
                    return False
                pipe.multi()
            pipe.lrem(self._key("active"), 1, job.id)
            pipe.delete(lock_key)
            pipe.hset(self._job_key(job.id), mapping=job_to_hash(job))
            pipe.zadd(self._key(target), {job.id: score})
            try:
                await pipe.execute()
            except WatchError:
                return False
        return True

    @_broker_call
    async def _store_completion(self, job: Job, worker_id: str | None) -> bool:
        score = job.finished_at or self._now()
        if not await self._move_from_active(job, worker_id, "completed", score):
            return False
        await self._trim(self._key("completed"), job.options.retention.completed)
        return True

    @_broker_call
    async def _store_failure(self, job: Job, worker_id: str | None) -> bool:
        if job.state == JobState.DELAYED:
            target, score = "delayed", job.available_at or self._now()
        else:
            target, score = "failed", job.finished_at or self._now()
        moved = await self._move_from_active(job, worker_id, target, score)
        if moved and job.state == JobState.FAILED:
            await self._trim(self._key("failed"), job.options.retention.failed)
        return moved

    @_broker_call
    async def _store_stall(self, job: Job) -> None:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 1, job.id)
            pipe.delete(self._lock_key(job.id))
            pipe.hset(self._job_key(job.id), mapping=job_to_hash(job))
            if job.state == JobState.WAITING:
                pipe.rpush(self._key("wait"), job.id)
            else:
                pipe.zadd(self._key("failed"), {job.id: job.finished_at or self._now()})
            await pipe.execute()
        if job.state == JobState.FAILED:
            await self._trim(self._key("failed"), job.options.retention.failed)

    @_broker_call
    async def _expired_active_ids(self) -> list[str]:
        expired = []
        for job_id in await self._client.lrange(self._key("active"), 0, -1):
            # Lock and ACTIVE state are written together; a job moved by LMOVE
            # but not yet marked active is not stalled.
            state = await self._client.hget(self._job_key(job_id), "state")
            if state != JobState.ACTIVE:
                continue
            if not await self._client.exists(self._lock_key(job_id)):
                expired.append(job_id)
        return expired

    async def _trim(self, key: str, keep: int | None) -> None:
        """Drop the oldest terminal jobs beyond the retention bound."""
        if keep is None:
            return
        count = await self._client.zcard(key)
        if count <= keep:
            return
        doomed = await self._client.zrange(key, 0, count - keep - 1)
        if not doomed:
            return
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zrem(key, *doomed)
            pipe.delete(*(self._job_key(job_id) for job_id in doomed))
            await pipe.execute()

    @_broker_call
    async def get_counts(self) -> QueueStats:
        async with self._client.pipeline(transaction=False) as pipe:
            pipe.llen(self._key("wait"))
            pipe.llen(self._key("active"))
            pipe.zcard(self._key("completed"))
            pipe.zcard(self._key("failed"))
            pipe.zcard(self._key("delayed"))
            waiting, active, completed, failed, delayed = await pipe.execute()

        return QueueStats(
            queue=self.name,
            waiting=waiting,
            active=active,
            completed=completed,
            failed=failed,
            delayed=delayed,
        )

    @_broker_call
    async def clean(self, states: Iterable[JobState | str], grace_ms: int = 0) -> int:
        cutoff = self._now() - grace_ms
        removed = 0

        for state in {JobState(s) for s in states}:
            if state in (JobState.COMPLETED, JobState.FAILED):
                key = self._key(str(state))
                doomed = await self._client.zrangebyscore(key, 0, cutoff)
                if doomed:
                    await self._client.zrem(key, *doomed)
            elif state == JobState.DELAYED:
                key = self._key("delayed")
                doomed = await self._older_than(
                    await self._client.zrange(key, 0, -1), "submitted_at", cutoff
                )
                if doomed:
                    await self._client.zrem(key, *doomed)
            elif state in (JobState.WAITING, JobState.ACTIVE):
                key = self._key("wait" if state == JobState.WAITING else "active")
                field = "submitted_at" if state == JobState.WAITING else "processed_at"
                doomed = await self._older_than(
                    await self._client.lrange(key, 0, -1), field, cutoff
                )
                for job_id in doomed:
                    await self._client.lrem(key, 1, job_id)
            else:
                continue

            if doomed:
                await self._client.delete(
                    *(self._job_key(job_id) for job_id in doomed),
                    *(self._lock_key(job_id) for job_id in doomed),
                )
            removed += len(doomed)

        logger.debug(
            "Cleaned queue", extra={"queue": self.name, "removed": removed, "grace_ms": grace_ms}
        )
        return removed

    async def _older_than(self, job_ids: list[str], field: str, cutoff: int) -> list[str]:
        doomed: list[str] = []
        for job_id in job_ids:
            value: Any = await self._client.hget(self._job_key(job_id), field)
            if value and int(value) <= cutoff:
                doomed.append(job_id)
        return doomed
