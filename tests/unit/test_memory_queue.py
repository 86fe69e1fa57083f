"""
Unit tests for the queue state machine, run against the memory backend.
"""

import pytest

from memorymesh.constants import JobState, QueueEvent, QueueName
from memorymesh.errors import JobExecutionFailed, JobStalled
from memorymesh.queues.base import default_job_options
from memorymesh.queues.memory import MemoryQueue
from memorymesh.types.job import BackoffPolicy, JobOptions, RetentionPolicy


class TestMemoryQueue:
    """Tests for admission, fetch, retry, stall and retention."""

    @pytest.fixture
    def queue(self, clock) -> MemoryQueue:
        return MemoryQueue(QueueName.IMAGE_ANALYSIS, clock=clock)

    @pytest.fixture
    def options(self) -> JobOptions:
        return default_job_options(QueueName.IMAGE_ANALYSIS)

    @pytest.mark.asyncio
    async def test_add_assigns_id_and_waits(self, queue: MemoryQueue, options, clock):
        job = await queue.add("analyze-image", {"mediaId": "m1"}, options)

        assert job.id == "1"
        assert job.state == JobState.WAITING
        assert job.submitted_at == clock.now
        assert (await queue.get_counts()).waiting == 1

    @pytest.mark.asyncio
    async def test_fetch_is_fifo(self, queue: MemoryQueue, options):
        first = await queue.add("analyze-image", {"n": 1}, options)
        second = await queue.add("analyze-image", {"n": 2}, options)

        assert (await queue.fetch_next("w1")).id == first.id
        assert (await queue.fetch_next("w1")).id == second.id
        assert await queue.fetch_next("w1") is None

    @pytest.mark.asyncio
    async def test_fetch_marks_active(self, queue: MemoryQueue, options, clock):
        await queue.add("analyze-image", {}, options)

        job = await queue.fetch_next("w1")

        assert job.state == JobState.ACTIVE
        assert job.processed_at == clock.now
        counts = await queue.get_counts()
        assert counts.waiting == 0
        assert counts.active == 1

    @pytest.mark.asyncio
    async def test_returned_jobs_are_copies(self, queue: MemoryQueue, options):
        job = await queue.add("analyze-image", {"mediaId": "m1"}, options)
        job.payload["mediaId"] = "changed"

        stored = await queue.get_job(job.id)

        assert stored.payload == {"mediaId": "m1"}

    @pytest.mark.asyncio
    async def test_complete_stores_result(self, queue: MemoryQueue, options):
        await queue.add("analyze-image", {}, options)
        job = await queue.fetch_next("w1")

        completed = await queue.complete(job.id, {"caption": "a cat"})

        assert completed.state == JobState.COMPLETED
        assert completed.result == {"caption": "a cat"}
        counts = await queue.get_counts()
        assert counts.active == 0
        assert counts.completed == 1

    @pytest.mark.asyncio
    async def test_complete_requires_active_job(self, queue: MemoryQueue, options):
        job = await queue.add("analyze-image", {}, options)

        assert await queue.complete(job.id) is None
        assert await queue.complete("missing") is None

    @pytest.mark.asyncio
    async def test_failure_delays_with_exponential_backoff(self, queue: MemoryQueue, options, clock):
        """Attempts 1 and 2 are delayed 2000 then 4000 ms."""
        job = await queue.add("analyze-image", {}, options)

        await queue.fetch_next("w1")
        failed = await queue.fail(job.id, "boom")
        assert failed.state == JobState.DELAYED
        assert failed.attempts_made == 1
        assert failed.available_at == clock.now + 2000

        # Not due yet
        clock.advance(1999)
        assert await queue.fetch_next("w1") is None

        clock.advance(1)
        assert (await queue.fetch_next("w1")).id == job.id
        failed = await queue.fail(job.id, "boom again")
        assert failed.attempts_made == 2
        assert failed.available_at == clock.now + 4000

    @pytest.mark.asyncio
    async def test_fixed_backoff(self, queue: MemoryQueue, clock):
        options = JobOptions(backoff=BackoffPolicy(type="fixed", delay_ms=500))
        job = await queue.add("analyze-image", {}, options)

        for _ in range(2):
            await queue.fetch_next("w1")
            failed = await queue.fail(job.id, "boom")
            assert failed.available_at == clock.now + 500
            clock.advance(500)

    @pytest.mark.asyncio
    async def test_exhausted_attempts_fail_job(self, queue: MemoryQueue, options, clock):
        """The third failure with attempts=3 fails the job and emits failed."""
        events = []
        queue.on(QueueEvent.FAILED, lambda job, error: events.append((job.id, error)))
        job = await queue.add("analyze-image", {}, options)

        for delay in (2000, 4000):
            await queue.fetch_next("w1")
            await queue.fail(job.id, "boom")
            clock.advance(delay)

        await queue.fetch_next("w1")
        final = await queue.fail(job.id, "boom")

        assert final.state == JobState.FAILED
        assert final.attempts_made == 3
        assert final.failed_reason == "boom"
        assert (await queue.get_counts()).failed == 1
        assert len(events) == 1
        assert isinstance(events[0][1], JobExecutionFailed)
        assert events[0][1].attempts == 3

    @pytest.mark.asyncio
    async def test_delayed_option_holds_job(self, queue: MemoryQueue, clock):
        job = await queue.add("analyze-image", {}, JobOptions(delay_ms=1000))

        assert job.state == JobState.DELAYED
        assert (await queue.get_counts()).delayed == 1
        assert await queue.fetch_next("w1") is None

        clock.advance(1000)
        assert (await queue.fetch_next("w1")).id == job.id

    @pytest.mark.asyncio
    async def test_extend_lock_requires_owner(self, queue: MemoryQueue, options):
        job = await queue.add("analyze-image", {}, options)
        await queue.fetch_next("w1")

        assert await queue.extend_lock(job.id, "w1") is True
        assert await queue.extend_lock(job.id, "w2") is False
        assert await queue.extend_lock("missing", "w1") is False

    @pytest.mark.asyncio
    async def test_first_stall_requeues_without_consuming_attempt(
        self, queue: MemoryQueue, options, clock
    ):
        events = []
        queue.on(QueueEvent.STALLED, lambda job, error: events.append(error))
        job = await queue.add("analyze-image", {}, options)
        await queue.fetch_next("w1")

        # Lock still held
        clock.advance(29_999)
        assert await queue.recover_stalled() == []

        clock.advance(1)
        stalled = await queue.recover_stalled()

        assert [j.id for j in stalled] == [job.id]
        assert stalled[0].state == JobState.WAITING
        assert stalled[0].stalled_count == 1
        assert stalled[0].attempts_made == 0
        assert isinstance(events[0], JobStalled)
        assert (await queue.get_counts()).waiting == 1

    @pytest.mark.asyncio
    async def test_heartbeat_prevents_stall(self, queue: MemoryQueue, options, clock):
        job = await queue.add("analyze-image", {}, options)
        await queue.fetch_next("w1")

        clock.advance(20_000)
        await queue.extend_lock(job.id, "w1")
        clock.advance(20_000)

        assert await queue.recover_stalled() == []

    @pytest.mark.asyncio
    async def test_second_stall_fails_job(self, queue: MemoryQueue, options, clock):
        failed_events = []
        queue.on(QueueEvent.FAILED, lambda job, error: failed_events.append(job.id))
        job = await queue.add("analyze-image", {}, options)

        for _ in range(2):
            await queue.fetch_next("w1")
            clock.advance(30_000)
            stalled = await queue.recover_stalled()

        assert stalled[0].state == JobState.FAILED
        assert stalled[0].stalled_count == 2
        assert failed_events == [job.id]
        assert (await queue.get_counts()).failed == 1

    @pytest.mark.asyncio
    async def test_retention_purges_oldest_completed(self, queue: MemoryQueue):
        options = JobOptions(retention=RetentionPolicy(completed=2, failed=1))
        ids = []
        for n in range(3):
            job = await queue.add("analyze-image", {"n": n}, options)
            await queue.fetch_next("w1")
            await queue.complete(job.id)
            ids.append(job.id)

        assert (await queue.get_counts()).completed == 2
        assert await queue.get_job(ids[0]) is None
        assert await queue.get_job(ids[2]) is not None

    @pytest.mark.asyncio
    async def test_retention_purges_oldest_failed(self, queue: MemoryQueue):
        options = JobOptions(attempts=1, retention=RetentionPolicy(failed=1))
        first = await queue.add("analyze-image", {}, options)
        second = await queue.add("analyze-image", {}, options)
        for job in (first, second):
            await queue.fetch_next("w1")
            await queue.fail(job.id, "boom")

        assert (await queue.get_counts()).failed == 1
        assert await queue.get_job(first.id) is None

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_propagate(self, queue: MemoryQueue, options):
        def broken(job):
            raise RuntimeError("listener bug")

        queue.on(QueueEvent.COMPLETED, broken)
        job = await queue.add("analyze-image", {}, options)
        await queue.fetch_next("w1")

        completed = await queue.complete(job.id)

        assert completed.state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_async_listener_is_awaited(self, queue: MemoryQueue, options):
        seen = []

        async def listener(job):
            seen.append(job.id)

        queue.on(QueueEvent.COMPLETED, listener)
        job = await queue.add("analyze-image", {}, options)
        await queue.fetch_next("w1")
        await queue.complete(job.id)

        assert seen == [job.id]

    @pytest.mark.asyncio
    async def test_clean_removes_by_state_and_age(self, queue: MemoryQueue, options, clock):
        done = await queue.add("analyze-image", {}, options)
        await queue.fetch_next("w1")
        await queue.complete(done.id)
        await queue.add("analyze-image", {}, options)

        clock.advance(10_000)
        fresh = await queue.add("analyze-image", {}, options)

        removed = await queue.clean([JobState.COMPLETED, JobState.WAITING], grace_ms=5_000)

        assert removed == 2
        counts = await queue.get_counts()
        assert counts.completed == 0
        assert counts.waiting == 1
        assert await queue.get_job(fresh.id) is not None


class TestDefaultOptions:
    """Tests for per-queue defaults."""

    def test_defaults(self):
        options = default_job_options(QueueName.TAG_GENERATION)

        assert options.attempts == 3
        assert options.backoff.type == "exponential"
        assert options.backoff.delay_ms == 2000
        assert options.retention.completed == 100
        assert options.retention.failed == 50

    def test_notification_retries_five_times(self):
        assert default_job_options(QueueName.NOTIFICATION).attempts == 5
