"""
Worker process for executing jobs.

The worker pulls jobs from the registry's queues, executes them, and
reports the outcome back so the queue can apply its retry policy.
"""

import asyncio
import importlib
import logging
import os
import signal
import time

from memorymesh.cache.store import TieredCache, setup_cache
from memorymesh.config import QueueMode, get_settings
from memorymesh.constants import SPAN_EXECUTE_JOB, JobState
from memorymesh.errors import QueueUnavailable
from memorymesh.observability.logging import job_log_context, setup_logging
from memorymesh.observability.metrics import MetricsCollector, get_metrics
from memorymesh.observability.tracing import get_tracer, setup_tracing
from memorymesh.queues.base import Queue
from memorymesh.queues.registry import QueueRegistry
from memorymesh.types.job import Job, JobContext
from memorymesh.worker.handlers import execute_job

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker that polls queues for and executes jobs.

    Features:
    - Round-robin fetching across queues up to ``concurrency`` jobs per poll
    - Heartbeat to extend locks for long-running jobs
    - Graceful shutdown on SIGTERM/SIGINT
    - Results written to the cache when the job carries a cache key
    """

    def __init__(
        self,
        registry: QueueRegistry,
        *,
        cache: TieredCache | None = None,
        queue_names: list[str] | None = None,
        worker_id: str | None = None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the worker.

        Args:
            registry: Registry whose queues are consumed.
            cache: Cache job results are written to.
            queue_names: Queues to consume. Defaults to all of them.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            concurrency: Maximum jobs executed per poll.
            poll_interval: Seconds between polls when queues are empty.
            metrics: Metrics collector. Defaults to the process collector.
        """
        settings = get_settings()

        self.registry = registry
        self.worker_id = worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.queue_names = queue_names
        self.concurrency = concurrency or settings.worker_concurrency
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.heartbeat_interval = settings.worker_heartbeat_interval_seconds

        self._cache = cache
        self._running = False
        self._current_jobs: dict[tuple[str, str], Queue] = {}
        self._heartbeat_task: asyncio.Task | None = None
        self._metrics = metrics or get_metrics()

    async def start(self) -> None:
        """Start the worker."""
        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "concurrency": self.concurrency},
        )

        self._running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        try:
            while self._running:
                try:
                    jobs_processed = await self.run_once()

                    # If no jobs were processed, wait before polling again
                    if jobs_processed == 0:
                        await asyncio.sleep(self.poll_interval)

                except QueueUnavailable as e:
                    logger.error(
                        "Broker unavailable, retrying after poll interval",
                        extra={"worker_id": self.worker_id, "error": str(e)},
                    )
                    await asyncio.sleep(self.poll_interval)
                except Exception as e:
                    logger.exception(
                        "Error in worker loop",
                        extra={"worker_id": self.worker_id, "error": str(e)},
                    )
                    await asyncio.sleep(self.poll_interval)
        finally:
            self._running = False
            if self._heartbeat_task:
                self._heartbeat_task.cancel()
                try:
                    await self._heartbeat_task
                except asyncio.CancelledError:
                    pass
                self._heartbeat_task = None

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker gracefully. Jobs already fetched are finished."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    def _queues(self) -> list[Queue]:
        queues = self.registry.queues()
        if self.queue_names is None:
            return queues
        return [queue for queue in queues if queue.name in self.queue_names]

    async def run_once(self) -> int:
        """
        Fetch up to ``concurrency`` jobs and execute them concurrently.

        Returns:
            Number of jobs processed.
        """
        claimed: list[tuple[Queue, Job]] = []
        queues = self._queues()

        while queues and len(claimed) < self.concurrency:
            for queue in list(queues):
                job = await queue.fetch_next(self.worker_id)
                if job is None:
                    queues.remove(queue)
                    continue
                claimed.append((queue, job))
                if len(claimed) >= self.concurrency:
                    break

        if not claimed:
            return 0

        logger.debug(
            "Fetched jobs",
            extra={"worker_id": self.worker_id, "count": len(claimed)},
        )

        tasks = []
        for queue, job in claimed:
            self._current_jobs[(queue.name, job.id)] = queue
            tasks.append(asyncio.create_task(self._execute_job(queue, job)))

        await asyncio.gather(*tasks, return_exceptions=True)
        return len(claimed)

    async def _execute_job(self, queue: Queue, job: Job) -> None:
        """
        Execute a single job and report the outcome to its queue.

        Args:
            queue: Queue the job was fetched from.
            job: The active job.
        """
        with job_log_context(job, self.worker_id):
            await self._run_job(queue, job)

    async def _run_job(self, queue: Queue, job: Job) -> None:
        start_time = time.monotonic()
        context = JobContext(
            job_id=job.id,
            queue_name=queue.name,
            job_type=job.job_type,
            attempt=job.attempts_made + 1,
            max_attempts=job.options.attempts,
            payload=job.payload,
            worker_id=self.worker_id,
        )

        logger.info(
            "Executing job",
            extra={
                "job_id": job.id,
                "queue": queue.name,
                "job_type": job.job_type,
                "attempt": context.attempt,
            },
        )

        try:
            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", job.id)
                span.set_attribute("queue", queue.name)
                span.set_attribute("job_type", job.job_type)
                span.set_attribute("attempt", context.attempt)

                result = await execute_job(context)

            duration = time.monotonic() - start_time

            if result.success:
                completed = await queue.complete(job.id, result.output, worker_id=self.worker_id)
                if completed is None:
                    logger.warning(
                        "Job lock lost before completion, result discarded",
                        extra={"job_id": job.id, "queue": queue.name},
                    )
                    return

                await self._cache_result(job, result.output)
                status = "succeeded"
                logger.info(
                    "Job completed successfully",
                    extra={"job_id": job.id, "queue": queue.name, "duration": f"{duration:.2f}s"},
                )
            else:
                updated = await queue.fail(
                    job.id, result.error or "Unknown error", worker_id=self.worker_id
                )
                if updated is None:
                    logger.warning(
                        "Job lock lost before failure was recorded",
                        extra={"job_id": job.id, "queue": queue.name, "error": result.error},
                    )
                    return

                status = "retrying" if updated.state == JobState.DELAYED else "failed"
                logger.warning(
                    "Job failed",
                    extra={
                        "job_id": job.id,
                        "queue": queue.name,
                        "error": result.error,
                        "attempt": context.attempt,
                        "status": status,
                    },
                )

            self._metrics.record_job_completed(
                queue=queue.name,
                status=status,
                duration_seconds=duration,
            )

        except QueueUnavailable as e:
            # The lock expires and the reaper returns the job to the queue.
            logger.error(
                "Broker unavailable while finishing job",
                extra={"job_id": job.id, "queue": queue.name, "error": str(e)},
            )
        except Exception as e:
            logger.exception(
                "Exception executing job",
                extra={"job_id": job.id, "queue": queue.name, "error": str(e)},
            )
        finally:
            self._current_jobs.pop((queue.name, job.id), None)

    async def _cache_result(self, job: Job, output: object) -> None:
        if self._cache is None or not job.options.cache_key or output is None:
            return
        await self._cache.set(job.options.cache_key, output, job.options.cache_ttl_seconds)

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend locks on running jobs.

        This prevents jobs from being marked stalled by the reaper while
        they're still being executed.
        """
        while self._running:
            try:
                await asyncio.sleep(self.heartbeat_interval)
                await self.heartbeat()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Error in heartbeat loop", extra={"error": str(e)})

    async def heartbeat(self) -> int:
        """
        Extend the lock of every running job once.

        Returns:
            Number of locks extended.
        """
        extended = 0
        for (_, job_id), queue in list(self._current_jobs.items()):
            if await queue.extend_lock(job_id, self.worker_id):
                extended += 1
                logger.debug("Extended lock", extra={"job_id": job_id, "queue": queue.name})
            else:
                logger.warning(
                    "Lock lost for running job", extra={"job_id": job_id, "queue": queue.name}
                )
        return extended


def load_handler_modules(modules: list[str]) -> None:
    """Import the modules that register job handlers."""
    for module in modules:
        importlib.import_module(module)
        logger.info("Loaded handler module", extra={"module": module})


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging("worker")
    setup_tracing()
    load_handler_modules(settings.worker_handler_modules)

    registry = QueueRegistry(settings)
    await registry.initialize()

    if settings.queue_mode == QueueMode.MEMORY:
        logger.warning("Memory queues are per-process; this worker only sees its own jobs")
    elif registry.degraded:
        logger.warning("Broker unavailable, worker will stay idle")

    cache = setup_cache()
    worker = Worker(registry, cache=cache)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await cache.close()
        await registry.close()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
