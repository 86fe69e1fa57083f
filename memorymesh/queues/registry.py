"""
Queue registry: owns the broker connection and the named queues.

Three degradation levels are selected by ``queue_mode``:

- redis: connect at startup
- lazy: connect shortly after startup, or on the first enqueue
- memory: in-process queues, no broker

Outside production a broker that cannot be reached leaves the registry
initialized but empty, and ``enqueue`` answers with no-op handles. In
production the same condition raises QueueUnavailable.
"""

import asyncio
import functools
import logging
from collections.abc import Callable, Iterable
from typing import Any, cast

from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import RedisError

from memorymesh.config import QueueMode, Settings, get_settings
from memorymesh.constants import JobState, QueueEvent, QueueName
from memorymesh.errors import QueueUnavailable, UnknownQueue
from memorymesh.observability.metrics import MetricsCollector, get_metrics
from memorymesh.queues.base import Queue, default_job_options
from memorymesh.queues.memory import MemoryQueue
from memorymesh.queues.redis_backend import RedisQueue
from memorymesh.types.job import Job, JobHandle, JobOptions, QueueStats, merge_job_options

logger = logging.getLogger(__name__)

ALL_STATES = tuple(JobState)


class QueueRegistry:
    """
    Lazily initialized set of named queues.

    Initialization runs at most once; concurrent callers wait on the same
    attempt.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        mode: QueueMode | None = None,
        client: Redis | None = None,
        clock: Callable[[], int] | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the registry. No connection is made here.

        Args:
            settings: Application settings.
            mode: Overrides ``settings.queue_mode``.
            client: Pre-built Redis client. The registry does not close it.
            clock: Epoch milliseconds source handed to every queue.
            metrics: Metrics collector. Defaults to the process collector.
        """
        self._settings = settings or get_settings()
        self.mode = QueueMode(mode or self._settings.queue_mode)
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._metrics = metrics or get_metrics()

        self._queues: dict[str, Queue] = {}
        self._initialized = False
        self._degraded = False
        self._init_lock = asyncio.Lock()
        self._deferred_task: asyncio.Task | None = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def degraded(self) -> bool:
        """True when initialization finished without a broker."""
        return self._degraded

    @property
    def broker_status(self) -> str:
        """One of memory, pending, connected, unavailable."""
        if self.mode == QueueMode.MEMORY:
            return "memory"
        if not self._initialized:
            return "pending"
        return "unavailable" if self._degraded else "connected"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Start the registry according to its mode.

        Lazy mode schedules initialization after ``queue_init_delay_seconds``
        and returns immediately, so process startup never waits on the broker.
        """
        if self.mode == QueueMode.LAZY:
            if self._deferred_task is None:
                self._deferred_task = asyncio.create_task(self._deferred_initialize())
            return
        await self.initialize()

    async def _deferred_initialize(self) -> None:
        await asyncio.sleep(self._settings.queue_init_delay_seconds)
        try:
            await self.initialize()
        except QueueUnavailable as e:
            # Nobody awaits this task; the next enqueue raises again.
            logger.critical("Deferred queue initialization failed", extra={"error": str(e)})

    async def initialize(self) -> None:
        """
        Connect the broker and create every named queue. Idempotent.

        Raises:
            QueueUnavailable: In production, if the broker cannot be reached.
        """
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            if self.mode == QueueMode.MEMORY:
                queues: list[Queue] = [
                    MemoryQueue(str(name), default_job_options(name), **self._queue_kwargs())
                    for name in QueueName
                ]
            else:
                try:
                    client = await self._connect()
                except (RedisError, OSError) as e:
                    self._handle_connect_failure(e)
                    return
                queues = [
                    RedisQueue(
                        str(name),
                        client,
                        default_job_options(name),
                        prefix=self._settings.broker_key_prefix,
                        **self._queue_kwargs(),
                    )
                    for name in QueueName
                ]

            for queue in queues:
                self._register_hooks(queue)
                self._queues[queue.name] = queue

            self._initialized = True
            logger.info(
                "Queues initialized",
                extra={"mode": str(self.mode), "queues": list(self._queues)},
            )

        for queue in self._queues.values():
            await queue.emit(QueueEvent.READY)

    async def _connect(self) -> Redis:
        """Open and verify the shared broker connection."""
        if self._client is None:
            self._client = Redis.from_url(
                self._settings.broker_url,
                socket_connect_timeout=self._settings.broker_connect_timeout_seconds,
                retry=Retry(NoBackoff(), self._settings.broker_max_retries_per_request),
                decode_responses=True,
            )
        await cast(Any, self._client.ping())
        return self._client

    def _handle_connect_failure(self, error: Exception) -> None:
        if self._settings.is_production:
            logger.critical(
                "Broker unreachable in production",
                extra={"broker_url": self._settings.broker_url, "error": str(error)},
            )
            raise QueueUnavailable(f"Broker unreachable: {error}") from error

        # Stay degraded for the process lifetime rather than retry on every call.
        logger.warning(
            "Broker unreachable, background processing disabled",
            extra={"broker_url": self._settings.broker_url, "error": str(error)},
        )
        self._degraded = True
        self._initialized = True

    def _queue_kwargs(self) -> dict[str, Any]:
        return {
            "stalled_interval_ms": self._settings.queue_stalled_interval_ms,
            "max_stalled_count": self._settings.queue_max_stalled_count,
            "clock": self._clock,
        }

    def _register_hooks(self, queue: Queue) -> None:
        """Attach log-only listeners. Listeners never re-raise."""
        queue.on(QueueEvent.READY, functools.partial(_log_ready, queue.name))
        queue.on(QueueEvent.ERROR, functools.partial(_log_error, queue.name))
        queue.on(QueueEvent.FAILED, functools.partial(_log_failed, queue.name))
        queue.on(QueueEvent.STALLED, functools.partial(_log_stalled, queue.name))

    async def close(self) -> None:
        """Close every queue and the broker connection."""
        if self._deferred_task is not None and not self._deferred_task.done():
            self._deferred_task.cancel()
            try:
                await self._deferred_task
            except asyncio.CancelledError:
                pass

        for queue in self._queues.values():
            await queue.close()

        if self._client is not None and self._owns_client:
            try:
                await self._client.aclose()
            except RedisError as e:
                logger.warning("Error closing broker connection", extra={"error": str(e)})
            self._client = None

        self._queues.clear()
        self._initialized = False
        self._degraded = False
        self._deferred_task = None
        logger.info("Queue registry closed")

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def list_queues(self) -> list[str]:
        """Names of the known queues, whether or not they are connected."""
        return [str(name) for name in QueueName]

    def queues(self) -> list[Queue]:
        """Live queue instances. Empty until initialized, and when degraded."""
        return list(self._queues.values())

    def _validate_name(self, queue_name: str) -> QueueName:
        try:
            return QueueName(queue_name)
        except ValueError:
            raise UnknownQueue(queue_name) from None

    def get_queue(self, queue_name: str) -> Queue | None:
        """
        Get a live queue by name.

        Raises:
            UnknownQueue: If the name is not a known queue.
        """
        return self._queues.get(self._validate_name(queue_name))

    def default_options(self, queue_name: str) -> JobOptions:
        """Default job options for a queue."""
        queue = self.get_queue(queue_name)
        if queue is not None:
            return queue.defaults
        return default_job_options(queue_name)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: dict[str, Any],
        options: JobOptions | dict[str, Any] | None = None,
    ) -> JobHandle:
        """
        Add a job to a named queue.

        Args:
            queue_name: Target queue.
            job_type: Job name.
            payload: Job payload.
            options: Options merged over the queue defaults.

        Returns:
            A handle for the admitted job, or a no-op handle when running
            without a broker outside production.

        Raises:
            UnknownQueue: If the queue name is unknown.
            QueueUnavailable: In production, if the broker is unreachable.
        """
        name = self._validate_name(queue_name)

        if not self._initialized:
            await self.initialize()

        queue = self._queues.get(name)
        if queue is None:
            return self._degraded_handle(name, job_type, "Queues are not available")

        merged = merge_job_options(queue.defaults, options)
        try:
            job = await queue.add(job_type, payload, merged)
        except QueueUnavailable as e:
            return self._degraded_handle(name, job_type, str(e))

        logger.debug(
            "Job enqueued",
            extra={"queue": str(name), "job_type": str(job_type), "job_id": job.id},
        )
        return JobHandle.for_job(job)

    def _degraded_handle(self, queue_name: str, job_type: str, reason: str) -> JobHandle:
        if self._settings.is_production:
            raise QueueUnavailable(reason, queue_name=str(queue_name))

        logger.warning(
            "Background processing unavailable, job not queued",
            extra={"queue": str(queue_name), "job_type": str(job_type), "reason": reason},
        )
        self._metrics.record_job_degraded(str(queue_name))
        return JobHandle.degraded(str(queue_name), str(job_type))

    # ------------------------------------------------------------------
    # Inspection and maintenance
    # ------------------------------------------------------------------

    async def get_queue_stats(self, queue_name: str) -> QueueStats:
        """
        Point-in-time counts for one queue.

        Never raises for broker problems; the error is reported in the stats.

        Raises:
            UnknownQueue: If the queue name is unknown.
        """
        queue = self.get_queue(queue_name)
        if queue is None:
            reason = "broker unavailable" if self._degraded else "queues not initialized"
            return QueueStats(queue=str(queue_name), error=reason)

        try:
            return await queue.get_counts()
        except QueueUnavailable as e:
            return QueueStats(queue=queue.name, error=str(e))

    async def get_all_stats(self) -> list[QueueStats]:
        """Stats for every known queue. A failing queue never hides the others."""
        return [await self.get_queue_stats(name) for name in self.list_queues()]

    async def clean(
        self,
        queue_name: str,
        states: Iterable[JobState | str] = ALL_STATES,
        grace_ms: int = 0,
    ) -> int:
        """
        Remove jobs in the given states from a queue.

        Returns:
            Number of jobs removed. Zero when the queue is not live.
        """
        queue = self.get_queue(queue_name)
        if queue is None:
            logger.warning("Clean skipped, queue not available", extra={"queue": queue_name})
            return 0

        removed = await queue.clean(states, grace_ms)
        logger.info("Queue cleaned", extra={"queue": queue.name, "removed": removed})
        return removed

    async def clean_all(self, grace_ms: int = 0) -> int:
        """Remove every job from every live queue."""
        total = 0
        for queue in self.queues():
            total += await self.clean(queue.name, ALL_STATES, grace_ms)
        return total


def _log_ready(queue_name: str) -> None:
    logger.info("Queue ready", extra={"queue": queue_name})


def _log_error(queue_name: str, error: Exception) -> None:
    logger.error("Queue error", extra={"queue": queue_name, "error": str(error)})


def _log_failed(queue_name: str, job: Job, error: Exception) -> None:
    logger.error(
        "Job failed permanently",
        extra={
            "queue": queue_name,
            "job_id": job.id,
            "job_type": job.job_type,
            "attempts": job.attempts_made,
            "error": str(error),
        },
    )


def _log_stalled(queue_name: str, job: Job, error: Exception) -> None:
    logger.warning(
        "Job stalled",
        extra={
            "queue": queue_name,
            "job_id": job.id,
            "stalled_count": job.stalled_count,
            "error": str(error),
        },
    )
