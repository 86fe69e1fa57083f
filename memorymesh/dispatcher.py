"""
Typed job submission on top of the queue registry.
"""

import json
import logging
from collections.abc import Mapping
from typing import Any

from memorymesh.cache.store import TieredCache
from memorymesh.constants import QUEUE_JOB_TYPES, SPAN_SUBMIT_JOB, JobType, QueueName
from memorymesh.errors import InvalidJobType, InvalidPayload, UnknownQueue
from memorymesh.observability.metrics import MetricsCollector, get_metrics
from memorymesh.observability.tracing import get_tracer
from memorymesh.queues.registry import QueueRegistry
from memorymesh.types.job import JobHandle, JobOptions, merge_job_options

logger = logging.getLogger(__name__)


class JobDispatcher:
    """
    Validates and submits jobs.

    Misuse (unknown queue, wrong job type for the queue, bad payload) is
    raised immediately. Broker trouble is the registry's business: a no-op
    handle outside production, QueueUnavailable in production.
    """

    def __init__(
        self,
        registry: QueueRegistry,
        *,
        cache: TieredCache | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._registry = registry
        self._cache = cache
        self._metrics = metrics or get_metrics()

    async def submit(
        self,
        queue_type: str,
        job_type: str,
        payload: Mapping[str, Any],
        options: JobOptions | dict[str, Any] | None = None,
    ) -> JobHandle:
        """
        Submit a job to a named queue.

        Args:
            queue_type: One of the QueueName values.
            job_type: A JobType legal for that queue.
            payload: JSON-serializable mapping.
            options: Overrides for the queue's default options.

        Returns:
            JobHandle for the admitted job, a skipped handle when the result
            is already cached, or a no-op handle when running degraded.

        Raises:
            UnknownQueue: If the queue is not known.
            InvalidJobType: If the job type is not legal for the queue.
            InvalidPayload: If the payload is not a JSON-serializable mapping.
            QueueUnavailable: In production, if the broker is unreachable.
        """
        queue_name = self._resolve_queue(queue_type)
        job_name = self._resolve_job_type(queue_name, job_type)
        body = self._validate_payload(payload)

        merged = merge_job_options(self._registry.default_options(queue_name), options)

        if merged.cache_key and self._cache is not None:
            if await self._cache.get(merged.cache_key) is not None:
                logger.debug(
                    "Job skipped, result cached",
                    extra={
                        "queue": str(queue_name),
                        "job_type": str(job_name),
                        "cache_key": merged.cache_key,
                    },
                )
                return JobHandle.cached(str(queue_name), str(job_name))

        tracer = get_tracer()
        with tracer.start_as_current_span(SPAN_SUBMIT_JOB) as span:
            span.set_attribute("queue", str(queue_name))
            span.set_attribute("job_type", str(job_name))

            handle = await self._registry.enqueue(queue_name, job_name, body, merged)

            span.set_attribute("job_id", handle.id or "")
            span.set_attribute("noop", handle.noop)

        if not handle.noop:
            self._metrics.record_job_submitted(str(queue_name), str(job_name))

        logger.debug(
            "Job submitted",
            extra={
                "queue": str(queue_name),
                "job_type": str(job_name),
                "job_id": handle.id,
                "noop": handle.noop,
            },
        )
        return handle

    def _resolve_queue(self, queue_type: str) -> QueueName:
        try:
            return QueueName(queue_type)
        except ValueError:
            raise UnknownQueue(str(queue_type)) from None

    def _resolve_job_type(self, queue_name: QueueName, job_type: str) -> JobType:
        try:
            job_name = JobType(job_type)
        except ValueError:
            raise InvalidJobType(str(queue_name), str(job_type)) from None

        if job_name not in QUEUE_JOB_TYPES[queue_name]:
            raise InvalidJobType(str(queue_name), str(job_name))
        return job_name

    def _validate_payload(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        if not isinstance(payload, Mapping):
            raise InvalidPayload(f"Payload must be a mapping, got {type(payload).__name__}")
        try:
            # Round-trip so the queue stores exactly what a worker will read back.
            return json.loads(json.dumps(dict(payload)))
        except (TypeError, ValueError) as e:
            raise InvalidPayload(f"Payload is not JSON-serializable: {e}") from e
