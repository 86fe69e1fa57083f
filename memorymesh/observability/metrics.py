"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from memorymesh.constants import (
    METRIC_CACHE_REQUESTS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_DEGRADED,
    METRIC_JOBS_STALLED,
    METRIC_JOBS_SUBMITTED,
    METRIC_OUTBOX_SYNC,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the dispatch layer.

    Collects metrics for:
    - Queue depth per queue and state
    - Job submissions, completions and stalls
    - Job execution duration
    - Submissions dropped in degraded mode
    - Cache hits and misses per tier
    - Outbox sync outcomes
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs in a queue by state",
            ["queue", "state"],
            registry=self._registry,
        )

        self.jobs_submitted = Counter(
            METRIC_JOBS_SUBMITTED,
            "Total number of jobs submitted",
            ["queue", "job_type"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of job executions finished",
            ["queue", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.jobs_stalled = Counter(
            METRIC_JOBS_STALLED,
            "Total number of jobs that lost their lock",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_degraded = Counter(
            METRIC_JOBS_DEGRADED,
            "Total number of submissions dropped because no broker was available",
            ["queue"],
            registry=self._registry,
        )

        self.cache_requests = Counter(
            METRIC_CACHE_REQUESTS,
            "Cache lookups by tier and outcome",
            ["tier", "result"],
            registry=self._registry,
        )

        self.outbox_sync = Counter(
            METRIC_OUTBOX_SYNC,
            "Outbox items attempted by outcome",
            ["kind", "result"],
            registry=self._registry,
        )

    def record_job_submitted(self, queue: str, job_type: str) -> None:
        """Record a job submission."""
        self.jobs_submitted.labels(queue=queue, job_type=job_type).inc()

    def record_job_completed(
        self,
        queue: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a finished execution (succeeded, retrying or failed)."""
        self.jobs_completed.labels(queue=queue, status=status).inc()
        self.job_duration.labels(queue=queue, status=status).observe(duration_seconds)

    def record_jobs_stalled(self, queue: str, count: int = 1) -> None:
        """Record stalled jobs."""
        self.jobs_stalled.labels(queue=queue).inc(count)

    def record_job_degraded(self, queue: str) -> None:
        """Record a submission answered with a no-op handle."""
        self.jobs_degraded.labels(queue=queue).inc()

    def record_cache_lookup(self, tier: str, hit: bool) -> None:
        """Record a cache lookup against one tier."""
        self.cache_requests.labels(tier=tier, result="hit" if hit else "miss").inc()

    def record_outbox_item(self, kind: str, success: bool) -> None:
        """Record one outbox sync attempt."""
        self.outbox_sync.labels(kind=kind, result="success" if success else "failure").inc()

    def update_queue_depth(self, queue: str, state: str, depth: int) -> None:
        """Update queue depth for a queue and state."""
        self.queue_depth.labels(queue=queue, state=state).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
