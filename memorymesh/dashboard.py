"""
Read-only queue inspection for operators.
"""

from memorymesh.constants import JobState
from memorymesh.observability.metrics import MetricsCollector, get_metrics
from memorymesh.queues.registry import QueueRegistry
from memorymesh.types.job import QueueStats

_GAUGED_STATES = (
    JobState.WAITING,
    JobState.ACTIVE,
    JobState.DELAYED,
    JobState.COMPLETED,
    JobState.FAILED,
)


class QueueDashboard:
    """
    Per-queue counts for the admin surface.

    Broker trouble shows up in each QueueStats.error; nothing here raises
    for it and nothing here mutates a queue.
    """

    def __init__(self, registry: QueueRegistry, *, metrics: MetricsCollector | None = None):
        self._registry = registry
        self._metrics = metrics or get_metrics()

    @property
    def degraded(self) -> bool:
        return self._registry.degraded

    def list_queues(self) -> list[str]:
        return self._registry.list_queues()

    async def overview(self) -> list[QueueStats]:
        """Counts for every queue. Refreshes the queue depth gauge."""
        stats = await self._registry.get_all_stats()
        for queue_stats in stats:
            self._record_depth(queue_stats)
        return stats

    async def queue(self, name: str) -> QueueStats:
        """
        Counts for one queue.

        Raises:
            UnknownQueue: If the name is not a known queue.
        """
        queue_stats = await self._registry.get_queue_stats(name)
        self._record_depth(queue_stats)
        return queue_stats

    def _record_depth(self, queue_stats: QueueStats) -> None:
        if queue_stats.error is not None:
            return
        for state in _GAUGED_STATES:
            self._metrics.update_queue_depth(
                queue_stats.queue, str(state), getattr(queue_stats, str(state))
            )
