"""
Stalled-job reaper.

The reaper runs periodically to find active jobs whose lock expired
(the worker crashed or stopped heartbeating) and hands them back to their
queue. This handles worker crashes and ensures at-least-once delivery.
"""

import asyncio
import logging
import signal

from memorymesh.config import get_settings
from memorymesh.constants import SPAN_RECOVER_STALLED
from memorymesh.errors import QueueUnavailable
from memorymesh.observability.logging import setup_logging
from memorymesh.observability.metrics import MetricsCollector, get_metrics
from memorymesh.observability.tracing import get_tracer, setup_tracing
from memorymesh.queues.registry import QueueRegistry

logger = logging.getLogger(__name__)


class Reaper:
    """
    Reaper that recovers stalled jobs.

    Runs periodically to:
    1. Find active jobs without a live lock in every queue
    2. Return them to waiting, or fail them past the stall limit
    3. Record metrics for monitoring
    """

    def __init__(
        self,
        registry: QueueRegistry,
        interval_seconds: float | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            registry: Registry whose queues are checked.
            interval_seconds: Seconds between reaper runs.
            metrics: Metrics collector. Defaults to the process collector.
        """
        settings = get_settings()
        self.registry = registry
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self._running = False
        self._metrics = metrics or get_metrics()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info("Reaper starting", extra={"interval_seconds": self.interval})
        self._running = True

        while self._running:
            try:
                recovered = await self.run_once()

                if recovered > 0:
                    logger.info("Recovered stalled jobs", extra={"count": recovered})

            except Exception as e:
                logger.exception("Error in reaper loop", extra={"error": str(e)})

            await asyncio.sleep(self.interval)

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False

    async def run_once(self) -> int:
        """
        Check every queue once (for testing or cron-style execution).

        A queue whose broker calls fail is skipped; the others are still
        checked.

        Returns:
            Number of stalled jobs handled.
        """
        total = 0
        with get_tracer().start_as_current_span(SPAN_RECOVER_STALLED) as span:
            for queue in self.registry.queues():
                try:
                    stalled = await queue.recover_stalled()
                except QueueUnavailable as e:
                    logger.error(
                        "Could not check queue for stalled jobs",
                        extra={"queue": queue.name, "error": str(e)},
                    )
                    continue

                if stalled:
                    self._metrics.record_jobs_stalled(queue.name, len(stalled))
                    total += len(stalled)

            span.set_attribute("recovered", total)

        return total


async def run_async() -> None:
    """Run the reaper asynchronously."""
    setup_logging("reaper")
    setup_tracing()

    registry = QueueRegistry()
    await registry.initialize()

    reaper = Reaper(registry)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    try:
        await reaper.start()
    finally:
        await registry.close()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
