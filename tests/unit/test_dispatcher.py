"""
Unit tests for the job dispatcher.
"""

import pytest

from memorymesh.cache.store import TieredCache
from memorymesh.constants import QUEUE_JOB_TYPES, JobType, QueueName
from memorymesh.dispatcher import JobDispatcher
from memorymesh.errors import InvalidJobType, InvalidPayload, UnknownQueue
from memorymesh.queues.registry import QueueRegistry
from memorymesh.types.job import JobOptions


class TestJobDispatcher:
    """Tests for validation, submission and cache short-circuiting."""

    @pytest.fixture
    def dispatcher(self, registry: QueueRegistry, cache: TieredCache, metrics) -> JobDispatcher:
        return JobDispatcher(registry, cache=cache, metrics=metrics)

    @pytest.mark.asyncio
    async def test_submit_admits_job(self, dispatcher: JobDispatcher, registry: QueueRegistry):
        handle = await dispatcher.submit("image-analysis", "analyze-image", {"mediaId": "m1"})

        assert handle.id is not None
        assert handle.noop is False
        assert handle.skipped is False
        job = await registry.get_queue(QueueName.IMAGE_ANALYSIS).get_job(handle.id)
        assert job.payload == {"mediaId": "m1"}
        assert job.job_type == "analyze-image"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "queue_name,job_type",
        [(queue, job_type) for queue, types in QUEUE_JOB_TYPES.items() for job_type in types],
    )
    async def test_every_legal_pair_is_accepted(self, dispatcher: JobDispatcher, queue_name, job_type):
        handle = await dispatcher.submit(queue_name, job_type, {})

        assert handle.queue_name == queue_name
        assert handle.job_type == job_type

    @pytest.mark.asyncio
    async def test_job_type_from_other_queue_rejected(self, dispatcher: JobDispatcher):
        with pytest.raises(InvalidJobType) as exc_info:
            await dispatcher.submit(QueueName.NOTIFICATION, JobType.ANALYZE_IMAGE, {})

        assert exc_info.value.queue_name == "notification"
        assert exc_info.value.job_type == "analyze-image"

    @pytest.mark.asyncio
    async def test_unknown_job_type_rejected(self, dispatcher: JobDispatcher):
        with pytest.raises(InvalidJobType):
            await dispatcher.submit(QueueName.IMAGE_ANALYSIS, "transcode-video", {})

    @pytest.mark.asyncio
    async def test_unknown_queue_rejected(self, dispatcher: JobDispatcher):
        with pytest.raises(UnknownQueue):
            await dispatcher.submit("video", "analyze-image", {})

    @pytest.mark.asyncio
    async def test_non_mapping_payload_rejected(self, dispatcher: JobDispatcher):
        with pytest.raises(InvalidPayload):
            await dispatcher.submit(QueueName.IMAGE_ANALYSIS, JobType.ANALYZE_IMAGE, ["m1"])

    @pytest.mark.asyncio
    async def test_unserializable_payload_rejected(self, dispatcher: JobDispatcher):
        with pytest.raises(InvalidPayload):
            await dispatcher.submit(
                QueueName.IMAGE_ANALYSIS, JobType.ANALYZE_IMAGE, {"when": object()}
            )

    @pytest.mark.asyncio
    async def test_rejected_submission_is_not_enqueued(
        self, dispatcher: JobDispatcher, registry: QueueRegistry
    ):
        with pytest.raises(InvalidJobType):
            await dispatcher.submit(QueueName.OCR_EXTRACTION, JobType.GENERATE_TAGS, {})

        stats = await registry.get_queue_stats(QueueName.OCR_EXTRACTION)
        assert stats.waiting == 0

    @pytest.mark.asyncio
    async def test_submission_counted(self, dispatcher: JobDispatcher, metrics_registry):
        await dispatcher.submit(QueueName.TAG_GENERATION, JobType.VERIFY_TAGS, {})

        assert metrics_registry.get_sample_value(
            "jobs_submitted_total", {"queue": "tag-generation", "job_type": "verify-tags"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_cached_result_skips_enqueue(
        self, dispatcher: JobDispatcher, registry: QueueRegistry, cache: TieredCache
    ):
        await cache.set("caption:m1", {"caption": "a beach"})

        handle = await dispatcher.submit(
            QueueName.IMAGE_ANALYSIS,
            JobType.GENERATE_CAPTION,
            {"mediaId": "m1"},
            JobOptions(cache_key="caption:m1"),
        )

        assert handle.skipped is True
        assert handle.id is None
        stats = await registry.get_queue_stats(QueueName.IMAGE_ANALYSIS)
        assert stats.waiting == 0

    @pytest.mark.asyncio
    async def test_cache_miss_enqueues(self, dispatcher: JobDispatcher):
        handle = await dispatcher.submit(
            QueueName.IMAGE_ANALYSIS,
            JobType.GENERATE_CAPTION,
            {"mediaId": "m2"},
            {"cache_key": "caption:m2"},
        )

        assert handle.skipped is False
        assert handle.id is not None

    @pytest.mark.asyncio
    async def test_degraded_registry_returns_noop(self, development_settings, metrics):
        registry = QueueRegistry(development_settings, metrics=metrics)
        dispatcher = JobDispatcher(registry, metrics=metrics)

        handle = await dispatcher.submit(QueueName.NOTIFICATION, JobType.SEND_NOTIFICATION, {})

        assert handle.noop is True
        await registry.close()
