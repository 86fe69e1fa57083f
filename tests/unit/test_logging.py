"""
Unit tests for the logging processors and job context binding.
"""

import asyncio

import pytest
import structlog

from memorymesh.constants import QueueName
from memorymesh.observability.logging import (
    REDACTED,
    deployment_tagger,
    job_log_context,
    redact_secrets,
)
from memorymesh.queues.memory import MemoryQueue
from memorymesh.types.job import JobOptions


class TestProcessors:
    """Tests for the shared processor chain."""

    def test_redacts_credentials(self):
        event = {"event": "Token issued", "api_key": "k-123", "token": "eyJ", "queue": "ocr"}

        redacted = redact_secrets(None, "info", event)

        assert redacted["api_key"] == REDACTED
        assert redacted["token"] == REDACTED
        assert redacted["queue"] == "ocr"

    def test_empty_credentials_left_alone(self):
        assert redact_secrets(None, "info", {"api_key": None}) == {"api_key": None}

    def test_deployment_tags(self, monkeypatch, test_settings):
        monkeypatch.setattr(
            "memorymesh.observability.logging.get_settings", lambda: test_settings
        )

        tag = deployment_tagger("worker")
        event = tag(None, "info", {"event": "Job completed"})

        assert event["component"] == "worker"
        assert event["environment"] == "test"
        assert event["queue_mode"] == "memory"

    def test_deployment_tags_do_not_override_record(self, monkeypatch, test_settings):
        monkeypatch.setattr(
            "memorymesh.observability.logging.get_settings", lambda: test_settings
        )

        event = deployment_tagger("api")(None, "info", {"component": "reaper"})

        assert event["component"] == "reaper"


class TestJobLogContext:
    """Tests for per-job context binding."""

    @pytest.fixture
    def queue(self, clock) -> MemoryQueue:
        return MemoryQueue(QueueName.OCR_EXTRACTION, clock=clock)

    @pytest.mark.asyncio
    async def test_binds_and_unbinds(self, queue):
        job = await queue.add("extract-text", {}, JobOptions())

        with job_log_context(job, "w1"):
            bound = structlog.contextvars.get_contextvars()

        assert bound == {
            "job_id": job.id,
            "queue": "ocr-extraction",
            "job_type": "extract-text",
            "attempt": 1,
            "worker_id": "w1",
        }
        assert "job_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_concurrent_jobs_keep_their_own_fields(self, queue):
        first = await queue.add("extract-text", {}, JobOptions())
        second = await queue.add("extract-text", {}, JobOptions())
        both_bound = asyncio.Event()
        seen = {}

        async def run(job):
            with job_log_context(job, "w1"):
                if len(seen) == 1:
                    both_bound.set()
                seen[job.id] = None
                await asyncio.wait_for(both_bound.wait(), timeout=1)
                seen[job.id] = structlog.contextvars.get_contextvars()["job_id"]

        await asyncio.gather(run(first), run(second))

        assert seen == {first.id: first.id, second.id: second.id}
