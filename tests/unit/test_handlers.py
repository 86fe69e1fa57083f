"""
Unit tests for the job handler registry.
"""

import pytest

from memorymesh.constants import JobType, QueueName
from memorymesh.types.job import JobContext, JobResult
from memorymesh.worker.handlers import (
    execute_job,
    get_handler,
    list_handlers,
    register_handler,
    unregister_handler,
)


class TestJobHandlers:
    """Tests for handler registration and execution."""

    @pytest.fixture
    def job_context(self) -> JobContext:
        """Create a test job context."""
        return JobContext(
            job_id="1",
            queue_name=QueueName.OCR_EXTRACTION,
            job_type=JobType.EXTRACT_TEXT,
            attempt=1,
            max_attempts=3,
            payload={"mediaId": "m1"},
            worker_id="test-worker",
        )

    @pytest.fixture(autouse=True)
    def _clean_registry(self):
        yield
        unregister_handler(JobType.EXTRACT_TEXT)

    def test_register_and_get_handler(self):
        """Test registering a handler by job type."""

        @register_handler(JobType.EXTRACT_TEXT)
        async def extract_text(context: JobContext) -> JobResult:
            return JobResult(success=True)

        assert get_handler("extract-text") is extract_text
        assert "extract-text" in list_handlers()

    def test_get_handler_not_exists(self):
        """Test getting a non-existent handler."""
        assert get_handler("nonexistent") is None

    def test_unregister_unknown_is_ignored(self):
        unregister_handler("nonexistent")

    @pytest.mark.asyncio
    async def test_execute_job_runs_handler(self, job_context: JobContext):
        @register_handler(JobType.EXTRACT_TEXT)
        async def extract_text(context: JobContext) -> JobResult:
            return JobResult(success=True, output={"text": f"text of {context.payload['mediaId']}"})

        result = await execute_job(job_context)

        assert result.success is True
        assert result.output == {"text": "text of m1"}

    @pytest.mark.asyncio
    async def test_execute_job_without_handler(self, job_context: JobContext):
        """A missing handler is a failed result, not an exception."""
        result = await execute_job(job_context)

        assert result.success is False
        assert result.error == "No handler registered for job type: extract-text"

    @pytest.mark.asyncio
    async def test_execute_job_handler_exception(self, job_context: JobContext):
        @register_handler(JobType.EXTRACT_TEXT)
        async def extract_text(context: JobContext) -> JobResult:
            raise ValueError("unreadable image")

        result = await execute_job(job_context)

        assert result.success is False
        assert result.error == "Handler exception: unreadable image"

    def test_context_attempt_helpers(self, job_context: JobContext):
        assert job_context.is_last_attempt is False
        assert job_context.remaining_attempts == 2

        job_context.attempt = 3

        assert job_context.is_last_attempt is True
