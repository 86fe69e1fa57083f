"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from memorymesh.types.job import JobHandle, JobOptions, QueueStats


class SubmitJobRequest(BaseModel):
    """Request body for submitting a job."""

    queue: str = Field(..., description="Target queue name")
    job_type: str = Field(..., description="Job type, must be legal for the queue")
    payload: Any = Field(..., description="Opaque job payload, a JSON object")
    options: JobOptions | None = Field(
        default=None, description="Overrides for the queue's default job options"
    )


class SubmitJobResponse(BaseModel):
    """Response body after submitting a job."""

    id: str | None
    queue: str
    job_type: str
    submitted_at: int
    noop: bool
    skipped: bool
    message: str

    @classmethod
    def from_handle(cls, handle: JobHandle) -> "SubmitJobResponse":
        """Build the response from a dispatcher handle."""
        if handle.noop:
            message = "Background processing unavailable; job not queued"
        elif handle.skipped:
            message = "Result already cached; job not queued"
        else:
            message = "Job queued"
        return cls(
            id=handle.id,
            queue=handle.queue_name,
            job_type=handle.job_type,
            submitted_at=handle.submitted_at,
            noop=handle.noop,
            skipped=handle.skipped,
            message=message,
        )


class QueueListResponse(BaseModel):
    """All registered queues with their current counts."""

    queues: list[QueueStats]
    degraded: bool


class AuthRequest(BaseModel):
    """Authentication request."""

    api_key: str = Field(..., description="API key for authentication")
    client_id: str = Field(..., description="Client identifier")


class TokenResponse(BaseModel):
    """JWT token response."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    broker: str
    cache: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
