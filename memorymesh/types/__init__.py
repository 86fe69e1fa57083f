"""
Type definitions for the dispatch layer.
Contains input/output type definitions for all functions, grouped by module.
"""

from memorymesh.types.api import (
    AuthRequest,
    ErrorResponse,
    HealthResponse,
    QueueListResponse,
    SubmitJobRequest,
    SubmitJobResponse,
    TokenResponse,
)
from memorymesh.types.job import (
    BackoffPolicy,
    Job,
    JobContext,
    JobHandle,
    JobOptions,
    JobResult,
    QueueStats,
    RetentionPolicy,
    merge_job_options,
)
from memorymesh.types.outbox import AttachedFile, DrainResult, OutboxItem

__all__ = [
    # API types
    "SubmitJobRequest",
    "SubmitJobResponse",
    "QueueListResponse",
    "TokenResponse",
    "AuthRequest",
    "HealthResponse",
    "ErrorResponse",
    # Job types
    "BackoffPolicy",
    "RetentionPolicy",
    "JobOptions",
    "merge_job_options",
    "Job",
    "JobHandle",
    "JobResult",
    "JobContext",
    "QueueStats",
    # Outbox types
    "OutboxItem",
    "AttachedFile",
    "DrainResult",
]
