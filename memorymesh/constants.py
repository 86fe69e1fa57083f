"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class QueueName(StrEnum):
    """Named queues. These names are persisted in the broker; do not rename."""

    IMAGE_ANALYSIS = "image-analysis"
    FACE_RECOGNITION = "face-recognition"
    TAG_GENERATION = "tag-generation"
    OCR_EXTRACTION = "ocr-extraction"
    NOTIFICATION = "notification"


class JobType(StrEnum):
    """Wire-level job names that workers match on."""

    # Image analysis
    ANALYZE_IMAGE = "analyze-image"
    GENERATE_CAPTION = "generate-caption"
    DETECT_OBJECTS = "detect-objects"
    CLASSIFY_SCENE = "classify-scene"

    # Face recognition
    DETECT_FACES = "detect-faces"
    RECOGNIZE_FACES = "recognize-faces"
    TRAIN_FACE_MODEL = "train-face-model"

    # Tag generation
    GENERATE_TAGS = "generate-tags"
    VERIFY_TAGS = "verify-tags"

    # OCR
    EXTRACT_TEXT = "extract-text"

    # Notification
    SEND_NOTIFICATION = "send-notification"


class JobState(StrEnum):
    """
    Job lifecycle states inside a queue.

    State transitions:
    - WAITING -> ACTIVE (fetched by a worker)
    - ACTIVE -> COMPLETED (success)
    - ACTIVE -> DELAYED (failure, attempts left) -> WAITING (backoff elapsed)
    - ACTIVE -> FAILED (attempts exhausted)
    - ACTIVE -> STALLED (lock lost) -> WAITING (first stall) | FAILED
    """

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


class QueueEvent(StrEnum):
    """Events a queue emits to its listeners."""

    READY = "ready"
    ERROR = "error"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


class OutboxItemKind(StrEnum):
    """Kinds of mutations the offline outbox knows how to replay."""

    MEMORY = "memory"
    FAMILY_MEMBER = "family_member"


# Legal job types per queue
QUEUE_JOB_TYPES: dict[QueueName, frozenset[JobType]] = {
    QueueName.IMAGE_ANALYSIS: frozenset(
        {
            JobType.ANALYZE_IMAGE,
            JobType.GENERATE_CAPTION,
            JobType.DETECT_OBJECTS,
            JobType.CLASSIFY_SCENE,
        }
    ),
    QueueName.FACE_RECOGNITION: frozenset(
        {
            JobType.DETECT_FACES,
            JobType.RECOGNIZE_FACES,
            JobType.TRAIN_FACE_MODEL,
        }
    ),
    QueueName.TAG_GENERATION: frozenset({JobType.GENERATE_TAGS, JobType.VERIFY_TAGS}),
    QueueName.OCR_EXTRACTION: frozenset({JobType.EXTRACT_TEXT}),
    QueueName.NOTIFICATION: frozenset({JobType.SEND_NOTIFICATION}),
}

# Default values
DEFAULT_MAX_ATTEMPTS = 3
NOTIFICATION_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_DELAY_MS = 2000
DEFAULT_KEEP_COMPLETED = 100
DEFAULT_KEEP_FAILED = 50
DEFAULT_CACHE_TTL_SECONDS = 3600
LOCAL_REFRESH_TTL_SECONDS = 60

# Outbox backend targets
MEMORY_MEDIA_BUCKET = "memory_media"
MEMORIES_TABLE = "memories"
FAMILY_MEMBERS_TABLE = "family_members"

# API constants
API_V1_PREFIX = "/v1"
ADMIN_QUEUES_PATH = "/admin/queues"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_SUBMITTED = "jobs_submitted_total"
METRIC_JOBS_COMPLETED = "jobs_completed_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_JOBS_STALLED = "jobs_stalled_total"
METRIC_JOBS_DEGRADED = "jobs_degraded_total"
METRIC_CACHE_REQUESTS = "cache_requests_total"
METRIC_OUTBOX_SYNC = "outbox_sync_items_total"

# Trace span names
SPAN_SUBMIT_JOB = "submit_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_RECOVER_STALLED = "recover_stalled"
SPAN_DRAIN_OUTBOX = "drain_outbox"
