"""
Offline outbox type definitions.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class OutboxItem(BaseModel):
    """A mutation made on the client that the backend has not confirmed yet."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    kind: str  # an OutboxItemKind; unknown kinds are kept and fail on sync
    payload: dict[str, Any]
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AttachedFile(BaseModel):
    """
    Binary attached to a memory item.

    Content is base64 so the outbox file stays plain JSON.
    """

    name: str
    content_type: str = "application/octet-stream"
    content_b64: str

    @property
    def extension(self) -> str:
        """File extension without the dot, or 'bin' if the name has none."""
        _, dot, ext = self.name.rpartition(".")
        return ext if dot and ext else "bin"


@dataclass
class DrainResult:
    """Per-item outcome of one drain pass."""

    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        """Number of items attempted in the pass."""
        return len(self.succeeded) + len(self.failed)
