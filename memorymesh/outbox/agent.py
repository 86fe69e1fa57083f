"""
Offline outbox: mutations recorded while disconnected, replayed when online.

Items are persisted before any sync is attempted and removed only after the
backend confirms them, so delivery is at-least-once. A memory item whose
record insert fails after its upload succeeded uploads the file again on
the next pass.
"""

import base64
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from memorymesh.config import Settings, get_settings
from memorymesh.constants import (
    FAMILY_MEMBERS_TABLE,
    MEMORIES_TABLE,
    MEMORY_MEDIA_BUCKET,
    SPAN_DRAIN_OUTBOX,
    OutboxItemKind,
)
from memorymesh.errors import OutboxItemFailed
from memorymesh.observability.metrics import MetricsCollector, get_metrics
from memorymesh.observability.tracing import get_tracer
from memorymesh.outbox.backend import HttpSyncBackend, SyncBackend
from memorymesh.outbox.store import OutboxStore
from memorymesh.types.job import now_ms
from memorymesh.types.outbox import AttachedFile, DrainResult, OutboxItem

logger = logging.getLogger(__name__)

Persister = Callable[[OutboxItem], Awaitable[None]]


def memory_type_for(content_type: str) -> str:
    """Map a MIME type to the memory_type column value."""
    if content_type.startswith("image/"):
        return "photo"
    if content_type.startswith("video/"):
        return "video"
    if content_type.startswith("audio/"):
        return "audio"
    return "story"


class OutboxSyncAgent:
    """
    Durable FIFO of pending mutations with a connectivity-triggered drain.

    Drains never overlap. A drain requested while one is running is folded
    into a single follow-up pass, and items enqueued during a pass wait for
    that follow-up.
    """

    def __init__(
        self,
        store: OutboxStore,
        backend: SyncBackend,
        *,
        online: bool = True,
        clock: Callable[[], int] = now_ms,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the agent and load persisted items.

        Args:
            store: Durable item storage.
            backend: Remote backend items are replayed against.
            online: Initial connectivity.
            clock: Epoch milliseconds source used in upload paths.
            metrics: Metrics collector. Defaults to the process collector.
        """
        self._store = store
        self._backend = backend
        self._online = online
        self._clock = clock
        self._metrics = metrics or get_metrics()
        self._items: list[OutboxItem] = store.load()
        self._draining = False
        self._drain_requested = False
        self._persisters: dict[str, Persister] = {
            OutboxItemKind.MEMORY: self._persist_memory,
            OutboxItemKind.FAMILY_MEMBER: self._persist_family_member,
        }

        if self._items:
            logger.info("Outbox loaded", extra={"pending": len(self._items)})

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, *, online: bool = True
    ) -> "OutboxSyncAgent":
        """Create an agent on the configured outbox file and HTTP backend."""
        settings = settings or get_settings()
        return cls(
            OutboxStore(settings.outbox_path),
            HttpSyncBackend.from_settings(settings),
            online=online,
        )

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def pending(self) -> list[OutboxItem]:
        """Pending items in enqueue order."""
        return list(self._items)

    @property
    def pending_count(self) -> int:
        return len(self._items)

    async def set_online(self, online: bool) -> None:
        """
        Report a connectivity change. Going online triggers a drain.
        """
        was_online = self._online
        self._online = online
        if online != was_online:
            logger.info("Connectivity changed", extra={"online": online})
        if online and not was_online:
            await self.drain()

    async def enqueue(self, kind: str, payload: Mapping[str, Any]) -> OutboxItem:
        """
        Record a mutation.

        The whole outbox is persisted before returning or syncing.

        Args:
            kind: Item kind, normally an OutboxItemKind.
            payload: Mutation data.

        Returns:
            The recorded item.
        """
        item = OutboxItem(kind=str(kind), payload=dict(payload))
        self._items.append(item)
        self._store.save(self._items)
        logger.debug(
            "Outbox item enqueued",
            extra={"item_id": item.id, "kind": item.kind, "pending": len(self._items)},
        )

        if self._online:
            await self.drain()
        return item

    async def drain(self) -> DrainResult | None:
        """
        Try to sync every pending item once.

        Returns:
            Outcome of the pass started by this call, or None if nothing was
            attempted (offline, empty, or folded into a running drain).
            Item failures are logged, never raised.
        """
        if self._draining:
            self._drain_requested = True
            return None
        if not self._online or not self._items:
            return None

        self._draining = True
        try:
            result = await self._drain_once()
            while self._drain_requested and self._online and self._items:
                self._drain_requested = False
                await self._drain_once()
        finally:
            self._draining = False
            self._drain_requested = False

        return result

    async def _drain_once(self) -> DrainResult:
        snapshot = list(self._items)
        result = DrainResult()

        tracer = get_tracer()
        with tracer.start_as_current_span(SPAN_DRAIN_OUTBOX) as span:
            span.set_attribute("items", len(snapshot))

            for item in snapshot:
                if await self._sync_item(item):
                    result.succeeded.append(item.id)
                else:
                    result.failed.append(item.id)

            span.set_attribute("failed", len(result.failed))

        # Failed snapshot items keep their place; items added during the pass follow.
        synced = set(result.succeeded)
        snapshot_ids = {item.id for item in snapshot}
        retained = [item for item in snapshot if item.id not in synced]
        retained.extend(item for item in self._items if item.id not in snapshot_ids)

        self._items = retained
        self._store.save(retained)

        logger.info(
            "Outbox drained",
            extra={
                "succeeded": len(result.succeeded),
                "failed": len(result.failed),
                "pending": len(retained),
            },
        )
        return result

    async def _sync_item(self, item: OutboxItem) -> bool:
        persister = self._persisters.get(item.kind)
        try:
            if persister is None:
                raise OutboxItemFailed(f"Unknown outbox item kind: {item.kind}", item_id=item.id)
            await persister(item)
        except OutboxItemFailed as e:
            logger.warning(
                "Outbox item sync failed",
                extra={"item_id": item.id, "kind": item.kind, "error": str(e)},
            )
            self._metrics.record_outbox_item(item.kind, success=False)
            return False
        except Exception as e:
            logger.exception(
                "Unexpected error syncing outbox item",
                extra={"item_id": item.id, "kind": item.kind, "error": str(e)},
            )
            self._metrics.record_outbox_item(item.kind, success=False)
            return False

        self._metrics.record_outbox_item(item.kind, success=True)
        return True

    async def _persist_memory(self, item: OutboxItem) -> None:
        data = item.payload
        user_id = data.get("user_id")
        if not user_id:
            raise OutboxItemFailed("Memory item has no user_id", item_id=item.id)

        record: dict[str, Any] = {
            "family_id": data.get("family_id"),
            "title": data.get("title"),
            "description": data.get("description"),
            "date_taken": data.get("date"),
            "created_by": user_id,
            "is_private": False,
        }

        if data.get("file"):
            try:
                attached = AttachedFile.model_validate(data["file"])
                content = base64.b64decode(attached.content_b64, validate=True)
            except ValueError as e:
                raise OutboxItemFailed(f"Invalid attached file: {e}", item_id=item.id) from e

            path = f"memories/{user_id}/{self._clock()}.{attached.extension}"
            file_url = await self._backend.upload_blob(
                MEMORY_MEDIA_BUCKET, path, content, attached.content_type
            )
            memory_type = memory_type_for(attached.content_type)
            record.update(
                memory_type=memory_type,
                file_url=file_url,
                thumbnail_url=file_url if memory_type == "photo" else None,
            )
        else:
            record.update(memory_type="story", file_url=None, thumbnail_url=None)

        await self._backend.insert_record(MEMORIES_TABLE, record)

    async def _persist_family_member(self, item: OutboxItem) -> None:
        await self._backend.insert_record(FAMILY_MEMBERS_TABLE, dict(item.payload))
