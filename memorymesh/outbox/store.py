"""
Durable local storage for the outbox.
"""

import logging
import os
import tempfile
import time
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from memorymesh.types.outbox import OutboxItem

logger = logging.getLogger(__name__)

_items_adapter = TypeAdapter(list[OutboxItem])


class OutboxStore:
    """
    Outbox items persisted as one JSON array in a local file.

    ``save`` replaces the file atomically, so a crash leaves either the old
    list or the new one on disk.
    """

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path).expanduser()

    def load(self) -> list[OutboxItem]:
        """
        Read the persisted items.

        A missing file is an empty outbox. A file that cannot be parsed is
        moved aside to ``<name>.corrupt-<epoch ms>`` and the outbox starts
        empty, so new mutations are not blocked and the next save does not
        destroy the unsynced items.
        """
        if not self.path.exists():
            return []

        try:
            raw = self.path.read_bytes()
        except OSError as e:
            logger.error(
                "Error reading outbox, starting empty",
                extra={"path": str(self.path), "error": str(e)},
            )
            return []

        try:
            return _items_adapter.validate_json(raw)
        except (ValidationError, ValueError) as e:
            self._quarantine(e)
            return []

    def _quarantine(self, error: Exception) -> None:
        target = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time() * 1000)}")
        try:
            os.replace(self.path, target)
        except OSError as e:
            logger.error(
                "Corrupt outbox could not be moved aside",
                extra={"path": str(self.path), "error": str(e)},
            )
            return
        logger.error(
            "Corrupt outbox moved aside, starting empty",
            extra={"path": str(self.path), "moved_to": str(target), "error": str(error)},
        )

    def save(self, items: list[OutboxItem]) -> None:
        """
        Persist the full item list.

        Raises:
            OSError: If the file cannot be written.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = _items_adapter.dump_json(items)

        fd, tmp_path = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

        logger.debug("Outbox saved", extra={"path": str(self.path), "count": len(items)})
