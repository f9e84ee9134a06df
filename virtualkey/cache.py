"""
VirtualKey Metadata Cache

Per-container access times and credential counts, persisted as a JSON
record list next to the managed containers so listings do not have to
mount every image just to report how many credentials it holds.

Access times are always trusted. Counts expire after ``count_max_age``
seconds and are recomputed on the next read that needs them.
"""

from __future__ import annotations

import json
import os
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

import structlog

from virtualkey.types import MetadataEntry

logger = structlog.get_logger(__name__)


CACHE_VERSION = 1
DEFAULT_COUNT_MAX_AGE = 3600.0

CountRecompute = Callable[[], Awaitable[Optional[int]]]


class MetadataCache:
    """
    JSON-backed metadata cache.

    A missing or unreadable file starts the cache empty; a malformed entry
    is dropped without affecting the others.
    """

    def __init__(
        self,
        directory: Path,
        filename: str = ".virtualkey-metadata.json",
        count_max_age: float = DEFAULT_COUNT_MAX_AGE,
        clock: Callable[[], float] = time.time,
    ):
        self.directory = Path(directory)
        self.filename = filename
        self.count_max_age = count_max_age
        self._clock = clock
        self._entries: dict[str, MetadataEntry] = {}
        self._loaded = False

    @property
    def path(self) -> Path:
        return self.directory / self.filename

    def set_directory(self, directory: Path) -> None:
        """Follow the managed directory to a new location and reload."""
        self.directory = Path(directory)
        self._entries = {}
        self._loaded = False

    def load(self) -> None:
        self._loaded = True
        self._entries = {}

        if not self.path.exists():
            return

        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            logger.warning("Metadata cache unreadable, starting empty", path=str(self.path), error=str(e))
            return

        records = data.get("entries", []) if isinstance(data, dict) else []
        if not isinstance(records, list):
            logger.warning("Metadata cache has no entry list, starting empty", path=str(self.path))
            return

        for record in records:
            try:
                entry = MetadataEntry.from_dict(record)
            except (KeyError, TypeError, ValueError, AttributeError, OverflowError, OSError) as e:
                logger.warning("Dropping corrupt metadata entry", error=str(e))
                continue
            self._entries[entry.container_id] = entry

        logger.debug("Loaded metadata cache", path=str(self.path), entries=len(self._entries))

    def save(self) -> None:
        """Write the cache atomically. Failures are logged, never raised."""
        payload = {
            "version": CACHE_VERSION,
            "entries": [entry.to_dict() for entry in self._entries.values()],
        }
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f"{self.filename}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(payload, f, indent=2)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            logger.warning("Failed to save metadata cache", path=str(self.path), error=str(e))

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _entry(self, container_id: str) -> MetadataEntry:
        self._ensure_loaded()
        entry = self._entries.get(container_id)
        if entry is None:
            entry = MetadataEntry(container_id=container_id, last_accessed_at=self._clock())
            self._entries[container_id] = entry
        return entry

    def get(self, container_id: str) -> Optional[MetadataEntry]:
        self._ensure_loaded()
        return self._entries.get(container_id)

    def get_access_time(self, container_id: str) -> Optional[datetime]:
        entry = self.get(container_id)
        return datetime.fromtimestamp(entry.last_accessed_at) if entry else None

    def touch(self, container_id: str) -> None:
        """Record an access (mount, export or import) now."""
        self._entry(container_id).last_accessed_at = self._clock()
        self.save()

    def is_count_fresh(self, container_id: str, max_age: Optional[float] = None) -> bool:
        entry = self.get(container_id)
        if entry is None or entry.count_computed_at is None:
            return False
        max_age = self.count_max_age if max_age is None else max_age
        return self._clock() - entry.count_computed_at <= max_age

    def record_count(self, container_id: str, count: int) -> None:
        entry = self._entry(container_id)
        entry.credential_count = count
        entry.count_computed_at = self._clock()
        self.save()

    async def get_credential_count(
        self,
        container_id: str,
        recompute: CountRecompute,
        max_age: Optional[float] = None,
    ) -> int:
        """
        Cached count if younger than ``max_age``, else ``await recompute()``.

        ``recompute`` returns None when the count could not be determined;
        the previous value (or 0) is then returned and left stale.
        """
        if self.is_count_fresh(container_id, max_age):
            return self._entries[container_id].credential_count

        count = await recompute()
        if count is None:
            entry = self.get(container_id)
            return entry.credential_count if entry else 0

        self.record_count(container_id, count)
        logger.debug("Recomputed credential count", container_id=container_id, count=count)
        return count

    def invalidate(self, container_id: str) -> None:
        """Force the next count read to recompute."""
        entry = self.get(container_id)
        if entry is not None and entry.count_computed_at is not None:
            entry.count_computed_at = None
            self.save()

    def forget(self, container_id: str) -> None:
        self._ensure_loaded()
        if self._entries.pop(container_id, None) is not None:
            self.save()
