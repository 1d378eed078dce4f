"""
Media Cache - maps remote references to downloaded audio files

The in-memory index is authoritative. The on-disk index (``.cache_index.json``
inside the download directory) is a debounced snapshot of it, written
atomically (temp file + os.replace) and never re-read after startup.
"""
import asyncio
import json
import logging
import math
import os
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse, parse_qs

from muse.errors import CacheIOFailure

logger = logging.getLogger(__name__)

INDEX_FILENAME = ".cache_index.json"
EVICTION_FRACTION = 0.2
ID_PATH_PREFIXES = ("shorts", "embed", "v", "live")


@dataclass
class CacheEntry:
    """A resolved asset. Replaced wholesale when the same key is stored again."""
    key: str
    path: str
    created_at: float
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str | None:
        return self.meta.get("title")

    @property
    def duration(self) -> int | None:
        return self.meta.get("duration")

    def to_json(self) -> dict:
        return {
            "filepath": self.path,
            "filename": os.path.basename(self.path),
            "ts": self.created_at,
            "meta": self.meta,
        }


class MediaCache:
    """Bounded reference -> file index with oldest-first batch eviction."""

    def __init__(self, directory: str, max_entries: int = 200, save_delay: float = 60.0):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.directory = directory
        self.max_entries = max_entries
        self.save_delay = save_delay
        self.index_path = os.path.join(directory, INDEX_FILENAME)

        self._entries: dict[str, CacheEntry] = {}
        self._dirty = False
        self._save_task: asyncio.Task | None = None

        os.makedirs(directory, exist_ok=True)
        self._load()

    # ==================== KEYS ====================

    @staticmethod
    def make_key(ref: str) -> str:
        """Canonical key for a reference.

        YouTube links collapse to their video id so that watch, short-link and
        embed forms share one entry. Anything else is keyed by the raw string.
        """
        try:
            parsed = urlparse(ref)
        except (ValueError, AttributeError):
            return ref

        host = (parsed.hostname or "").lower()
        if "youtu" not in host:
            return ref

        video_id = parse_qs(parsed.query).get("v")
        if video_id and video_id[0]:
            return video_id[0]

        segments = [s for s in parsed.path.split("/") if s]
        if len(segments) > 1 and segments[0] in ID_PATH_PREFIXES:
            return segments[1]
        if host.endswith("youtu.be") and segments:
            return segments[-1]
        return ref

    # ==================== LOOKUP ====================

    def has(self, ref: str) -> bool:
        """True if an entry exists and its file is still on disk.

        An entry whose file has vanished is dropped on the spot.
        """
        key = self.make_key(ref)
        entry = self._entries.get(key)
        if entry is None:
            return False
        if not os.path.exists(entry.path):
            logger.info(f"Cache entry {key} lost its file, pruning")
            del self._entries[key]
            self._mark_dirty()
            return False
        return True

    def get_entry(self, ref: str) -> CacheEntry | None:
        if not self.has(ref):
            return None
        return self._entries[self.make_key(ref)]

    def get(self, ref: str) -> str | None:
        """Path of the cached file, or None."""
        entry = self.get_entry(ref)
        return entry.path if entry else None

    def entries(self) -> list[CacheEntry]:
        return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, ref: str) -> bool:
        return self.has(ref)

    # ==================== MUTATION ====================

    def put(self, ref: str, path: str, meta: dict | None = None) -> CacheEntry:
        """Store ``path`` for ``ref``, evicting the oldest batch when over capacity."""
        key = self.make_key(ref)
        self._entries.pop(key, None)
        entry = CacheEntry(key=key, path=path, created_at=time.time(), meta=dict(meta or {}))
        self._entries[key] = entry

        if len(self._entries) > self.max_entries:
            self._evict(keep=key)

        self._mark_dirty()
        return entry

    def _evict(self, keep: str | None = None) -> None:
        count = math.ceil(self.max_entries * EVICTION_FRACTION)
        candidates = sorted(
            (e for e in self._entries.values() if e.key != keep),
            key=lambda e: e.created_at,
        )
        victims = candidates[:count]
        for entry in victims:
            del self._entries[entry.key]
            self._remove_file(entry.path)
        logger.info(f"Evicted {len(victims)} cache entries ({len(self._entries)}/{self.max_entries} remain)")

    @staticmethod
    def _remove_file(path: str) -> bool:
        try:
            os.remove(path)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Could not delete cached file {path}: {e}")
            return False

    def clear(self) -> tuple[int, int]:
        """Drop every entry and its file. Returns (entries removed, files deleted)."""
        if self._save_task and not self._save_task.done():
            self._save_task.cancel()
        self._save_task = None

        removed = len(self._entries)
        deleted = sum(1 for entry in self._entries.values() if self._remove_file(entry.path))
        self._entries.clear()
        self._dirty = False
        self._remove_file(self.index_path)

        logger.info(f"Cache cleared: {removed} entries, {deleted} files deleted")
        return removed, deleted

    def stats(self) -> dict:
        size = len(self._entries)
        return {
            "size": size,
            "max_entries": self.max_entries,
            "utilization_percent": round(size / self.max_entries * 100, 2),
        }

    # ==================== PERSISTENCE ====================

    def _load(self) -> None:
        if not os.path.exists(self.index_path):
            return

        try:
            with open(self.index_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Cache index {self.index_path} unreadable, starting empty: {e}")
            return

        if not isinstance(data, list):
            logger.warning(f"Cache index {self.index_path} is not a list, starting empty")
            return

        skipped = 0
        for pair in data:
            try:
                key, raw = pair
                entry = CacheEntry(
                    key=str(key),
                    path=str(raw["filepath"]),
                    created_at=float(raw.get("ts", 0)),
                    meta=dict(raw.get("meta") or {}),
                )
            except (TypeError, ValueError, KeyError, AttributeError):
                skipped += 1
                continue
            self._entries[entry.key] = entry

        if skipped:
            logger.warning(f"Skipped {skipped} malformed cache index records")
        if len(self._entries) > self.max_entries:
            self._evict()
        logger.info(f"Loaded {len(self._entries)} cache entries from {self.index_path}")

    def _snapshot(self) -> list:
        return [[key, entry.to_json()] for key, entry in self._entries.items()]

    def _write(self, data: list) -> None:
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", delete=False, dir=self.directory, prefix=".cache_index.", suffix=".tmp", encoding="utf-8"
            ) as tmp:
                tmp_path = tmp.name
                json.dump(data, tmp)
            os.replace(tmp_path, self.index_path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                try:
                    os.unlink(tmp_path)
                except OSError:
                    logger.debug(f"Could not remove temp index {tmp_path}")
            raise CacheIOFailure(f"Writing {self.index_path} failed: {e}") from e

    def _mark_dirty(self) -> None:
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: flush() writes it later
            return
        if self._save_task is None or self._save_task.done():
            self._save_task = loop.create_task(self._delayed_save())

    async def _delayed_save(self) -> None:
        await asyncio.sleep(self.save_delay)
        data = self._snapshot()
        self._dirty = False
        try:
            await asyncio.to_thread(self._write, data)
            logger.debug(f"Saved cache index ({len(data)} entries)")
        except CacheIOFailure as e:
            self._dirty = True
            logger.error(str(e))
            return
        if self._dirty:
            # Changes landed while we were writing
            self._save_task = asyncio.get_running_loop().create_task(self._delayed_save())

    @property
    def dirty(self) -> bool:
        return self._dirty

    def flush(self) -> bool:
        """Write the index now. Returns False if the write failed."""
        try:
            self._write(self._snapshot())
        except CacheIOFailure as e:
            logger.error(str(e))
            return False
        self._dirty = False
        return True

    async def close(self) -> None:
        """Cancel the pending debounce and write any outstanding changes."""
        if self._save_task and not self._save_task.done():
            self._save_task.cancel()
            try:
                await self._save_task
            except asyncio.CancelledError:
                pass
        self._save_task = None
        if self._dirty:
            await asyncio.to_thread(self.flush)
