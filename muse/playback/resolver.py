"""
Resolves tracks to local files through the media cache and the fetch tool.

Concurrent requests for the same canonical key share one download, so the
prefetcher and a session never fetch the same asset twice at once.
"""
import asyncio
import logging
import os
import time
import uuid
from typing import Awaitable, Callable, Protocol

from muse.database.media_cache import CacheEntry, MediaCache
from muse.playback.models import Track
from muse.playback.progress import ProgressInfo, ProgressTracker
from muse.utils.validation import validate_url

logger = logging.getLogger(__name__)

ProgressHandler = Callable[[ProgressInfo], Awaitable[None]]


class Fetcher(Protocol):
    async def download(self, url: str, filepath: str, progress_cb=None) -> str: ...

    async def get_video_info(self, url: str): ...


class TrackResolver:
    def __init__(self, cache: MediaCache, fetcher: Fetcher, download_dir: str, progress_interval: float = 2.5):
        self.cache = cache
        self.fetcher = fetcher
        self.download_dir = download_dir
        self.progress_interval = progress_interval
        self._inflight: dict[str, asyncio.Task] = {}

    def build_path(self) -> str:
        return os.path.join(self.download_dir, f"song_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}.m4a")

    def lookup(self, track: Track) -> bool:
        """Apply a cache hit to ``track``. Synchronous, never fetches."""
        if not track.url:
            return False
        entry = self.cache.get_entry(track.url)
        if entry is None:
            return False
        track.local_path = entry.path
        track.apply_meta(entry.meta)
        return True

    def stats(self) -> dict:
        return {"in_flight": sum(1 for t in self._inflight.values() if not t.done())}

    async def resolve(self, track: Track, on_progress: ProgressHandler | None = None) -> str:
        """Make sure ``track`` has a local file, downloading it if needed."""
        if self.lookup(track):
            return track.local_path

        key = self.cache.make_key(track.url)
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._fetch(track, on_progress))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.debug(f"Joining in-flight fetch for {key}")

        entry = await asyncio.shield(task)
        track.local_path = entry.path
        track.apply_meta(entry.meta)
        return entry.path

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _fetch(self, track: Track, on_progress: ProgressHandler | None) -> CacheEntry:
        url = validate_url(track.url)
        filepath = self.build_path()
        tracker = ProgressTracker(self.progress_interval)

        async def handle_line(line: str):
            info = tracker.parse(line)
            if info and on_progress and tracker.should_update(info.percent):
                await on_progress(info)

        logger.info(f"Fetching {url}")
        path = await self.fetcher.download(url, filepath, handle_line)

        meta = {"title": track.title, "duration": track.duration_seconds}
        if meta["duration"] is None or not meta["title"] or meta["title"] == "Unknown":
            info = await self.fetcher.get_video_info(url)
            if info:
                if not meta["title"] or meta["title"] == "Unknown":
                    meta["title"] = info.title
                if meta["duration"] is None:
                    meta["duration"] = info.duration_seconds

        entry = self.cache.put(url, path, meta)
        if on_progress:
            await on_progress(ProgressInfo(100.0))
        return entry
