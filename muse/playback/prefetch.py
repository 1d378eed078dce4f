"""
Background Prefetcher - resolves queued tracks ahead of playback
"""
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

from muse.errors import MuseError
from muse.playback.models import BatchProgress, Session, SessionRegistry, Track
from muse.playback.notifier import Notifier
from muse.playback.progress import ProgressInfo
from muse.playback.resolver import TrackResolver

logger = logging.getLogger(__name__)


@dataclass
class PrefetchJob:
    guild_id: int
    track: Track


class Prefetcher:
    """FIFO of prefetch jobs drained by at most one worker task."""

    def __init__(
        self,
        registry: SessionRegistry,
        resolver: TrackResolver,
        notifier: Notifier | None = None,
        pause: float = 0.2,
        batch_interval: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.resolver = resolver
        self.notifier = notifier or Notifier()
        self.pause = pause
        self.batch_interval = batch_interval
        self._clock = clock
        self._jobs: deque[PrefetchJob] = deque()
        self._worker: asyncio.Task | None = None
        self.processed = 0
        self.failed = 0

    @property
    def active(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def add(self, guild_id: int, track: Track) -> None:
        self._jobs.append(PrefetchJob(guild_id, track))
        if not self.active:
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def _run(self):
        logger.debug("Prefetch worker started")
        while self._jobs:
            job = self._jobs.popleft()
            try:
                await self._process(job)
                self.processed += 1
            except MuseError as e:
                self.failed += 1
                logger.warning(f"Prefetch failed for {job.track.url}: {e}")
            except Exception as e:
                self.failed += 1
                logger.exception(f"Unexpected prefetch error for {job.track.url}: {e}")
            await asyncio.sleep(self.pause)
        logger.debug("Prefetch worker idle")

    async def _process(self, job: PrefetchJob):
        session = self.registry.get(job.guild_id)
        if session is None or session.closed:
            logger.debug(f"Dropping prefetch for {job.track.url}: guild {job.guild_id} has no session")
            return

        track = job.track
        if track.is_resolved or not track.url:
            return

        if not self.resolver.lookup(track):
            async def on_progress(info: ProgressInfo):
                await self._report(session, track, info)

            await self.resolver.resolve(track, on_progress)
            logger.info(f"Prefetched {track.title}")

        await self._report(session, track)

    async def _report(self, session: Session, track: Track, info: ProgressInfo | None = None):
        """Update the group's shared message.

        ``info`` is set while ``track`` is still downloading. Updates are
        throttled to one per ``batch_interval`` except the first one and the
        one that completes the group.
        """
        label = track.group_label
        if not label:
            return

        batch = session.batches.get(label)
        if batch is None:
            batch = session.batches[label] = BatchProgress(label=label)
        if batch.closed:
            return

        members = [t for t in (session.current, *session.queue) if t is not None and t.group_label == label]
        total = len(members)
        if total == 0:
            return
        done = sum(1 for t in members if t.local_path)

        now = self._clock()
        if done < total and batch.updates and now - batch.last_update < self.batch_interval:
            return
        batch.last_update = now
        batch.updates += 1

        try:
            alive = await self.notifier.batch_progress(
                session, batch, done, total, track=track if info else None, info=info
            )
        except Exception as e:
            logger.error(f"Batch progress update failed for {label}: {e}")
            alive = False
        if not alive:
            batch.closed = True

    def stats(self) -> dict:
        return {
            "queue_length": len(self._jobs),
            "active": self.active,
            "processed": self.processed,
            "failed": self.failed,
        }

    async def close(self):
        self._jobs.clear()
        if self.active:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
