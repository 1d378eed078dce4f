"""
Playback Manager - per-session state machine

All progress funnels through two continuation points: ``advance()`` picks the
next track and ``on_track_end()`` applies loop policy when the voice sink
finishes. A session holds at most one fetch and one decode at a time; the
state is set before the first suspension point in ``advance()`` so concurrent
triggers collapse onto a single in-flight operation.
"""
import asyncio
import logging
import os
from typing import Iterable

from muse.errors import CapacityFatal, InvalidInput
from muse.playback.models import (
    BatchProgress,
    LoopMode,
    PlaybackState,
    Session,
    SessionRegistry,
    Track,
    next_play_token,
)
from muse.playback.notifier import Notifier
from muse.playback.prefetch import Prefetcher
from muse.playback.progress import ProgressInfo
from muse.playback.resolver import TrackResolver
from muse.services.ffmpeg import AudioPipeline
from muse.utils.formatting import shuffle_tail
from muse.utils.validation import validate_url

logger = logging.getLogger(__name__)

END_SKIP = "skip"
END_BACK = "back"


class PlaybackManager:
    def __init__(
        self,
        registry: SessionRegistry,
        resolver: TrackResolver,
        pipeline: AudioPipeline,
        notifier: Notifier | None = None,
        prefetcher: Prefetcher | None = None,
        max_failures: int = 5,
        retry_delay: float = 0.5,
    ):
        self.registry = registry
        self.resolver = resolver
        self.pipeline = pipeline
        self.notifier = notifier or Notifier()
        self.prefetcher = prefetcher
        self.max_failures = max_failures
        self.retry_delay = retry_delay
        self._tasks: set[asyncio.Task] = set()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _notify(self, hook: str, *args):
        try:
            return await getattr(self.notifier, hook)(*args)
        except Exception as e:
            logger.error(f"Notifier {hook} failed: {e}")
            return None

    # ==================== QUEUEING ====================

    @staticmethod
    def _validate(track: Track) -> None:
        if track.url is not None:
            track.url = validate_url(track.url)
        elif not track.local_path:
            raise InvalidInput("Track has neither a URL nor a local file")

    def enqueue(self, session: Session, track: Track) -> int:
        """Append ``track`` and start playback if the session is idle.

        Returns the track's queue position. Raises InvalidInput before
        touching the queue if the reference is rejected.
        """
        if session.closed:
            raise InvalidInput("Session has already ended")
        self._validate(track)

        session.queue.append(track)
        logger.info(f"Queued {track.title} in guild {session.guild_id} (position {len(session.queue)})")
        if session.state is PlaybackState.IDLE:
            self._spawn(self.advance(session))
        return len(session.queue)

    def enqueue_many(self, session: Session, tracks: Iterable[Track], group_label: str | None = None) -> list[Track]:
        """Queue a multi-track submission and prefetch everything after the first."""
        if session.closed:
            raise InvalidInput("Session has already ended")

        accepted = []
        for track in tracks:
            try:
                self._validate(track)
            except InvalidInput as e:
                logger.warning(f"Skipping playlist entry {track.url}: {e}")
                continue
            if group_label:
                track.group_label = group_label
            accepted.append(track)

        if not accepted:
            return accepted

        if group_label and group_label not in session.batches:
            session.batches[group_label] = BatchProgress(label=group_label)

        starts_now = session.state is PlaybackState.IDLE and not session.queue
        session.queue.extend(accepted)
        logger.info(f"Queued {len(accepted)} tracks from {group_label or 'submission'} in guild {session.guild_id}")

        if self.prefetcher:
            for track in accepted[1:] if starts_now else accepted:
                self.prefetcher.add(session.guild_id, track)

        if session.state is PlaybackState.IDLE:
            self._spawn(self.advance(session))
        return accepted

    # ==================== STATE MACHINE ====================

    async def advance(self, session: Session) -> None:
        """Start the head of the queue if nothing is in progress. Idempotent."""
        if session.closed or session.state is not PlaybackState.IDLE:
            return

        while True:
            if not session.queue:
                if session.current is None:
                    await self.teardown(session, "queue_empty")
                return

            head = session.queue[0]
            if head.local_path and os.path.exists(head.local_path):
                break
            if self.resolver.lookup(head):
                break
            if not head.url:
                logger.warning(f"Dropping {head.title} in guild {session.guild_id}: no reference to resolve")
                session.queue.popleft()
                continue

            session.state = PlaybackState.RESOLVING
            try:
                await self.resolver.resolve(head, on_progress=lambda info: self._on_progress(session, head, info))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if session.state is PlaybackState.RESOLVING:
                    session.state = PlaybackState.IDLE
                if not session.closed:
                    await self._handle_failure(session, head, e)
                return

            if session.closed:
                return
            if not session.queue or session.queue[0] is not head:
                # queue was cleared or reordered while fetching
                continue
            break

        await self._start_playback(session, head)

    async def _on_progress(self, session: Session, track: Track, info: ProgressInfo):
        await self._notify("download_progress", session, track, info)

    async def _start_playback(self, session: Session, track: Track) -> None:
        session.state = PlaybackState.BUFFERING
        if session.queue and session.queue[0] is track:
            session.queue.popleft()
        else:
            try:
                session.queue.remove(track)
            except ValueError:
                pass
        session.current = track

        try:
            source = await self.pipeline.build(session, track.local_path)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            session.current = None
            session.state = PlaybackState.IDLE
            if not session.closed:
                await self._handle_failure(session, track, e)
            return

        if session.closed:
            source.cleanup()
            return

        token = next_play_token()
        session.play_token = token
        session.resource = source
        session.end_reason = None
        loop = asyncio.get_running_loop()

        def after_play(error):
            # Runs on the voice thread
            loop.call_soon_threadsafe(self._track_finished, session, token, error)

        try:
            session.voice_client.play(source, after=after_play)
        except Exception as e:
            session.play_token = None
            session.resource = None
            session.current = None
            session.state = PlaybackState.IDLE
            source.cleanup()
            await self._handle_failure(session, track, e)
            return

        session.state = PlaybackState.PLAYING
        session.consecutive_failures = 0
        logger.info(f"Playing: {track.title} | guild {session.guild_id} | requester {track.requester_id}")
        await self._notify("track_started", session, track)

    def _track_finished(self, session: Session, token: int, error: Exception | None):
        self._spawn(self.on_track_end(session, token, error))

    async def on_track_end(self, session: Session, token: int | None, error: Exception | None = None) -> None:
        """Apply loop policy for the finished track and move on.

        The queue is settled before the first await so an enqueue landing
        during the notifier call cannot overtake a looped track.
        """
        if session.closed or token is None or token != session.play_token:
            return
        if error:
            logger.error(f"Playback error in guild {session.guild_id}: {error}")

        finished = session.current
        reason = session.end_reason
        session.play_token = None
        session.resource = None
        session.current = None
        session.end_reason = None

        if finished is not None:
            session.previous = finished
            # back has already queued previous and current explicitly
            if reason != END_BACK:
                if session.loop_mode is LoopMode.TRACK:
                    session.queue.appendleft(finished)
                elif session.loop_mode is LoopMode.QUEUE:
                    session.queue.append(finished)
            logger.debug(f"Track ended in guild {session.guild_id} ({reason or 'finished'}): {finished.title}")
        session.state = PlaybackState.IDLE

        await self._notify("track_ended", session, finished)
        if session.closed:
            return
        await self.advance(session)

    async def _handle_failure(self, session: Session, track: Track, error: Exception) -> None:
        session.consecutive_failures += 1
        if session.queue and session.queue[0] is track:
            session.queue.popleft()
        logger.warning(
            f"Dropped {track.title} in guild {session.guild_id} "
            f"({session.consecutive_failures}/{self.max_failures}): {error}"
        )

        if session.consecutive_failures >= self.max_failures:
            fatal = CapacityFatal(session.guild_id, session.consecutive_failures)
            logger.error(f"{fatal}, stopping")
            await self._notify("session_fatal", session, fatal)
            await self.teardown(session, "fatal", notify=False)
            return

        await self._notify("track_failed", session, track, error)
        if session.closed:
            return
        session.state = PlaybackState.ERROR_BACKOFF
        self._spawn(self._retry_later(session))

    async def _retry_later(self, session: Session) -> None:
        await asyncio.sleep(self.retry_delay)
        if session.closed or session.state is not PlaybackState.ERROR_BACKOFF:
            return
        session.state = PlaybackState.IDLE
        await self.advance(session)

    # ==================== CONTROLS ====================

    def skip(self, session: Session) -> bool:
        if session.state not in (PlaybackState.PLAYING, PlaybackState.PAUSED):
            return False
        session.end_reason = END_SKIP
        session.voice_client.stop()
        return True

    def back(self, session: Session) -> bool:
        """Replay the previous track, putting the current one after it."""
        if session.previous is None or session.closed:
            return False
        previous = session.previous
        session.previous = None
        playing = session.state in (PlaybackState.PLAYING, PlaybackState.PAUSED)

        if session.current is not None and playing:
            session.queue.appendleft(session.current)
        session.queue.appendleft(previous)

        if playing:
            session.end_reason = END_BACK
            session.voice_client.stop()
        elif session.state is PlaybackState.IDLE:
            self._spawn(self.advance(session))
        return True

    def pause(self, session: Session) -> bool:
        if session.state is not PlaybackState.PLAYING:
            return False
        session.voice_client.pause()
        session.state = PlaybackState.PAUSED
        return True

    def resume(self, session: Session) -> bool:
        if session.state is not PlaybackState.PAUSED:
            return False
        session.voice_client.resume()
        session.state = PlaybackState.PLAYING
        return True

    def set_volume(self, session: Session, volume: int) -> int:
        """Clamp to 0-100 and apply to the playing resource in place."""
        volume = max(0, min(100, int(volume)))
        session.volume = volume
        if session.resource is not None:
            session.resource.volume = volume / 100
        return volume

    def set_loop_mode(self, session: Session, mode: LoopMode | str) -> LoopMode:
        session.loop_mode = LoopMode(mode)
        return session.loop_mode

    def cycle_loop_mode(self, session: Session) -> LoopMode:
        return self.set_loop_mode(session, session.loop_mode.next())

    def toggle_shuffle(self, session: Session) -> bool:
        session.shuffle = not session.shuffle
        if session.shuffle:
            items = shuffle_tail(list(session.queue))
            session.queue.clear()
            session.queue.extend(items)
        return session.shuffle

    def clear_queue(self, session: Session) -> int:
        count = len(session.queue)
        session.queue.clear()
        return count

    async def stop(self, session: Session) -> None:
        await self.teardown(session, "stopped")

    async def teardown(self, session: Session, reason: str, notify: bool = True) -> None:
        """Stop playback, release the voice connection and deregister the session."""
        if session.closed:
            return
        session.closed = True
        session.play_token = None
        session.queue.clear()
        self.pipeline.kill(session)

        vc = session.voice_client
        if vc is not None:
            if vc.is_playing() or vc.is_paused():
                vc.stop()
            try:
                await vc.disconnect(force=True)
            except Exception as e:
                logger.warning(f"Voice disconnect failed for guild {session.guild_id}: {e}")

        session.current = None
        session.resource = None
        session.state = PlaybackState.IDLE
        if self.registry.get(session.guild_id) is session:
            self.registry.remove(session.guild_id)
        logger.info(f"Session for guild {session.guild_id} ended ({reason})")

        await self._notify("track_ended", session, None)
        if notify:
            await self._notify("session_closed", session, reason)

    async def shutdown(self) -> None:
        for session in self.registry:
            await self.teardown(session, "shutdown", notify=False)
        for task in list(self._tasks):
            task.cancel()

    # ==================== INFO ====================

    def now_playing_info(self, session: Session) -> dict:
        track = session.current
        return {
            "title": track.title if track else None,
            "duration": track.duration_seconds if track else None,
            "requester_id": track.requester_id if track else None,
            "loop_mode": session.loop_mode.value,
            "shuffle": session.shuffle,
            "volume": session.volume,
            "queue_length": len(session.queue),
            "state": session.state.value,
            "fetching": session.fetch_in_flight,
        }

    def stats(self) -> dict:
        sessions = list(self.registry)
        return {
            "sessions": len(sessions),
            "playing": sum(1 for s in sessions if s.state is PlaybackState.PLAYING),
            "queued_tracks": sum(len(s.queue) for s in sessions),
        }
