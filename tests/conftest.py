"""
Shared fakes for the playback engine: voice sink, fetch tool, decoder, notifier.
"""
import asyncio
from pathlib import Path

import pytest

from muse.database.media_cache import MediaCache
from muse.errors import DecodeFailure, TransientFetchFailure
from muse.playback.manager import PlaybackManager
from muse.playback.models import SessionRegistry, Track
from muse.playback.notifier import Notifier
from muse.playback.resolver import TrackResolver
from muse.services.ytdlp import TrackInfo


class FakeVoiceClient:
    def __init__(self):
        self.played = []
        self.playing = False
        self.paused = False
        self.disconnected = False
        self._after = None

    def play(self, source, after=None):
        self.played.append(source)
        self._after = after
        self.playing = True
        self.paused = False

    def is_playing(self):
        return self.playing

    def is_paused(self):
        return self.paused

    def is_connected(self):
        return not self.disconnected

    def pause(self):
        self.playing = False
        self.paused = True

    def resume(self):
        self.playing = True
        self.paused = False

    def stop(self):
        if not (self.playing or self.paused):
            return
        self.playing = False
        self.paused = False
        after, self._after = self._after, None
        if after:
            after(None)

    def finish(self):
        """Simulate the track playing to its end."""
        self.stop()

    async def disconnect(self, force=False):
        self.disconnected = True


class FakeSource:
    def __init__(self, path, volume):
        self.path = path
        self.volume = volume
        self.cleaned = False

    def cleanup(self):
        self.cleaned = True


class FakePipeline:
    def __init__(self):
        self.built = []
        self.killed = 0
        self.fail_paths = set()

    async def build(self, session, path):
        await asyncio.sleep(0)
        if path in self.fail_paths:
            raise DecodeFailure(f"cannot decode {path}")
        self.built.append(path)
        return FakeSource(path, session.volume / 100)

    def kill(self, session):
        self.killed += 1


class FakeFetcher:
    def __init__(self):
        self.calls = []
        self.info_calls = []
        self.fail_urls = set()
        self.fail_all = False
        self.gate: asyncio.Event | None = None

    async def download(self, url, filepath, progress_cb=None):
        self.calls.append(url)
        if self.fail_all or url in self.fail_urls:
            raise TransientFetchFailure(f"fetch failed for {url}")
        if progress_cb:
            await progress_cb("[download]  50.0% of 3.00MiB at 1.00MiB/s ETA 00:02")
        if self.gate is not None:
            await self.gate.wait()
        Path(filepath).write_bytes(b"audio")
        return filepath

    async def get_video_info(self, url):
        self.info_calls.append(url)
        return TrackInfo(url=url, title="Fetched title", duration_seconds=180)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    def names(self):
        return [e[0] for e in self.events]

    async def track_started(self, session, track):
        self.events.append(("track_started", track.title))

    async def track_failed(self, session, track, error):
        self.events.append(("track_failed", track.title))

    async def session_fatal(self, session, error):
        self.events.append(("session_fatal", error.failures))

    async def session_closed(self, session, reason):
        self.events.append(("session_closed", reason))

    async def download_progress(self, session, track, info):
        self.events.append(("download_progress", info.percent))


class Engine:
    """Bundle of a manager wired to fakes."""

    def __init__(self, tmp_path: Path):
        self.dir = tmp_path / "downloads"
        self.cache = MediaCache(str(self.dir), max_entries=50, save_delay=60)
        self.fetcher = FakeFetcher()
        self.resolver = TrackResolver(self.cache, self.fetcher, str(self.dir), progress_interval=0)
        self.pipeline = FakePipeline()
        self.notifier = RecordingNotifier()
        self.registry = SessionRegistry()
        self.manager = PlaybackManager(
            self.registry,
            self.resolver,
            self.pipeline,
            notifier=self.notifier,
            max_failures=5,
            retry_delay=0,
        )
        self.voice = FakeVoiceClient()
        self.session = self.registry.create(1, voice_client=self.voice)

    def local_track(self, name: str) -> Track:
        path = self.dir / f"{name}.m4a"
        path.write_bytes(b"audio")
        return Track(url=None, title=name, local_path=str(path))

    def remote_track(self, name: str) -> Track:
        return Track(url=f"https://example.com/{name}", title=name)


async def wait_until(condition, timeout: float = 2.0):
    """Yield to the loop until ``condition()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def engine(tmp_path):
    return Engine(tmp_path)
