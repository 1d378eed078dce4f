"""
yt-dlp wrapper - downloads through the CLI, metadata through the library
"""
import asyncio
import logging
import os
import random
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial, wraps
from typing import Any, Awaitable, Callable

import yt_dlp

from muse.errors import TransientFetchFailure
from muse.utils.validation import ensure_within, sanitize_string, validate_search_query

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], Awaitable[None] | None]

STDERR_TAIL_LINES = 6


def retry_with_backoff(retries=2, backoff_in_seconds=1):
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            x = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except yt_dlp.utils.DownloadError as e:
                    if x == retries:
                        logger.error(f"Failed after {retries} retries: {e}")
                        raise
                    sleep = (backoff_in_seconds * 2 ** x + random.uniform(0, 1))
                    logger.warning(f"Retry {x + 1}/{retries} for {func.__name__} after {sleep:.2f}s due to: {e}")
                    await asyncio.sleep(sleep)
                    x += 1
        return wrapper
    return decorator


@dataclass
class TrackInfo:
    """Metadata for one remote track."""
    url: str
    title: str
    duration_seconds: int | None = None
    video_id: str | None = None


class YtDlpService:
    """Fetch tool wrapper.

    ``download`` runs the yt-dlp executable so progress lines can be streamed
    and the process killed on timeout. Lookups (info, playlist, search) use the
    yt_dlp library in a dedicated thread pool.
    """

    def __init__(
        self,
        binary: str = "yt-dlp",
        download_dir: str = "/tmp/muse_downloads",
        download_timeout: float = 120.0,
        search_timeout: float = 30.0,
        cookies_path: str | None = None,
        max_playlist_items: int = 100,
    ):
        self.binary = binary
        self.download_dir = download_dir
        self.download_timeout = download_timeout
        self.search_timeout = search_timeout
        self.cookies_path = cookies_path
        self.max_playlist_items = max_playlist_items

        self.executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="YtDlpWorker")

        self._ydl_opts = {
            "quiet": True,
            "no_warnings": True,
            "socket_timeout": 10,
            "noplaylist": True,
            "skip_download": True,
            "logtostderr": False,
        }
        if cookies_path:
            self._ydl_opts["cookiefile"] = cookies_path

    async def shutdown(self):
        """Shutdown the executor."""
        self.executor.shutdown(wait=False)

    # ==================== DOWNLOAD ====================

    def build_download_args(self, url: str, filepath: str) -> list[str]:
        args = [
            self.binary,
            "-f", "bestaudio",
            "--extract-audio",
            "--audio-format", "m4a",
            "--audio-quality", "320K",
            "--socket-timeout", "60",
            "--retries", "3",
            "--no-warnings",
            "--no-playlist",
            "--newline",
            "-o", filepath,
        ]
        if self.cookies_path:
            args += ["--cookies", self.cookies_path]
        # "--" keeps a hostile reference from being read as an option
        args += ["--", url]
        return args

    async def download(self, url: str, filepath: str, progress_cb: ProgressCallback | None = None) -> str:
        """Download ``url`` as m4a to ``filepath``.

        Raises InvalidInput if the target escapes the download directory and
        TransientFetchFailure on spawn error, timeout, non-zero exit or a
        missing output file.
        """
        filepath = ensure_within(filepath, self.download_dir)
        os.makedirs(os.path.dirname(filepath), exist_ok=True)

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_download_args(url, filepath),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TransientFetchFailure(f"Could not start {self.binary}: {e}") from e

        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

        async def pump_stdout():
            async for raw in proc.stdout:
                line = raw.decode("utf-8", errors="replace").strip()
                if line and progress_cb:
                    try:
                        result = progress_cb(line)
                        if asyncio.iscoroutine(result):
                            await result
                    except Exception as e:
                        logger.debug(f"Progress callback failed: {e}")

        async def pump_stderr():
            async for raw in proc.stderr:
                line = raw.decode("utf-8", errors="replace").strip()
                if line:
                    stderr_tail.append(line)

        try:
            await asyncio.wait_for(
                asyncio.gather(pump_stdout(), pump_stderr(), proc.wait()),
                timeout=self.download_timeout,
            )
        except asyncio.TimeoutError:
            _kill(proc)
            await proc.wait()
            _remove_partial(filepath)
            raise TransientFetchFailure(f"Download timed out after {self.download_timeout:.0f}s: {url}")

        if proc.returncode != 0:
            _remove_partial(filepath)
            detail = "\n".join(stderr_tail) or f"exit code {proc.returncode}"
            raise TransientFetchFailure(f"yt-dlp failed for {url}: {detail}")

        if not os.path.exists(filepath):
            raise TransientFetchFailure(f"yt-dlp exited cleanly but {filepath} is missing")

        logger.info(f"Downloaded {url} -> {os.path.basename(filepath)}")
        return filepath

    # ==================== LOOKUPS ====================

    def _extract(self, url: str, **overrides) -> dict[str, Any] | None:
        opts = dict(self._ydl_opts, **overrides)
        with yt_dlp.YoutubeDL(opts) as ydl:
            return ydl.extract_info(url, download=False)

    @retry_with_backoff()
    async def _lookup(self, url: str, **overrides) -> dict[str, Any] | None:
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(self.executor, partial(self._extract, url, **overrides)),
            timeout=self.search_timeout,
        )

    async def get_video_info(self, url: str) -> TrackInfo | None:
        """Title and duration for a single video."""
        try:
            info = await self._lookup(url)
        except asyncio.TimeoutError:
            logger.error(f"Info lookup timed out for: {url}")
            return None
        except yt_dlp.utils.DownloadError as e:
            logger.error(f"Info lookup failed for {url}: {e}")
            return None
        if not info:
            return None
        return _to_track_info(info, fallback_url=url)

    async def get_playlist_entries(self, url: str, limit: int | None = None) -> tuple[str | None, list[TrackInfo]]:
        """Flat playlist expansion. Returns (playlist title, entries)."""
        limit = min(limit or self.max_playlist_items, self.max_playlist_items)
        try:
            info = await self._lookup(url, extract_flat="in_playlist", noplaylist=False, playlistend=limit)
        except asyncio.TimeoutError:
            logger.error(f"Playlist lookup timed out for: {url}")
            return None, []
        except yt_dlp.utils.DownloadError as e:
            logger.error(f"Playlist lookup failed for {url}: {e}")
            return None, []
        if not info:
            return None, []

        entries = []
        for entry in (info.get("entries") or [])[:limit]:
            if not entry:
                continue
            track = _to_track_info(entry)
            if track:
                entries.append(track)
        title = sanitize_string(info.get("title")) or None
        logger.info(f"Expanded playlist {title or url}: {len(entries)} entries")
        return title, entries

    async def search(self, query: str, limit: int = 1) -> list[TrackInfo]:
        """Search YouTube for ``query``."""
        query = validate_search_query(query)
        try:
            info = await self._lookup(f"ytsearch{limit}:{query}", extract_flat="in_playlist", noplaylist=False)
        except asyncio.TimeoutError:
            logger.error(f"Search timed out for query: {query}")
            return []
        except yt_dlp.utils.DownloadError as e:
            logger.error(f"Search error: {e}")
            return []
        if not info:
            return []
        results = [_to_track_info(e) for e in info.get("entries") or [] if e]
        return [r for r in results if r]


def _to_track_info(info: dict, fallback_url: str | None = None) -> TrackInfo | None:
    video_id = info.get("id")
    url = info.get("webpage_url") or info.get("url")
    if not url or not str(url).startswith(("http://", "https://")):
        url = f"https://www.youtube.com/watch?v={video_id}" if video_id else fallback_url
    if not url:
        return None

    duration = info.get("duration")
    try:
        duration = int(duration) if duration is not None else None
    except (TypeError, ValueError):
        duration = None

    return TrackInfo(
        url=url,
        title=sanitize_string(info.get("title")) or "Unknown",
        duration_seconds=duration,
        video_id=video_id,
    )


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass


def _remove_partial(filepath: str) -> None:
    for path in (filepath, filepath + ".part"):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.debug(f"Could not remove partial download {path}: {e}")
