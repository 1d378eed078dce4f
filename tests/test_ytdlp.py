"""
Tests for the yt-dlp wrapper. The executable and the library are both faked.
"""
import os
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
import yt_dlp

from muse.errors import InvalidInput, TransientFetchFailure
from muse.services.ytdlp import YtDlpService


class FakeStream:
    def __init__(self, lines=()):
        self._lines = [line.encode() for line in lines]

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._lines:
            return self._lines.pop(0)
        raise StopAsyncIteration


class FakeProcess:
    def __init__(self, stdout=(), stderr=(), returncode=0):
        self.stdout = FakeStream(stdout)
        self.stderr = FakeStream(stderr)
        self.returncode = None
        self._exit = returncode

    async def wait(self):
        self.returncode = self._exit
        return self.returncode

    def kill(self):
        self.returncode = -9


@pytest.fixture
def service(tmp_path):
    svc = YtDlpService(download_dir=str(tmp_path), download_timeout=5, search_timeout=5)
    yield svc
    svc.executor.shutdown(wait=False)


@pytest.mark.asyncio
async def test_download_streams_progress_lines(service, tmp_path):
    target = tmp_path / "song.m4a"
    proc = FakeProcess(stdout=["[download]  10.0% of 1MiB at 1MiB/s ETA 00:01", "[download] 100% of 1MiB"])

    async def fake_exec(*args, **kwargs):
        Path(args[args.index("-o") + 1]).write_bytes(b"audio")
        return proc

    lines = []
    with patch("asyncio.create_subprocess_exec", side_effect=fake_exec) as create:
        path = await service.download("https://youtu.be/dQw4w9WgXcQ", str(target), lines.append)

    assert path == os.path.realpath(target)
    assert len(lines) == 2
    args = create.call_args.args
    assert args[-2:] == ("--", "https://youtu.be/dQw4w9WgXcQ")
    assert "--no-playlist" in args


@pytest.mark.asyncio
async def test_nonzero_exit_reports_stderr(service, tmp_path):
    proc = FakeProcess(stderr=["ERROR: Video unavailable"], returncode=1)
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        with pytest.raises(TransientFetchFailure, match="Video unavailable"):
            await service.download("https://youtu.be/x", str(tmp_path / "x.m4a"))


@pytest.mark.asyncio
async def test_missing_output_is_a_failure(service, tmp_path):
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=FakeProcess())):
        with pytest.raises(TransientFetchFailure, match="missing"):
            await service.download("https://youtu.be/x", str(tmp_path / "x.m4a"))


@pytest.mark.asyncio
async def test_target_outside_download_dir_is_refused(service, tmp_path):
    with patch("asyncio.create_subprocess_exec", AsyncMock()) as create:
        with pytest.raises(InvalidInput):
            await service.download("https://youtu.be/x", str(tmp_path / ".." / "evil.m4a"))
    create.assert_not_called()


@pytest.mark.asyncio
async def test_video_info(service):
    info = {"id": "dQw4w9WgXcQ", "title": "Never <Gonna>", "duration": 212.0}
    with patch.object(service, "_extract", return_value=info):
        track = await service.get_video_info("https://youtu.be/dQw4w9WgXcQ")

    assert track.title == "Never Gonna"
    assert track.duration_seconds == 212
    assert track.url == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


@pytest.mark.asyncio
async def test_lookup_errors_are_retried_then_swallowed(service):
    error = yt_dlp.utils.DownloadError("private video")
    with patch.object(service, "_extract", side_effect=error) as extract, \
            patch("muse.services.ytdlp.asyncio.sleep", AsyncMock()):
        assert await service.get_video_info("https://youtu.be/x") is None
    assert extract.call_count == 3


@pytest.mark.asyncio
async def test_playlist_entries_are_capped(service):
    service.max_playlist_items = 2
    info = {
        "title": "Mix",
        "entries": [
            {"id": "a" * 11, "title": "A", "url": "a" * 11},
            None,
            {"id": "b" * 11, "title": "B", "duration": 60},
            {"id": "c" * 11, "title": "C"},
        ],
    }
    with patch.object(service, "_extract", return_value=info) as extract:
        title, entries = await service.get_playlist_entries("https://www.youtube.com/playlist?list=PL1")

    assert title == "Mix"
    assert [e.title for e in entries] == ["A"]
    assert extract.call_args.kwargs["playlistend"] == 2


@pytest.mark.asyncio
async def test_search_rejects_bad_query_without_lookup(service):
    with patch.object(service, "_extract") as extract:
        with pytest.raises(InvalidInput):
            await service.search("; rm -rf /")
    extract.assert_not_called()


@pytest.mark.asyncio
async def test_search_results(service):
    info = {"entries": [{"id": "dQw4w9WgXcQ", "title": "Rick", "duration": 212}]}
    with patch.object(service, "_extract", return_value=info) as extract:
        results = await service.search("never gonna give you up")

    assert extract.call_args.args[0] == "ytsearch1:never gonna give you up"
    assert results[0].video_id == "dQw4w9WgXcQ"
