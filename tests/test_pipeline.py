"""
Tests for the ffmpeg buffering pipeline with a fake subprocess.
"""
import asyncio
from unittest.mock import AsyncMock, patch

import discord
import pytest
from discord.opus import Encoder

from muse.errors import DecodeFailure
from muse.playback.models import Session
from muse.services.ffmpeg import AudioPipeline

FRAME = Encoder.FRAME_SIZE


class FakeStream:
    def __init__(self, chunks=(), hang=False):
        self._chunks = list(chunks)
        self._hang = hang

    async def read(self, n=-1):
        if self._hang:
            await asyncio.Event().wait()
        return self._chunks.pop(0) if self._chunks else b""

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._chunks:
            return self._chunks.pop(0)
        raise StopAsyncIteration


class FakeProcess:
    def __init__(self, stdout=(), stderr=(), returncode=0, hang=False):
        self.stdout = FakeStream(stdout, hang=hang)
        self.stderr = FakeStream(stderr)
        self.returncode = None
        self.killed = False
        self._exit = returncode

    async def wait(self):
        if self.returncode is None:
            self.returncode = -9 if self.killed else self._exit
        return self.returncode

    def kill(self):
        self.killed = True


def spawn(proc):
    return patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc))


@pytest.mark.asyncio
async def test_buffers_output_at_session_volume():
    session = Session(guild_id=1, volume=40)
    proc = FakeProcess(stdout=[b"\x01" * FRAME, b"\x02" * FRAME])

    with spawn(proc) as create:
        source = await AudioPipeline().build(session, "/tmp/a.m4a")

    args = create.call_args.args
    assert args[0] == "ffmpeg"
    assert args[args.index("-ar") + 1] == "48000"
    assert args[args.index("-ac") + 1] == "2"
    assert isinstance(source, discord.PCMVolumeTransformer)
    assert source.volume == pytest.approx(0.4)
    assert len(source.original.read()) == FRAME
    assert session.decode_process is None


@pytest.mark.asyncio
async def test_empty_output_is_a_failure():
    proc = FakeProcess(stdout=[], stderr=[b"Invalid data found\n"], returncode=1)
    with spawn(proc):
        with pytest.raises(DecodeFailure, match="Invalid data"):
            await AudioPipeline().build(Session(guild_id=1), "/tmp/bad.m4a")


@pytest.mark.asyncio
async def test_nonzero_exit_with_data_still_plays():
    proc = FakeProcess(stdout=[b"\x00" * FRAME], returncode=1)
    with spawn(proc):
        source = await AudioPipeline().build(Session(guild_id=1), "/tmp/a.m4a")
    assert source.read()


@pytest.mark.asyncio
async def test_spawn_error_is_a_failure():
    with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("ffmpeg"))):
        with pytest.raises(DecodeFailure):
            await AudioPipeline().build(Session(guild_id=1), "/tmp/a.m4a")


@pytest.mark.asyncio
async def test_byte_cap_plays_buffered_prefix():
    proc = FakeProcess(stdout=[b"\x00" * FRAME] * 10)
    with spawn(proc):
        source = await AudioPipeline(max_buffer_bytes=FRAME * 3).build(Session(guild_id=1), "/tmp/long.m4a")

    assert proc.killed
    frames = 0
    while source.original.read():
        frames += 1
    assert frames == 3


@pytest.mark.asyncio
async def test_timeout_kills_decoder():
    proc = FakeProcess(hang=True)
    with spawn(proc):
        with pytest.raises(DecodeFailure, match="timed out"):
            await AudioPipeline(timeout=0.05).build(Session(guild_id=1), "/tmp/a.m4a")
    assert proc.killed


def test_kill_previous_decoder():
    session = Session(guild_id=1)
    proc = FakeProcess()
    session.decode_process = proc

    AudioPipeline().kill(session)

    assert proc.killed
    assert session.decode_process is None
