"""
Audio Buffering Pipeline - decodes a local file to PCM in memory
"""
import asyncio
import io
import logging
from collections import deque

import discord

from muse.errors import DecodeFailure

logger = logging.getLogger(__name__)

SAMPLE_RATE = 48000
CHANNELS = 2
READ_CHUNK = 64 * 1024
STDERR_TAIL_LINES = 6


class AudioPipeline:
    """One ffmpeg process per session, fully buffered before playback starts.

    The decoded s16le stream is wrapped in ``discord.PCMAudio`` with a
    ``PCMVolumeTransformer`` so volume can change without restarting.
    """

    def __init__(
        self,
        binary: str = "ffmpeg",
        max_buffer_bytes: int = 128 * 1024 * 1024,
        timeout: float = 120.0,
    ):
        self.binary = binary
        self.max_buffer_bytes = max_buffer_bytes
        self.timeout = timeout

    def build_args(self, path: str) -> list[str]:
        return [
            self.binary,
            "-nostdin",
            "-hide_banner",
            "-loglevel", "error",
            "-i", path,
            "-vn",
            "-f", "s16le",
            "-ar", str(SAMPLE_RATE),
            "-ac", str(CHANNELS),
            "pipe:1",
        ]

    def kill(self, session) -> None:
        """Kill the session's running decode process, if any."""
        proc = session.decode_process
        session.decode_process = None
        if proc is not None and _kill(proc):
            logger.debug(f"Killed decode process for guild {session.guild_id}")

    async def build(self, session, path: str) -> discord.PCMVolumeTransformer:
        """Decode ``path`` and return a playable source at the session's volume.

        Raises DecodeFailure on spawn error, timeout, or when nothing was decoded.
        """
        self.kill(session)

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_args(path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise DecodeFailure(f"Could not start {self.binary}: {e}") from e

        session.decode_process = proc
        chunks: list[bytes] = []
        size = 0
        capped = False
        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

        async def read_stderr():
            async for raw in proc.stderr:
                line = raw.decode("utf-8", errors="replace").strip()
                if line:
                    stderr_tail.append(line)

        async def drain():
            nonlocal size, capped
            while True:
                chunk = await proc.stdout.read(READ_CHUNK)
                if not chunk:
                    break
                chunks.append(chunk)
                size += len(chunk)
                if size >= self.max_buffer_bytes:
                    capped = True
                    _kill(proc)
                    break
            await proc.wait()
            await stderr_task

        stderr_task = asyncio.create_task(read_stderr())
        try:
            await asyncio.wait_for(drain(), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise DecodeFailure(f"Decoding {path} timed out after {self.timeout:.0f}s")
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            _kill(proc)
            if session.decode_process is proc:
                session.decode_process = None

        if capped:
            logger.warning(
                f"Decode buffer cap ({self.max_buffer_bytes} bytes) reached for {path}, playing what is buffered"
            )

        detail = "\n".join(stderr_tail)
        if not chunks:
            raise DecodeFailure(f"ffmpeg produced no audio for {path} (exit {proc.returncode}): {detail}")
        if proc.returncode != 0 and not capped:
            logger.warning(f"ffmpeg exited with {proc.returncode} for {path}, playing {size} buffered bytes: {detail}")

        blob = b"".join(chunks)
        logger.debug(f"Buffered {size} bytes of PCM for {path}")
        return discord.PCMVolumeTransformer(
            discord.PCMAudio(io.BytesIO(blob)),
            volume=session.volume / 100,
        )


def _kill(proc: asyncio.subprocess.Process) -> bool:
    if proc.returncode is not None:
        return False
    try:
        proc.kill()
        return True
    except ProcessLookupError:
        return False
