"""
Playback data model - tracks, sessions and the session registry
"""
import itertools
import logging
import os
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

logger = logging.getLogger(__name__)

_tokens = itertools.count(1)


def next_play_token() -> int:
    return next(_tokens)


class LoopMode(str, Enum):
    OFF = "off"
    TRACK = "track"
    QUEUE = "queue"

    def next(self) -> "LoopMode":
        order = [LoopMode.OFF, LoopMode.TRACK, LoopMode.QUEUE]
        return order[(order.index(self) + 1) % len(order)]


class PlaybackState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    BUFFERING = "buffering"
    PLAYING = "playing"
    PAUSED = "paused"
    ERROR_BACKOFF = "error_backoff"


@dataclass(eq=False)
class Track:
    """One queued playable unit. Compared by identity: the same link queued twice is two tracks."""
    url: str | None
    title: str = "Unknown"
    duration_seconds: int | None = None
    local_path: str | None = None
    requester_id: int | None = None
    group_label: str | None = None

    @property
    def is_resolved(self) -> bool:
        return bool(self.local_path) and os.path.exists(self.local_path)

    def apply_meta(self, meta: dict[str, Any]) -> None:
        """Fill title/duration from cache metadata without clobbering known values."""
        title = meta.get("title")
        if title and (not self.title or self.title == "Unknown"):
            self.title = title
        if self.duration_seconds is None and meta.get("duration") is not None:
            self.duration_seconds = meta["duration"]

    @property
    def meta(self) -> dict[str, Any]:
        return {"title": self.title, "duration": self.duration_seconds}


@dataclass
class BatchProgress:
    """Shared progress message for one multi-track submission."""
    label: str
    message: Any = None
    last_update: float = 0.0
    updates: int = 0
    closed: bool = False


@dataclass
class Session:
    """Per-guild playback context."""
    guild_id: int
    voice_client: Any = None
    text_channel: Any = None
    queue: deque[Track] = field(default_factory=deque)
    current: Track | None = None
    previous: Track | None = None
    loop_mode: LoopMode = LoopMode.OFF
    shuffle: bool = False
    volume: int = 50
    state: PlaybackState = PlaybackState.IDLE
    consecutive_failures: int = 0

    # Engine-owned handles
    resource: Any = None
    decode_process: Any = None
    play_token: int | None = None
    now_playing_message: Any = None
    end_reason: str | None = None
    batches: dict[str, BatchProgress] = field(default_factory=dict)
    closed: bool = False

    @property
    def fetch_in_flight(self) -> bool:
        return self.state is PlaybackState.RESOLVING

    @property
    def is_busy(self) -> bool:
        """A track is being resolved, decoded or played."""
        return self.state in (
            PlaybackState.RESOLVING,
            PlaybackState.BUFFERING,
            PlaybackState.PLAYING,
            PlaybackState.PAUSED,
        )

    def upcoming(self, limit: int | None = None) -> list[Track]:
        items = list(self.queue)
        return items if limit is None else items[:limit]


class SessionRegistry:
    """Owns the guild -> session map. The only place sessions are created or removed."""

    def __init__(self, default_volume: int = 50):
        self.default_volume = default_volume
        self._sessions: dict[int, Session] = {}

    def get(self, guild_id: int) -> Session | None:
        return self._sessions.get(guild_id)

    def create(self, guild_id: int, voice_client: Any = None, text_channel: Any = None) -> Session:
        """Return the existing session for ``guild_id`` or register a new one."""
        session = self._sessions.get(guild_id)
        if session is not None:
            if voice_client is not None:
                session.voice_client = voice_client
            if text_channel is not None:
                session.text_channel = text_channel
            return session

        session = Session(
            guild_id=guild_id,
            voice_client=voice_client,
            text_channel=text_channel,
            volume=self.default_volume,
        )
        self._sessions[guild_id] = session
        logger.info(f"Session created for guild {guild_id}")
        return session

    def remove(self, guild_id: int) -> Session | None:
        session = self._sessions.pop(guild_id, None)
        if session is not None:
            logger.info(f"Session removed for guild {guild_id}")
        return session

    def __contains__(self, guild_id: int) -> bool:
        return guild_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))
