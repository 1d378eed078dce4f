"""
Per-requester fixed-window rate limiter
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Hashable

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Allow at most ``max_requests`` per ``window`` seconds for each requester.

    A window opens on the first request after the previous one expired; it does
    not slide.
    """

    def __init__(self, max_requests: int = 10, window: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._windows: dict[Hashable, _Window] = {}

    def check(self, requester_id: Hashable) -> bool:
        """Count one request and say whether it is allowed."""
        now = self._clock()
        current = self._windows.get(requester_id)

        if current is None or now > current.reset_at:
            self._windows[requester_id] = _Window(count=1, reset_at=now + self.window)
            return True

        current.count += 1
        allowed = current.count <= self.max_requests
        if not allowed:
            logger.debug(f"Rate limited {requester_id} ({current.count}/{self.max_requests})")
        return allowed

    def retry_after(self, requester_id: Hashable) -> float:
        """Seconds until the requester's window resets (0 if none is open)."""
        current = self._windows.get(requester_id)
        if current is None:
            return 0.0
        return max(0.0, current.reset_at - self._clock())

    def sweep(self) -> int:
        """Forget expired windows. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, w in self._windows.items() if now > w.reset_at]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug(f"Rate limiter swept {len(expired)} expired windows")
        return len(expired)

    def reset(self, requester_id: Hashable) -> None:
        self._windows.pop(requester_id, None)

    def clear(self) -> None:
        self._windows.clear()

    def stats(self) -> dict:
        return {
            "active_users": len(self._windows),
            "max_requests": self.max_requests,
            "window_seconds": self.window,
        }
