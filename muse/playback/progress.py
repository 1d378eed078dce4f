"""
Progress Tracker - parses fetch tool output and throttles progress updates
"""
import re
import time
from dataclasses import dataclass
from typing import Any, Callable

# Tried in order; the last one only recovers a bare percentage.
# yt-dlp prints "Unknown B/s" and "ETA Unknown" before it has an estimate.
PROGRESS_PATTERNS = [
    re.compile(
        r"\[download\]\s+(\d+(?:\.\d+)?)%\s+of\s+~?\s*[\w.~]+(?:\s+size)?\s+at\s+(Unknown\s+B/s|[\w./]+)"
        r"\s+ETA\s+(\d+:\d+(?::\d+)?|Unknown)"
    ),
    re.compile(r"\[download\]\s+(\d+(?:\.\d+)?)%\s+of\s+~?\s*[\w.~]+\s+in\s+[\d:]+\s+at\s+(Unknown\s+B/s|[\w./]+)"),
    re.compile(r"(\d+(?:\.\d+)?)%"),
]

MIN_PERCENT_STEP = 5.0


@dataclass
class ProgressInfo:
    percent: float
    speed: str | None = None
    eta: str | None = None


class ProgressTracker:
    """Decides when a progress update is worth showing.

    An update is due when the download completes, on the first report, or when
    at least ``interval`` seconds and 5 percentage points have passed since the
    last shown update.
    """

    def __init__(self, interval: float = 2.5, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last_percent: float | None = None
        self._last_time: float | None = None

    @staticmethod
    def parse(payload: Any) -> ProgressInfo | None:
        """Extract progress from a raw output line or a structured report."""
        if payload is None:
            return None

        if isinstance(payload, dict):
            percent = payload.get("percent")
            if isinstance(percent, (int, float)) and not isinstance(percent, bool):
                return ProgressInfo(float(percent), payload.get("speed"), payload.get("eta"))
            raw = payload.get("raw")
            if not isinstance(raw, str):
                return None
            payload = raw

        if not isinstance(payload, str):
            return None

        for pattern in PROGRESS_PATTERNS:
            match = pattern.search(payload)
            if not match:
                continue
            groups = match.groups()
            speed = groups[1] if len(groups) > 1 else None
            eta = groups[2] if len(groups) > 2 else None
            return ProgressInfo(float(groups[0]), speed, eta)
        return None

    def should_update(self, percent: float) -> bool:
        now = self._clock()
        due = (
            percent >= 100
            or self._last_percent is None
            or (
                percent - self._last_percent >= MIN_PERCENT_STEP
                and now - self._last_time >= self.interval
            )
        )
        if due:
            self._last_percent = percent
            self._last_time = now
        return due

    def reset(self) -> None:
        self._last_percent = None
        self._last_time = None
