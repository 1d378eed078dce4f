"""
Configuration loaded from the environment (.env supported)
"""
import os

from dotenv import load_dotenv

load_dotenv()


def _int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {value!r}")


def _float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {value!r}")


class Config:
    """Bot settings. Durations are in seconds."""

    def __init__(self):
        self.DISCORD_TOKEN = os.getenv("DISCORD_TOKEN", "")

        # External tools
        self.YTDLP_PATH = os.getenv("YTDLP_PATH", "yt-dlp")
        self.FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")
        self.YTDL_COOKIES_PATH = os.getenv("YTDL_COOKIES_PATH") or None

        # Media cache
        self.DOWNLOAD_DIR = os.getenv("DOWNLOAD_DIR", "/tmp/muse_downloads")
        self.MAX_CACHE = _int("MAX_CACHE", 200)
        self.CACHE_SAVE_DELAY = _float("CACHE_SAVE_DELAY", 60.0)

        # Timeouts
        self.DOWNLOAD_TIMEOUT = _float("DOWNLOAD_TIMEOUT", 120.0)
        self.SEARCH_TIMEOUT = _float("SEARCH_TIMEOUT", 30.0)
        self.DECODE_TIMEOUT = _float("DECODE_TIMEOUT", 120.0)

        # Decode buffer cap (~12 minutes of 48kHz stereo s16le)
        self.MAX_BUFFER_BYTES = _int("MAX_BUFFER_BYTES", 128 * 1024 * 1024)

        # Rate limiting
        self.MAX_DOWNLOADS_PER_USER = _int("MAX_DOWNLOADS_PER_USER", 10)
        self.RATE_LIMIT_WINDOW = _float("RATE_LIMIT_WINDOW", 60.0)

        # Playback
        self.PROGRESS_INTERVAL = _float("PROGRESS_INTERVAL", 2.5)
        self.MAX_CONSECUTIVE_FAILURES = _int("MAX_CONSECUTIVE_FAILURES", 5)
        self.RETRY_DELAY = _float("RETRY_DELAY", 0.5)
        self.DEFAULT_VOLUME = _int("DEFAULT_VOLUME", 50)
        self.PREFETCH_PAUSE = _float("PREFETCH_PAUSE", 0.2)
        self.BATCH_PROGRESS_INTERVAL = _float("BATCH_PROGRESS_INTERVAL", 3.0)
        self.STATUS_MESSAGE_TTL = _int("STATUS_MESSAGE_TTL", 10)
        self.MAX_PLAYLIST_ITEMS = _int("MAX_PLAYLIST_ITEMS", 100)

        # Logging
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_FILE = os.getenv("LOG_FILE", "data/bot.log")

        # Dashboard (localhost only)
        self.DASHBOARD_ENABLED = os.getenv("DASHBOARD_ENABLED", "true").lower() in ("1", "true", "yes")
        self.DASHBOARD_HOST = os.getenv("DASHBOARD_HOST", "127.0.0.1")
        self.DASHBOARD_PORT = _int("DASHBOARD_PORT", 8080)


config = Config()
