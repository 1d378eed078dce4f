"""
Input validation for user-supplied URLs, search queries and file paths
"""
import logging
import os
import re
from urllib.parse import urlparse, parse_qs, urlencode, urlunparse

from muse.errors import InvalidInput

logger = logging.getLogger(__name__)

MAX_URL_LENGTH = 2048
MAX_QUERY_LENGTH = 500

# Private, loopback and non-http targets the fetch tool must never be pointed at
BLOCKED_URL_PATTERNS = [
    re.compile(r"localhost", re.I),
    re.compile(r"127\.0\.0\.1"),
    re.compile(r"192\.168\."),
    re.compile(r"(?:^|//|@)10\."),
    re.compile(r"172\.(?:1[6-9]|2\d|3[01])\."),
    re.compile(r"169\.254\."),
    re.compile(r"0\.0\.0\.0"),
    re.compile(r"\[?fc00:", re.I),
    re.compile(r"\[?fe80:", re.I),
    re.compile(r"\[::1\]"),
    re.compile(r"^file://", re.I),
    re.compile(r"^ftp://", re.I),
]

FORBIDDEN_URL_CHARS = re.compile(r"[<>\"|;$`\\]")
SHELL_METACHARS = re.compile(r"[;&|`$(){}\[\]<>\\]")
CONTROL_CHARS = re.compile(r"[\x00\r\n]")
SANITIZE_PATTERN = re.compile(r"[<>\"|;$`\\\r\n]")

YOUTUBE_ID_PATTERN = re.compile(
    r"(?:youtube\.com/(?:watch\?(?:.*&)?v=|v/|embed/|shorts/|live/)|youtu\.be/)([A-Za-z0-9_-]{11})"
)
PLAYLIST_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+")


def validate_url(url: str) -> str:
    """Validate a remote media reference and return it stripped.

    Only http(s) URLs pointing at public hosts are accepted.
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidInput("URL is empty")

    url = url.strip()
    if len(url) > MAX_URL_LENGTH:
        raise InvalidInput(f"URL exceeds {MAX_URL_LENGTH} characters")

    for pattern in BLOCKED_URL_PATTERNS:
        if pattern.search(url):
            raise InvalidInput("URL points at a blocked host or scheme")

    if FORBIDDEN_URL_CHARS.search(url):
        raise InvalidInput("URL contains forbidden characters")

    try:
        parsed = urlparse(url)
    except ValueError:
        raise InvalidInput("URL could not be parsed")

    if parsed.scheme not in ("http", "https"):
        raise InvalidInput("Only http and https URLs are allowed")
    if not parsed.netloc:
        raise InvalidInput("URL has no host")

    return url


def validate_search_query(query: str) -> str:
    """Validate a free-text search query and return it stripped."""
    if not isinstance(query, str) or not query.strip():
        raise InvalidInput("Search query is empty")

    query = query.strip()
    if len(query) > MAX_QUERY_LENGTH:
        raise InvalidInput(f"Search query exceeds {MAX_QUERY_LENGTH} characters")
    if SHELL_METACHARS.search(query):
        raise InvalidInput("Search query contains forbidden characters")
    if ".." in query:
        raise InvalidInput("Search query contains '..'")
    if query.startswith("-"):
        raise InvalidInput("Search query must not start with '-'")
    if CONTROL_CHARS.search(query):
        raise InvalidInput("Search query contains control characters")

    return query


def ensure_within(path: str, root: str) -> str:
    """Resolve ``path`` and make sure it stays inside ``root``."""
    resolved = os.path.realpath(path)
    base = os.path.realpath(root)
    if os.path.commonpath([resolved, base]) != base:
        raise InvalidInput(f"Path escapes the download directory: {path}")
    return resolved


def sanitize_string(value: str | None, max_length: int = 256) -> str:
    """Strip characters that break embeds or shells from display strings."""
    if not value:
        return ""
    return SANITIZE_PATTERN.sub("", str(value)).strip()[:max_length]


def extract_video_id(url: str) -> str | None:
    match = YOUTUBE_ID_PATTERN.search(url or "")
    return match.group(1) if match else None


def is_playlist_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if "youtu" not in (parsed.hostname or ""):
        return False
    query = parse_qs(parsed.query)
    # watch?v=X&list=Y plays the single video
    return "list" in query and (parsed.path.startswith("/playlist") or "v" not in query)


def clean_playlist_url(url: str) -> str:
    """Repair a playlist URL whose list id has trailing garbage pasted onto it."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return url

    query = parse_qs(parsed.query)
    if "list" not in query:
        return url

    match = PLAYLIST_ID_PATTERN.match(query["list"][0])
    if not match:
        return url

    query["list"] = [match.group(0)]
    cleaned = urlunparse(parsed._replace(query=urlencode(query, doseq=True)))
    if cleaned != url:
        logger.debug(f"Cleaned playlist URL {url} -> {cleaned}")
    return cleaned
