import random

DISCORD_MESSAGE_LIMIT = 1950
BAR_WIDTH = 15


def format_duration(seconds: int | float | None) -> str:
    """3725 -> '1:02:05', 185 -> '3:05'."""
    if seconds is None or seconds < 0:
        return "?"
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def truncate_message(text: str, limit: int = DISCORD_MESSAGE_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def progress_bar(percent: float, width: int = BAR_WIDTH) -> str:
    percent = max(0.0, min(100.0, float(percent)))
    filled = round(width * percent / 100)
    return "[" + "=" * filled + " " * (width - filled) + "]"


def shuffle_tail(items: list) -> list:
    """Shuffle everything after the first element in place."""
    if len(items) < 3:
        return items
    tail = items[1:]
    random.shuffle(tail)
    items[1:] = tail
    return items
