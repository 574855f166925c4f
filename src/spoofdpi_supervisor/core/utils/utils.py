"""Common utility functions."""

from collections.abc import Iterable
from typing import Final

SECONDS_PER_MINUTE: Final = 60
SECONDS_PER_HOUR: Final = SECONDS_PER_MINUTE * 60

BYTES_PER_KB: Final = 1024
BYTES_PER_MB: Final = BYTES_PER_KB * 1024


def unique(items: Iterable[str]) -> list[str]:
    """Drop repeated items, keeping the first occurrence order."""
    return list(dict.fromkeys(items))


def format_duration(seconds: float) -> str:
    """Format an uptime as ``MM:SS`` or ``H:MM:SS``.

    Args:
        seconds: Elapsed seconds

    Returns:
        str: Formatted duration
    """
    total = int(seconds)
    hours, rest = divmod(total, SECONDS_PER_HOUR)
    minutes, secs = divmod(rest, SECONDS_PER_MINUTE)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_bytes(bytes_: float) -> str:
    """Format a memory size in KB or MB."""
    if bytes_ < BYTES_PER_MB:
        return f"{bytes_ / BYTES_PER_KB:.1f} KB"
    return f"{bytes_ / BYTES_PER_MB:.1f} MB"
