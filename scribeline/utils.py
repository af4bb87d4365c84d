"""
scribeline.utils - Shared utility functions.

Contains common functions used across multiple modules to avoid duplication.
"""

from __future__ import annotations


def format_duration(seconds: float) -> str:
    """Format seconds as HH:MM:SS or MM:SS.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (HH:MM:SS if >= 1 hour, otherwise MM:SS)
    """
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def parse_clock(token: str) -> float | None:
    """Parse a duration token into seconds.

    Accepts ``H:MM:SS``, ``M:SS`` and bare (optionally fractional) seconds
    with a trailing unit letter, e.g. ``"22.86 s"`` or ``"12s"``.

    Args:
        token: Raw duration text

    Returns:
        Seconds as float, or None if the token is not a duration
    """
    cleaned = token.strip().rstrip(".,;|").rstrip()
    if cleaned[-1:].isalpha():
        cleaned = cleaned[:-1].rstrip()
    if not cleaned:
        return None

    parts = cleaned.split(":")
    if len(parts) > 3:
        return None
    try:
        values = [float(p) for p in parts]
    except ValueError:
        return None
    if any(v < 0 for v in values):
        return None

    seconds = 0.0
    for value in values:
        seconds = seconds * 60 + value
    return seconds


def tail(text: str, limit: int = 2000) -> str:
    """Return at most the last ``limit`` characters of text."""
    if len(text) <= limit:
        return text
    return "…" + text[-limit:]
