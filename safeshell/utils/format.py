"""Human-readable formatting helpers."""

from __future__ import annotations

import re
from datetime import datetime, timedelta


_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw])\s*$")
_DURATION_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


def format_bytes(size: int) -> str:
    """Format a byte count using binary units ("1.5 MB")."""
    if size < 1024:
        return f"{size} B"

    value = float(size)
    for unit in ("KB", "MB", "GB", "TB"):
        value /= 1024
        if value < 1024 or unit == "TB":
            return f"{value:.1f} {unit}"
    return f"{value:.1f} TB"


def format_time_ago(when: datetime, now: datetime | None = None) -> str:
    """Describe how long ago ``when`` was ("just now", "5 minutes ago")."""
    now = now or datetime.now()
    delta = now - when
    seconds = int(delta.total_seconds())

    if seconds < 60:
        return "just now"
    if seconds < 3600:
        n = seconds // 60
        return "1 minute ago" if n == 1 else f"{n} minutes ago"
    if seconds < 86400:
        n = seconds // 3600
        return "1 hour ago" if n == 1 else f"{n} hours ago"
    n = seconds // 86400
    if n < 30:
        return "1 day ago" if n == 1 else f"{n} days ago"
    return when.strftime("%Y-%m-%d")


def parse_duration(text: str) -> timedelta:
    """Parse durations such as "30m", "12h", "7d" or "2w".

    Raises:
        ValueError: if the text is empty or not a recognised duration
    """
    if not text or not text.strip():
        raise ValueError("empty duration")

    match = _DURATION_RE.match(text.lower())
    if not match:
        raise ValueError(f"invalid duration: {text!r}")

    amount, unit = match.groups()
    return int(amount) * _DURATION_UNITS[unit]
