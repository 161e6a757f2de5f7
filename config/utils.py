"""Helpers for wall-clock settings in configuration."""
from __future__ import annotations

from datetime import time
from typing import Any


def parse_clock_time(value: Any, default: str = '00:00') -> time:
    """Parse ``"HH:MM"`` (or ``"HH:MM:SS"``) into a ``datetime.time``."""
    if isinstance(value, time):
        return value
    text = str(value if value not in (None, '') else default).strip()
    parts = text.split(':')
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid clock time '{text}', expected HH:MM")
    try:
        numbers = [int(part) for part in parts]
    except ValueError as exc:
        raise ValueError(f"Invalid clock time '{text}', expected HH:MM") from exc
    return time(*numbers)
