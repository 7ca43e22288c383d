"""Elapsed time formatting for CLI output."""

import math
from typing import Any, Iterable

from .ledger.records import LapRecord

ZERO_TIME = "00:00:00"
ZERO_TIME_WITH_MS = "00:00:00.00"


def _to_ms(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        ms = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(ms):
        return None
    return int(ms)


def _split(ms: int) -> tuple[int, int, int]:
    hours = ms // 3_600_000
    minutes = (ms % 3_600_000) // 60_000
    seconds = (ms % 60_000) // 1000
    return hours, minutes, seconds


def format_time(milliseconds: Any) -> str:
    """Format milliseconds as ``HH:MM:SS``.

    Args:
        milliseconds: Elapsed time. Anything non-numeric formats as zero.

    Returns:
        Formatted time string.
    """
    ms = _to_ms(milliseconds)
    if ms is None:
        return ZERO_TIME

    hours, minutes, seconds = _split(ms)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def format_time_with_ms(milliseconds: Any) -> str:
    """Format milliseconds as ``HH:MM:SS.cc``, centiseconds truncated."""
    ms = _to_ms(milliseconds)
    if ms is None:
        return ZERO_TIME_WITH_MS

    hours, minutes, seconds = _split(ms)
    centiseconds = (ms % 1000) // 10
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{centiseconds:02d}"


def lap_splits(records: Iterable[LapRecord]) -> list[int]:
    """Per-lap durations in ledger order.

    The first lap's split is its own elapsed time; every later split is the
    difference to the previous lap.
    """
    splits = []
    previous = 0
    for record in sorted(records, key=lambda r: r.sequence_number):
        splits.append(record.elapsed_ms - previous)
        previous = record.elapsed_ms
    return splits
