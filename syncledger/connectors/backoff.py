"""Exponential backoff policy for ledger retries."""

from __future__ import annotations

import datetime as dt

__all__ = [
    "DEFAULT_BASE_SECONDS",
    "DEFAULT_CAP_SECONDS",
    "MAX_BACKOFF_POWER",
    "add_seconds",
    "next_backoff_seconds",
]

DEFAULT_BASE_SECONDS = 30
DEFAULT_CAP_SECONDS = 6 * 60 * 60
MAX_BACKOFF_POWER = 10


def next_backoff_seconds(
    attempt: int,
    base_seconds: int = DEFAULT_BASE_SECONDS,
    cap_seconds: int = DEFAULT_CAP_SECONDS,
) -> int:
    """Return the delay before retrying an error seen ``attempt`` times.

    The delay doubles per attempt starting at ``base_seconds`` and saturates at
    ``cap_seconds``; attempts below 1 behave like the first attempt.
    """

    power = max(0, min(MAX_BACKOFF_POWER, attempt - 1))
    return min(cap_seconds, base_seconds * 2**power)


def add_seconds(value: dt.datetime, seconds: int | float) -> dt.datetime:
    return value + dt.timedelta(seconds=seconds)
