from __future__ import annotations

import time
from datetime import datetime, timezone


MS_PER_MINUTE = 60_000


def unix_now_ms() -> int:
    return int(time.time() * 1000)


def ms_to_minute(ms: int) -> int:
    return int(ms) // MS_PER_MINUTE


def latest_finalized_minute(now_ms: int, timeout_seconds: int) -> int:
    """
    Newest minute whose pending verifications have all passed their deadline.

    Anything sent within minute m was sent before (m + 1) * 60s, so once
    now - timeout reaches the end of m, every entry from m is past its deadline.
    The bound is exact, with no margin: the last entry of m becomes eligible
    for timeout at the same instant m is finalized, so a timeout the validator
    has not processed yet can land after the bucket was forwarded.
    """
    cutoff_ms = int(now_ms) - int(timeout_seconds) * 1000
    if cutoff_ms < 0:
        return -1
    return ms_to_minute(cutoff_ms) - 1


def is_finalized(minute: int, now_ms: int, timeout_seconds: int) -> bool:
    return int(minute) <= latest_finalized_minute(now_ms, timeout_seconds)


def readable_minute(minute: int) -> str:
    dt = datetime.fromtimestamp(int(minute) * 60, tz=timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M")


def readable_ms(ms: int) -> str:
    dt = datetime.fromtimestamp(int(ms) / 1000.0, tz=timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M:%S")
