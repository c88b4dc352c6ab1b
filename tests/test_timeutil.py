from __future__ import annotations

from sla_probe.timeutil import (
    MS_PER_MINUTE,
    is_finalized,
    latest_finalized_minute,
    ms_to_minute,
    readable_minute,
)


def test_ms_to_minute_floors() -> None:
    assert ms_to_minute(0) == 0
    assert ms_to_minute(MS_PER_MINUTE - 1) == 0
    assert ms_to_minute(MS_PER_MINUTE) == 1
    assert ms_to_minute(1_700_000_040_000) == 28_333_334


def test_latest_finalized_minute_is_exact_deadline_bound() -> None:
    now = 10 * MS_PER_MINUTE + 30_000
    # now - 60s lands in minute 9; minute 8 is the newest one fully expired.
    assert latest_finalized_minute(now, 60) == 8
    assert latest_finalized_minute(now, 0) == 9

    # The last ms of minute 0 with a 20s timeout hits its deadline at 80_000,
    # the same instant minute 0 becomes final.
    assert latest_finalized_minute(79_999, 20) == -1
    assert latest_finalized_minute(80_000, 20) == 0


def test_latest_finalized_minute_before_epoch_window() -> None:
    assert latest_finalized_minute(5_000, 60) == -1
    assert latest_finalized_minute(0, 0) == -1


def test_is_finalized() -> None:
    now = 10 * MS_PER_MINUTE
    assert is_finalized(8, now, 60)
    assert not is_finalized(9, now, 60)


def test_readable_minute_is_utc() -> None:
    assert readable_minute(0) == "1970-01-01 00:00"
    assert readable_minute(61) == "1970-01-01 01:01"
