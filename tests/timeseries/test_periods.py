"""Tests for period arithmetic."""

import pytest

from bridge_flow_tracker.timeseries.periods import (
    PERIOD_LENGTH_SECONDS,
    QUERY_WINDOWS,
    PeriodType,
    get_query_window,
    period_id_for,
    period_start,
)


def test_period_lengths() -> None:
    assert PERIOD_LENGTH_SECONDS[PeriodType.HOURLY] == 3600
    assert PERIOD_LENGTH_SECONDS[PeriodType.DAILY] == 86400
    assert PERIOD_LENGTH_SECONDS[PeriodType.MONTHLY] == 2_592_000


@pytest.mark.parametrize("period_type", list(PeriodType))
def test_timestamp_falls_inside_its_period(period_type: PeriodType) -> None:
    ts = 1_747_382_512
    pid = period_id_for(period_type, ts)
    start = period_start(period_type, pid)

    assert start <= ts < start + PERIOD_LENGTH_SECONDS[period_type]


def test_period_boundaries() -> None:
    assert period_id_for(PeriodType.HOURLY, 3599) == 0
    assert period_id_for(PeriodType.HOURLY, 3600) == 1


def test_query_windows() -> None:
    assert {name: (w.period_type, w.points) for name, w in QUERY_WINDOWS.items()} == {
        "24h": (PeriodType.HOURLY, 24),
        "7d": (PeriodType.DAILY, 7),
        "30d": (PeriodType.DAILY, 30),
        "1y": (PeriodType.MONTHLY, 12),
    }
    assert QUERY_WINDOWS["24h"].span_seconds == 86400


def test_unknown_window_rejected() -> None:
    with pytest.raises(ValueError, match="Unsupported period"):
        get_query_window("2w")
