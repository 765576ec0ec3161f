"""Period types, lengths and period-id arithmetic."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class PeriodType(str, Enum):
    """Bucket resolution."""

    HOURLY = "hourly"
    DAILY = "daily"
    MONTHLY = "monthly"


# Monthly is a fixed 30-day approximation, not a calendar month.
PERIOD_LENGTH_SECONDS: dict[PeriodType, int] = {
    PeriodType.HOURLY: 3600,
    PeriodType.DAILY: 86400,
    PeriodType.MONTHLY: 86400 * 30,
}


def period_id_for(period_type: PeriodType, timestamp: int) -> int:
    return timestamp // PERIOD_LENGTH_SECONDS[period_type]


def period_start(period_type: PeriodType, period_id: int) -> int:
    return period_id * PERIOD_LENGTH_SECONDS[period_type]


@dataclass(frozen=True)
class QueryWindow:
    """A named query period: `points` buckets of `period_type` each."""

    name: str
    period_type: PeriodType
    points: int

    @property
    def span_seconds(self) -> int:
        return self.points * PERIOD_LENGTH_SECONDS[self.period_type]


QUERY_WINDOWS: dict[str, QueryWindow] = {
    "24h": QueryWindow("24h", PeriodType.HOURLY, 24),
    "7d": QueryWindow("7d", PeriodType.DAILY, 7),
    "30d": QueryWindow("30d", PeriodType.DAILY, 30),
    "1y": QueryWindow("1y", PeriodType.MONTHLY, 12),
}


def get_query_window(period: str) -> QueryWindow:
    """Look up a named query period.

    Raises:
        ValueError: If the period is not one of `QUERY_WINDOWS`.
    """
    try:
        return QUERY_WINDOWS[period]
    except KeyError:
        supported = ", ".join(QUERY_WINDOWS)
        raise ValueError(f"Unsupported period {period!r}; expected one of {supported}") from None
