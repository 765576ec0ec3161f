"""Gap-filled time-series reconstruction and flow statistics.

A query always returns exactly `QueryWindow.points` points, one per expected
period id ending with the period that contains "now". Periods without a
stored bucket come back as zero-valued points at their expected start time.
The current bucket is included on purpose, so the last point covers a
partial, still-open period.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from bridge_flow_tracker.storage.repos import FlowTimeSeriesRepository
from bridge_flow_tracker.timeseries.periods import (
    QueryWindow,
    get_query_window,
    period_id_for,
    period_start,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class TimeSeriesPoint:
    """One point of a flow series; `time` is the period start (unix seconds)."""

    time: int
    inflow: int
    outflow: int

    def to_dict(self) -> dict[str, Any]:
        return {"time": self.time, "inflow": str(self.inflow), "outflow": str(self.outflow)}


@dataclass(frozen=True)
class FlowStats:
    """Totals for a window and percent change against the preceding window."""

    total_inflow: int
    total_outflow: int
    inflow_change: float | None
    outflow_change: float | None
    net_flow_change: float | None

    @property
    def net_flow(self) -> int:
        return self.total_inflow - self.total_outflow

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalInflow": str(self.total_inflow),
            "totalOutflow": str(self.total_outflow),
            "netFlow": str(self.net_flow),
            "inflowChange": self.inflow_change,
            "outflowChange": self.outflow_change,
            "netFlowChange": self.net_flow_change,
        }


def expected_period_ids(window: QueryWindow, now: float) -> list[int]:
    """Period ids covered by `window`, oldest first, ending at the current period."""
    end_id = period_id_for(window.period_type, int(now))
    return list(range(end_id - window.points + 1, end_id + 1))


def percent_change(current: int, previous: int) -> float | None:
    """Percent change from `previous` to `current`; None when previous is zero."""
    if previous == 0:
        return None
    return round((current - previous) / abs(previous) * 100, 2)


class TimeSeriesQueryEngine:
    """Read path over the pre-aggregated buckets."""

    def __init__(self, session: AsyncSession, *, clock: Clock = time.time) -> None:
        self.session = session
        self._repo = FlowTimeSeriesRepository(session)
        self._clock = clock

    async def query(self, period: str) -> list[TimeSeriesPoint]:
        """Return the gap-filled series for a named period (24h, 7d, 30d, 1y).

        Raises:
            ValueError: If the period is not supported.
        """
        window = get_query_window(period)
        return await self._series(window, expected_period_ids(window, self._clock()))

    async def stats(self, period: str) -> FlowStats:
        """Return totals for the period and change against the window before it.

        Raises:
            ValueError: If the period is not supported.
        """
        window = get_query_window(period)
        current_ids = expected_period_ids(window, self._clock())
        previous_ids = [pid - window.points for pid in current_ids]

        current = await self._series(window, current_ids)
        previous = await self._series(window, previous_ids)

        cur_in = sum(p.inflow for p in current)
        cur_out = sum(p.outflow for p in current)
        prev_in = sum(p.inflow for p in previous)
        prev_out = sum(p.outflow for p in previous)

        return FlowStats(
            total_inflow=cur_in,
            total_outflow=cur_out,
            inflow_change=percent_change(cur_in, prev_in),
            outflow_change=percent_change(cur_out, prev_out),
            net_flow_change=percent_change(cur_in - cur_out, prev_in - prev_out),
        )

    async def _series(self, window: QueryWindow, period_ids: list[int]) -> list[TimeSeriesPoint]:
        stored = await self._repo.list_range(window.period_type.value, period_ids[0], period_ids[-1])
        by_id = {b.period_id: b for b in stored}

        points: list[TimeSeriesPoint] = []
        for pid in period_ids:
            bucket = by_id.get(pid)
            if bucket is None:
                points.append(TimeSeriesPoint(time=period_start(window.period_type, pid), inflow=0, outflow=0))
            else:
                points.append(
                    TimeSeriesPoint(
                        time=bucket.first_timestamp,
                        inflow=bucket.inflow_amount,
                        outflow=bucket.outflow_amount,
                    )
                )
        logger.debug(
            "Built %s series: %d points, %d stored buckets", window.name, len(points), len(stored)
        )
        return points
