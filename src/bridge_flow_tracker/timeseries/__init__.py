"""Time-series layer - Bucket aggregation and gap-filled queries."""

from bridge_flow_tracker.timeseries.aggregator import TimeSeriesAggregator
from bridge_flow_tracker.timeseries.periods import (
    PERIOD_LENGTH_SECONDS,
    QUERY_WINDOWS,
    PeriodType,
    QueryWindow,
)
from bridge_flow_tracker.timeseries.query import FlowStats, TimeSeriesPoint, TimeSeriesQueryEngine

__all__ = [
    "PERIOD_LENGTH_SECONDS",
    "QUERY_WINDOWS",
    "FlowStats",
    "PeriodType",
    "QueryWindow",
    "TimeSeriesAggregator",
    "TimeSeriesPoint",
    "TimeSeriesQueryEngine",
]
