"""Bridge Flow Tracker - bridge event sync and flow time-series aggregation."""

__version__ = "0.1.0"
