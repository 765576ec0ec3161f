"""Data ingestion layer - Bridge event sync from the ledger."""

from bridge_flow_tracker.ingestor.chain import ChainClient
from bridge_flow_tracker.ingestor.events import ZERO_ADDRESS, BridgeEventFetcher
from bridge_flow_tracker.ingestor.sync import (
    ChainSyncCoordinator,
    SyncResult,
    SyncScheduler,
    SyncState,
    SyncStats,
    SyncStatus,
)
from bridge_flow_tracker.ingestor.timestamps import (
    BlockTimestampResolver,
    ExtrapolatedTimestampResolver,
    TimestampResolver,
    build_timestamp_resolver,
)

__all__ = [
    "ZERO_ADDRESS",
    "BlockTimestampResolver",
    "BridgeEventFetcher",
    "ChainClient",
    "ChainSyncCoordinator",
    "ExtrapolatedTimestampResolver",
    "SyncResult",
    "SyncScheduler",
    "SyncState",
    "SyncStats",
    "SyncStatus",
    "TimestampResolver",
    "build_timestamp_resolver",
]
