"""Storage layer - Database schemas and repositories."""

from bridge_flow_tracker.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from bridge_flow_tracker.storage.models import (
    Base,
    FlowTimeSeriesModel,
    SyncStatusModel,
    TransactionModel,
)
from bridge_flow_tracker.storage.repos import (
    FlowBucketDTO,
    FlowTimeSeriesRepository,
    FlowType,
    SyncStatusRepository,
    TransactionDTO,
    TransactionRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "FlowBucketDTO",
    "FlowTimeSeriesModel",
    "FlowTimeSeriesRepository",
    "FlowType",
    "SyncStatusModel",
    "SyncStatusRepository",
    "TransactionDTO",
    "TransactionModel",
    "TransactionRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
