"""SQLAlchemy models for persistent storage.

This module defines the database schema for bridge transactions, the sync
checkpoint and the pre-aggregated flow time series.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import BigInteger, DateTime, Index, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TransactionModel(Base):
    """Canonical bridge transactions, one row per transaction hash."""

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(66), primary_key=True)  # tx hash
    hash: Mapped[str] = mapped_column(String(66), nullable=False)
    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False)

    # uint256 in the token's smallest unit, kept as a decimal string.
    value: Mapped[str] = mapped_column(String(78), nullable=False)

    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)  # unix seconds
    type: Mapped[str] = mapped_column(String(8), nullable=False)  # inflow/outflow
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_transactions_timestamp", "timestamp"),
        Index("idx_transactions_from_ts", "from_address", "timestamp"),
        Index("idx_transactions_to_ts", "to_address", "timestamp"),
        Index("idx_transactions_block", "block_number"),
    )


class SyncStatusModel(Base):
    """Singleton checkpoint row per sync id."""

    __tablename__ = "sync_status"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_synced_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class FlowTimeSeriesModel(Base):
    """Additive inflow/outflow sums per (period_type, period_id) bucket."""

    __tablename__ = "flow_time_series_realtime"

    period_type: Mapped[str] = mapped_column(String(10), primary_key=True)  # hourly/daily/monthly
    period_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    first_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    inflow_amount: Mapped[str] = mapped_column(String(80), nullable=False, default="0")
    outflow_amount: Mapped[str] = mapped_column(String(80), nullable=False, default="0")

    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_flow_time_series_type_ts", "period_type", "first_timestamp"),
    )
