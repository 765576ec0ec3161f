"""Repository pattern implementations for data access.

This module provides data access abstractions for bridge transactions, the
sync checkpoint and the flow time-series buckets.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from bridge_flow_tracker.storage.models import (
    FlowTimeSeriesModel,
    SyncStatusModel,
    TransactionModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Rows per multi-row INSERT; keeps SQLite under its bound-parameter limit.
INSERT_CHUNK_SIZE = 500


class FlowType(str, Enum):
    """Direction of a bridge transaction relative to this chain."""

    INFLOW = "inflow"
    OUTFLOW = "outflow"


def _dialect_insert(session: AsyncSession, model: type[Any]) -> Any:
    """Return a dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


@dataclass
class TransactionDTO:
    """Data transfer object for bridge transactions.

    `value` is the raw uint256 amount as an int; it never passes through a
    float.
    """

    hash: str
    from_address: str
    to_address: str
    value: int
    timestamp: int
    type: FlowType
    block_number: int
    log_index: int = 0

    @property
    def id(self) -> str:
        return self.hash

    @classmethod
    def from_model(cls, model: TransactionModel) -> TransactionDTO:
        return cls(
            hash=model.hash,
            from_address=model.from_address,
            to_address=model.to_address,
            value=int(model.value),
            timestamp=model.timestamp,
            type=FlowType(model.type),
            block_number=model.block_number,
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.hash.lower(),
            "hash": self.hash.lower(),
            "from_address": self.from_address.lower(),
            "to_address": self.to_address.lower(),
            "value": str(self.value),
            "timestamp": self.timestamp,
            "type": self.type.value,
            "block_number": self.block_number,
        }

    def to_dict(self) -> dict[str, Any]:
        """JSON shape served by the HTTP API; amounts as decimal strings."""
        return {
            "id": self.hash,
            "hash": self.hash,
            "from": self.from_address,
            "to": self.to_address,
            "value": str(self.value),
            "timestamp": self.timestamp,
            "type": self.type.value,
            "blockNumber": self.block_number,
        }


@dataclass
class FlowBucketDTO:
    """Data transfer object for one time-series bucket."""

    period_type: str
    period_id: int
    first_timestamp: int
    inflow_amount: int = 0
    outflow_amount: int = 0
    last_updated: datetime | None = None

    @classmethod
    def from_model(cls, model: FlowTimeSeriesModel) -> FlowBucketDTO:
        return cls(
            period_type=model.period_type,
            period_id=model.period_id,
            first_timestamp=model.first_timestamp,
            inflow_amount=int(model.inflow_amount),
            outflow_amount=int(model.outflow_amount),
            last_updated=model.last_updated,
        )


class TransactionRepository:
    """Repository for bridge transactions."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def insert_new(self, dtos: Sequence[TransactionDTO]) -> list[TransactionDTO]:
        """Insert transactions, skipping hashes that already exist.

        Args:
            dtos: Transactions with unique hashes.

        Returns:
            Only the transactions that were actually inserted, in input order.
        """
        if not dtos:
            return []

        now = datetime.now(UTC)
        inserted_ids: set[str] = set()
        for start in range(0, len(dtos), INSERT_CHUNK_SIZE):
            chunk = dtos[start : start + INSERT_CHUNK_SIZE]
            rows = [{**dto.to_row(), "created_at": now} for dto in chunk]
            stmt = _dialect_insert(self.session, TransactionModel).values(rows)
            stmt = stmt.on_conflict_do_nothing(index_elements=["id"]).returning(TransactionModel.id)
            result = await self.session.execute(stmt)
            inserted_ids.update(result.scalars().all())

        await self.session.flush()
        return [dto for dto in dtos if dto.hash.lower() in inserted_ids]

    async def get_by_hash(self, tx_hash: str) -> TransactionDTO | None:
        """Get transaction by hash.

        Args:
            tx_hash: Transaction hash.

        Returns:
            TransactionDTO if found, None otherwise.
        """
        result = await self.session.execute(
            select(TransactionModel).where(TransactionModel.id == tx_hash.lower())
        )
        model = result.scalar_one_or_none()
        return TransactionDTO.from_model(model) if model else None

    async def list_recent(self, *, limit: int, offset: int = 0) -> list[TransactionDTO]:
        """List transactions newest first."""
        result = await self.session.execute(
            select(TransactionModel)
            .order_by(TransactionModel.timestamp.desc(), TransactionModel.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return [TransactionDTO.from_model(m) for m in result.scalars().all()]

    async def list_for_address(
        self,
        address: str,
        *,
        flow_type: FlowType | None = None,
        limit: int,
        offset: int = 0,
    ) -> list[TransactionDTO]:
        """List transactions where the address is sender or recipient, newest first.

        Args:
            address: Wallet address (case-insensitive).
            flow_type: Optional direction filter.
            limit: Maximum number of results.
            offset: Number of rows to skip.
        """
        normalized = address.lower()
        stmt = select(TransactionModel).where(
            or_(TransactionModel.from_address == normalized, TransactionModel.to_address == normalized)
        )
        if flow_type is not None:
            stmt = stmt.where(TransactionModel.type == flow_type.value)
        stmt = (
            stmt.order_by(TransactionModel.timestamp.desc(), TransactionModel.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return [TransactionDTO.from_model(m) for m in result.scalars().all()]


class SyncStatusRepository:
    """Repository for the sync checkpoint."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_last_synced_block(self, sync_id: str) -> int | None:
        """Return the checkpoint block, or None if this sync never ran."""
        result = await self.session.execute(
            select(SyncStatusModel.last_synced_block).where(SyncStatusModel.id == sync_id)
        )
        return result.scalar_one_or_none()

    async def advance(self, sync_id: str, block_number: int) -> int:
        """Move the checkpoint forward; never lowers it.

        Returns:
            The checkpoint value after the call.
        """
        current = await self.get_last_synced_block(sync_id)
        if current is not None and block_number <= current:
            if block_number < current:
                logger.warning(
                    "Ignoring checkpoint regression for %s: %d < %d", sync_id, block_number, current
                )
            return current
        await self._write(sync_id, block_number)
        return block_number

    async def reset(self, sync_id: str, block_number: int | None) -> None:
        """Set the checkpoint to an arbitrary block, or remove it when None."""
        if block_number is None:
            await self.session.execute(delete(SyncStatusModel).where(SyncStatusModel.id == sync_id))
            await self.session.flush()
            return
        await self._write(sync_id, block_number)

    async def _write(self, sync_id: str, block_number: int) -> None:
        now = datetime.now(UTC)
        stmt = _dialect_insert(self.session, SyncStatusModel).values(
            id=sync_id, last_synced_block=block_number, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "last_synced_block": stmt.excluded.last_synced_block,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()


class FlowTimeSeriesRepository:
    """Repository for pre-aggregated inflow/outflow buckets."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_many(self, keys: Iterable[tuple[str, int]]) -> dict[tuple[str, int], FlowBucketDTO]:
        """Fetch buckets by (period_type, period_id)."""
        ids_by_type: dict[str, set[int]] = {}
        for period_type, period_id in keys:
            ids_by_type.setdefault(period_type, set()).add(period_id)
        if not ids_by_type:
            return {}

        # Buckets are rewritten with Core upserts; refresh any instances already loaded.
        result = await self.session.execute(
            select(FlowTimeSeriesModel)
            .where(
                or_(
                    *(
                        (FlowTimeSeriesModel.period_type == period_type)
                        & FlowTimeSeriesModel.period_id.in_(sorted(ids))
                        for period_type, ids in ids_by_type.items()
                    )
                )
            )
            .execution_options(populate_existing=True)
        )
        return {(m.period_type, m.period_id): FlowBucketDTO.from_model(m) for m in result.scalars().all()}

    async def list_range(self, period_type: str, start_id: int, end_id: int) -> list[FlowBucketDTO]:
        """Return stored buckets with start_id <= period_id <= end_id, oldest first."""
        result = await self.session.execute(
            select(FlowTimeSeriesModel)
            .where(
                (FlowTimeSeriesModel.period_type == period_type)
                & (FlowTimeSeriesModel.period_id >= start_id)
                & (FlowTimeSeriesModel.period_id <= end_id)
            )
            .order_by(FlowTimeSeriesModel.period_id.asc())
            .execution_options(populate_existing=True)
        )
        return [FlowBucketDTO.from_model(m) for m in result.scalars().all()]

    async def merge(self, deltas: Sequence[FlowBucketDTO]) -> int:
        """Add bucket deltas to whatever is already stored.

        Amounts are summed in Python as ints and written back, since the
        columns hold decimal strings. `first_timestamp` keeps the smaller of
        the stored and incoming values. Callers must hold the surrounding
        transaction so the read and the write see the same rows.

        Returns:
            Number of buckets written.
        """
        if not deltas:
            return 0

        existing = await self.get_many((d.period_type, d.period_id) for d in deltas)
        now = datetime.now(UTC)
        for delta in deltas:
            key = (delta.period_type, delta.period_id)
            current = existing.get(key)
            if current is None:
                inflow = delta.inflow_amount
                outflow = delta.outflow_amount
                first_ts = delta.first_timestamp
            else:
                inflow = current.inflow_amount + delta.inflow_amount
                outflow = current.outflow_amount + delta.outflow_amount
                first_ts = min(current.first_timestamp, delta.first_timestamp)

            stmt = _dialect_insert(self.session, FlowTimeSeriesModel).values(
                period_type=delta.period_type,
                period_id=delta.period_id,
                first_timestamp=first_ts,
                inflow_amount=str(inflow),
                outflow_amount=str(outflow),
                last_updated=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["period_type", "period_id"],
                set_={
                    "first_timestamp": stmt.excluded.first_timestamp,
                    "inflow_amount": stmt.excluded.inflow_amount,
                    "outflow_amount": stmt.excluded.outflow_amount,
                    "last_updated": stmt.excluded.last_updated,
                },
            )
            await self.session.execute(stmt)

        await self.session.flush()
        return len(deltas)
