"""Transaction store: idempotent writes gated into the aggregator, paged reads."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from bridge_flow_tracker.errors import StorageError
from bridge_flow_tracker.storage.repos import FlowType, TransactionDTO, TransactionRepository
from bridge_flow_tracker.timeseries.aggregator import TimeSeriesAggregator

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

MAX_PAGE_LIMIT = 100


@dataclass
class TransactionPage:
    """A page of transactions; `has_more` is a hint, not an exact count check."""

    page: int
    limit: int
    items: list[TransactionDTO] = field(default_factory=list)

    @property
    def has_more(self) -> bool:
        return len(self.items) == self.limit

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": [tx.to_dict() for tx in self.items],
            "pagination": {"page": self.page, "limit": self.limit, "hasMore": self.has_more},
        }


def _dedupe(transactions: Sequence[TransactionDTO]) -> list[TransactionDTO]:
    unique: dict[str, TransactionDTO] = {}
    for tx in transactions:
        key = tx.hash.lower()
        if key in unique:
            logger.warning("Dropping second bridge event for transaction %s", key)
            continue
        unique[key] = tx
    return list(unique.values())


class TransactionStore:
    """Canonical transaction persistence.

    `upsert_many` is a compound write: rows that were actually inserted, and
    only those, are folded into the time-series buckets on the same session.
    Re-delivering stored transactions is a no-op for both tables.
    """

    def __init__(self, session: AsyncSession, aggregator: TimeSeriesAggregator | None = None) -> None:
        self.session = session
        self._repo = TransactionRepository(session)
        self._aggregator = aggregator if aggregator is not None else TimeSeriesAggregator(session)

    async def upsert_many(self, transactions: Sequence[TransactionDTO]) -> list[TransactionDTO]:
        """Insert new transactions and aggregate them.

        Returns:
            The transactions that were newly inserted.

        Raises:
            StorageError: If the database write fails.
        """
        if not transactions:
            return []

        unique = _dedupe(transactions)
        try:
            inserted = await self._repo.insert_new(unique)
            if inserted:
                await self._aggregator.apply(inserted)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to store {len(unique)} transactions: {e}") from e

        skipped = len(unique) - len(inserted)
        if skipped:
            logger.info("Skipped %d already stored transactions", skipped)
        return inserted

    async def list_page(self, page: int, limit: int) -> TransactionPage:
        """Return one page of transactions, newest first.

        `limit` is clamped to 1..MAX_PAGE_LIMIT and `page` to >= 1.
        """
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_LIMIT)
        try:
            items = await self._repo.list_recent(limit=limit, offset=(page - 1) * limit)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list transactions: {e}") from e
        return TransactionPage(page=page, limit=limit, items=items)

    async def get(
        self,
        address: str,
        type: FlowType | None = None,
        limit: int = MAX_PAGE_LIMIT,
        offset: int = 0,
    ) -> list[TransactionDTO]:
        """Return transactions sent or received by `address`, newest first."""
        limit = min(max(limit, 1), MAX_PAGE_LIMIT)
        try:
            return await self._repo.list_for_address(
                address, flow_type=type, limit=limit, offset=max(offset, 0)
            )
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list transactions for {address}: {e}") from e
