"""Incremental folding of new transactions into time-series buckets."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from bridge_flow_tracker.errors import AggregationInvariantViolation
from bridge_flow_tracker.storage.repos import FlowBucketDTO, FlowTimeSeriesRepository, FlowType
from bridge_flow_tracker.timeseries.periods import PeriodType, period_id_for, period_start

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from bridge_flow_tracker.storage.repos import TransactionDTO

logger = logging.getLogger(__name__)


def group_deltas(transactions: Sequence[TransactionDTO]) -> list[FlowBucketDTO]:
    """Sum values per (period type, period id), split by flow direction.

    Raises:
        AggregationInvariantViolation: If a transaction id appears twice.
    """
    seen: set[str] = set()
    groups: dict[tuple[str, int], FlowBucketDTO] = {}
    for tx in transactions:
        tx_id = tx.hash.lower()
        if tx_id in seen:
            raise AggregationInvariantViolation(f"Transaction {tx_id} handed to the aggregator twice")
        seen.add(tx_id)

        for period_type in PeriodType:
            pid = period_id_for(period_type, tx.timestamp)
            key = (period_type.value, pid)
            bucket = groups.get(key)
            if bucket is None:
                bucket = FlowBucketDTO(
                    period_type=period_type.value,
                    period_id=pid,
                    first_timestamp=period_start(period_type, pid),
                )
                groups[key] = bucket
            if tx.type == FlowType.INFLOW:
                bucket.inflow_amount += tx.value
            else:
                bucket.outflow_amount += tx.value

    return sorted(groups.values(), key=lambda b: (b.period_type, b.period_id))


class TimeSeriesAggregator:
    """Adds freshly stored transactions to the hourly, daily and monthly buckets.

    Must only ever see rows that were newly inserted; replaying stored rows
    double-counts. The session is the caller's, so the bucket writes commit
    with the transaction rows that produced them.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self._repo = FlowTimeSeriesRepository(session)

    async def apply(self, transactions: Sequence[TransactionDTO]) -> int:
        """Merge the transactions into stored buckets.

        Returns:
            Number of buckets touched.
        """
        if not transactions:
            return 0
        deltas = group_deltas(transactions)
        touched = await self._repo.merge(deltas)
        logger.debug("Aggregated %d transactions into %d buckets", len(transactions), touched)
        return touched
