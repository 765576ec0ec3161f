"""Chain sync coordinator and periodic scheduler.

The coordinator walks the block range between the stored checkpoint and the
chain head in fixed-size windows. Each window is fetched, persisted,
aggregated and checkpointed in one database transaction; windows run strictly
in order and a failed window ends the run without moving the checkpoint, so
the next run retries it.

Example:
    ```python
    coordinator = ChainSyncCoordinator(db, chain_client, fetcher, deploy_block=61980483)
    scheduler = SyncScheduler(coordinator, interval_seconds=60)

    await scheduler.start()   # syncs immediately, then every 60s
    result = await scheduler.trigger()
    await scheduler.stop()
    ```
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Iterator
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from bridge_flow_tracker.errors import BridgeFlowError, StorageError
from bridge_flow_tracker.storage.repos import SyncStatusRepository
from bridge_flow_tracker.storage.store import TransactionStore

if TYPE_CHECKING:
    from bridge_flow_tracker.ingestor.chain import ChainClient
    from bridge_flow_tracker.ingestor.events import BridgeEventFetcher
    from bridge_flow_tracker.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_BATCH_SIZE = 1000
DEFAULT_WINDOW_TIMEOUT_SECONDS = 120.0
DEFAULT_CHECKPOINT_ID = "nxpc_sync"
DEFAULT_SYNC_INTERVAL_SECONDS = 60


class SyncState(str, Enum):
    """State of the sync coordinator."""

    IDLE = "idle"
    DETERMINE_WINDOW = "determine_window"
    FETCH_BATCH = "fetch_batch"
    PERSIST = "persist"
    CHECKPOINT = "checkpoint"


class SyncStatus(str, Enum):
    """Outcome of one sync run."""

    COMPLETED = "completed"
    UP_TO_DATE = "up_to_date"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class SyncResult:
    """Result of one `run_once` call."""

    status: SyncStatus
    from_block: int | None = None
    to_block: int | None = None
    last_synced_block: int | None = None
    windows_synced: int = 0
    transactions_inserted: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != SyncStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class SyncStats:
    """Statistics for the sync coordinator."""

    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    skipped_runs: int = 0
    windows_synced: int = 0
    transactions_inserted: int = 0
    last_synced_block: int | None = None
    last_run_time: datetime | None = None
    last_run_duration_seconds: float = 0.0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_run_time"] = self.last_run_time.isoformat() if self.last_run_time else None
        return data


def iter_block_windows(from_block: int, to_block: int, batch_size: int) -> Iterator[tuple[int, int]]:
    """Split `[from_block, to_block]` into inclusive windows of at most `batch_size` blocks."""
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    start = from_block
    while start <= to_block:
        end = min(start + batch_size - 1, to_block)
        yield start, end
        start = end + 1


class ChainSyncCoordinator:
    """Runs checkpointed, sequential sync passes over the bridge contract.

    At most one pass runs at a time; a `run_once` call that arrives while
    another is in flight returns immediately with `SyncStatus.SKIPPED`.
    """

    def __init__(
        self,
        db: DatabaseManager,
        chain_client: ChainClient,
        fetcher: BridgeEventFetcher,
        *,
        deploy_block: int,
        batch_size: int = DEFAULT_BATCH_SIZE,
        window_timeout_seconds: float = DEFAULT_WINDOW_TIMEOUT_SECONDS,
        checkpoint_id: str = DEFAULT_CHECKPOINT_ID,
    ) -> None:
        """Initialize the coordinator.

        Args:
            db: Database manager handing out transactional sessions.
            chain_client: Ledger client used to read the chain head.
            fetcher: Bridge event fetcher/normalizer.
            deploy_block: First block to sync when no checkpoint exists.
            batch_size: Blocks per window.
            window_timeout_seconds: Upper bound for fetching and persisting one window.
            checkpoint_id: Key of the sync_status row.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._db = db
        self._chain = chain_client
        self._fetcher = fetcher
        self._deploy_block = deploy_block
        self._batch_size = batch_size
        self._window_timeout = window_timeout_seconds
        self._checkpoint_id = checkpoint_id

        self._lock = asyncio.Lock()
        self._state = SyncState.IDLE
        self._stats = SyncStats()

    @property
    def state(self) -> SyncState:
        """Current sync state."""
        return self._state

    @property
    def stats(self) -> SyncStats:
        """Current sync statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def get_checkpoint(self) -> int | None:
        """Return the stored last synced block, or None before the first window."""
        try:
            async with self._db.get_async_session() as session:
                return await SyncStatusRepository(session).get_last_synced_block(self._checkpoint_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read checkpoint: {e}") from e

    async def reset_checkpoint(self, block_number: int | None) -> None:
        """Overwrite the checkpoint; the only way to move it backwards.

        Waits for an in-flight run to finish first. None removes the row so the
        next run starts from the deploy block.
        """
        async with self._lock:
            try:
                async with self._db.get_async_session() as session:
                    await SyncStatusRepository(session).reset(self._checkpoint_id, block_number)
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to reset checkpoint: {e}") from e
            self._stats.last_synced_block = block_number
        logger.warning("Checkpoint %s reset to %s", self._checkpoint_id, block_number)

    async def run_once(self) -> SyncResult:
        """Sync from the checkpoint to the current chain head.

        Returns:
            SyncResult describing the run. Failures are reported in the result,
            not raised.
        """
        if self._lock.locked():
            logger.info("Sync already in progress; skipping trigger")
            self._stats.skipped_runs += 1
            return SyncResult(status=SyncStatus.SKIPPED, last_synced_block=self._stats.last_synced_block)

        async with self._lock:
            started = time.monotonic()
            self._stats.total_runs += 1
            try:
                result = await self._run()
            except Exception as e:
                logger.exception("Sync run failed unexpectedly: %s", e)
                self._stats.failed_runs += 1
                self._stats.last_error = str(e)
                raise
            finally:
                self._state = SyncState.IDLE
                self._stats.last_run_time = datetime.now(UTC)
                self._stats.last_run_duration_seconds = time.monotonic() - started

            if result.status == SyncStatus.FAILED:
                self._stats.failed_runs += 1
                self._stats.last_error = result.error
            else:
                self._stats.successful_runs += 1
                self._stats.last_error = None
            return result

    async def _run(self) -> SyncResult:
        self._state = SyncState.DETERMINE_WINDOW
        try:
            checkpoint = await self.get_checkpoint()
            head = await self._chain.get_latest_block_number()
        except BridgeFlowError as e:
            logger.error("Failed to determine sync window: %s", e)
            return SyncResult(status=SyncStatus.FAILED, last_synced_block=self._stats.last_synced_block, error=str(e))

        self._stats.last_synced_block = checkpoint
        from_block = max(checkpoint if checkpoint is not None else self._deploy_block, self._deploy_block)
        if from_block >= head:
            logger.debug("Already synced to block %d (head %d)", from_block, head)
            return SyncResult(
                status=SyncStatus.UP_TO_DATE,
                from_block=from_block,
                to_block=head,
                last_synced_block=checkpoint,
            )

        logger.info("Syncing blocks %d-%d", from_block, head)
        result = SyncResult(
            status=SyncStatus.COMPLETED,
            from_block=from_block,
            to_block=head,
            last_synced_block=checkpoint,
        )

        for start, end in iter_block_windows(from_block, head, self._batch_size):
            try:
                inserted = await asyncio.wait_for(self._sync_window(start, end), timeout=self._window_timeout)
            except TimeoutError:
                error = f"Window {start}-{end} timed out after {self._window_timeout}s"
                logger.error("Sync stopped: %s", error)
                result.status = SyncStatus.FAILED
                result.error = error
                break
            except BridgeFlowError as e:
                logger.error("Sync stopped at window %d-%d: %s", start, end, e)
                result.status = SyncStatus.FAILED
                result.error = f"Window {start}-{end}: {e}"
                break

            result.windows_synced += 1
            result.transactions_inserted += inserted
            result.last_synced_block = end
            self._stats.windows_synced += 1
            self._stats.transactions_inserted += inserted
            self._stats.last_synced_block = end

        if result.status == SyncStatus.COMPLETED:
            logger.info(
                "Sync completed to block %d: %d windows, %d new transactions",
                head,
                result.windows_synced,
                result.transactions_inserted,
            )
        return result

    async def _sync_window(self, start: int, end: int) -> int:
        """Fetch, persist, aggregate and checkpoint one window atomically."""
        self._state = SyncState.FETCH_BATCH
        transactions = await self._fetcher.fetch_events(start, end)

        try:
            async with self._db.get_async_session() as session:
                self._state = SyncState.PERSIST
                inserted = await TransactionStore(session).upsert_many(transactions)

                self._state = SyncState.CHECKPOINT
                await SyncStatusRepository(session).advance(self._checkpoint_id, end)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to persist window {start}-{end}: {e}") from e

        logger.info(
            "Synced blocks %d-%d: %d events, %d new", start, end, len(transactions), len(inserted)
        )
        return len(inserted)


class SyncScheduler:
    """Invokes the coordinator on start and then at a fixed interval."""

    def __init__(
        self,
        coordinator: ChainSyncCoordinator,
        *,
        interval_seconds: float = DEFAULT_SYNC_INTERVAL_SECONDS,
    ) -> None:
        self._coordinator = coordinator
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background loop; the first sync runs immediately."""
        if self.is_running:
            logger.warning("Sync scheduler already running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("Sync scheduler started (interval %.0fs)", self._interval)

    async def stop(self) -> None:
        """Stop the background loop, cancelling an in-flight run."""
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Sync scheduler stopped")

    async def trigger(self) -> SyncResult:
        """Run one sync now; skipped if a run is already in flight."""
        return await self._coordinator.run_once()

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self._coordinator.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Sync loop error: %s", e)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                break
            except TimeoutError:
                pass
