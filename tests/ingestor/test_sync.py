"""Tests for the chain sync coordinator and scheduler."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import encode
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from bridge_flow_tracker.config import (
    DEFAULT_BRIDGE_CONTRACT_ADDRESS,
    DEFAULT_BRIDGE_TOKENS_SIGNATURE,
    DEFAULT_MINT_BRIDGE_TOKENS_SIGNATURE,
)
from bridge_flow_tracker.errors import RpcError
from bridge_flow_tracker.ingestor.events import ZERO_ADDRESS, BridgeEventFetcher, event_topic
from bridge_flow_tracker.ingestor.sync import (
    ChainSyncCoordinator,
    SyncScheduler,
    SyncState,
    SyncStatus,
    iter_block_windows,
)
from bridge_flow_tracker.ingestor.timestamps import ExtrapolatedTimestampResolver
from bridge_flow_tracker.storage.models import FlowTimeSeriesModel, TransactionModel
from bridge_flow_tracker.storage.repos import FlowType, SyncStatusRepository

SENDER_A = "0x" + "a" * 40
RECIPIENT_B = "0x" + "b" * 40
RECIPIENT_C = "0x" + "c" * 40


# ============================================================================
# Helpers
# ============================================================================


def _chain(head: int) -> MagicMock:
    chain = MagicMock()
    chain.get_latest_block_number = AsyncMock(return_value=head)
    chain.get_logs = AsyncMock(return_value=[])
    return chain


def _fetcher(make_tx, blocks: list[int] | None = None) -> MagicMock:
    """Fetcher stub returning one transaction per listed block inside the window."""
    blocks = sorted(blocks or [])

    async def fetch_events(from_block: int, to_block: int):
        return [make_tx(block, block_number=block) for block in blocks if from_block <= block <= to_block]

    fetcher = MagicMock()
    fetcher.fetch_events = AsyncMock(side_effect=fetch_events)
    return fetcher


def _coordinator(db_manager, chain, fetcher, **kwargs) -> ChainSyncCoordinator:
    kwargs.setdefault("deploy_block", 100)
    return ChainSyncCoordinator(db_manager, chain, fetcher, **kwargs)


async def _count(db_manager, model) -> int:
    async with db_manager.get_async_session() as session:
        return await session.scalar(select(func.count()).select_from(model))


async def _bucket_sums(db_manager) -> dict:
    async with db_manager.get_async_session() as session:
        result = await session.execute(select(FlowTimeSeriesModel))
        return {
            (m.period_type, m.period_id): (m.inflow_amount, m.outflow_amount)
            for m in result.scalars().all()
        }


# ============================================================================
# iter_block_windows Tests
# ============================================================================


class TestIterBlockWindows:
    def test_inclusive_windows(self) -> None:
        assert list(iter_block_windows(100, 150, 20)) == [(100, 119), (120, 139), (140, 150)]

    def test_single_block(self) -> None:
        assert list(iter_block_windows(7, 7, 1000)) == [(7, 7)]

    def test_windows_cover_range_without_gaps(self) -> None:
        windows = list(iter_block_windows(0, 10_000, 999))
        assert windows[0][0] == 0
        assert windows[-1][1] == 10_000
        assert all(b[0] == a[1] + 1 for a, b in zip(windows, windows[1:]))

    def test_rejects_zero_batch(self) -> None:
        with pytest.raises(ValueError):
            list(iter_block_windows(0, 1, 0))


# ============================================================================
# ChainSyncCoordinator Tests
# ============================================================================


class TestChainSyncCoordinator:
    """Tests for ChainSyncCoordinator.run_once."""

    @pytest.mark.asyncio
    async def test_bridge_and_mint_events_scenario(self, db_manager) -> None:
        chain = _chain(head=150)
        chain.get_logs.return_value = [
            {
                "topics": [event_topic(DEFAULT_BRIDGE_TOKENS_SIGNATURE)],
                "data": encode(
                    ["address", "address", "address", "uint256"],
                    ["0x" + "d" * 40, SENDER_A, RECIPIENT_B, 500],
                ),
                "blockNumber": 120,
                "transactionHash": "0x" + "01" * 32,
                "logIndex": 0,
            },
            {
                "topics": [event_topic(DEFAULT_MINT_BRIDGE_TOKENS_SIGNATURE)],
                "data": encode(["address", "uint256"], [RECIPIENT_C, 300]),
                "blockNumber": 140,
                "transactionHash": "0x" + "02" * 32,
                "logIndex": 0,
            },
        ]
        fetcher = BridgeEventFetcher(
            chain,
            ExtrapolatedTimestampResolver(base_block=100, base_timestamp=1_700_000_000),
            contract_address=DEFAULT_BRIDGE_CONTRACT_ADDRESS,
        )
        coordinator = _coordinator(db_manager, chain, fetcher, deploy_block=100)

        result = await coordinator.run_once()

        assert result.status == SyncStatus.COMPLETED
        assert result.transactions_inserted == 2
        assert await coordinator.get_checkpoint() == 150

        async with db_manager.get_async_session() as session:
            rows = (await session.execute(select(TransactionModel).order_by(TransactionModel.block_number))).scalars().all()
        assert [(r.block_number, r.type, r.from_address, r.to_address, r.value) for r in rows] == [
            (120, FlowType.INFLOW.value, SENDER_A, RECIPIENT_B, "500"),
            (140, FlowType.OUTFLOW.value, ZERO_ADDRESS, RECIPIENT_C, "300"),
        ]

    @pytest.mark.asyncio
    async def test_walks_windows_in_order(self, db_manager, make_tx) -> None:
        fetcher = _fetcher(make_tx, [105, 145])
        coordinator = _coordinator(db_manager, _chain(head=150), fetcher, batch_size=20)

        result = await coordinator.run_once()

        assert result.status == SyncStatus.COMPLETED
        assert result.windows_synced == 3
        assert [c.args for c in fetcher.fetch_events.call_args_list] == [(100, 119), (120, 139), (140, 150)]
        assert await coordinator.get_checkpoint() == 150
        assert await _count(db_manager, TransactionModel) == 2

    @pytest.mark.asyncio
    async def test_up_to_date(self, db_manager, make_tx) -> None:
        fetcher = _fetcher(make_tx)
        coordinator = _coordinator(db_manager, _chain(head=150), fetcher)
        await coordinator.reset_checkpoint(150)

        result = await coordinator.run_once()

        assert result.status == SyncStatus.UP_TO_DATE
        fetcher.fetch_events.assert_not_called()

    @pytest.mark.asyncio
    async def test_starts_at_deploy_block(self, db_manager, make_tx) -> None:
        fetcher = _fetcher(make_tx)
        coordinator = _coordinator(db_manager, _chain(head=5_000), fetcher, deploy_block=4_990)

        await coordinator.run_once()

        assert fetcher.fetch_events.call_args_list[0].args == (4_990, 5_000)

    @pytest.mark.asyncio
    async def test_failure_stops_run_and_keeps_checkpoint(self, db_manager, make_tx) -> None:
        calls: list[tuple[int, int]] = []

        async def fetch_events(from_block: int, to_block: int):
            calls.append((from_block, to_block))
            if from_block == 120:
                raise RpcError("getLogs failed")
            return [make_tx(from_block, block_number=from_block)]

        fetcher = MagicMock()
        fetcher.fetch_events = AsyncMock(side_effect=fetch_events)
        coordinator = _coordinator(db_manager, _chain(head=150), fetcher, batch_size=20)

        result = await coordinator.run_once()

        assert result.status == SyncStatus.FAILED
        assert "getLogs failed" in result.error
        assert calls == [(100, 119), (120, 139)]
        assert await coordinator.get_checkpoint() == 119
        assert coordinator.stats.failed_runs == 1
        assert coordinator.state == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_failed_window_is_retried_next_run(self, db_manager, make_tx) -> None:
        attempts = {"n": 0}

        async def fetch_events(from_block: int, to_block: int):
            if from_block >= 120 and attempts["n"] == 0:
                attempts["n"] += 1
                raise RpcError("transient")
            return []

        fetcher = MagicMock()
        fetcher.fetch_events = AsyncMock(side_effect=fetch_events)
        coordinator = _coordinator(db_manager, _chain(head=150), fetcher, batch_size=20)

        first = await coordinator.run_once()
        second = await coordinator.run_once()

        assert first.status == SyncStatus.FAILED
        assert second.status == SyncStatus.COMPLETED
        assert fetcher.fetch_events.call_args_list[2].args[0] == 119
        assert await coordinator.get_checkpoint() == 150

    @pytest.mark.asyncio
    async def test_resync_of_same_blocks_is_idempotent(self, db_manager, make_tx) -> None:
        fetcher = _fetcher(make_tx, [120, 140])
        coordinator = _coordinator(db_manager, _chain(head=150), fetcher)

        await coordinator.run_once()
        sums = await _bucket_sums(db_manager)

        await coordinator.reset_checkpoint(100)
        result = await coordinator.run_once()

        assert result.status == SyncStatus.COMPLETED
        assert result.transactions_inserted == 0
        assert await _count(db_manager, TransactionModel) == 2
        assert await _bucket_sums(db_manager) == sums

    @pytest.mark.asyncio
    async def test_checkpoint_is_monotonic_across_runs(self, db_manager, make_tx) -> None:
        heads = [130, 130, 170, 210, 260]
        failing = {2}
        run = {"i": 0}

        async def fetch_events(from_block: int, to_block: int):
            if run["i"] in failing and to_block > 150:
                raise RpcError("flaky")
            return [make_tx(to_block, block_number=to_block)]

        chain = _chain(head=heads[0])
        fetcher = MagicMock()
        fetcher.fetch_events = AsyncMock(side_effect=fetch_events)
        coordinator = _coordinator(db_manager, chain, fetcher, batch_size=25)

        checkpoints = []
        for i, head in enumerate(heads):
            run["i"] = i
            chain.get_latest_block_number.return_value = head
            await coordinator.run_once()
            checkpoints.append(await coordinator.get_checkpoint())

        assert checkpoints == sorted(checkpoints)
        assert checkpoints[-1] == 260

    @pytest.mark.asyncio
    async def test_window_timeout_is_a_failure(self, db_manager) -> None:
        async def hang(from_block: int, to_block: int):
            await asyncio.sleep(10)

        fetcher = MagicMock()
        fetcher.fetch_events = AsyncMock(side_effect=hang)
        coordinator = _coordinator(db_manager, _chain(head=150), fetcher, window_timeout_seconds=0.05)

        result = await coordinator.run_once()

        assert result.status == SyncStatus.FAILED
        assert "timed out" in result.error
        assert await coordinator.get_checkpoint() is None
        assert not coordinator.is_running

    @pytest.mark.asyncio
    async def test_storage_failure_rolls_back_window(self, db_manager, make_tx, monkeypatch) -> None:
        async def broken_advance(self, sync_id: str, block_number: int) -> int:
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(SyncStatusRepository, "advance", broken_advance)
        fetcher = _fetcher(make_tx, [120])
        coordinator = _coordinator(db_manager, _chain(head=150), fetcher)

        result = await coordinator.run_once()

        assert result.status == SyncStatus.FAILED
        assert await _count(db_manager, TransactionModel) == 0
        assert await _count(db_manager, FlowTimeSeriesModel) == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_counted_as_failed_run(self, db_manager, make_tx) -> None:
        fetcher = MagicMock()
        fetcher.fetch_events = AsyncMock(side_effect=KeyError("decoder bug"))
        coordinator = _coordinator(db_manager, _chain(head=150), fetcher)

        with pytest.raises(KeyError):
            await coordinator.run_once()

        stats = coordinator.stats
        assert stats.total_runs == 1
        assert stats.failed_runs == 1
        assert stats.successful_runs == 0
        assert "decoder bug" in stats.last_error
        assert coordinator.state == SyncState.IDLE
        assert not coordinator.is_running

    @pytest.mark.asyncio
    async def test_head_lookup_failure(self, db_manager, make_tx) -> None:
        chain = _chain(head=150)
        chain.get_latest_block_number.side_effect = RpcError("unreachable")
        coordinator = _coordinator(db_manager, chain, _fetcher(make_tx))

        result = await coordinator.run_once()

        assert result.status == SyncStatus.FAILED
        assert result.error == "unreachable"

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self, db_manager, make_tx) -> None:
        release = asyncio.Event()
        entered = asyncio.Event()

        async def slow_fetch(from_block: int, to_block: int):
            entered.set()
            await release.wait()
            return []

        fetcher = MagicMock()
        fetcher.fetch_events = AsyncMock(side_effect=slow_fetch)
        coordinator = _coordinator(db_manager, _chain(head=150), fetcher)

        first = asyncio.create_task(coordinator.run_once())
        await entered.wait()

        second = await coordinator.run_once()
        release.set()
        first_result = await first

        assert second.status == SyncStatus.SKIPPED
        assert first_result.status == SyncStatus.COMPLETED
        assert fetcher.fetch_events.await_count == 1
        assert coordinator.stats.skipped_runs == 1

    @pytest.mark.asyncio
    async def test_reset_checkpoint_clear(self, db_manager, make_tx) -> None:
        coordinator = _coordinator(db_manager, _chain(head=150), _fetcher(make_tx))
        await coordinator.run_once()

        await coordinator.reset_checkpoint(None)

        assert await coordinator.get_checkpoint() is None


# ============================================================================
# SyncScheduler Tests
# ============================================================================


class TestSyncScheduler:
    """Tests for SyncScheduler."""

    @pytest.mark.asyncio
    async def test_runs_immediately_on_start(self) -> None:
        coordinator = MagicMock()
        ran = asyncio.Event()
        coordinator.run_once = AsyncMock(side_effect=lambda: ran.set())
        scheduler = SyncScheduler(coordinator, interval_seconds=3600)

        await scheduler.start()
        await asyncio.wait_for(ran.wait(), timeout=1)
        await scheduler.stop()

        assert coordinator.run_once.await_count == 1
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_runs_on_interval_and_survives_errors(self) -> None:
        coordinator = MagicMock()
        calls = {"n": 0}
        done = asyncio.Event()

        async def run_once():
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("boom")
            if calls["n"] >= 3:
                done.set()

        coordinator.run_once = AsyncMock(side_effect=run_once)
        scheduler = SyncScheduler(coordinator, interval_seconds=0.01)

        await scheduler.start()
        await asyncio.wait_for(done.wait(), timeout=2)
        await scheduler.stop()

        assert calls["n"] >= 3

    @pytest.mark.asyncio
    async def test_trigger_delegates(self) -> None:
        coordinator = MagicMock()
        coordinator.run_once = AsyncMock(return_value="result")
        scheduler = SyncScheduler(coordinator)

        assert await scheduler.trigger() == "result"
