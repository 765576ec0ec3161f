"""Tests for bridge event fetching and normalization."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import encode
from hexbytes import HexBytes

from bridge_flow_tracker.config import (
    DEFAULT_BRIDGE_CONTRACT_ADDRESS,
    DEFAULT_BRIDGE_TOKENS_SIGNATURE,
    DEFAULT_MINT_BRIDGE_TOKENS_SIGNATURE,
)
from bridge_flow_tracker.errors import RpcError
from bridge_flow_tracker.ingestor.events import ZERO_ADDRESS, BridgeEventFetcher, event_topic
from bridge_flow_tracker.ingestor.timestamps import ExtrapolatedTimestampResolver
from bridge_flow_tracker.storage.repos import FlowType

SENDER = "0x" + "a" * 40
RECIPIENT = "0x" + "b" * 40
MINT_RECIPIENT = "0x" + "c" * 40
DEST_BRIDGE = "0x" + "d" * 40
TOKEN = "0x" + "e" * 40

BRIDGE_TOPIC = event_topic(DEFAULT_BRIDGE_TOKENS_SIGNATURE)
MINT_TOPIC = event_topic(DEFAULT_MINT_BRIDGE_TOKENS_SIGNATURE)


def bridge_tokens_log(*, block: int, tx: int, sender: str, recipient: str, amount: int, log_index: int = 0) -> dict:
    return {
        "address": DEFAULT_BRIDGE_CONTRACT_ADDRESS,
        "topics": [
            HexBytes(BRIDGE_TOPIC),
            HexBytes(b"\x00" * 12 + bytes.fromhex(TOKEN[2:])),
            HexBytes(b"\x01" * 32),
            HexBytes(b"\x02" * 32),
        ],
        "data": HexBytes(encode(["address", "address", "address", "uint256"], [DEST_BRIDGE, sender, recipient, amount])),
        "blockNumber": block,
        "transactionHash": HexBytes(tx.to_bytes(32, "big")),
        "logIndex": log_index,
    }


def mint_log(*, block: int, tx: int, recipient: str, amount: int, log_index: int = 0) -> dict:
    return {
        "address": DEFAULT_BRIDGE_CONTRACT_ADDRESS,
        "topics": [HexBytes(MINT_TOPIC), HexBytes(b"\x00" * 12 + bytes.fromhex(TOKEN[2:]))],
        "data": "0x" + encode(["address", "uint256"], [recipient, amount]).hex(),
        "blockNumber": block,
        "transactionHash": "0x" + f"{tx:064x}",
        "logIndex": log_index,
    }


@pytest.fixture
def mock_chain() -> MagicMock:
    chain = MagicMock()
    chain.get_logs = AsyncMock(return_value=[])
    return chain


@pytest.fixture
def resolver() -> ExtrapolatedTimestampResolver:
    return ExtrapolatedTimestampResolver(base_block=100, base_timestamp=1_700_000_000)


@pytest.fixture
def fetcher(mock_chain: MagicMock, resolver: ExtrapolatedTimestampResolver) -> BridgeEventFetcher:
    return BridgeEventFetcher(mock_chain, resolver, contract_address=DEFAULT_BRIDGE_CONTRACT_ADDRESS.lower())


class TestFetchEvents:
    """Tests for BridgeEventFetcher.fetch_events."""

    @pytest.mark.asyncio
    async def test_maps_both_event_kinds(self, fetcher: BridgeEventFetcher, mock_chain: MagicMock) -> None:
        mock_chain.get_logs.return_value = [
            mint_log(block=140, tx=2, recipient=MINT_RECIPIENT, amount=300),
            bridge_tokens_log(block=120, tx=1, sender=SENDER, recipient=RECIPIENT, amount=500),
        ]

        txs = await fetcher.fetch_events(100, 150)

        assert len(txs) == 2
        inflow, outflow = txs
        assert inflow.type == FlowType.INFLOW
        assert inflow.from_address == SENDER
        assert inflow.to_address == RECIPIENT
        assert inflow.value == 500
        assert inflow.block_number == 120
        assert inflow.timestamp == 1_700_000_020
        assert inflow.hash == "0x" + f"{1:064x}"

        assert outflow.type == FlowType.OUTFLOW
        assert outflow.from_address == ZERO_ADDRESS
        assert outflow.to_address == MINT_RECIPIENT
        assert outflow.value == 300
        assert outflow.block_number == 140

    @pytest.mark.asyncio
    async def test_builds_filter(self, fetcher: BridgeEventFetcher, mock_chain: MagicMock) -> None:
        await fetcher.fetch_events(100, 150)

        (params,) = mock_chain.get_logs.call_args.args
        assert params["fromBlock"] == 100
        assert params["toBlock"] == 150
        assert params["address"].lower() == DEFAULT_BRIDGE_CONTRACT_ADDRESS.lower()
        assert params["topics"] == [[BRIDGE_TOPIC, MINT_TOPIC]]

    @pytest.mark.asyncio
    async def test_uint256_amount_is_exact(self, fetcher: BridgeEventFetcher, mock_chain: MagicMock) -> None:
        amount = 123_456_789_012_345_678_901_234_567_890
        mock_chain.get_logs.return_value = [mint_log(block=101, tx=9, recipient=MINT_RECIPIENT, amount=amount)]

        (tx,) = await fetcher.fetch_events(100, 101)
        assert tx.value == amount

    @pytest.mark.asyncio
    async def test_orders_by_block_and_log_index(self, fetcher: BridgeEventFetcher, mock_chain: MagicMock) -> None:
        mock_chain.get_logs.return_value = [
            mint_log(block=110, tx=3, recipient=MINT_RECIPIENT, amount=1, log_index=5),
            mint_log(block=110, tx=2, recipient=MINT_RECIPIENT, amount=1, log_index=1),
            mint_log(block=105, tx=1, recipient=MINT_RECIPIENT, amount=1),
        ]

        txs = await fetcher.fetch_events(100, 120)
        assert [tx.hash[-1] for tx in txs] == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_empty_range(self, fetcher: BridgeEventFetcher) -> None:
        assert await fetcher.fetch_events(100, 100) == []

    @pytest.mark.asyncio
    async def test_inverted_range_rejected(self, fetcher: BridgeEventFetcher) -> None:
        with pytest.raises(ValueError):
            await fetcher.fetch_events(150, 100)

    @pytest.mark.asyncio
    async def test_rpc_error_propagates(self, fetcher: BridgeEventFetcher, mock_chain: MagicMock) -> None:
        mock_chain.get_logs.side_effect = RpcError("getLogs failed")

        with pytest.raises(RpcError):
            await fetcher.fetch_events(100, 150)

    @pytest.mark.asyncio
    async def test_malformed_log_raises(self, fetcher: BridgeEventFetcher, mock_chain: MagicMock) -> None:
        log = mint_log(block=101, tx=1, recipient=MINT_RECIPIENT, amount=1)
        log["data"] = "0x1234"
        mock_chain.get_logs.return_value = [log]

        with pytest.raises(RpcError):
            await fetcher.fetch_events(100, 101)

    @pytest.mark.asyncio
    async def test_timestamp_failure_propagates(self, mock_chain: MagicMock) -> None:
        resolver = MagicMock()
        resolver.resolve_many = AsyncMock(side_effect=RpcError("no header"))
        fetcher = BridgeEventFetcher(mock_chain, resolver, contract_address=DEFAULT_BRIDGE_CONTRACT_ADDRESS)
        mock_chain.get_logs.return_value = [mint_log(block=101, tx=1, recipient=MINT_RECIPIENT, amount=1)]

        with pytest.raises(RpcError, match="no header"):
            await fetcher.fetch_events(100, 101)
