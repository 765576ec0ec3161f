"""Bridge contract event fetching and normalization.

Fetches `BridgeTokens` and `MintBridgeTokens` logs for an inclusive block
range and turns them into canonical `TransactionDTO` records:

- `BridgeTokens` is an inflow, sent by `sender` to `recipient`.
- `MintBridgeTokens` is an outflow; minting has no sender account, so
  `from` is the zero address.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import AsyncWeb3

from bridge_flow_tracker.config import (
    DEFAULT_BRIDGE_TOKENS_SIGNATURE,
    DEFAULT_MINT_BRIDGE_TOKENS_SIGNATURE,
)
from bridge_flow_tracker.errors import RpcError
from bridge_flow_tracker.ingestor.chain import to_hex
from bridge_flow_tracker.storage.repos import FlowType, TransactionDTO

if TYPE_CHECKING:
    from bridge_flow_tracker.ingestor.chain import ChainClient
    from bridge_flow_tracker.ingestor.timestamps import TimestampResolver

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Non-indexed parameters, in order, as they appear in the log data.
BRIDGE_TOKENS_DATA_TYPES = ["address", "address", "address", "uint256"]  # dest bridge, sender, recipient, amount
MINT_BRIDGE_TOKENS_DATA_TYPES = ["address", "uint256"]  # recipient, amount


def event_topic(signature: str) -> str:
    """Return topic0 (keccak of the canonical signature) as 0x-hex."""
    return to_hex(AsyncWeb3.keccak(text=signature))


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    text = str(value)
    if text.startswith(("0x", "0X")):
        text = text[2:]
    return bytes.fromhex(text)


class BridgeEventFetcher:
    """Turns bridge contract logs into canonical transactions."""

    def __init__(
        self,
        chain_client: ChainClient,
        resolver: TimestampResolver,
        *,
        contract_address: str,
        bridge_tokens_signature: str = DEFAULT_BRIDGE_TOKENS_SIGNATURE,
        mint_bridge_tokens_signature: str = DEFAULT_MINT_BRIDGE_TOKENS_SIGNATURE,
    ) -> None:
        self._chain = chain_client
        self._resolver = resolver
        self._contract_address = AsyncWeb3.to_checksum_address(contract_address)
        self._bridge_topic = event_topic(bridge_tokens_signature)
        self._mint_topic = event_topic(mint_bridge_tokens_signature)

    @property
    def topics(self) -> tuple[str, str]:
        return self._bridge_topic, self._mint_topic

    async def fetch_events(self, from_block: int, to_block: int) -> list[TransactionDTO]:
        """Fetch and normalize bridge events in `[from_block, to_block]`.

        Args:
            from_block: First block, inclusive.
            to_block: Last block, inclusive.

        Returns:
            Transactions ordered by (block number, log index).

        Raises:
            ValueError: If from_block > to_block.
            RpcError: If the ledger call fails or returns a malformed log.
        """
        if from_block > to_block:
            raise ValueError(f"from_block {from_block} > to_block {to_block}")

        logs = await self._chain.get_logs(
            {
                "address": self._contract_address,
                "topics": [[self._bridge_topic, self._mint_topic]],
                "fromBlock": from_block,
                "toBlock": to_block,
            }
        )
        if not logs:
            return []

        decoded = [self._decode_log(log) for log in logs]
        decoded = [d for d in decoded if d is not None]

        timestamps = await self._resolver.resolve_many(d["block_number"] for d in decoded)

        transactions = [
            TransactionDTO(
                hash=d["hash"],
                from_address=d["from_address"],
                to_address=d["to_address"],
                value=d["value"],
                timestamp=timestamps[d["block_number"]],
                type=d["type"],
                block_number=d["block_number"],
                log_index=d["log_index"],
            )
            for d in decoded
        ]
        transactions.sort(key=lambda tx: (tx.block_number, tx.log_index))
        logger.debug(
            "Fetched %d bridge events in blocks %d-%d", len(transactions), from_block, to_block
        )
        return transactions

    def _decode_log(self, log: Mapping[str, Any]) -> dict[str, Any] | None:
        try:
            topics = [to_hex(t) for t in log["topics"]]
            topic0 = topics[0] if topics else None
            data = _as_bytes(log["data"])
            base = {
                "hash": to_hex(log["transactionHash"]),
                "block_number": int(log["blockNumber"]),
                "log_index": int(log.get("logIndex") or 0),
            }

            if topic0 == self._bridge_topic:
                _dest_bridge, sender, recipient, amount = decode(BRIDGE_TOKENS_DATA_TYPES, data)
                return {
                    **base,
                    "from_address": sender.lower(),
                    "to_address": recipient.lower(),
                    "value": int(amount),
                    "type": FlowType.INFLOW,
                }
            if topic0 == self._mint_topic:
                recipient, amount = decode(MINT_BRIDGE_TOKENS_DATA_TYPES, data)
                return {
                    **base,
                    "from_address": ZERO_ADDRESS,
                    "to_address": recipient.lower(),
                    "value": int(amount),
                    "type": FlowType.OUTFLOW,
                }
        except (KeyError, IndexError, TypeError, ValueError, DecodingError) as e:
            raise RpcError(f"Malformed bridge log {dict(log)!r}: {e}") from e

        logger.warning("Skipping log with unexpected topic %s", topic0)
        return None
