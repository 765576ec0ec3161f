"""Block number to wall-clock timestamp resolution.

Two strategies are available:

- `BlockTimestampResolver` asks the ledger for each block header and caches
  the result by block number. Block timestamps are immutable, so the cache is
  valid for the lifetime of the process. This is exact and the default.
- `ExtrapolatedTimestampResolver` projects a timestamp linearly from a fixed
  calibration point, assuming a constant block time. It costs no RPC calls but
  drifts whenever the real block time deviates from the assumption (on
  Avalanche C-Chain block production is irregular, so errors of minutes to
  hours accumulate far from the calibration block). Use it only when per-block
  lookups are too expensive and bucket-level accuracy is acceptable.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, MutableMapping
from typing import TYPE_CHECKING, Protocol

from bridge_flow_tracker.errors import RpcError

if TYPE_CHECKING:
    from bridge_flow_tracker.config import SyncSettings
    from bridge_flow_tracker.ingestor.chain import ChainClient

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 10


class TimestampResolver(Protocol):
    """Maps block numbers to unix timestamps (seconds)."""

    async def resolve(self, block_number: int) -> int: ...

    async def resolve_many(self, block_numbers: Iterable[int]) -> dict[int, int]: ...


class BlockTimestampResolver:
    """Exact resolver backed by block header lookups.

    The cache is injected so callers control its lifetime and bound; a plain
    dict gives an unbounded process-lifetime cache.
    """

    def __init__(
        self,
        chain_client: ChainClient,
        *,
        cache: MutableMapping[int, int] | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        self._chain = chain_client
        self._cache: MutableMapping[int, int] = cache if cache is not None else {}
        self._max_concurrency = max_concurrency

    @property
    def cache(self) -> MutableMapping[int, int]:
        return self._cache

    async def resolve(self, block_number: int) -> int:
        cached = self._cache.get(block_number)
        if cached is not None:
            return cached

        block = await self._chain.get_block(block_number)
        try:
            timestamp = int(block["timestamp"])
        except (KeyError, TypeError, ValueError) as e:
            raise RpcError(f"Block {block_number} has no usable timestamp: {e}") from e

        self._cache[block_number] = timestamp
        return timestamp

    async def resolve_many(self, block_numbers: Iterable[int]) -> dict[int, int]:
        """Resolve several blocks concurrently and join the results.

        Raises:
            RpcError: If any lookup fails; no partial mapping is returned.
        """
        unique = sorted(set(block_numbers))
        if not unique:
            return {}

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def resolve_one(block_number: int) -> int:
            async with semaphore:
                return await self.resolve(block_number)

        results = await asyncio.gather(*(resolve_one(b) for b in unique), return_exceptions=True)

        resolved: dict[int, int] = {}
        for block_number, result in zip(unique, results, strict=True):
            if isinstance(result, BaseException):
                if isinstance(result, RpcError):
                    raise result
                raise RpcError(f"Failed to resolve timestamp for block {block_number}: {result}") from result
            resolved[block_number] = result
        return resolved


class ExtrapolatedTimestampResolver:
    """Approximate resolver: `base_timestamp + (block - base_block) * seconds_per_block`."""

    def __init__(
        self,
        *,
        base_block: int,
        base_timestamp: int,
        seconds_per_block: float = 1.0,
    ) -> None:
        if seconds_per_block <= 0:
            raise ValueError("seconds_per_block must be > 0")
        self._base_block = base_block
        self._base_timestamp = base_timestamp
        self._seconds_per_block = seconds_per_block

    async def resolve(self, block_number: int) -> int:
        offset = (block_number - self._base_block) * self._seconds_per_block
        return self._base_timestamp + int(round(offset))

    async def resolve_many(self, block_numbers: Iterable[int]) -> dict[int, int]:
        return {b: await self.resolve(b) for b in set(block_numbers)}


def build_timestamp_resolver(settings: SyncSettings, chain_client: ChainClient) -> TimestampResolver:
    """Create the resolver selected by `SYNC_TIMESTAMP_STRATEGY`."""
    if settings.timestamp_strategy == "extrapolate":
        logger.warning(
            "Using extrapolated block timestamps (calibration block %d, %.2fs/block); "
            "bucket placement is approximate",
            settings.calibration_block,
            settings.seconds_per_block,
        )
        return ExtrapolatedTimestampResolver(
            base_block=settings.calibration_block,
            base_timestamp=settings.calibration_timestamp,
            seconds_per_block=settings.seconds_per_block,
        )
    return BlockTimestampResolver(
        chain_client,
        cache={},
        max_concurrency=settings.timestamp_concurrency,
    )
