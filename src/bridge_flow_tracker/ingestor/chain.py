"""Ledger RPC client with retry, failover, rate limiting and caching.

This module provides the EVM client used by the sync engine with:
- Retry logic with exponential backoff
- Failover to secondary RPC URL
- Rate limiting to respect provider limits
- Optional Redis caching of immutable block data
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, cast

from aiohttp import ClientError, ClientTimeout
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from bridge_flow_tracker.errors import RpcError

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_BLOCK_CACHE_TTL_SECONDS = 3600  # blocks are immutable
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT = 30.0

# Transport failures that are worth retrying on the same or the fallback endpoint.
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (Web3Exception, ClientError, TimeoutError)


def to_hex(value: Any) -> str:
    """Normalize HexBytes/bytes/str RPC values to a lowercase 0x-prefixed string."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def _json_default(value: object) -> object:
    """Serialize Web3 RPC objects that stdlib json can't encode."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return to_hex(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> "RateLimiter":
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class ChainClient:
    """EVM ledger client with caching and rate limiting.

    Only the three calls the sync engine needs are exposed: the chain head,
    single blocks (for timestamps) and `eth_getLogs`.

    Example:
        ```python
        client = ChainClient(
            rpc_url="https://api.avax.network/ext/bc/C/rpc",
            fallback_rpc_url="https://avalanche-c-chain-rpc.publicnode.com",
        )

        head = await client.get_latest_block_number()
        logs = await client.get_logs({"address": "0x...", "fromBlock": head - 10, "toBlock": head})
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        block_cache_ttl_seconds: int = DEFAULT_BLOCK_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """Initialize the ledger client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching block data.
            block_cache_ttl_seconds: Cache TTL for blocks in seconds.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
            request_timeout_seconds: HTTP timeout for one request.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._block_cache_ttl = block_cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._request_timeout = request_timeout_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0  # Try primary again after 60s

        self._cache_prefix = "bridge:chain:"

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        provider = AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": ClientTimeout(total=self._request_timeout)},
        )
        client = AsyncWeb3(provider)
        self._inject_poa_middleware(client, rpc_url=rpc_url)
        return client

    def _inject_poa_middleware(self, client: AsyncWeb3[AsyncHTTPProvider], *, rpc_url: str) -> None:
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int | None = None) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl or self._block_cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        """Check if we should try the primary RPC."""
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _call_endpoint(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        func_name: str,
        *args: Any,
    ) -> tuple[bool, Any, Exception | None]:
        """Call one endpoint with retries; returns (ok, result, last_error)."""
        last_error: Exception | None = None
        delay = self._retry_delay
        for attempt in range(self._max_retries):
            try:
                method = getattr(w3.eth, func_name)
                return True, await method(*args), None
            except RETRYABLE_ERRORS as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    label,
                    func_name,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2  # Exponential backoff
        return False, None, last_error

    async def _execute_with_retry(self, func_name: str, *args: Any) -> Any:
        """Execute an RPC call with retry and failover logic.

        Args:
            func_name: Name of the web3.eth method to call.
            *args: Positional arguments for the method.

        Returns:
            Result from the RPC call.

        Raises:
            RpcError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None

        # Without a fallback the primary is the only endpoint; never skip it.
        if self._w3_fallback is None or self._should_try_primary():
            ok, result, last_error = await self._call_endpoint(self._w3, "Primary", func_name, *args)
            if ok:
                self._primary_healthy = True
                return result
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback:
            ok, result, fallback_error = await self._call_endpoint(
                self._w3_fallback, "Fallback", func_name, *args
            )
            if ok:
                logger.info("Fallback RPC succeeded for %s", func_name)
                return result
            last_error = fallback_error

        raise RpcError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def get_latest_block_number(self) -> int:
        """Get the current chain head block number (never cached)."""
        block = await self._execute_with_retry("get_block", "latest")
        try:
            return int(block["number"])
        except (KeyError, TypeError, ValueError) as e:
            raise RpcError(f"Malformed latest block response: {e}") from e

    async def get_block(self, block_number: int) -> dict[str, Any]:
        """Get block header by number.

        Args:
            block_number: Block number.

        Returns:
            Block data dictionary with an integer `timestamp`.
        """
        if block_number < 0:
            raise ValueError("block_number must be >= 0")

        cache_key = f"{self._cache_prefix}block:{block_number}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return cast(dict[str, Any], json.loads(cached))

        block = await self._execute_with_retry("get_block", block_number)
        if block is None:
            raise RpcError(f"Block {block_number} not found")

        try:
            block_dict = {
                "number": int(block["number"]),
                "timestamp": int(block["timestamp"]),
                "hash": to_hex(block["hash"]),
            }
        except (KeyError, TypeError, ValueError) as e:
            raise RpcError(f"Malformed block {block_number} response: {e}") from e

        await self._set_cached(cache_key, json.dumps(block_dict, default=_json_default))
        return block_dict

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch logs via `eth_getLogs` with retry/failover semantics.

        This is the only supported way to access logs; callers must not reach
        into internal web3 instances.
        """
        logs = await self._execute_with_retry("get_logs", filter_params)
        return [dict(log) for log in logs]

    async def health_check(self) -> bool:
        """Check if the client can reach the RPC."""
        try:
            await self.get_latest_block_number()
            return True
        except RpcError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
