"""Main pipeline orchestrator for Bridge Flow Tracker.

This module provides the Pipeline class that wires the ledger client, the
sync engine, the storage layer and the HTTP API together and manages their
lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from aiohttp import web
from redis.asyncio import Redis

from bridge_flow_tracker.api import create_app
from bridge_flow_tracker.config import Settings, get_settings
from bridge_flow_tracker.ingestor.chain import ChainClient
from bridge_flow_tracker.ingestor.events import BridgeEventFetcher
from bridge_flow_tracker.ingestor.sync import ChainSyncCoordinator, SyncScheduler
from bridge_flow_tracker.ingestor.timestamps import build_timestamp_resolver
from bridge_flow_tracker.storage.database import DatabaseManager

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    last_error: str | None = None


class Pipeline:
    """Main pipeline orchestrator for the Bridge Flow Tracker.

    Pipeline flow:
        Scheduler → Coordinator → Event Fetcher → Transaction Store → Aggregator
        HTTP API → Transaction Store / Query Engine (read path)

    Example:
        ```python
        from bridge_flow_tracker.config import get_settings
        from bridge_flow_tracker.pipeline import Pipeline

        pipeline = Pipeline(get_settings())

        await pipeline.start()
        # Scheduler and API run until stop() is called
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        background: bool = True,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            background: Start the sync scheduler and HTTP API. When False only
                the components are built, for one-shot CLI commands.
        """
        self._settings = settings or get_settings()
        self._background = background

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._chain_client: ChainClient | None = None
        self._coordinator: ChainSyncCoordinator | None = None
        self._scheduler: SyncScheduler | None = None
        self._web_runner: web.AppRunner | None = None

        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    @property
    def coordinator(self) -> ChainSyncCoordinator:
        if self._coordinator is None:
            raise RuntimeError("Pipeline not started")
        return self._coordinator

    @property
    def db_manager(self) -> DatabaseManager:
        if self._db_manager is None:
            raise RuntimeError("Pipeline not started")
        return self._db_manager

    async def start(self) -> None:
        """Start the pipeline.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline...")

        try:
            self._initialize_components()
            if self._background:
                await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully."""
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    def _initialize_components(self) -> None:
        """Initialize all pipeline components."""
        settings = self._settings

        if settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        logger.debug("Initializing database manager...")
        self._db_manager = DatabaseManager(settings.database.url)

        logger.debug("Initializing chain client...")
        self._chain_client = ChainClient(
            settings.chain.rpc_url,
            fallback_rpc_url=settings.chain.fallback_rpc_url,
            redis=self._redis,
            max_requests_per_second=settings.chain.max_requests_per_second,
            max_retries=settings.chain.max_retries,
            request_timeout_seconds=settings.chain.request_timeout_seconds,
        )

        logger.debug("Initializing bridge event fetcher...")
        resolver = build_timestamp_resolver(settings.sync, self._chain_client)
        fetcher = BridgeEventFetcher(
            self._chain_client,
            resolver,
            contract_address=settings.bridge.contract_address,
            bridge_tokens_signature=settings.bridge.bridge_tokens_signature,
            mint_bridge_tokens_signature=settings.bridge.mint_bridge_tokens_signature,
        )

        logger.debug("Initializing sync coordinator...")
        self._coordinator = ChainSyncCoordinator(
            self._db_manager,
            self._chain_client,
            fetcher,
            deploy_block=settings.bridge.deploy_block,
            batch_size=settings.sync.batch_size,
            window_timeout_seconds=settings.sync.window_timeout_seconds,
            checkpoint_id=settings.sync.checkpoint_id,
        )

    async def _start_background_services(self) -> None:
        """Start the sync scheduler and the HTTP API."""
        settings = self._settings

        self._scheduler = SyncScheduler(self.coordinator, interval_seconds=settings.sync.interval_seconds)
        await self._scheduler.start()

        if settings.api.enabled:
            app = create_app(self.db_manager, self.coordinator)
            self._web_runner = web.AppRunner(app)
            await self._web_runner.setup()
            site = web.TCPSite(self._web_runner, settings.api.host, settings.api.port)
            await site.start()
            logger.info("HTTP API listening on %s:%d", settings.api.host, settings.api.port)

    async def _stop_background_services(self) -> None:
        """Stop background services."""
        if self._web_runner:
            logger.debug("Stopping HTTP API...")
            await self._web_runner.cleanup()
            self._web_runner = None

        if self._scheduler:
            logger.debug("Stopping sync scheduler...")
            await self._scheduler.stop()
            self._scheduler = None

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._chain_client:
            await self._chain_client.aclose()
            self._chain_client = None

        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        self._coordinator = None
        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the pipeline and run until interrupted."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
