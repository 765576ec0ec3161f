"""Command-line entry point.

Usage:
    python -m bridge_flow_tracker run                 # scheduler + HTTP API
    python -m bridge_flow_tracker sync                # one sync pass, then exit
    python -m bridge_flow_tracker init-db             # create tables
    python -m bridge_flow_tracker reset-checkpoint --block N
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import sys

from bridge_flow_tracker.config import Settings, get_settings
from bridge_flow_tracker.ingestor.sync import SyncStatus
from bridge_flow_tracker.pipeline import Pipeline
from bridge_flow_tracker.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bridge_flow_tracker", description="Bridge flow sync and API")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the sync scheduler and the HTTP API")
    sub.add_parser("sync", help="Run one sync pass and exit")
    sub.add_parser("init-db", help="Create database tables")

    reset = sub.add_parser("reset-checkpoint", help="Overwrite the sync checkpoint")
    group = reset.add_mutually_exclusive_group(required=True)
    group.add_argument("--block", type=int, help="New last synced block")
    group.add_argument("--clear", action="store_true", help="Remove the checkpoint (resync from deploy block)")
    return parser


async def _run(settings: Settings) -> int:
    await Pipeline(settings).run()
    return 0


async def _sync(settings: Settings) -> int:
    async with Pipeline(settings, background=False) as pipeline:
        result = await pipeline.coordinator.run_once()
    print(json.dumps(result.to_dict(), indent=2))
    return 1 if result.status == SyncStatus.FAILED else 0


async def _init_db(settings: Settings) -> int:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()
    return 0


async def _reset_checkpoint(settings: Settings, block: int | None) -> int:
    if block is not None and block < 0:
        logger.error("--block must be >= 0")
        return 2
    async with Pipeline(settings, background=False) as pipeline:
        await pipeline.coordinator.reset_checkpoint(block)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Settings: %s", settings.redacted_summary())

    if args.command == "run":
        coro = _run(settings)
    elif args.command == "sync":
        coro = _sync(settings)
    elif args.command == "init-db":
        coro = _init_db(settings)
    else:
        coro = _reset_checkpoint(settings, None if args.clear else args.block)

    with contextlib.suppress(KeyboardInterrupt):
        return asyncio.run(coro)
    return 130


if __name__ == "__main__":
    sys.exit(main())
