"""
FieldSync client

Keeps survey records captured on a field device flowing to the collection
API. Records submitted while offline are stored locally and synchronized
once the API is reachable again.

Usage:
    python -m fieldsync                      # Run until interrupted
    python -m fieldsync --sync-once          # Run a single sync pass and exit
    python -m fieldsync --stats              # Print local queue statistics and exit
    python -m fieldsync --base-url URL --db PATH --debug
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .app.collect_service import CollectService
from .config.app_config import AppConfig
from .sync.errors import OfflineError
from .utils.logging_setup import configure_logging

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="fieldsync",
        description="Offline-first synchronization client for field survey data"
    )
    parser.add_argument("--base-url", help="Collection API base URL")
    parser.add_argument("--db", help="Path of the local SQLite store")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--sync-once", action="store_true", help="Run one sync pass and exit")
    mode.add_argument("--stats", action="store_true", help="Print local record statistics and exit")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> AppConfig:
    """Environment configuration with command line overrides applied."""
    config = AppConfig.from_env()
    if args.base_url:
        config.api.base_url = args.base_url.rstrip("/")
    if args.db:
        config.storage.path = args.db
    if args.debug:
        config.debug = True
    config.validate()
    return config


async def run(config: AppConfig, args: argparse.Namespace) -> int:
    """
    Run the client in the mode selected on the command line.

    Returns:
        Process exit code
    """
    service = CollectService(config)

    if args.stats:
        try:
            stats = await service.get_local_stats()
            print(json.dumps(stats, indent=2))
        finally:
            await service.stop()
        return 0

    if args.sync_once:
        try:
            report = await service.sync_once()
        except OfflineError as e:
            logger.error(f"Sync not possible: {e}")
            return 1
        finally:
            await service.stop()
        if report is None:
            return 0
        print(json.dumps(report.to_dict(), indent=2))
        return 0 if report.failed == 0 else 1

    await service.start()
    try:
        await asyncio.Event().wait()
    finally:
        await service.stop()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the field sync client."""
    args = parse_args(argv)
    config = build_config(args)
    configure_logging(config.debug)

    logger.info(f"Using API at {config.api.base_url}")
    try:
        return asyncio.run(run(config, args))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 0


if __name__ == "__main__":
    sys.exit(main())
