#!/usr/bin/env python3
"""Log every event emitted by the desktop client until interrupted.

Usage:
    python scripts/watch_events.py [--port 9222] [--no-launch]

Settings not given on the command line come from the environment / .env
(see src/teams_bridge/config.py).
"""

import argparse
import asyncio
import sys

import structlog

from src.teams_bridge.client import connect
from src.teams_bridge.config import get_settings
from src.teams_bridge.core.logging import configure_structlog
from src.teams_bridge.errors import BridgeError
from src.teams_bridge.schemas import EventKind

logger = structlog.get_logger("watch_events")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Watch client events")
    parser.add_argument("--port", type=int, default=None, help="Remote debugging port")
    parser.add_argument(
        "--no-launch",
        action="store_true",
        help="Attach to an already running client instead of launching it",
    )
    return parser.parse_args()


async def watch(port: int | None, launch: bool) -> None:
    settings = get_settings()
    if port is not None:
        settings = settings.model_copy(update={"DEBUG_PORT": port})

    client = await connect(settings, launch=launch)
    for kind in EventKind:
        client.on(kind, lambda payload, kind=kind: logger.info(kind.value, **payload.model_dump(mode="json")))

    try:
        await asyncio.Event().wait()
    finally:
        await client.close()


def main() -> int:
    args = parse_args()
    configure_structlog()
    try:
        asyncio.run(watch(args.port, launch=not args.no_launch))
    except KeyboardInterrupt:
        return 0
    except BridgeError as exc:
        logger.error("watch_failed", error=str(exc))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
