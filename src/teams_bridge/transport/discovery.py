"""Launching the desktop client and locating its shared worker.

The client is started with a remote debugging port. Its devtools HTTP
endpoint lists every debuggable target; the precompiled shared worker is
the one that owns the notification socket and holds the credentials.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from src.teams_bridge.core.http import http_errors, raise_for_status
from src.teams_bridge.errors import TargetNotFoundError

logger = structlog.get_logger(__name__)


class DebugTarget(BaseModel):
    """One entry of the devtools /json/list endpoint."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = ""
    type: str = ""
    title: str = ""
    url: str = ""
    websocket_url: str = Field("", alias="webSocketDebuggerUrl")


def resolve_executable(path: str) -> Path:
    """Absolute paths are used as-is, others are taken relative to home."""
    candidate = Path(path).expanduser()
    return candidate if candidate.is_absolute() else Path.home() / candidate


async def launch_client(
    executable: str | Path,
    port: int,
    startup_delay: float = 5.0,
) -> asyncio.subprocess.Process:
    """Start the desktop client with devtools enabled.

    Args:
        executable: Path to the client executable.
        port: Remote debugging port to expose.
        startup_delay: Seconds to wait for the client to initialise.

    Returns:
        The spawned process.
    """
    process = await asyncio.create_subprocess_exec(
        str(executable),
        f"--remote-debugging-port={port}",
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
    )
    logger.info("client.launched", pid=process.pid, port=port)
    await asyncio.sleep(startup_delay)
    return process


async def list_targets(port: int, timeout: float = 2.0) -> list[DebugTarget]:
    """Fetch the debuggable targets from the local devtools endpoint."""
    async with http_errors("list_targets"):
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(
                f"http://localhost:{port}/json/list",
                headers={"Accept": "application/json"},
            )
    raise_for_status(response)

    data = response.json()
    if not isinstance(data, list):
        return []
    return [DebugTarget.model_validate(item) for item in data if isinstance(item, dict)]


def select_target(
    targets: list[DebugTarget],
    target_type: str = "shared_worker",
    url_marker: str = "precompiled",
) -> DebugTarget:
    """Pick the first target of the given type whose url has the marker.

    Raises:
        TargetNotFoundError: If no target matches.
    """
    for target in targets:
        if target.type == target_type and url_marker in target.url and target.websocket_url:
            return target
    raise TargetNotFoundError(
        f"No {target_type} target with '{url_marker}' in its url among {len(targets)} targets"
    )


async def discover_target(
    port: int,
    target_type: str = "shared_worker",
    url_marker: str = "precompiled",
    timeout: float = 2.0,
) -> DebugTarget:
    """List targets on the devtools port and select the shared worker."""
    targets = await list_targets(port, timeout=timeout)
    target = select_target(targets, target_type, url_marker)
    logger.info("client.target_found", target_id=target.id, url=target.url)
    return target
