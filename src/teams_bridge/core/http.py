"""Shared httpx helpers: status and transport-failure mapping to BridgeErrors."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import structlog

from src.teams_bridge.errors import RequestFailedError, RequestTimeoutError, UnauthorizedError

logger = structlog.get_logger(__name__)


def raise_for_status(response: httpx.Response) -> None:
    """Map a non-success response to a typed error.

    Raises:
        UnauthorizedError: On 401 or 403.
        RequestFailedError: On any other status >= 300.
    """
    status = response.status_code
    if status < 300:
        return
    if status in (401, 403):
        raise UnauthorizedError(
            f"{response.request.method} {response.request.url.path} rejected ({status})",
            status_code=status,
        )
    raise RequestFailedError(
        f"{response.request.method} {response.request.url.path} failed ({status})",
        status_code=status,
    )


@asynccontextmanager
async def http_errors(operation: str) -> AsyncIterator[None]:
    """Translate httpx transport exceptions raised inside the block."""
    try:
        yield
    except httpx.TimeoutException as exc:
        logger.warning("http.timeout", operation=operation)
        raise RequestTimeoutError(f"{operation} timed out") from exc
    except httpx.HTTPError as exc:
        logger.warning("http.transport_error", operation=operation, error=str(exc))
        raise RequestFailedError(f"{operation} failed: {exc}") from exc
