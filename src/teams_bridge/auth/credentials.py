"""Single-flight manager for the refresh/API credential pair.

The refresh credential lives inside the desktop client and is extracted
over the devtools session. The short-lived API credential is derived from
it through an HTTP exchange. ensure_credential() returns a cached API
credential while it has more than the expiry margin (60s) left, and
otherwise runs at most one refresh at a time; concurrent callers all await
the same in-flight task.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Protocol

import structlog

from src.teams_bridge.config import Settings, get_settings
from src.teams_bridge.errors import BridgeError, CredentialUnavailableError
from src.teams_bridge.schemas import Credential, CredentialState

logger = structlog.get_logger(__name__)


class CredentialSource(Protocol):
    """Where credentials come from."""

    async def extract_refresh_credential(self) -> Credential: ...

    async def exchange(self, refresh: Credential) -> Credential: ...


class CredentialManager:
    """Owns the credential pair and coordinates refreshes.

    Args:
        source: Performs extraction and exchange.
        settings: Source of the expiry margin and extraction timeout.
        clock: Returns the current time in epoch seconds.
        state: Credential state to manage; a fresh one is created if omitted.
    """

    def __init__(
        self,
        source: CredentialSource,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
        state: CredentialState | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._source = source
        self._margin = settings.CREDENTIAL_EXPIRY_MARGIN_SECONDS
        self._extraction_timeout = settings.TOKEN_EXTRACTION_TIMEOUT_SECONDS
        self._clock = clock
        self._state = state if state is not None else CredentialState()
        self._inflight: asyncio.Task[Credential] | None = None

    @property
    def state(self) -> CredentialState:
        return self._state

    @property
    def refreshing(self) -> bool:
        return self._inflight is not None

    async def ensure_credential(self) -> Credential:
        """Return a valid API credential, refreshing it if needed.

        Returns immediately, without touching the network, when the cached
        API credential is still valid.

        Raises:
            CredentialUnavailableError: If extraction or exchange failed.
        """
        if self._inflight is not None:
            return await asyncio.shield(self._inflight)

        api = self._state.api
        if api is not None and api.is_valid(self._clock(), self._margin):
            return api

        return await self._begin(force_extract=False)

    async def prime(self) -> Credential:
        """Extract a fresh refresh credential and derive a new API credential.

        Called whenever the devtools session becomes ready. Joins a refresh
        that is already in flight instead of starting another.

        Raises:
            CredentialUnavailableError: If extraction or exchange failed.
        """
        if self._inflight is not None:
            return await asyncio.shield(self._inflight)
        return await self._begin(force_extract=True)

    async def _begin(self, force_extract: bool) -> Credential:
        self._inflight = asyncio.ensure_future(self._refresh(force_extract))
        self._inflight.add_done_callback(self._refresh_done)
        return await asyncio.shield(self._inflight)

    @staticmethod
    def _refresh_done(task: asyncio.Task[Credential]) -> None:
        # Callers may all have been cancelled; the exception is consumed here.
        if not task.cancelled() and task.exception() is not None:
            logger.debug("credentials.refresh_failed", error=str(task.exception()))

    async def _refresh(self, force_extract: bool) -> Credential:
        try:
            refresh = self._state.refresh
            if (
                force_extract
                or refresh is None
                or not refresh.is_valid(self._clock(), self._margin)
            ):
                refresh = await self._extract()
                self._state.refresh = refresh

            api = await self._exchange(refresh)
            self._state.api = api
            logger.info("credentials.refreshed", api_expires_at=api.expires_at)
            return api
        finally:
            self._inflight = None

    async def _extract(self) -> Credential:
        try:
            refresh = await asyncio.wait_for(
                self._source.extract_refresh_credential(),
                timeout=self._extraction_timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning(
                "credentials.extraction_timeout",
                timeout_seconds=self._extraction_timeout,
            )
            raise CredentialUnavailableError("Refresh credential extraction timed out") from exc
        except CredentialUnavailableError:
            raise
        except BridgeError as exc:
            logger.warning("credentials.extraction_failed", error=str(exc))
            raise CredentialUnavailableError(f"Refresh credential extraction failed: {exc}") from exc

        if not refresh.is_valid(self._clock(), self._margin):
            raise CredentialUnavailableError("Extracted refresh credential is already expiring")
        logger.info("credentials.extracted", refresh_expires_at=refresh.expires_at)
        return refresh

    async def _exchange(self, refresh: Credential) -> Credential:
        try:
            return await self._source.exchange(refresh)
        except CredentialUnavailableError:
            raise
        except BridgeError as exc:
            logger.warning("credentials.exchange_failed", error=str(exc))
            raise CredentialUnavailableError(f"API credential exchange failed: {exc}") from exc
