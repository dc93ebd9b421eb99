"""Tests for CredentialManager.

Covers:
- Cached API credential returned without any await
- Single-flight refresh shared by concurrent callers
- Refresh credential reuse vs. re-extraction
- Extraction timeout and failure mapping, state left untouched
- prime() forcing a fresh extraction
"""

from __future__ import annotations

import asyncio
import gc
from unittest.mock import AsyncMock

import pytest

from src.teams_bridge.auth.credentials import CredentialManager
from src.teams_bridge.errors import (
    CommandFailedError,
    ConnectionLostError,
    CredentialUnavailableError,
    UnauthorizedError,
)
from src.teams_bridge.schemas import Credential, CredentialState
from tests.fakes import wait_until


def _source(clock, extract_delay: float = 0.0, exchange_delay: float = 0.0):
    """Credential source returning fresh credentials relative to the clock."""
    source = AsyncMock()
    extracted: list[Credential] = []
    exchanged: list[Credential] = []

    async def extract():
        await asyncio.sleep(extract_delay)
        credential = Credential(token=f"refresh-{len(extracted)}", expires_at=clock.now + 3600)
        extracted.append(credential)
        return credential

    async def exchange(refresh):
        await asyncio.sleep(exchange_delay)
        credential = Credential(token=f"api-{len(exchanged)}", expires_at=clock.now + 600)
        exchanged.append(credential)
        return credential

    source.extract_refresh_credential = AsyncMock(side_effect=extract)
    source.exchange = AsyncMock(side_effect=exchange)
    return source


@pytest.fixture
def source(clock):
    return _source(clock)


@pytest.fixture
def manager(source, settings, clock):
    return CredentialManager(source, settings, clock=clock)


# ── Cached Credential ───────────────────────────────────────────────────────


class TestCached:
    def test_valid_credential_returns_without_awaiting(self, source, settings, clock):
        api = Credential(token="api", expires_at=clock.now + 600)
        manager = CredentialManager(
            source, settings, clock=clock, state=CredentialState(api=api)
        )

        coro = manager.ensure_credential()
        with pytest.raises(StopIteration) as exc_info:
            coro.send(None)

        assert exc_info.value.value is api
        source.extract_refresh_credential.assert_not_called()
        source.exchange.assert_not_called()

    @pytest.mark.asyncio
    async def test_credential_inside_margin_is_refreshed(self, source, settings, clock):
        api = Credential(token="api-old", expires_at=clock.now + 30)
        refresh = Credential(token="refresh-old", expires_at=clock.now + 3600)
        manager = CredentialManager(
            source, settings, clock=clock, state=CredentialState(refresh=refresh, api=api)
        )

        credential = await manager.ensure_credential()

        assert credential.token == "api-0"
        source.extract_refresh_credential.assert_not_called()
        source.exchange.assert_awaited_once_with(refresh)

    @pytest.mark.asyncio
    async def test_expiring_refresh_credential_is_re_extracted(self, source, settings, clock):
        refresh = Credential(token="refresh-old", expires_at=clock.now + 10)
        manager = CredentialManager(
            source, settings, clock=clock, state=CredentialState(refresh=refresh)
        )

        await manager.ensure_credential()

        source.extract_refresh_credential.assert_awaited_once()
        assert manager.state.refresh.token == "refresh-0"


# ── Single Flight ───────────────────────────────────────────────────────────


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, settings, clock):
        source = _source(clock, extract_delay=0.02, exchange_delay=0.02)
        manager = CredentialManager(source, settings, clock=clock)

        results = await asyncio.gather(*(manager.ensure_credential() for _ in range(10)))

        assert source.extract_refresh_credential.await_count == 1
        assert source.exchange.await_count == 1
        assert {credential.token for credential in results} == {"api-0"}
        assert manager.state.api.token == "api-0"
        assert not manager.refreshing

    @pytest.mark.asyncio
    async def test_prime_joins_inflight_refresh(self, settings, clock):
        source = _source(clock, extract_delay=0.02)
        manager = CredentialManager(source, settings, clock=clock)

        first, second = await asyncio.gather(manager.ensure_credential(), manager.prime())

        assert first is second
        assert source.extract_refresh_credential.await_count == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_refresh(self, settings, clock):
        source = _source(clock, extract_delay=0.05)
        manager = CredentialManager(source, settings, clock=clock)

        waiter = asyncio.create_task(manager.ensure_credential())
        await asyncio.sleep(0.01)
        waiter.cancel()

        credential = await manager.ensure_credential()
        assert credential.token == "api-0"
        assert source.extract_refresh_credential.await_count == 1

    @pytest.mark.asyncio
    async def test_subsequent_call_uses_cache(self, manager, source):
        await manager.ensure_credential()
        await manager.ensure_credential()
        assert source.exchange.await_count == 1


# ── Failures ────────────────────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.asyncio
    async def test_extraction_timeout(self, settings, clock):
        source = _source(clock, extract_delay=10)
        manager = CredentialManager(source, settings, clock=clock)

        with pytest.raises(CredentialUnavailableError):
            await manager.ensure_credential()

        assert manager.state == CredentialState()
        assert not manager.refreshing

    @pytest.mark.asyncio
    async def test_failure_leaves_previous_state(self, source, settings, clock):
        old_api = Credential(token="api-old", expires_at=clock.now + 5)
        manager = CredentialManager(
            source, settings, clock=clock, state=CredentialState(api=old_api)
        )
        source.extract_refresh_credential.side_effect = ConnectionLostError("closed")

        with pytest.raises(CredentialUnavailableError):
            await manager.ensure_credential()

        assert manager.state.api is old_api
        assert manager.state.refresh is None

    @pytest.mark.asyncio
    async def test_command_failure_is_wrapped(self, manager, source):
        source.extract_refresh_credential.side_effect = CommandFailedError(
            "Runtime.evaluate", {"message": "no context"}
        )
        with pytest.raises(CredentialUnavailableError, match="extraction failed"):
            await manager.ensure_credential()

    @pytest.mark.asyncio
    async def test_expiring_extracted_credential_is_rejected(self, manager, source, clock):
        source.extract_refresh_credential.side_effect = None
        source.extract_refresh_credential.return_value = Credential(
            token="refresh", expires_at=clock.now + 5
        )
        with pytest.raises(CredentialUnavailableError, match="expiring"):
            await manager.ensure_credential()
        source.exchange.assert_not_called()

    @pytest.mark.asyncio
    async def test_exchange_rejection_is_wrapped(self, manager, source):
        source.exchange.side_effect = UnauthorizedError("rejected", status_code=401)

        with pytest.raises(CredentialUnavailableError) as exc_info:
            await manager.ensure_credential()

        assert isinstance(exc_info.value.__cause__, UnauthorizedError)
        assert manager.state.api is None
        assert manager.state.refresh is not None

    @pytest.mark.asyncio
    async def test_concurrent_callers_all_see_failure(self, settings, clock):
        source = _source(clock, extract_delay=0.02)
        source.exchange.side_effect = UnauthorizedError("rejected", status_code=401)
        manager = CredentialManager(source, settings, clock=clock)

        results = await asyncio.gather(
            *(manager.ensure_credential() for _ in range(3)), return_exceptions=True
        )

        assert all(isinstance(result, CredentialUnavailableError) for result in results)
        assert source.exchange.await_count == 1

    @pytest.mark.asyncio
    async def test_retry_after_failure_starts_new_refresh(self, manager, source, clock):
        source.exchange.side_effect = UnauthorizedError("rejected", status_code=401)
        with pytest.raises(CredentialUnavailableError):
            await manager.ensure_credential()
        assert not manager.refreshing

        source.exchange.side_effect = None
        source.exchange.return_value = Credential(token="api-new", expires_at=clock.now + 600)
        credential = await manager.ensure_credential()

        assert credential.token == "api-new"
        assert source.extract_refresh_credential.await_count == 1


    @pytest.mark.asyncio
    async def test_abandoned_refresh_failure_is_not_reported_unretrieved(self, settings, clock):
        loop = asyncio.get_running_loop()
        reported: list[dict] = []
        previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(lambda _loop, context: reported.append(context))

        source = _source(clock)

        async def failing_extract():
            await asyncio.sleep(0.02)
            raise ConnectionLostError("closed")

        source.extract_refresh_credential.side_effect = failing_extract
        manager = CredentialManager(source, settings, clock=clock)
        try:
            waiter = asyncio.create_task(manager.prime())
            await asyncio.sleep(0.005)
            waiter.cancel()
            await wait_until(lambda: not manager.refreshing)
            await asyncio.sleep(0)
            gc.collect()
        finally:
            loop.set_exception_handler(previous_handler)

        assert waiter.cancelled()
        assert reported == []


# ── Priming ─────────────────────────────────────────────────────────────────


class TestPrime:
    @pytest.mark.asyncio
    async def test_prime_always_extracts(self, source, settings, clock):
        refresh = Credential(token="refresh-old", expires_at=clock.now + 3600)
        api = Credential(token="api-old", expires_at=clock.now + 600)
        manager = CredentialManager(
            source, settings, clock=clock, state=CredentialState(refresh=refresh, api=api)
        )

        credential = await manager.prime()

        source.extract_refresh_credential.assert_awaited_once()
        assert manager.state.refresh.token == "refresh-0"
        assert credential.token == "api-0"
