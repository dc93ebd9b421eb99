"""Devtools protocol session with the client's shared worker.

The session connects to the worker's debugger websocket, enables network
events, and forwards every captured ``Network.webSocketFrameReceived``
payload to the frame listeners. Commands sent with request() carry an
incrementing id and are resolved by the reply with the same id.

When the socket closes, outstanding requests fail with ConnectionLostError
and the session reconnects at once. Failed connection attempts back off
exponentially (tenacity), capped at RECONNECT_MAX_DELAY_SECONDS. After each
successful connect, and a warm-up delay that lets the worker finish
initialising, the ready listeners run (credential extraction).
"""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

import structlog
import websockets
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    wait_exponential,
)
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from src.teams_bridge.config import Settings, get_settings
from src.teams_bridge.errors import CommandFailedError, ConnectionLostError

logger = structlog.get_logger(__name__)

FRAME_RECEIVED = "Network.webSocketFrameReceived"
NETWORK_ENABLE = "Network.enable"

FrameListener = Callable[[str], None]
ReadyListener = Callable[[], Awaitable[Any]]


class SessionState(str, Enum):
    """Connection state of a TransportSession."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"


class TransportSession:
    """Owns the devtools websocket and its request table.

    Args:
        url: Debugger websocket URL of the target.
        settings: Source of the warm-up delay and reconnect cap.
        connect: Coroutine function opening the websocket; defaults to
            websockets.connect.
    """

    def __init__(
        self,
        url: str,
        settings: Settings | None = None,
        connect: Callable[..., Awaitable[Any]] | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._url = url
        self._connect = connect or websockets.connect
        self._warm_up_delay = settings.WARM_UP_DELAY_SECONDS
        self._max_reconnect_delay = settings.RECONNECT_MAX_DELAY_SECONDS

        self._state = SessionState.DISCONNECTED
        self._connection: Any = None
        self._ids = itertools.count(1)
        self._pending: dict[int, tuple[str, asyncio.Future[dict[str, Any]]]] = {}
        self._frame_listeners: list[FrameListener] = []
        self._ready_listeners: list[ReadyListener] = []
        self._warm_up_task: asyncio.Task[None] | None = None
        self._stopping = False
        self.connection_count = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    def add_frame_listener(self, listener: FrameListener) -> None:
        self._frame_listeners.append(listener)

    def add_ready_listener(self, listener: ReadyListener) -> None:
        self._ready_listeners.append(listener)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def run(self) -> None:
        """Connect and keep reconnecting until stop() is called."""
        self._stopping = False
        while not self._stopping:
            try:
                connection = await self._open()
            except RetryError:
                break
            await self._serve(connection)
        logger.info("session.stopped", url=self._url)

    async def stop(self) -> None:
        """Stop reconnecting and close the current connection."""
        self._stopping = True
        if self._connection is not None:
            await self._connection.close()

    def _stop_requested(self, retry_state: RetryCallState) -> bool:
        return self._stopping

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        logger.warning(
            "session.connect_failed",
            url=self._url,
            attempt=retry_state.attempt_number,
            error=str(outcome.exception()) if outcome else None,
            retry_in=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
        )

    async def _open(self) -> Any:
        self._state = SessionState.CONNECTING
        async for attempt in AsyncRetrying(
            stop=self._stop_requested,
            wait=wait_exponential(multiplier=0.5, max=self._max_reconnect_delay),
            retry=retry_if_exception_type((OSError, InvalidHandshake, asyncio.TimeoutError)),
            before_sleep=self._log_retry,
        ):
            with attempt:
                return await self._connect(self._url, max_size=None)
        raise RetryError(None)

    async def _serve(self, connection: Any) -> None:
        self._connection = connection
        self._state = SessionState.READY
        self.connection_count += 1
        logger.info("session.connected", url=self._url, connection=self.connection_count)

        reader = asyncio.create_task(self._read_loop(connection))
        try:
            try:
                await self.request(NETWORK_ENABLE)
            except (CommandFailedError, ConnectionLostError) as exc:
                logger.warning("session.network_enable_failed", error=str(exc))
            else:
                self._warm_up_task = asyncio.create_task(self._warm_up())
            await reader
        finally:
            reader.cancel()
            await self._teardown(connection)

    async def _teardown(self, connection: Any) -> None:
        self._state = SessionState.DISCONNECTED
        self._connection = None
        if self._warm_up_task is not None:
            self._warm_up_task.cancel()
            self._warm_up_task = None
        self._fail_pending()
        await connection.close()
        logger.info("session.disconnected", url=self._url, reconnecting=not self._stopping)

    async def _warm_up(self) -> None:
        await asyncio.sleep(self._warm_up_delay)
        for listener in self._ready_listeners:
            try:
                await listener()
            except Exception:
                logger.warning("session.ready_listener_failed", exc_info=True)

    # ── Requests ─────────────────────────────────────────────────────────────

    async def request(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send a devtools command and wait for its reply.

        Args:
            method: Devtools method, e.g. "Runtime.evaluate".
            params: Command parameters.

        Returns:
            The ``result`` object of the reply.

        Raises:
            ConnectionLostError: If not connected, or the socket closed
                before the reply arrived.
            CommandFailedError: If the reply carried an error.
        """
        connection = self._connection
        if connection is None or self._state is not SessionState.READY:
            raise ConnectionLostError(f"Cannot send {method}: session is {self._state.value}")

        request_id = next(self._ids)
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (method, future)
        try:
            await connection.send(
                json.dumps({"id": request_id, "method": method, "params": params or {}})
            )
            return await future
        except ConnectionClosed as exc:
            raise ConnectionLostError(f"Connection closed while sending {method}") from exc
        finally:
            self._pending.pop(request_id, None)

    def _fail_pending(self) -> None:
        pending, self._pending = self._pending, {}
        for method, future in pending.values():
            if not future.done():
                future.set_exception(ConnectionLostError(f"Connection lost awaiting {method}"))
        if pending:
            logger.warning("session.requests_failed", count=len(pending))

    # ── Inbound ──────────────────────────────────────────────────────────────

    async def _read_loop(self, connection: Any) -> None:
        try:
            async for raw in connection:
                try:
                    self.handle_message(raw)
                except Exception:
                    logger.warning("session.message_handling_failed", exc_info=True)
        except ConnectionClosed as exc:
            logger.warning("session.connection_closed", code=getattr(exc.rcvd, "code", None))
        finally:
            self._state = SessionState.DISCONNECTED
            self._fail_pending()

    def handle_message(self, raw: str | bytes) -> None:
        """Route one inbound devtools message."""
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
            logger.warning("session.invalid_message", size=len(raw) if raw else 0)
            return
        if not isinstance(message, dict):
            return

        if "id" in message:
            self._resolve(message)
        elif message.get("method") == FRAME_RECEIVED:
            params = message.get("params")
            response = params.get("response") if isinstance(params, dict) else None
            payload = response.get("payloadData") if isinstance(response, dict) else None
            if isinstance(payload, str):
                self._dispatch_frame(payload)

    def _resolve(self, message: dict[str, Any]) -> None:
        request_id = message["id"]
        if not isinstance(request_id, int) or isinstance(request_id, bool):
            logger.warning("session.invalid_reply_id", id_type=type(request_id).__name__)
            return
        entry = self._pending.get(request_id)
        if entry is None:
            return
        method, future = entry
        if future.done():
            return
        if "error" in message:
            error = message["error"] if isinstance(message["error"], dict) else {"message": str(message["error"])}
            future.set_exception(CommandFailedError(method, error))
        else:
            future.set_result(message.get("result") or {})

    def _dispatch_frame(self, frame: str) -> None:
        for listener in self._frame_listeners:
            try:
                listener(frame)
            except Exception:
                logger.warning("session.frame_listener_failed", exc_info=True)
