"""TeamsClient facade and the connect() entry point.

Wires the transport session, frame decoder, envelope classifier, meeting
correlator, credential manager and API gateway of one client instance.
Every instance owns its own state, so several clients can run side by side.

Usage:
    client = await connect()
    client.on(EventKind.NEW_MEETING, announce)
    await client.send_message(channel_id, "<p>hello</p>")
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.teams_bridge.api.gateway import ApiGateway
from src.teams_bridge.auth.credentials import CredentialManager
from src.teams_bridge.auth.exchange import TokenSource
from src.teams_bridge.config import Settings, get_settings
from src.teams_bridge.errors import MalformedFrameError
from src.teams_bridge.events import EventDispatcher, Handler
from src.teams_bridge.meetings.correlator import MeetingCorrelator
from src.teams_bridge.protocol.envelopes import EnvelopeClassifier
from src.teams_bridge.protocol.frames import FrameDecoder
from src.teams_bridge.schemas import Credential, EventKind, SentMessage
from src.teams_bridge.transport.discovery import (
    discover_target,
    launch_client,
    resolve_executable,
)
from src.teams_bridge.transport.session import TransportSession

logger = structlog.get_logger(__name__)


class TeamsClient:
    """Typed events and messaging over the desktop client's devtools session.

    Args:
        target_url: Debugger websocket URL of the shared worker.
        settings: Bridge settings.
        connect: Websocket connect coroutine function (tests inject fakes).
        clock: Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        target_url: str,
        settings: Settings | None = None,
        *,
        connect: Callable[..., Awaitable[Any]] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = settings or get_settings()
        self.events = EventDispatcher()
        self.session = TransportSession(target_url, settings, connect=connect)
        self.decoder = FrameDecoder(settings)
        self.correlator = MeetingCorrelator(settings, clock=clock)
        self.classifier = EnvelopeClassifier(self.correlator, settings)
        self.credentials = CredentialManager(
            TokenSource(self.session, settings, clock=clock),
            settings,
            clock=clock,
        )
        self.gateway = ApiGateway(self.credentials, settings)
        self._run_task: asyncio.Task[None] | None = None

        self.session.add_frame_listener(self.handle_frame)
        self.session.add_ready_listener(self.credentials.prime)

    # ── Events ───────────────────────────────────────────────────────────────

    def on(self, kind: EventKind, handler: Handler | None = None) -> Any:
        """Register a handler for an event kind (decorator form supported)."""
        return self.events.on(kind, handler)

    def off(self, kind: EventKind, handler: Handler) -> None:
        self.events.off(kind, handler)

    def handle_frame(self, frame: str) -> None:
        """Decode, classify and dispatch one captured frame."""
        try:
            envelope = self.decoder.decode(frame)
        except MalformedFrameError as exc:
            logger.warning("frame.malformed", error=str(exc), size=len(frame))
            return
        if envelope is None:
            return
        for event in self.classifier.classify(envelope):
            self.events.emit(event)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the devtools session in the background."""
        if self._run_task is None or self._run_task.done():
            self._run_task = asyncio.create_task(self.session.run())

    async def close(self) -> None:
        """Stop the session and wait for running handlers."""
        await self.session.stop()
        if self._run_task is not None:
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
            self._run_task = None
        await self.events.drain()

    async def __aenter__(self) -> TeamsClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ── Outbound ─────────────────────────────────────────────────────────────

    async def ensure_credential(self) -> Credential:
        return await self.credentials.ensure_credential()

    async def send_message(self, channel_id: str, html: str) -> SentMessage:
        return await self.gateway.send_message(channel_id, html)

    async def edit_message(
        self,
        channel_id: str,
        message_id: str,
        client_message_id: str,
        html: str,
    ) -> None:
        await self.gateway.edit_message(channel_id, message_id, client_message_id, html)


async def connect(settings: Settings | None = None, *, launch: bool = True) -> TeamsClient:
    """Launch the desktop client, find its shared worker and start a TeamsClient.

    Args:
        settings: Bridge settings; defaults to get_settings().
        launch: Spawn CLIENT_EXECUTABLE first. With False (or no executable
            configured) an already running client is expected on DEBUG_PORT.

    Raises:
        TargetNotFoundError: If the shared worker target is not listed.
    """
    settings = settings or get_settings()

    if launch and settings.CLIENT_EXECUTABLE:
        await launch_client(
            resolve_executable(settings.CLIENT_EXECUTABLE),
            settings.DEBUG_PORT,
            startup_delay=settings.STARTUP_DELAY_SECONDS,
        )

    target = await discover_target(
        settings.DEBUG_PORT,
        target_type=settings.TARGET_TYPE,
        url_marker=settings.TARGET_URL_MARKER,
        timeout=settings.DISCOVERY_TIMEOUT_SECONDS,
    )
    client = TeamsClient(target.websocket_url, settings)
    await client.start()
    return client
