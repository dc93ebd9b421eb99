"""Authenticated outbound calls to the chat service.

Every call first obtains a valid API credential from the CredentialManager,
then opens its own httpx.AsyncClient for the request. Failures are mapped to
typed errors and surfaced to the caller; nothing here retries.
"""

from __future__ import annotations

import random
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
import structlog

from src.teams_bridge.config import Settings, get_settings
from src.teams_bridge.core.http import http_errors, raise_for_status
from src.teams_bridge.schemas import SentMessage

if TYPE_CHECKING:
    from src.teams_bridge.auth.credentials import CredentialManager

logger = structlog.get_logger(__name__)

HTML_MESSAGE_TYPE = "RichText/Html"


def new_client_message_id() -> str:
    """Client-assigned id used to match a send with its inbound echo."""
    return str(random.randint(10**18, 10**19 - 1))


class ApiGateway:
    """Sends and edits messages on behalf of the signed-in user.

    Args:
        credentials: CredentialManager supplying the API credential.
        settings: Source of the service URL, timeout and display name.
    """

    def __init__(
        self,
        credentials: CredentialManager,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._credentials = credentials
        self._base_url = settings.CHAT_SERVICE_URL.rstrip("/")
        self._timeout = settings.HTTP_TIMEOUT_SECONDS
        self._display_name = settings.BOT_DISPLAY_NAME

    def _messages_url(self, channel_id: str, message_id: str | None = None) -> str:
        url = f"{self._base_url}/v1/users/ME/conversations/{quote(channel_id, safe=':@.')}/messages"
        if message_id is not None:
            url = f"{url}/{quote(message_id, safe='')}"
        return url

    async def _headers(self) -> dict[str, str]:
        credential = await self._credentials.ensure_credential()
        return {
            "Authentication": f"skypetoken={credential.token}",
            "Content-Type": "application/json",
        }

    def _body(self, html: str, client_message_id: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "content": html,
            "messagetype": HTML_MESSAGE_TYPE,
            "contenttype": "text",
            "clientmessageid": client_message_id,
        }
        if self._display_name:
            body["imdisplayname"] = self._display_name
        return body

    async def send_message(self, channel_id: str, html: str) -> SentMessage:
        """Post an HTML message to a channel or chat.

        Args:
            channel_id: Thread id of the channel or chat.
            html: Message content.

        Returns:
            SentMessage with the server id and the client message id.

        Raises:
            CredentialUnavailableError: If no API credential could be obtained.
            UnauthorizedError: On 401/403.
            RequestFailedError: On other failures.
            RequestTimeoutError: If the service did not answer in time.
        """
        headers = await self._headers()
        client_message_id = new_client_message_id()

        async with http_errors("send_message"):
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    self._messages_url(channel_id),
                    headers=headers,
                    json=self._body(html, client_message_id),
                )
        raise_for_status(response)

        data: dict[str, Any] = {}
        if response.content:
            try:
                parsed = response.json()
                data = parsed if isinstance(parsed, dict) else {}
            except ValueError:
                data = {}
        message_id = data.get("id") or data.get("OriginalArrivalTime")
        if message_id is None:
            location = response.headers.get("Location", "")
            message_id = location.rstrip("/").rsplit("/", 1)[-1] if location else ""

        logger.info(
            "api.message_sent",
            channel_id=channel_id,
            message_id=str(message_id),
            client_message_id=client_message_id,
        )
        return SentMessage(id=str(message_id), client_message_id=client_message_id)

    async def edit_message(
        self,
        channel_id: str,
        message_id: str,
        client_message_id: str,
        html: str,
    ) -> None:
        """Replace the content of a previously sent message.

        Raises:
            CredentialUnavailableError: If no API credential could be obtained.
            UnauthorizedError: On 401/403.
            RequestFailedError: On other failures.
            RequestTimeoutError: If the service did not answer in time.
        """
        headers = await self._headers()

        async with http_errors("edit_message"):
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.put(
                    self._messages_url(channel_id, message_id),
                    headers=headers,
                    json=self._body(html, client_message_id),
                )
        raise_for_status(response)

        logger.info(
            "api.message_edited",
            channel_id=channel_id,
            message_id=message_id,
        )
