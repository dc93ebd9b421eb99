"""Credential extraction and exchange.

The refresh credential is read out of the client's shared worker by
evaluating an expression over the devtools session. It is then exchanged
with the auth service for the API credential used on chat service calls.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from src.teams_bridge.core.http import http_errors, raise_for_status
from src.teams_bridge.config import Settings, get_settings
from src.teams_bridge.errors import CredentialUnavailableError
from src.teams_bridge.schemas import Credential

if TYPE_CHECKING:
    from src.teams_bridge.transport.session import TransportSession

logger = structlog.get_logger(__name__)

# Expiry values above this are milliseconds rather than seconds.
_MILLISECONDS_THRESHOLD = 10**11


class TokenSource:
    """Extracts and exchanges credentials.

    Args:
        session: Devtools session of the shared worker.
        settings: Source of the extraction expression and auth endpoint.
        clock: Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        session: TransportSession,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = settings or get_settings()
        self._session = session
        self._expression = settings.TOKEN_EXTRACTION_EXPRESSION
        self._authz_url = settings.AUTHZ_URL
        self._timeout = settings.HTTP_TIMEOUT_SECONDS
        self._clock = clock

    async def extract_refresh_credential(self) -> Credential:
        """Evaluate the extraction expression inside the shared worker.

        Raises:
            CredentialUnavailableError: If the expression threw or returned
                no usable token.
            ConnectionLostError: If the session closed meanwhile.
        """
        result = await self._session.request(
            "Runtime.evaluate",
            {"expression": self._expression, "returnByValue": True},
        )
        if result.get("exceptionDetails"):
            raise CredentialUnavailableError("Token extraction expression threw")

        value: Any = (result.get("result") or {}).get("value")
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise CredentialUnavailableError("Token extraction returned invalid JSON") from exc
        if not isinstance(value, dict) or not value.get("token"):
            raise CredentialUnavailableError("Token extraction returned no token")

        try:
            expires_at = float(value.get("expiresOn") or 0)
        except (TypeError, ValueError) as exc:
            raise CredentialUnavailableError("Token extraction returned an invalid expiry") from exc
        if expires_at > _MILLISECONDS_THRESHOLD:
            expires_at /= 1000.0
        return Credential(token=str(value["token"]), expires_at=expires_at)

    async def exchange(self, refresh: Credential) -> Credential:
        """Exchange the refresh credential for an API credential.

        Raises:
            UnauthorizedError: If the auth service rejected the refresh token.
            RequestFailedError: On other HTTP failures.
            RequestTimeoutError: If the auth service did not answer in time.
            CredentialUnavailableError: If the response carried no token.
        """
        async with http_errors("credential_exchange"):
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    self._authz_url,
                    headers={"Authorization": f"Bearer {refresh.token}"},
                )
        raise_for_status(response)

        try:
            tokens = response.json().get("tokens") or {}
            token = tokens["skypeToken"]
            expires_in = float(tokens.get("expiresIn", 0))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise CredentialUnavailableError("Credential exchange returned no token") from exc

        logger.debug("credentials.exchanged", expires_in=expires_in)
        return Credential(token=str(token), expires_at=self._clock() + expires_in)
