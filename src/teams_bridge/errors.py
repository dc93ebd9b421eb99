"""Exceptions raised by the bridge.

Only the caller-facing operations (sending and editing messages, ensuring a
credential) surface these to external code. Decoding errors are raised
inside the receive path and logged there; unknown envelopes and stale
meeting correlations are not errors at all.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge errors."""


class MalformedFrameError(BridgeError):
    """Raised when a captured frame looks like a payload but cannot be parsed.

    Attributes:
        frame: The raw frame text, truncated for logging.
    """

    def __init__(self, message: str, frame: str = "") -> None:
        self.frame = frame[:200]
        super().__init__(message)


class CredentialUnavailableError(BridgeError):
    """Raised when no valid API credential could be obtained."""


class ConnectionLostError(BridgeError):
    """Raised for devtools requests outstanding when the socket closed."""


class CommandFailedError(BridgeError):
    """Raised when the devtools endpoint answers a command with an error.

    Attributes:
        method: The devtools method that failed.
        error: The error object returned by the endpoint.
    """

    def __init__(self, method: str, error: dict) -> None:
        self.method = method
        self.error = error
        super().__init__(f"Devtools command '{method}' failed: {error.get('message', error)}")


class RequestFailedError(BridgeError):
    """Raised when an outbound API call fails.

    Attributes:
        status_code: HTTP status of the response, None for transport failures.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class UnauthorizedError(RequestFailedError):
    """Raised when an outbound API call is rejected with 401 or 403."""


class RequestTimeoutError(BridgeError):
    """Raised when an outbound API call times out."""


class TargetNotFoundError(BridgeError):
    """Raised when no debuggable target matches the discovery criteria."""
