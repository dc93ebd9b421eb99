"""Decoder for frames captured off the client's notification socket.

A payload-carrying frame looks like ``3:::{"id": ..., "body": "<json>"}``:
a marker, a fixed number of colon-delimited metadata fields, then a JSON
object whose ``body`` is itself JSON text holding the envelope. The prefix
layout was derived by observation; marker, delimiter and field count are
configurable.
"""

from __future__ import annotations

import json
from typing import Any

import structlog

from src.teams_bridge.config import Settings, get_settings
from src.teams_bridge.errors import MalformedFrameError

logger = structlog.get_logger(__name__)


class FrameDecoder:
    """Extracts envelope dicts from raw frame text.

    Args:
        settings: Source of the frame prefix constants.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._marker = settings.FRAME_MARKER
        self._delimiter = settings.FRAME_DELIMITER
        self._prefix_fields = settings.FRAME_PREFIX_FIELDS

    def strip_prefix(self, frame: str) -> str:
        """Return everything after the configured number of delimiters.

        A frame with fewer delimiters yields an empty string.
        """
        index = -1
        for _ in range(self._prefix_fields):
            index = frame.find(self._delimiter, index + 1)
            if index < 0:
                return ""
        return frame[index + 1:]

    def decode(self, frame: str) -> dict[str, Any] | None:
        """Decode one captured frame into its envelope.

        Args:
            frame: Raw frame text.

        Returns:
            The envelope dict, or None when the frame carries no payload
            (heartbeats, control frames, payloads without a body).

        Raises:
            MalformedFrameError: If the frame looks like a payload but its
                JSON or its nested body cannot be parsed.
        """
        if not isinstance(frame, str) or not frame.startswith(self._marker):
            return None

        raw_payload = self.strip_prefix(frame)
        if not raw_payload.startswith("{"):
            return None

        try:
            payload = json.loads(raw_payload)
        except json.JSONDecodeError as exc:
            raise MalformedFrameError(f"Invalid frame payload: {exc}", frame) from exc

        if not isinstance(payload, dict) or "body" not in payload:
            return None

        body = payload["body"]
        if isinstance(body, dict):
            return body
        try:
            envelope = json.loads(body)
        except (json.JSONDecodeError, TypeError) as exc:
            raise MalformedFrameError(f"Invalid frame body: {exc}", frame) from exc

        if not isinstance(envelope, dict):
            raise MalformedFrameError("Frame body is not a JSON object", frame)
        return envelope
