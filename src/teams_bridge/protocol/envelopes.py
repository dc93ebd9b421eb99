"""Routes decoded envelopes to typed events.

An envelope carries a ``resourceType`` (NewMessage, MessageUpdate, ...) and
a ``resource`` whose ``messagetype`` says what the resource is (Event/Call,
RichText/Html, Control/Typing, ...). Call events go through the
MeetingCorrelator; message and typing resources map directly to events.
Unknown resource or message types are ignored so that protocol drift never
breaks the receive loop.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError

from src.teams_bridge.config import Settings, get_settings
from src.teams_bridge.meetings.correlator import MeetingCorrelator
from src.teams_bridge.protocol.participants import parse_participants
from src.teams_bridge.schemas import (
    ChannelKind,
    ChannelRef,
    ClientEvent,
    EventKind,
    Meeting,
    Message,
    TypingIndicator,
    UserRef,
)

logger = structlog.get_logger(__name__)

NEW_ITEM = "NewMessage"
UPDATE_ITEM = "MessageUpdate"

CALL_EVENT = "Event/Call"
TYPING = "Control/Typing"
MESSAGE_TYPES = frozenset({"Text", "RichText", "RichText/Html"})

CALL_ENDED_MARKER = "<ended/>"


def _last_segment(value: Any) -> str | None:
    if not isinstance(value, str) or not value:
        return None
    return value.rstrip("/").rsplit("/", 1)[-1]


def _parse_time(value: Any) -> float | None:
    """Parse an ISO-8601 envelope timestamp into epoch seconds."""
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def _properties(resource: dict[str, Any]) -> dict[str, Any]:
    properties = resource.get("properties")
    return properties if isinstance(properties, dict) else {}


def _parse_reactions(raw: Any) -> dict[str, set[str]]:
    """Build the reaction map from the ``emotions`` property.

    The property is a JSON list (sometimes still encoded as text) of
    ``{"key": "<reaction>", "users": [{"mri": "<user id>"}, ...]}``.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return {}
    if not isinstance(raw, list):
        return {}

    reactions: dict[str, set[str]] = {}
    for emotion in raw:
        if not isinstance(emotion, dict) or not emotion.get("key"):
            continue
        users = {
            user["mri"]
            for user in emotion.get("users") or []
            if isinstance(user, dict) and user.get("mri")
        }
        if users:
            reactions.setdefault(emotion["key"], set()).update(users)
    return reactions


class EnvelopeClassifier:
    """Turns decoded envelopes into ClientEvents.

    Args:
        correlator: Meeting correlator receiving call notifications.
        settings: Source of the bot identity prefix.
    """

    def __init__(
        self,
        correlator: MeetingCorrelator,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._correlator = correlator
        self._bot_prefix = settings.BOT_IDENTITY_PREFIX

    def classify(self, envelope: dict[str, Any]) -> list[ClientEvent]:
        """Classify one envelope.

        Args:
            envelope: Decoded envelope dict.

        Returns:
            Events to emit, in order; empty if the envelope is ignored.
        """
        resource = envelope.get("resource") if isinstance(envelope, dict) else None
        if not isinstance(resource, dict):
            return []

        resource_type = envelope.get("resourceType")
        message_type = resource.get("messagetype")

        try:
            if message_type == CALL_EVENT:
                return self._classify_call(envelope, resource, resource_type)
            if message_type in MESSAGE_TYPES:
                return self._classify_message(resource, resource_type)
            if message_type == TYPING and resource_type == NEW_ITEM:
                return [self._typing_event(resource)]
        except (AttributeError, KeyError, TypeError, ValueError, ValidationError):
            logger.warning(
                "envelope.unexpected_shape",
                resource_type=resource_type,
                message_type=message_type,
                exc_info=True,
            )
        return []

    # ── Calls ────────────────────────────────────────────────────────────────

    def _classify_call(
        self,
        envelope: dict[str, Any],
        resource: dict[str, Any],
        resource_type: Any,
    ) -> list[ClientEvent]:
        resource_id = str(resource["id"])
        meeting_id = str(resource.get("skypeguid") or resource_id)
        content = resource.get("content") or ""
        ended = isinstance(content, str) and CALL_ENDED_MARKER in content

        if resource_type == NEW_ITEM:
            if ended:
                return [self._ended_event(resource, meeting_id, resource_id)]
            self._correlator.start(resource_id, _parse_time(envelope.get("time")))
            return []

        if resource_type == UPDATE_ITEM:
            if ended and self._correlator.is_resolved(meeting_id):
                return [self._ended_event(resource, meeting_id, resource_id)]
            meeting = self._correlator.detail(
                resource_id,
                meeting_id,
                self._channel(resource),
                _properties(resource),
            )
            if meeting is not None:
                return [ClientEvent(kind=EventKind.NEW_MEETING, payload=meeting)]
        return []

    def _ended_event(
        self, resource: dict[str, Any], meeting_id: str, resource_id: str
    ) -> ClientEvent:
        announced = self._correlator.end(meeting_id, resource_id)
        meeting = Meeting(
            id=meeting_id,
            title=announced.title if announced else None,
            join_url=announced.join_url if announced else None,
            started_by=announced.started_by if announced else None,
            channel=self._channel(resource),
            participants=parse_participants(resource.get("content") or "", self._bot_prefix),
        )
        logger.info(
            "meeting.ended",
            meeting_id=meeting.id,
            participants=len(meeting.participants),
            announced=announced is not None,
        )
        return ClientEvent(kind=EventKind.MEETING_ENDED, payload=meeting)

    # ── Messages ─────────────────────────────────────────────────────────────

    def _classify_message(
        self, resource: dict[str, Any], resource_type: Any
    ) -> list[ClientEvent]:
        properties = _properties(resource)

        if resource_type == NEW_ITEM:
            return [ClientEvent(kind=EventKind.NEW_MESSAGE, payload=self._message(resource))]

        if resource_type == UPDATE_ITEM:
            if properties.get("deletetime"):
                return [
                    ClientEvent(kind=EventKind.MESSAGE_DELETED, payload=self._message(resource))
                ]
            message = self._message(resource)
            message.reactions = _parse_reactions(properties.get("emotions"))
            return [ClientEvent(kind=EventKind.MESSAGE_EDITED, payload=message)]
        return []

    def _message(self, resource: dict[str, Any]) -> Message:
        client_message_id = resource.get("clientmessageid")
        return Message(
            id=str(resource["id"]),
            content=resource.get("content"),
            user=UserRef(id=self._sender(resource), name=resource.get("imdisplayname")),
            channel=self._channel(resource),
            client_message_id=str(client_message_id) if client_message_id else None,
        )

    def _typing_event(self, resource: dict[str, Any]) -> ClientEvent:
        indicator = TypingIndicator(
            user_id=self._sender(resource),
            channel=self._channel(resource),
        )
        return ClientEvent(kind=EventKind.CHAT_USER_TYPING, payload=indicator)

    # ── Field extraction ─────────────────────────────────────────────────────

    @staticmethod
    def _sender(resource: dict[str, Any]) -> str:
        sender = _last_segment(resource.get("from"))
        if not sender:
            raise ValueError("resource has no sender")
        return sender

    @staticmethod
    def _channel(resource: dict[str, Any]) -> ChannelRef:
        channel_id = _last_segment(resource.get("conversationLink")) or resource.get("to")
        if not channel_id:
            raise ValueError("resource has no channel")

        thread_type = resource.get("threadtype")
        kind = (
            ChannelKind(thread_type)
            if thread_type in (ChannelKind.CHAT.value, ChannelKind.TOPIC.value)
            else None
        )
        return ChannelRef(id=str(channel_id), kind=kind, title=resource.get("threadtopic"))
