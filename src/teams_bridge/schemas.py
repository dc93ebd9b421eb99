"""Pydantic v2 schemas for the bridge's event and credential domain.

Defines the typed payloads delivered to subscribers (meetings, messages,
typing indicators), the credential pair used for outbound calls, and the
small enumerations shared by the protocol and policy layers.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

from pydantic import BaseModel, Field


# ── Enums ────────────────────────────────────────────────────────────────────


class EventKind(str, Enum):
    """Events emitted by TeamsClient."""

    NEW_MEETING = "new_meeting"
    MEETING_ENDED = "meeting_ended"
    NEW_MESSAGE = "new_message"
    MESSAGE_EDITED = "message_edited"
    MESSAGE_DELETED = "message_deleted"
    CHAT_USER_TYPING = "chat_user_typing"


class ChannelKind(str, Enum):
    """Thread type of a channel. A topic is a conversation in a team channel."""

    CHAT = "chat"
    TOPIC = "topic"


class Reaction(str, Enum):
    """Reaction keys as they appear in a message's reaction map."""

    YES = "yes"
    LIKE = "yes"
    HEART = "heart"
    LAUGH = "laugh"
    SURPRISED = "surprised"
    GRINNING_FACE_BIG_EYES = "grinningfacewithbigeyes"


# ── Channel & User References ────────────────────────────────────────────────


class ChannelRef(BaseModel):
    """A team-channel thread or a chat thread, identified by its thread id."""

    id: str
    kind: ChannelKind | None = None
    title: str | None = None


class UserRef(BaseModel):
    id: str
    name: str | None = None


class Participant(BaseModel):
    """A user who took part in a call."""

    id: str
    name: str


# ── Event Payloads ───────────────────────────────────────────────────────────


class Meeting(BaseModel):
    """A meeting held in a channel.

    Participants are only known once the meeting has ended.
    """

    id: str
    title: str | None = None
    join_url: str | None = None
    started_by: str | None = None
    channel: ChannelRef
    participants: list[Participant] = Field(default_factory=list)


class Message(BaseModel):
    """A chat or channel message.

    ``reactions`` maps a reaction key (see Reaction) to the ids of the users
    who reacted; it is only populated on MESSAGE_EDITED.
    """

    id: str
    content: str | None = None
    user: UserRef
    channel: ChannelRef
    client_message_id: str | None = None
    reactions: dict[str, set[str]] = Field(default_factory=dict)


class TypingIndicator(BaseModel):
    """Someone is typing in a chat.

    There is no matching "stopped typing" event; the desktop client shows the
    indicator for 20s unless a message from the same user arrives first.
    """

    user_id: str
    channel: ChannelRef


EventPayload = Union[Meeting, Message, TypingIndicator]


class ClientEvent(BaseModel):
    """A typed event ready for dispatch."""

    kind: EventKind
    payload: EventPayload


class SentMessage(BaseModel):
    """Result of sending a message.

    ``client_message_id`` matches the inbound NEW_MESSAGE echo of the send.
    """

    id: str
    client_message_id: str


# ── Credentials ──────────────────────────────────────────────────────────────


class Credential(BaseModel):
    """A bearer token with an absolute expiry in epoch seconds."""

    token: str
    expires_at: float

    def is_valid(self, now: float, margin: float = 60.0) -> bool:
        """True if the token is still usable for at least ``margin`` seconds."""
        return self.expires_at - now > margin

    def __repr__(self) -> str:
        return f"Credential(token=<redacted>, expires_at={self.expires_at})"

    __str__ = __repr__


@dataclass
class CredentialState:
    """The refresh/API credential pair owned by one CredentialManager."""

    refresh: Credential | None = None
    api: Credential | None = None
