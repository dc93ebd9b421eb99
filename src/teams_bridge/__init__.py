"""Typed chat and meeting events from a desktop chat client's devtools session.

Exports:
    TeamsClient: Event subscription plus send/edit of messages.
    connect: Launch the client, locate its shared worker and start a TeamsClient.
    EventKind: Names of the events a TeamsClient emits.
    Reaction: Reaction keys found in a message's reaction map.
    Meeting, Message, TypingIndicator: Event payloads.
"""

from __future__ import annotations

from src.teams_bridge.schemas import (
    ChannelKind,
    ChannelRef,
    EventKind,
    Meeting,
    Message,
    Participant,
    Reaction,
    SentMessage,
    TypingIndicator,
    UserRef,
)

__all__ = [
    "ChannelKind",
    "ChannelRef",
    "EventKind",
    "Meeting",
    "Message",
    "Participant",
    "Reaction",
    "SentMessage",
    "TeamsClient",
    "TypingIndicator",
    "UserRef",
    "connect",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the client to keep schema imports light."""
    if name == "TeamsClient":
        from src.teams_bridge.client import TeamsClient

        return TeamsClient
    if name == "connect":
        from src.teams_bridge.client import connect

        return connect
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
