"""Tokenizer for the participant list embedded in ended-call markup.

The call event content carries records such as::

    <partlist count="2">
      <part identity="8:orgid:abc"><name>8:orgid:abc</name>
        <displayName>Alice</displayName></part>
    </partlist>

Only the ``<part identity="...">`` opening tag, its ``<displayName>`` child
and the closing ``</part>`` are recognised. Anything else is skipped.
"""

from __future__ import annotations

import html
from collections.abc import Iterator

from src.teams_bridge.schemas import Participant

_PART_OPEN = "<part "
_PART_CLOSE = "</part>"
_IDENTITY_ATTR = 'identity="'
_NAME_OPEN = "<displayName>"
_NAME_CLOSE = "</displayName>"


def _iter_parts(markup: str) -> Iterator[str]:
    """Yield the text of each <part ...>...</part> record."""
    position = 0
    while True:
        start = markup.find(_PART_OPEN, position)
        if start < 0:
            return
        end = markup.find(_PART_CLOSE, start)
        if end < 0:
            return
        yield markup[start:end]
        position = end + len(_PART_CLOSE)


def _between(text: str, opening: str, closing: str) -> str | None:
    start = text.find(opening)
    if start < 0:
        return None
    start += len(opening)
    end = text.find(closing, start)
    if end < 0:
        return None
    return text[start:end]


def parse_participants(markup: str, bot_prefix: str = "28:") -> list[Participant]:
    """Extract participants from call markup.

    Records without an identity, and records whose identity starts with
    ``bot_prefix``, are left out. A record without a display name falls back
    to its identity.

    Args:
        markup: Content of the ended call event.
        bot_prefix: Identity prefix reserved for bots.

    Returns:
        Participants in document order.
    """
    participants: list[Participant] = []
    if not markup:
        return participants

    for record in _iter_parts(markup):
        tag_end = record.find(">")
        identity = _between(record[: tag_end + 1], _IDENTITY_ATTR, '"')
        if not identity:
            continue
        identity = html.unescape(identity)
        if bot_prefix and identity.startswith(bot_prefix):
            continue
        name = _between(record, _NAME_OPEN, _NAME_CLOSE)
        participants.append(
            Participant(id=identity, name=html.unescape(name) if name else identity)
        )
    return participants
