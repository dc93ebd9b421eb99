"""Per-meeting state machine joining call starts with call details.

A call start notification arrives first and carries no meeting data. Some
time later the same resource is updated with a ``meeting`` property holding
the title, join URL and organizer. Only an update arriving within the
correlation window (60s) of the start is treated as a new meeting; anything
later is most likely an unrelated edit of an old call and is dropped.

States per id: absent -> pending -> resolved -> absent. Pending entries
expire lazily: they are checked against the clock whenever they are touched
and swept when a new start is registered.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from src.teams_bridge.config import Settings, get_settings
from src.teams_bridge.schemas import ChannelRef, Meeting

logger = structlog.get_logger(__name__)


@dataclass
class MeetingCache:
    """Correlation state owned by one MeetingCorrelator.

    Attributes:
        pending: Resource id -> start timestamp (epoch seconds).
        resolved: Meeting id -> (announced meeting, resolution timestamp).
    """

    pending: dict[str, float] = field(default_factory=dict)
    resolved: dict[str, tuple[Meeting, float]] = field(default_factory=dict)


class MeetingCorrelator:
    """Correlates call notifications into meeting lifecycle events.

    Args:
        settings: Source of the correlation window and resolved-meeting TTL.
        clock: Returns the current time in epoch seconds.
        cache: State to operate on; a fresh one is created if omitted.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
        cache: MeetingCache | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._window = settings.MEETING_CORRELATION_WINDOW_SECONDS
        self._resolved_ttl = settings.RESOLVED_MEETING_TTL_SECONDS
        self._clock = clock
        self._cache = cache if cache is not None else MeetingCache()

    @property
    def cache(self) -> MeetingCache:
        return self._cache

    def is_pending(self, resource_id: str) -> bool:
        return resource_id in self._cache.pending

    def is_resolved(self, meeting_id: str) -> bool:
        return meeting_id in self._cache.resolved

    def start(self, resource_id: str, started_at: float | None = None) -> None:
        """Register a call start (absent -> pending).

        Args:
            resource_id: Id of the call event resource.
            started_at: Notification timestamp; defaults to now.
        """
        now = self._clock()
        self._sweep(now)
        self._cache.pending[resource_id] = started_at if started_at is not None else now
        logger.debug("meeting.pending", resource_id=resource_id)

    def detail(
        self,
        resource_id: str,
        meeting_id: str,
        channel: ChannelRef,
        properties: dict[str, Any] | None,
    ) -> Meeting | None:
        """Apply a call-detail update to a pending meeting.

        Args:
            resource_id: Id of the updated call event resource.
            meeting_id: Meeting id taken from the envelope.
            channel: Channel the call takes place in.
            properties: The resource's properties.

        Returns:
            The newly resolved Meeting, or None if the update did not resolve
            a pending meeting (unknown id, stale, or still missing details).
        """
        started_at = self._cache.pending.get(resource_id)
        if started_at is None:
            return None

        now = self._clock()
        if now - started_at > self._window:
            del self._cache.pending[resource_id]
            logger.info(
                "meeting.stale_update",
                resource_id=resource_id,
                age_seconds=round(now - started_at, 1),
            )
            return None

        if not isinstance(properties, dict):
            properties = {}
        description = self._parse_description(properties.get("meeting"))
        if description is None or not description.get("meetingJoinUrl"):
            return None

        del self._cache.pending[resource_id]
        meeting = Meeting(
            id=meeting_id,
            title=description.get("meetingtitle"),
            join_url=description["meetingJoinUrl"],
            started_by=description.get("organizerId"),
            channel=channel,
        )
        self._cache.resolved[meeting.id] = (meeting, now)
        logger.info(
            "meeting.resolved",
            meeting_id=meeting.id,
            channel_id=channel.id,
        )
        return meeting

    def end(self, *ids: str) -> Meeting | None:
        """Forget a meeting in whatever state it is (any -> absent).

        Args:
            ids: Meeting and/or resource ids the meeting may be stored under.

        Returns:
            The previously announced Meeting, if it had been resolved.
        """
        announced: Meeting | None = None
        for key in ids:
            self._cache.pending.pop(key, None)
            entry = self._cache.resolved.pop(key, None)
            if entry is not None and announced is None:
                announced = entry[0]
        return announced

    def _sweep(self, now: float) -> None:
        stale = [
            key for key, started_at in self._cache.pending.items()
            if now - started_at > self._window
        ]
        for key in stale:
            del self._cache.pending[key]

        expired = [
            key for key, (_, resolved_at) in self._cache.resolved.items()
            if now - resolved_at > self._resolved_ttl
        ]
        for key in expired:
            del self._cache.resolved[key]

        if stale or expired:
            logger.debug("meeting.swept", stale=len(stale), expired=len(expired))

    @staticmethod
    def _parse_description(raw: Any) -> dict[str, Any] | None:
        """Decode the meeting description property (JSON text or object)."""
        if isinstance(raw, dict):
            return raw
        if not isinstance(raw, str):
            return None
        try:
            description = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("meeting.description_unparsable")
            return None
        return description if isinstance(description, dict) else None
