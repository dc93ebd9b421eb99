"""Shared fixtures for the bridge tests.

Provides:
- Settings with short delays suitable for tests
- A controllable clock
- Correlator and classifier instances with isolated state
- A fake websocket connector for the devtools session
"""

from __future__ import annotations

import pytest

from src.teams_bridge.config import Settings
from src.teams_bridge.meetings.correlator import MeetingCorrelator
from src.teams_bridge.protocol.envelopes import EnvelopeClassifier
from tests.fakes import FakeClock, FakeConnector


@pytest.fixture
def settings() -> Settings:
    """Settings with millisecond-scale delays."""
    return Settings(
        WARM_UP_DELAY_SECONDS=0.01,
        RECONNECT_MAX_DELAY_SECONDS=0.05,
        TOKEN_EXTRACTION_TIMEOUT_SECONDS=0.2,
        CHAT_SERVICE_URL="https://chat.example.com",
        AUTHZ_URL="https://auth.example.com/authz",
        HTTP_TIMEOUT_SECONDS=4.0,
        BOT_DISPLAY_NAME="",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def correlator(settings, clock) -> MeetingCorrelator:
    return MeetingCorrelator(settings, clock=clock)


@pytest.fixture
def classifier(correlator, settings) -> EnvelopeClassifier:
    return EnvelopeClassifier(correlator, settings)


@pytest.fixture
def fake_connector() -> FakeConnector:
    return FakeConnector()
