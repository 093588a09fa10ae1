"""
Pytest configuration and shared fixtures for Sonora tests
"""
from unittest.mock import AsyncMock, Mock

import pytest

from helpers import (
    GUILD_ID,
    FakeQueueStore,
    FakeResolver,
    FakeVoiceChannel,
    PlayerFactory,
    RecordingNotifier,
)
from sonora.services.session import GuildPlaybackSession, Requester


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def voice_channel():
    return FakeVoiceChannel()


@pytest.fixture
def requester(voice_channel):
    return Requester(display_name="alice", user_id=42, voice_channel=voice_channel, text_channel_id=777)


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def queue_store():
    return FakeQueueStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def players():
    return PlayerFactory()


@pytest.fixture
def advisor():
    mock = Mock()
    mock.find_substitute = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def make_session(resolver, queue_store, advisor, notifier, players):
    """Build sessions wired to the fakes; keyword arguments go to the constructor."""
    created: list[GuildPlaybackSession] = []

    def factory(**kwargs) -> GuildPlaybackSession:
        session = GuildPlaybackSession(
            GUILD_ID,
            resolver=resolver,
            store=queue_store,
            advisor=advisor,
            notifier=notifier,
            player_factory=players,
            **kwargs,
        )
        created.append(session)
        return session

    yield factory

    for session in created:
        if session.idle_timer is not None:
            session.idle_timer.cancel()
        if session._signal_task is not None:
            session._signal_task.cancel()


@pytest.fixture
def session(make_session):
    return make_session()
