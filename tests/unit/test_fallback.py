"""
Unit tests for the cross-source fallback advisor
"""
from unittest.mock import AsyncMock, Mock

import pytest

from helpers import soundcloud_track, youtube_track
from sonora.errors import YtDlpProcessError
from sonora.services.fallback import (
    FallbackAdvisor,
    build_secondary_query,
    clean_channel_text,
    clean_query_text,
    is_login_required_error,
)


class TestLoginRequiredDetection:
    """Test recognition of YouTube sign-in / bot-check errors"""

    @pytest.mark.parametrize("message", [
        "ERROR: [youtube] abc: Sign in to confirm you’re not a bot",
        "Sign in to confirm your age",
        "LOGIN_REQUIRED",
        "Please confirm youre not a bot",
    ])
    def test_detected(self, message):
        assert is_login_required_error(message) is True

    def test_detects_exception_objects(self):
        assert is_login_required_error(YtDlpProcessError(1, "Sign in to confirm you're not a bot")) is True

    @pytest.mark.parametrize("error", [None, "", "HTTP Error 403: Forbidden", RuntimeError("Video unavailable")])
    def test_not_detected(self, error):
        assert is_login_required_error(error) is False


class TestQueryCleanup:
    """Test secondary search terms"""

    def test_strips_video_decorations(self):
        assert clean_query_text("Around The World (Official Video)") == "Around The World"
        assert clean_query_text("One More Time lyrics HD") == "One More Time"

    def test_strips_topic_suffix(self):
        assert clean_channel_text("Daft Punk - Topic") == "Daft Punk"

    def test_combines_title_and_channel(self):
        track = youtube_track(1, title="Around The World (Official Audio)", channel_title="Daft Punk - Topic")

        assert build_secondary_query(track) == "Around The World Daft Punk"

    def test_empty_when_nothing_remains(self):
        track = youtube_track(1, title="(Official Video)", channel_title="")

        assert build_secondary_query(track) == ""


@pytest.fixture
def secondary():
    mock = Mock()
    mock.search = AsyncMock(return_value=[])
    return mock


class TestFallbackAdvisor:
    """Test substitute selection"""

    async def test_no_query_skips_search(self, secondary):
        advisor = FallbackAdvisor(secondary)

        result = await advisor.find_substitute(youtube_track(1, title="", channel_title=""))

        assert result is None
        secondary.search.assert_not_awaited()

    async def test_no_results(self, secondary):
        advisor = FallbackAdvisor(secondary)

        assert await advisor.find_substitute(youtube_track(1)) is None
        secondary.search.assert_awaited_once_with("Song 1 Artist 1", 5)

    async def test_picks_best_candidate(self, secondary):
        cover = soundcloud_track(1, title="cover", channel_title="someone")
        official = soundcloud_track(2, title="cover", channel_title="Artist Official")
        secondary.search.return_value = [cover, official]
        advisor = FallbackAdvisor(secondary)

        assert await advisor.find_substitute(youtube_track(1)) is official

    async def test_first_result_when_nothing_scores(self, secondary):
        first, second = soundcloud_track(1, channel_title="a"), soundcloud_track(2, channel_title="b")
        secondary.search.return_value = [first, second]
        advisor = FallbackAdvisor(secondary, limit=3)

        assert await advisor.find_substitute(youtube_track(1)) is first
        secondary.search.assert_awaited_once_with("Song 1 Artist 1", 3)
