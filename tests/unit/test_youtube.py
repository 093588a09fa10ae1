"""
Unit tests for YouTube URL helpers and Data API key rotation
"""
from unittest.mock import AsyncMock, Mock, patch

import pytest

from sonora.services.tracks import ContentSource
from sonora.services.youtube import (
    YouTubeApiError,
    YouTubeService,
    build_fallback_track_from_url,
    extract_youtube_id,
    parse_iso_duration,
    parse_youtube_url,
    should_rotate_key,
)

VIDEO_ID = "dQw4w9WgXcQ"
CANONICAL = f"https://www.youtube.com/watch?v={VIDEO_ID}"


class TestUrlParsing:
    """Test accepted YouTube link shapes"""

    @pytest.mark.parametrize("url", [
        f"https://www.youtube.com/watch?v={VIDEO_ID}&list=PL123",
        f"https://youtu.be/{VIDEO_ID}?t=10",
        f"https://m.youtube.com/watch?v={VIDEO_ID}",
        f"https://music.youtube.com/watch?v={VIDEO_ID}",
        f"https://www.youtube.com/shorts/{VIDEO_ID}",
        f"https://www.youtube.com/embed/{VIDEO_ID}",
        f"http://youtube.com/v/{VIDEO_ID}/",
    ])
    def test_accepted(self, url):
        assert parse_youtube_url(url) == (VIDEO_ID, CANONICAL)

    @pytest.mark.parametrize("url", [
        f"ftp://youtube.com/watch?v={VIDEO_ID}",
        f"https://vimeo.com/{VIDEO_ID}",
        "https://www.youtube.com/watch?v=short",
        "https://www.youtube.com/channel/UC1234567890/videos",
        "not a url",
    ])
    def test_rejected(self, url):
        assert parse_youtube_url(url) is None

    def test_extract_bare_id(self):
        assert extract_youtube_id(VIDEO_ID) == VIDEO_ID
        assert extract_youtube_id(f"https://youtu.be/{VIDEO_ID}") == VIDEO_ID
        assert extract_youtube_id("") is None
        assert extract_youtube_id("https://soundcloud.com/a/b") is None

    def test_fallback_track(self):
        track = build_fallback_track_from_url(f"https://youtu.be/{VIDEO_ID}")

        assert track.id == VIDEO_ID
        assert track.url == CANONICAL
        assert track.title == "YouTube video"
        assert track.thumbnail == f"https://i.ytimg.com/vi/{VIDEO_ID}/hqdefault.jpg"
        assert track.source is ContentSource.YOUTUBE


class TestApiHelpers:
    """Test Data API response helpers"""

    @pytest.mark.parametrize("value,expected", [
        ("PT3M12S", "3:12"),
        ("PT1H2M3S", "1:02:03"),
        ("PT45S", "0:45"),
        ("P1D", None),
        ("", None),
        (None, None),
    ])
    def test_parse_iso_duration(self, value, expected):
        assert parse_iso_duration(value) == expected

    @pytest.mark.parametrize("status,reason,message,expected", [
        (403, "quotaExceeded", "", True),
        (403, "forbidden", "Daily Limit Exceeded", True),
        (403, "forbidden", "Access denied", False),
        (400, "keyInvalid", "", True),
        (400, "badRequest", "API key not valid", True),
        (400, "badRequest", "Invalid value", False),
        (500, "backendError", "quota", False),
    ])
    def test_should_rotate_key(self, status, reason, message, expected):
        assert should_rotate_key(status, reason, message) is expected


def search_payload(*video_ids):
    return {"items": [
        {
            "id": {"videoId": vid},
            "snippet": {
                "title": f"Title {vid}",
                "channelTitle": "Channel",
                "thumbnails": {"high": {"url": f"https://img/{vid}.jpg"}},
            },
        }
        for vid in video_ids
    ]}


def details_payload(*video_ids):
    return {"items": [{"id": vid, "contentDetails": {"duration": "PT3M12S"}} for vid in video_ids]}


@pytest.fixture
def youtube():
    service = YouTubeService(api_keys=["key-1", "key-2"], ytmusic=Mock())
    yield service
    service.executor.shutdown(wait=False)


class TestSearchApi:
    """Test Data API search and key rotation"""

    async def test_no_keys_returns_none(self):
        service = YouTubeService(api_keys=[], ytmusic=Mock())
        try:
            assert await service.search_api("daft punk") is None
        finally:
            service.executor.shutdown(wait=False)

    async def test_returns_tracks_with_durations(self, youtube):
        api_get = AsyncMock(side_effect=[search_payload(VIDEO_ID), details_payload(VIDEO_ID)])

        with patch.object(youtube, "_api_get", api_get):
            results = await youtube.search_api("never gonna", 5)

        assert len(results) == 1
        assert results[0].id == VIDEO_ID
        assert results[0].url == CANONICAL
        assert results[0].duration == "3:12"
        assert results[0].thumbnail == f"https://img/{VIDEO_ID}.jpg"
        assert results[0].source is ContentSource.YOUTUBE

    async def test_rotates_on_quota_error(self, youtube):
        api_get = AsyncMock(side_effect=[
            YouTubeApiError(403, "quotaExceeded", "Quota exceeded"),
            search_payload(VIDEO_ID),
            details_payload(VIDEO_ID),
        ])

        with patch.object(youtube, "_api_get", api_get):
            results = await youtube.search_api("never gonna")

        assert [t.id for t in results] == [VIDEO_ID]
        used_keys = [c.args[2]["key"] for c in api_get.await_args_list]
        assert used_keys == ["key-1", "key-2", "key-2"]

    async def test_all_keys_exhausted_returns_none(self, youtube):
        api_get = AsyncMock(side_effect=YouTubeApiError(403, "quotaExceeded", "Quota exceeded"))

        with patch.object(youtube, "_api_get", api_get):
            assert await youtube.search_api("never gonna") is None

        assert api_get.await_count == 2

    async def test_non_rotating_error_stops(self, youtube):
        api_get = AsyncMock(side_effect=YouTubeApiError(403, "forbidden", "Access denied"))

        with patch.object(youtube, "_api_get", api_get):
            assert await youtube.search_api("never gonna") is None

        assert api_get.await_count == 1

    async def test_no_items_is_empty_list(self, youtube):
        with patch.object(youtube, "_api_get", AsyncMock(return_value={"items": []})):
            assert await youtube.search_api("nothing at all") == []

    def test_key_sequence_round_robin(self, youtube):
        assert youtube._next_key_sequence() == ["key-1", "key-2"]
        assert youtube._next_key_sequence() == ["key-2", "key-1"]
        assert youtube._next_key_sequence() == ["key-1", "key-2"]


class TestYdlOptions:
    """Test yt-dlp option sets"""

    def test_cookies_and_po_token(self):
        service = YouTubeService(cookies_path="/tmp/cookies.txt", po_token="tok", ytmusic=Mock())
        try:
            assert service.primary_ydl_opts["cookiefile"] == "/tmp/cookies.txt"
            assert service.primary_ydl_opts["extractor_args"] == {"youtube": {"po_token": ["tok"]}}
        finally:
            service.executor.shutdown(wait=False)


class TestStreamExtraction:
    """Test direct audio URL extraction"""

    @pytest.fixture
    def service(self):
        service = YouTubeService(ytmusic=Mock())
        yield service
        service.executor.shutdown(wait=False)

    async def test_yt_dlp_reports_codec(self, service):
        ydl = Mock()
        ydl.extract_info.return_value = {"url": "https://media/a", "acodec": "opus"}
        with patch("sonora.services.youtube.yt_dlp.YoutubeDL") as youtube_dl:
            youtube_dl.return_value.__enter__.return_value = ydl
            assert await service.extract_stream_url(CANONICAL, {}) == ("https://media/a", "opus")

    async def test_pytube_picks_best_audio(self, service):
        best = Mock(url="https://media/best", audio_codec="opus")
        with patch("sonora.services.youtube.PytubeVideo") as video:
            video.return_value.streams.filter.return_value.order_by.return_value.last.return_value = best
            result = await service.extract_stream_url_pytube(CANONICAL)

        video.assert_called_once_with(CANONICAL)
        video.return_value.streams.filter.assert_called_once_with(only_audio=True)
        assert result == ("https://media/best", "opus")

    async def test_pytube_without_audio_raises(self, service):
        with patch("sonora.services.youtube.PytubeVideo") as video:
            video.return_value.streams.filter.return_value.order_by.return_value.last.return_value = None
            with pytest.raises(LookupError):
                await service.extract_stream_url_pytube(CANONICAL)
