"""
Unit tests for track references
"""
from helpers import soundcloud_track, youtube_track
from sonora.services.tracks import (
    ContentSource,
    TrackReference,
    apply_fallback,
    format_seconds,
    is_soundcloud_url,
    resolve_track_source,
)


class TestSource:
    """Test content source inference"""

    def test_explicit_source_wins(self):
        track = TrackReference(id="x", title="x", url="https://soundcloud.com/a/b", source=ContentSource.YOUTUBE)
        assert resolve_track_source(track) is ContentSource.YOUTUBE

    def test_inferred_from_url(self):
        assert resolve_track_source(TrackReference(id="x", title="x", url="https://m.soundcloud.com/a/b")) \
            is ContentSource.SOUNDCLOUD
        assert resolve_track_source(TrackReference(id="x", title="x", url="https://youtu.be/abc")) \
            is ContentSource.YOUTUBE

    def test_soundcloud_host_match(self):
        assert is_soundcloud_url("https://soundcloud.com/artist/song") is True
        assert is_soundcloud_url("https://notsoundcloud.com/artist/song") is False


class TestFallbackSubstitution:
    """Test in-place provider substitution"""

    def test_keeps_requester_and_row(self):
        original = youtube_track(1, requested_by="alice", requested_by_id=42, queue_item_id=7)
        substitute = soundcloud_track(1, duration="3:00")

        apply_fallback(original, substitute)

        assert original.id == substitute.id
        assert original.url == substitute.url
        assert original.title == substitute.title
        assert original.duration == "3:00"
        assert original.source is ContentSource.SOUNDCLOUD
        assert original.requested_by == "alice"
        assert original.requested_by_id == 42
        assert original.queue_item_id == 7
        assert original.fallback_attempted is True

    def test_from_dict_ignores_unknown_fields(self):
        track = TrackReference.from_dict({"id": "x", "title": "t", "url": "u", "source": "vimeo", "extra": 1})

        assert track.source is None
        assert track.channel_title == "Unknown channel"


class TestFormatSeconds:
    def test_minutes_and_hours(self):
        assert format_seconds(192) == "3:12"
        assert format_seconds(3723) == "1:02:03"
        assert format_seconds(None) is None
