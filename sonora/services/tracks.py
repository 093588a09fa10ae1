"""
Track references shared by search, queue storage and playback
"""
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any
from urllib.parse import urlparse


class ContentSource(str, Enum):
    """Content provider currently backing a track."""
    YOUTUBE = "youtube"
    SOUNDCLOUD = "soundcloud"


@dataclass
class TrackReference:
    """A playable item and where it came from."""
    id: str
    title: str
    url: str
    channel_title: str = "Unknown channel"
    thumbnail: str = ""
    description: str = ""
    duration: str | None = None  # Human label, e.g. "3:12"
    source: ContentSource | None = None
    requested_by: str | None = None
    requested_by_id: int | None = None
    queue_item_id: int | None = None  # Row id once persisted
    fallback_attempted: bool = False

    def mark_fallback_attempted(self) -> None:
        # One way only, never reset
        self.fallback_attempted = True

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["source"] = self.source.value if self.source else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TrackReference":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        source = values.get("source")
        values["source"] = ContentSource(source) if source in ("youtube", "soundcloud") else None
        return cls(**values)


def is_soundcloud_url(value: str) -> bool:
    try:
        host = (urlparse(value).hostname or "").lower()
    except ValueError:
        return False
    return host == "soundcloud.com" or host.endswith(".soundcloud.com")


def resolve_track_source(track: TrackReference) -> ContentSource:
    """Return the track's content source, inferring it from the URL when unset."""
    if track.source is not None:
        return track.source
    return ContentSource.SOUNDCLOUD if is_soundcloud_url(track.url) else ContentSource.YOUTUBE


def apply_fallback(target: TrackReference, substitute: TrackReference) -> None:
    """Replace provider fields of ``target`` in place, keeping requester and row id."""
    target.id = substitute.id
    target.title = substitute.title
    target.url = substitute.url
    target.channel_title = substitute.channel_title
    target.thumbnail = substitute.thumbnail
    target.description = substitute.description
    target.duration = substitute.duration
    target.source = resolve_track_source(substitute)
    target.mark_fallback_attempted()


def format_seconds(seconds: float | int | None) -> str | None:
    """Format a duration in seconds as m:ss or h:mm:ss."""
    if seconds is None:
        return None
    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"
