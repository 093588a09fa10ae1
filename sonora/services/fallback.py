"""
Cross-source fallback when YouTube demands a sign-in
"""
import logging
import re
from typing import Protocol

from sonora.services.search import pick_best_track
from sonora.services.tracks import TrackReference

logger = logging.getLogger(__name__)

LOGIN_REQUIRED_MARKERS = (
    "sign in to confirm",
    "login_required",
    "not a bot",
    "confirm youre not a bot",
    "confirm you are not a bot",
)

_DECORATIONS = r"official video|official audio|video oficial|audio oficial|lyrics?|lyric video|mv|hd|4k"
_CLEANUP_PATTERNS = (
    re.compile(rf"\(({_DECORATIONS})\)", re.I),
    re.compile(rf"\b({_DECORATIONS})\b", re.I),
)
_TOPIC_SUFFIX = re.compile(r"\s*-\s*topic$", re.I)

SECONDARY_SEARCH_LIMIT = 5


class SecondarySearch(Protocol):
    async def search(self, query: str, max_results: int = 5) -> list[TrackReference]: ...


def is_login_required_error(error: object) -> bool:
    """Whether an error means YouTube wants an interactive sign-in / bot check."""
    if not error:
        return False
    message = str(error).lower().replace("’", "'").replace("‘", "'")
    flattened = message.replace("'", "")
    return any(marker in message or marker in flattened for marker in LOGIN_REQUIRED_MARKERS)


def _normalize_whitespace(value: str) -> str:
    return " ".join(value.split())


def clean_query_text(value: str) -> str:
    for pattern in _CLEANUP_PATTERNS:
        value = pattern.sub(" ", value)
    return _normalize_whitespace(value)


def clean_channel_text(value: str) -> str:
    return clean_query_text(_TOPIC_SUFFIX.sub(" ", value))


def build_secondary_query(track: TrackReference) -> str:
    """Search terms for finding the same recording on the secondary source."""
    parts = [clean_query_text(track.title or ""), clean_channel_text(track.channel_title or "")]
    return _normalize_whitespace(" ".join(p for p in parts if p))


class FallbackAdvisor:
    """Finds a secondary-source substitute for a blocked YouTube track."""

    def __init__(self, secondary: SecondarySearch, limit: int = SECONDARY_SEARCH_LIMIT):
        self.secondary = secondary
        self.limit = limit

    async def find_substitute(self, track: TrackReference) -> TrackReference | None:
        query = build_secondary_query(track)
        if not query:
            return None

        results = await self.secondary.search(query, self.limit)
        if not results:
            logger.info(f"No secondary-source match for '{query}'")
            return None

        best = pick_best_track(results, query) or results[0]
        logger.info(f"Fallback candidate for '{track.title}': {best.title} ({best.url})")
        return best
