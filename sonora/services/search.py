"""
Video search with in-memory and persisted result caches
"""
import asyncio
import hashlib
import logging
import re
import time
from collections import OrderedDict
from datetime import datetime, UTC
from typing import Protocol

from sonora.errors import SearchError
from sonora.services.tracks import TrackReference

logger = logging.getLogger(__name__)

SEARCH_CACHE_TTL_SECONDS = 10 * 60
SEARCH_CACHE_MAX_ENTRIES = 100

OFFICIAL_MARKERS = ("official", "oficial", "vevo")
OFFICIAL_TITLE_BONUS = 6
OFFICIAL_CHANNEL_BONUS = 4
_OFFICIAL_PATTERN = re.compile(rf"\b({'|'.join(OFFICIAL_MARKERS)})\b", re.I)
_TOPIC_PATTERN = re.compile(r"\btopic\b", re.I)


# ==================== QUERY HELPERS ====================

def normalize_search_query(query: str) -> str:
    return " ".join(query.strip().lower().split())


def build_search_cache_key(normalized_query: str, max_results: int) -> str:
    return f"{normalized_query}|{max_results}"


def hash_search_query(normalized_query: str) -> str:
    return hashlib.sha256(normalized_query.encode("utf-8")).hexdigest()


def is_cache_entry_expired(expires_at: str | None, now: datetime | None = None) -> bool:
    """Missing or unparsable timestamps count as expired."""
    if not expires_at:
        return True
    try:
        expiry = datetime.fromisoformat(expires_at)
    except (TypeError, ValueError):
        return True
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=UTC)
    return (now or datetime.now(UTC)) >= expiry


# ==================== RANKING ====================

def _normalize_text(value: str) -> str:
    return " ".join(re.sub(r"[_\-]+", " ", value.lower()).split())


def split_query_input(value: str, max_items: int) -> list[str]:
    """Split ``a; b, c`` style input into separate queries."""
    if not value:
        return []
    parts = [p.strip() for p in re.split(r"[;,]", value)]
    return [p for p in parts if p][:max(0, max_items)]


def score_track_for_query(track: TrackReference, query: str) -> int:
    if not query:
        return 0

    q = _normalize_text(query)
    title = _normalize_text(track.title or "")
    channel = _normalize_text(track.channel_title or "")

    score = 0
    if title == q:
        score += 5
    if q in title:
        score += 3
    if q in channel:
        score += 2
    if _OFFICIAL_PATTERN.search(title):
        score += OFFICIAL_TITLE_BONUS
    if _OFFICIAL_PATTERN.search(channel):
        score += OFFICIAL_CHANNEL_BONUS
    if _TOPIC_PATTERN.search(channel):
        score += 1
    return score


def pick_best_track(tracks: list[TrackReference], query: str) -> TrackReference | None:
    """Highest scoring track; ties go to the earliest result."""
    if not tracks:
        return None
    best, best_score = tracks[0], score_track_for_query(tracks[0], query)
    for candidate in tracks[1:]:
        score = score_track_for_query(candidate, query)
        if score > best_score:
            best, best_score = candidate, score
    return best


# ==================== CACHES ====================

class SearchResultCache:
    """Process-wide search cache. Expired entries drop on read, oldest insert goes first when full."""

    def __init__(self, ttl_seconds: int = SEARCH_CACHE_TTL_SECONDS, max_entries: int = SEARCH_CACHE_MAX_ENTRIES):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: OrderedDict[str, tuple[float, list[TrackReference]]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> list[TrackReference] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, results = entry
        if time.monotonic() > expires_at:
            del self._entries[key]
            return None
        return results

    def set(self, key: str, results: list[TrackReference]) -> None:
        self._entries[key] = (time.monotonic() + self.ttl_seconds, results)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)


class SearchCacheStore(Protocol):
    async def load(self, query_hash: str, max_results: int) -> list[TrackReference] | None: ...
    async def save(self, query_hash: str, max_results: int, results: list[TrackReference], source: str) -> None: ...


class VideoSearchBackend(Protocol):
    async def search_api(self, query: str, max_results: int = 5) -> list[TrackReference] | None: ...
    async def search_music(self, query: str, max_results: int = 5) -> list[TrackReference]: ...


class SearchService:
    """Memory cache, then persisted cache, then the Data API, then YouTube Music."""

    def __init__(
        self,
        backend: VideoSearchBackend,
        store: SearchCacheStore | None = None,
        cache: SearchResultCache | None = None,
    ):
        self.backend = backend
        self.store = store
        self.cache = cache or SearchResultCache()
        self._background: set[asyncio.Task] = set()

    def _persist(self, query_hash: str, max_results: int, results: list[TrackReference], source: str) -> None:
        if self.store is None:
            return
        task = asyncio.create_task(self.store.save(query_hash, max_results, results, source))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def search(self, query: str, max_results: int = 5) -> list[TrackReference]:
        normalized = normalize_search_query(query)
        if not normalized:
            raise ValueError("Empty search query")

        logger.info(f"Searching YouTube: {query.strip()}")
        cache_key = build_search_cache_key(normalized, max_results)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        query_hash = hash_search_query(normalized)
        if self.store is not None:
            persisted = await self.store.load(query_hash, max_results)
            if persisted:
                self.cache.set(cache_key, persisted)
                return persisted

        sanitized = query.strip()
        results = await self.backend.search_api(sanitized, max_results)
        if results is not None:
            results = [r for r in results if r.id and r.url]
            self.cache.set(cache_key, results)
            self._persist(query_hash, max_results, results, "api")
            return results

        logger.info("Using YouTube Music search without the Data API")
        try:
            results = await self.backend.search_music(sanitized, max_results)
        except Exception as e:
            logger.error(f"Fallback search failed: {e}")
            raise SearchError(f"Search failed for '{sanitized}'") from e

        results = [r for r in results if r.id and r.url]
        self.cache.set(cache_key, results)
        self._persist(query_hash, max_results, results, "fallback")
        return results

    async def search_best(self, query: str, max_results: int = 5) -> TrackReference | None:
        results = await self.search(query, max_results)
        return pick_best_track(results, query)
