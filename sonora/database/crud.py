"""
CRUD helpers for the queue and search cache tables.

Every method fails soft: errors are logged and an empty value is returned,
so a broken database never interrupts in-memory playback.
"""
import json
import logging
from datetime import datetime, timedelta, UTC

from sonora.database.connection import DatabaseManager
from sonora.services.search import is_cache_entry_expired
from sonora.services.tracks import ContentSource, TrackReference

logger = logging.getLogger(__name__)

SEARCH_CACHE_TTL = timedelta(days=7)


class QueueCRUD:
    """Durable per-guild playback queue."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    @staticmethod
    def _row_to_track(row: dict) -> TrackReference:
        source = row.get("source")
        return TrackReference(
            id=row["video_id"],
            title=row["title"],
            url=row["url"],
            channel_title=row.get("channel_title") or "Unknown channel",
            thumbnail=row.get("thumbnail") or "",
            description=row.get("description") or "",
            duration=row.get("duration"),
            source=ContentSource(source) if source in ("youtube", "soundcloud") else None,
            requested_by=row.get("requested_by"),
            requested_by_id=row.get("requested_by_id"),
            queue_item_id=row["id"],
        )

    async def load(self, guild_id: int) -> list[TrackReference]:
        try:
            rows = await self.db.fetch_all(
                "SELECT * FROM queue_items WHERE guild_id = ? ORDER BY created_at, id",
                (guild_id,)
            )
        except Exception as e:
            logger.error(f"Failed to load queue for guild {guild_id}: {e}")
            return []
        return [self._row_to_track(r) for r in rows]

    async def append(self, guild_id: int, track: TrackReference) -> int | None:
        try:
            cursor = await self.db.execute(
                """INSERT INTO queue_items
                   (guild_id, video_id, url, title, channel_title, thumbnail, duration,
                    description, requested_by, requested_by_id, source)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    guild_id, track.id, track.url, track.title, track.channel_title,
                    track.thumbnail, track.duration, track.description,
                    track.requested_by, track.requested_by_id,
                    track.source.value if track.source else None,
                )
            )
            return cursor.lastrowid
        except Exception as e:
            logger.error(f"Failed to persist queue item for guild {guild_id}: {e}")
            return None

    async def remove(self, guild_id: int, row_id: int) -> None:
        try:
            await self.db.execute(
                "DELETE FROM queue_items WHERE guild_id = ? AND id = ?",
                (guild_id, row_id)
            )
        except Exception as e:
            logger.error(f"Failed to remove queue item {row_id} for guild {guild_id}: {e}")

    async def clear(self, guild_id: int) -> None:
        try:
            await self.db.execute("DELETE FROM queue_items WHERE guild_id = ?", (guild_id,))
        except Exception as e:
            logger.error(f"Failed to clear queue for guild {guild_id}: {e}")


class SearchCacheCRUD:
    """Long-lived search results shared by all guilds."""

    def __init__(self, db: DatabaseManager, ttl: timedelta = SEARCH_CACHE_TTL):
        self.db = db
        self.ttl = ttl

    async def load(self, query_hash: str, max_results: int) -> list[TrackReference] | None:
        try:
            row = await self.db.fetch_one(
                "SELECT results, expires_at FROM search_cache WHERE query_hash = ? AND max_results = ?",
                (query_hash, max_results)
            )
            if not row or is_cache_entry_expired(row["expires_at"]):
                return None

            payload = json.loads(row["results"])
            if not isinstance(payload, list) or not payload:
                return None

            await self.db.execute(
                "UPDATE search_cache SET last_hit_at = ? WHERE query_hash = ? AND max_results = ?",
                (datetime.now(UTC).isoformat(), query_hash, max_results)
            )
            return [TrackReference.from_dict(item) for item in payload][:max_results]
        except Exception as e:
            logger.error(f"Failed to load search cache entry: {e}")
            return None

    async def save(self, query_hash: str, max_results: int, results: list[TrackReference], source: str) -> None:
        now = datetime.now(UTC)
        payload = json.dumps([t.to_dict() for t in results[:max_results]])
        try:
            await self.db.execute(
                """INSERT INTO search_cache
                   (query_hash, max_results, results, source, updated_at, expires_at, last_hit_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(query_hash, max_results) DO UPDATE SET
                       results = excluded.results,
                       source = excluded.source,
                       updated_at = excluded.updated_at,
                       expires_at = excluded.expires_at,
                       last_hit_at = excluded.last_hit_at""",
                (
                    query_hash, max_results, payload, source,
                    now.isoformat(), (now + self.ttl).isoformat(), now.isoformat(),
                )
            )
        except Exception as e:
            logger.error(f"Failed to save search cache entry: {e}")
