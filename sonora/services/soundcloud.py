"""
SoundCloud search and streaming through yt-dlp
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import yt_dlp

from sonora.services.tracks import ContentSource, TrackReference, format_seconds, is_soundcloud_url

logger = logging.getLogger(__name__)

MAX_SEARCH_RESULTS = 10

__all__ = ["SoundCloudService", "is_soundcloud_url"]


def _entry_to_track(entry: dict[str, Any]) -> TrackReference | None:
    url = entry.get("webpage_url") or entry.get("url")
    if not url or not entry.get("id"):
        return None
    thumbs = entry.get("thumbnails") or []
    thumbnail = entry.get("thumbnail") or (thumbs[-1].get("url", "") if thumbs else "")
    return TrackReference(
        id=f"sc:{entry['id']}",
        title=entry.get("title") or "Untitled",
        url=url,
        channel_title=entry.get("uploader") or "SoundCloud",
        thumbnail=thumbnail,
        duration=format_seconds(entry.get("duration")),
        source=ContentSource.SOUNDCLOUD,
    )


class SoundCloudService:
    """Secondary content source."""

    def __init__(self, executor: ThreadPoolExecutor | None = None):
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="SoundCloudWorker")
        self._search_opts = {
            "quiet": True,
            "no_warnings": True,
            "extract_flat": "in_playlist",
            "skip_download": True,
        }
        self._stream_opts = {
            "format": "bestaudio/best",
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "socket_timeout": 10,
        }

    async def search(self, query: str, max_results: int = 5) -> list[TrackReference]:
        """Search SoundCloud tracks. Failures are logged and yield an empty list."""
        query = query.strip()
        if not query:
            return []

        limit = min(max_results, MAX_SEARCH_RESULTS)
        loop = asyncio.get_running_loop()

        def extract():
            with yt_dlp.YoutubeDL(self._search_opts) as ydl:
                return ydl.extract_info(f"scsearch{limit}:{query}", download=False)

        try:
            info = await asyncio.wait_for(loop.run_in_executor(self.executor, extract), timeout=15.0)
        except Exception as e:
            logger.warning(f"SoundCloud search failed for '{query}': {e}")
            return []

        entries = (info or {}).get("entries") or []
        return [t for t in (_entry_to_track(e) for e in entries if e) if t]

    async def get_stream_url(self, url: str, timeout: float = 25.0) -> str:
        """Resolve a direct audio URL for a SoundCloud track. Raises on failure."""
        loop = asyncio.get_running_loop()

        def extract():
            with yt_dlp.YoutubeDL(self._stream_opts) as ydl:
                info = ydl.extract_info(url, download=False)
            if not info or not info.get("url"):
                raise yt_dlp.utils.DownloadError(f"No SoundCloud stream for {url}")
            return info["url"]

        return await asyncio.wait_for(loop.run_in_executor(self.executor, extract), timeout=timeout)

    async def shutdown(self):
        self.executor.shutdown(wait=False)
