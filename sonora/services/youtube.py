"""
YouTube search, metadata and URL helpers
"""
import asyncio
import logging
import random
import re
from concurrent.futures import ThreadPoolExecutor
from functools import partial, wraps
from typing import Any
from urllib.parse import parse_qs, urlparse

import aiohttp
import yt_dlp
from pytubefix import YouTube as PytubeVideo
from ytmusicapi import YTMusic

from sonora.services.tracks import ContentSource, TrackReference, format_seconds

logger = logging.getLogger(__name__)

YOUTUBE_HOSTS = {
    "youtube.com",
    "www.youtube.com",
    "m.youtube.com",
    "music.youtube.com",
    "youtu.be",
}
YOUTUBE_ID_PATTERN = re.compile(r"[0-9A-Za-z_-]{11}")
_PATH_ID_PATTERN = re.compile(r"/(shorts|embed|v)/([0-9A-Za-z_-]{11})$")
_ISO_DURATION_PATTERN = re.compile(r"PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?")

API_BASE_URL = "https://www.googleapis.com/youtube/v3"
MAX_SEARCH_RESULTS = 10
ROTATING_403_REASONS = {
    "quotaExceeded",
    "dailyLimitExceeded",
    "userRateLimitExceeded",
    "rateLimitExceeded",
    "accessNotConfigured",
}


def retry_with_backoff(retries=3, backoff_in_seconds=1):
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            x = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if x == retries:
                        logger.error(f"Failed after {retries} retries: {e}")
                        raise
                    sleep = (backoff_in_seconds * 2 ** x + random.uniform(0, 1))
                    logger.warning(f"Retry {x + 1}/{retries} for {func.__name__} after {sleep:.2f}s due to: {e}")
                    await asyncio.sleep(sleep)
                    x += 1
        return wrapper
    return decorator


# ==================== URL HELPERS ====================

def canonical_watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def _clean_id(value: str | None) -> str | None:
    if not value:
        return None
    match = YOUTUBE_ID_PATTERN.search(value)
    return match.group(0) if match else None


def _id_from_path(path: str) -> str | None:
    path = path.rstrip("/")
    match = _PATH_ID_PATTERN.search(path)
    if match:
        return match.group(2)
    segments = [s for s in path.split("/") if s]
    if len(segments) == 1:
        return _clean_id(segments[0])
    return None


def parse_youtube_url(value: str) -> tuple[str, str] | None:
    """Parse a YouTube link into (video_id, canonical_url).

    Accepts watch links (``v=``), ``youtu.be`` short links and
    ``/shorts/``, ``/embed/`` and ``/v/`` paths on the known YouTube hosts.
    """
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return None

    if parsed.scheme.lower() not in ("http", "https"):
        return None
    host = (parsed.hostname or "").lower()
    if host not in YOUTUBE_HOSTS:
        return None

    if host == "youtu.be":
        video_id = _id_from_path(parsed.path)
    else:
        video_id = _clean_id(parse_qs(parsed.query).get("v", [None])[0])
        if not video_id:
            video_id = _id_from_path(parsed.path)

    if not video_id:
        return None
    return video_id, canonical_watch_url(video_id)


def extract_youtube_id(value: str) -> str | None:
    """Return the video id from a bare id or any accepted YouTube URL."""
    if not value:
        return None
    if YOUTUBE_ID_PATTERN.fullmatch(value):
        return value
    parsed = parse_youtube_url(value)
    return parsed[0] if parsed else None


def build_fallback_track_from_url(value: str) -> TrackReference:
    """Minimal track for a URL whose metadata could not be fetched."""
    parsed = parse_youtube_url(value)
    video_id = parsed[0] if parsed else extract_youtube_id(value)
    url = parsed[1] if parsed else (canonical_watch_url(video_id) if video_id else value)
    return TrackReference(
        id=video_id or value,
        title="YouTube video",
        url=url,
        channel_title="Unknown channel",
        thumbnail=f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg" if video_id else "",
        duration=None,
        source=ContentSource.YOUTUBE,
    )


def parse_iso_duration(value: str | None) -> str | None:
    """Turn an ISO-8601 duration (``PT3M12S``) into a ``3:12`` label."""
    if not value:
        return None
    match = _ISO_DURATION_PATTERN.fullmatch(value)
    if not match or not any(match.groups()):
        return None
    hours, minutes, seconds = (int(g) if g else 0 for g in match.groups())
    return format_seconds(hours * 3600 + minutes * 60 + seconds)


def should_rotate_key(status: int, reason: str | None, message: str) -> bool:
    """Whether an API error means the next key might succeed."""
    if status == 403:
        return reason in ROTATING_403_REASONS or bool(re.search(r"quota|limit", message, re.I))
    if status == 400:
        return reason == "keyInvalid" or bool(re.search(r"key", message, re.I))
    return False


class YouTubeApiError(Exception):
    def __init__(self, status: int, reason: str | None, message: str):
        self.status = status
        self.reason = reason
        super().__init__(message)

    @property
    def rotatable(self) -> bool:
        return should_rotate_key(self.status, self.reason, str(self))


# ==================== SERVICE ====================

class YouTubeService:
    """YouTube search (Data API and YouTube Music) plus yt-dlp extraction."""

    def __init__(
        self,
        api_keys: list[str] | None = None,
        cookies_path: str | None = None,
        po_token: str | None = None,
        ytmusic: YTMusic | None = None,
    ):
        self.yt = ytmusic or YTMusic()
        self.api_keys = list(api_keys or [])
        self._key_index = 0
        self.cookies_path = cookies_path
        self.po_token = po_token

        # Dedicated executor for YouTube operations to prevent blocking main thread pool
        self.executor = ThreadPoolExecutor(max_workers=5, thread_name_prefix="YouTubeWorker")

        self._ydl_opts = {
            "format": "bestaudio/best",
            "source_address": "0.0.0.0",
            "quiet": True,
            "no_warnings": True,
            "extract_flat": False,
            "socket_timeout": 10,
            "nocheckcertificate": True,
            "logtostderr": False,
            "noplaylist": True,
        }
        if cookies_path:
            self._ydl_opts["cookiefile"] = cookies_path
        if po_token:
            self._ydl_opts["extractor_args"] = {"youtube": {"po_token": [po_token]}}

    @property
    def primary_ydl_opts(self) -> dict[str, Any]:
        return dict(self._ydl_opts)

    async def shutdown(self):
        """Shutdown the executor."""
        self.executor.shutdown(wait=False)

    def _next_key_sequence(self) -> list[str]:
        if not self.api_keys:
            return []
        start = self._key_index % len(self.api_keys)
        self._key_index = (self._key_index + 1) % len(self.api_keys)
        return self.api_keys[start:] + self.api_keys[:start]

    async def _api_get(self, session: aiohttp.ClientSession, endpoint: str, params: dict) -> dict:
        async with session.get(f"{API_BASE_URL}/{endpoint}", params=params) as resp:
            data = await resp.json(content_type=None)
            if resp.status != 200:
                error = (data or {}).get("error", {}) if isinstance(data, dict) else {}
                errors = error.get("errors") or [{}]
                raise YouTubeApiError(resp.status, errors[0].get("reason"), error.get("message", resp.reason or ""))
            return data

    async def _fetch_details(self, session, video_ids: str, keys: list[str]) -> dict[str, dict]:
        """Fetch durations, rotating keys on quota errors. Raises the last error."""
        last_error: YouTubeApiError | None = None
        for key in keys:
            try:
                data = await self._api_get(
                    session, "videos", {"part": "contentDetails,snippet", "id": video_ids, "key": key}
                )
                return {item["id"]: item for item in data.get("items", []) if item.get("id")}
            except YouTubeApiError as e:
                last_error = e
                if not e.rotatable:
                    break
        raise last_error or YouTubeApiError(0, None, "no API keys")

    async def search_api(self, query: str, max_results: int = 5) -> list[TrackReference] | None:
        """Search through the Data API. Returns None when no key could serve the request."""
        keys = self._next_key_sequence()
        if not keys:
            return None

        limit = min(max_results, MAX_SEARCH_RESULTS)
        last_error: Exception | None = None
        timeout = aiohttp.ClientTimeout(total=10)

        async with aiohttp.ClientSession(timeout=timeout) as session:
            for index, key in enumerate(keys):
                try:
                    data = await self._api_get(session, "search", {
                        "part": "snippet",
                        "type": "video",
                        "maxResults": limit,
                        "q": query,
                        "key": key,
                    })
                    items = data.get("items") or []
                    video_ids = ",".join(i["id"]["videoId"] for i in items if i.get("id", {}).get("videoId"))
                    if not video_ids:
                        return []

                    details = await self._fetch_details(session, video_ids, keys[index:] + keys[:index])
                    return [t for t in (self._api_item_to_track(i, details) for i in items) if t]
                except YouTubeApiError as e:
                    last_error = e
                    if e.rotatable:
                        logger.warning(f"YouTube API key #{index + 1} rejected ({e.status} {e.reason}), rotating")
                        continue
                    break
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    last_error = e
                    break

        if last_error:
            logger.error(f"YouTube API search failed: {last_error}")
        return None

    @staticmethod
    def _api_item_to_track(item: dict, details: dict[str, dict]) -> TrackReference | None:
        video_id = item.get("id", {}).get("videoId")
        if not video_id:
            return None
        snippet = item.get("snippet", {})
        thumbs = snippet.get("thumbnails", {})
        detail = details.get(video_id, {})
        return TrackReference(
            id=video_id,
            title=snippet.get("title") or "Untitled",
            url=canonical_watch_url(video_id),
            channel_title=snippet.get("channelTitle") or "Unknown channel",
            thumbnail=(thumbs.get("high") or thumbs.get("default") or {}).get("url", ""),
            description=snippet.get("description") or "",
            duration=parse_iso_duration(detail.get("contentDetails", {}).get("duration")),
            source=ContentSource.YOUTUBE,
        )

    @retry_with_backoff(retries=2)
    async def search_music(self, query: str, max_results: int = 5) -> list[TrackReference]:
        """Search YouTube Music without an API key."""
        loop = asyncio.get_running_loop()
        results = await asyncio.wait_for(
            loop.run_in_executor(
                self.executor,
                partial(self.yt.search, query, filter="videos", limit=max_results)
            ),
            timeout=15.0
        )

        tracks = []
        for r in results:
            video_id = r.get("videoId")
            if not video_id:
                continue
            artists = r.get("artists") or []
            thumbs = r.get("thumbnails") or [{}]
            duration = r.get("duration") or format_seconds(r.get("duration_seconds"))
            tracks.append(TrackReference(
                id=video_id,
                title=r.get("title") or "Untitled",
                url=canonical_watch_url(video_id),
                channel_title=artists[0].get("name", "Unknown channel") if artists else "Unknown channel",
                thumbnail=thumbs[-1].get("url", ""),
                duration=duration,
                source=ContentSource.YOUTUBE,
            ))
        return tracks[:min(max_results, MAX_SEARCH_RESULTS)]

    async def get_track_info(self, video_id: str) -> TrackReference | None:
        """Get full track info for a specific video."""
        loop = asyncio.get_running_loop()
        try:
            r = await asyncio.wait_for(
                loop.run_in_executor(
                    self.executor,
                    partial(self.yt.get_song, videoId=video_id)
                ),
                timeout=10.0
            )
        except asyncio.TimeoutError:
            logger.error(f"YouTube track info timed out for: {video_id}")
            return None
        except Exception as e:
            logger.error(f"Error getting track info: {e}")
            return None

        details = r.get("videoDetails", {}) if r else {}
        if not details:
            return None

        thumbs = details.get("thumbnail", {}).get("thumbnails") or [{}]
        length = details.get("lengthSeconds")
        return TrackReference(
            id=details.get("videoId") or video_id,
            title=details.get("title") or "YouTube video",
            url=canonical_watch_url(details.get("videoId") or video_id),
            channel_title=details.get("author") or "Unknown channel",
            thumbnail=thumbs[-1].get("url", ""),
            description=details.get("shortDescription") or "",
            duration=format_seconds(int(length)) if length and str(length).isdigit() else None,
            source=ContentSource.YOUTUBE,
        )

    async def extract_stream_url(
        self, url: str, ydl_opts: dict[str, Any], timeout: float = 25.0
    ) -> tuple[str, str | None]:
        """Resolve a direct audio URL with yt-dlp, plus its audio codec when known. Raises on any failure."""
        loop = asyncio.get_running_loop()

        def extract():
            with yt_dlp.YoutubeDL(ydl_opts) as ydl:
                info = ydl.extract_info(url, download=False)
            if not info:
                raise yt_dlp.utils.DownloadError(f"yt-dlp returned no info for {url}")
            stream_url, codec = info.get("url"), info.get("acodec")
            if not stream_url:
                formats = [f for f in info.get("formats") or [] if f.get("acodec") not in (None, "none")]
                if formats:
                    stream_url, codec = formats[-1].get("url"), formats[-1].get("acodec")
            if not stream_url:
                raise yt_dlp.utils.DownloadError(f"No audio format found for {url}")
            return stream_url, codec

        # Use dedicated executor and longer timeout for extraction
        return await asyncio.wait_for(loop.run_in_executor(self.executor, extract), timeout=timeout)

    async def extract_stream_url_pytube(self, url: str, timeout: float = 25.0) -> tuple[str, str | None]:
        """Resolve a direct audio URL with pytubefix, which does not share yt-dlp's extractor."""
        loop = asyncio.get_running_loop()

        def extract():
            streams = PytubeVideo(url).streams
            stream = streams.filter(only_audio=True).order_by("abr").last()
            if stream is None:
                raise LookupError(f"pytubefix found no audio stream for {url}")
            return stream.url, stream.audio_codec

        return await asyncio.wait_for(loop.run_in_executor(self.executor, extract), timeout=timeout)
