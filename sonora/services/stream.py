"""
Stream resolution - turns a track reference into playable audio
"""
import asyncio
import logging
import subprocess
from dataclasses import dataclass, field
from typing import IO, Protocol

import discord

from sonora.errors import (
    InvalidTrackError,
    ProviderUnavailableError,
    StreamResolutionError,
    YtDlpProcessError,
)
from sonora.services.soundcloud import SoundCloudService
from sonora.services.tracks import ContentSource, TrackReference, resolve_track_source
from sonora.services.youtube import YouTubeService, canonical_watch_url, extract_youtube_id
from sonora.services.ytdlp_binary import YtDlpBinary

logger = logging.getLogger(__name__)

STDERR_TAIL_LIMIT = 4000

FFMPEG_OPTIONS = {
    "before_options": "-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5 -nostdin -timeout 10000000",
    "options": "-vn",
}
PIPE_FFMPEG_OPTIONS = {"options": "-vn"}


@dataclass
class ProviderAttempt:
    """Outcome of one provider in the chain."""
    provider: str
    ok: bool
    error: BaseException | None = None


@dataclass
class ResolvedStream:
    """Audio ready for the player: a pipe from yt-dlp or a direct media URL."""
    source: str | IO[bytes]
    provider: str
    # Audio codec of a direct URL when the extractor reports it
    format_hint: str = "arbitrary"
    process: subprocess.Popen | None = None
    stderr_file: IO[bytes] | None = None
    attempts: list[ProviderAttempt] = field(default_factory=list)

    @property
    def is_pipe(self) -> bool:
        return self.process is not None

    def failure(self) -> YtDlpProcessError | None:
        """Non-zero exit of the yt-dlp process, with the tail of its stderr."""
        if self.process is None:
            return None
        try:
            code = self.process.wait(timeout=2)
        except subprocess.TimeoutExpired:
            return None
        if not code:
            return None

        stderr = ""
        if self.stderr_file is not None and not self.stderr_file.closed:
            self.stderr_file.seek(0)
            stderr = self.stderr_file.read()[-STDERR_TAIL_LIMIT:].decode("utf-8", "replace").strip()
        return YtDlpProcessError(code, stderr)

    def close(self) -> None:
        if self.process is not None and self.process.poll() is None:
            self.process.kill()
        if self.stderr_file is not None:
            self.stderr_file.close()


class StreamProvider(Protocol):
    name: str

    async def resolve(self, url: str) -> ResolvedStream: ...


class YtDlpCliProvider:
    """yt-dlp executable spawned per request, audio piped through stdout."""
    name = "yt-dlp-cli"

    def __init__(self, binary: YtDlpBinary):
        self.binary = binary

    async def resolve(self, url: str) -> ResolvedStream:
        if not await self.binary.is_available():
            raise ProviderUnavailableError("yt-dlp executable is not available")
        process, stderr_file = await self.binary.spawn_stream(url)
        return ResolvedStream(
            source=process.stdout,
            provider=self.name,
            format_hint="arbitrary",
            process=process,
            stderr_file=stderr_file,
        )


class YtDlpLibraryProvider:
    """yt-dlp as a library, returning a direct media URL."""
    name = "yt-dlp-library"

    def __init__(self, youtube: YouTubeService, timeout: float = 25.0):
        self.youtube = youtube
        self.timeout = timeout

    async def resolve(self, url: str) -> ResolvedStream:
        stream_url, codec = await self.youtube.extract_stream_url(
            url, self.youtube.primary_ydl_opts, timeout=self.timeout
        )
        return ResolvedStream(source=stream_url, provider=self.name, format_hint=codec or "arbitrary")


class PytubeProvider:
    """pytubefix extraction, used when both yt-dlp paths failed."""
    name = "pytubefix"

    def __init__(self, youtube: YouTubeService, timeout: float = 25.0):
        self.youtube = youtube
        self.timeout = timeout

    async def resolve(self, url: str) -> ResolvedStream:
        stream_url, codec = await self.youtube.extract_stream_url_pytube(url, timeout=self.timeout)
        return ResolvedStream(source=stream_url, provider=self.name, format_hint=codec or "arbitrary")


class SoundCloudStreamProvider:
    name = "soundcloud"

    def __init__(self, soundcloud: SoundCloudService):
        self.soundcloud = soundcloud

    async def resolve(self, url: str) -> ResolvedStream:
        stream_url = await self.soundcloud.get_stream_url(url)
        return ResolvedStream(source=stream_url, provider=self.name)


def target_url_for(track: TrackReference) -> str:
    """URL handed to providers. YouTube ids are re-derived and canonicalised every time."""
    if not track.url:
        raise InvalidTrackError(f"Track {track.id!r} has no URL")
    if resolve_track_source(track) is ContentSource.SOUNDCLOUD:
        return track.url
    video_id = extract_youtube_id(track.url)
    return canonical_watch_url(video_id) if video_id else track.url


class StreamResolver:
    """Tries providers in priority order; the first stream wins."""

    def __init__(self, primary: list[StreamProvider], secondary: StreamProvider):
        self.primary = list(primary)
        self.secondary = secondary

    @classmethod
    def create(cls, youtube: YouTubeService, soundcloud: SoundCloudService, binary: YtDlpBinary) -> "StreamResolver":
        return cls(
            primary=[
                YtDlpCliProvider(binary),
                YtDlpLibraryProvider(youtube),
                PytubeProvider(youtube),
            ],
            secondary=SoundCloudStreamProvider(soundcloud),
        )

    def providers_for(self, track: TrackReference) -> list[StreamProvider]:
        if resolve_track_source(track) is ContentSource.SOUNDCLOUD:
            return [self.secondary]
        return self.primary

    async def resolve(self, track: TrackReference) -> ResolvedStream:
        attempts: list[ProviderAttempt] = []
        for provider in self.providers_for(track):
            try:
                stream = await provider.resolve(target_url_for(track))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                attempts.append(ProviderAttempt(provider.name, False, e))
                logger.warning(f"{provider.name} could not stream '{track.title}': {e}")
                continue

            attempts.append(ProviderAttempt(provider.name, True))
            stream.attempts = attempts
            logger.info(f"Resolved '{track.title}' via {provider.name}")
            return stream

        raise StreamResolutionError(attempts)


async def build_audio_source(stream: ResolvedStream) -> discord.AudioSource:
    """FFmpeg source for a resolved stream: piped stdout, copied Opus or a probed URL."""
    if stream.is_pipe:
        return discord.FFmpegOpusAudio(stream.source, pipe=True, **PIPE_FFMPEG_OPTIONS)
    if stream.format_hint == "opus":
        return discord.FFmpegOpusAudio(stream.source, codec="copy", **FFMPEG_OPTIONS)
    return await asyncio.wait_for(
        discord.FFmpegOpusAudio.from_probe(stream.source, **FFMPEG_OPTIONS),
        timeout=10.0
    )
