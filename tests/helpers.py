"""
Fakes and helpers shared by the unit tests
"""
import asyncio

from sonora.errors import StreamResolutionError
from sonora.services.session import TrackEnded, TrackFailed
from sonora.services.stream import ProviderAttempt
from sonora.services.tracks import ContentSource, TrackReference
from sonora.services.youtube import canonical_watch_url

GUILD_ID = 1234


# ============================================================
# Helpers
# ============================================================

async def settle(rounds: int = 20):
    """Let spawned tasks and queued signals run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def youtube_track(n: int, **overrides) -> TrackReference:
    video_id = f"track{n:06d}"
    values = dict(
        id=video_id,
        title=f"Song {n}",
        url=canonical_watch_url(video_id),
        channel_title=f"Artist {n}",
        source=ContentSource.YOUTUBE,
    )
    values.update(overrides)
    return TrackReference(**values)


def soundcloud_track(n: int, **overrides) -> TrackReference:
    values = dict(
        id=f"sc:{n}",
        title=f"Cloud song {n}",
        url=f"https://soundcloud.com/artist/cloud-song-{n}",
        channel_title="Cloud Artist",
        source=ContentSource.SOUNDCLOUD,
    )
    values.update(overrides)
    return TrackReference(**values)


# ============================================================
# Fakes
# ============================================================

class FakeVoiceClient:
    def __init__(self, channel):
        self.channel = channel
        self.connected = True
        self.disconnect_calls = 0

    def is_connected(self):
        return self.connected

    async def disconnect(self, force=False):
        self.disconnect_calls += 1
        self.connected = False


class FakeVoiceChannel:
    def __init__(self, channel_id: int = 555):
        self.id = channel_id
        self.clients: list[FakeVoiceClient] = []

    async def connect(self, self_deaf=True, timeout=20.0):
        client = FakeVoiceClient(self)
        self.clients.append(client)
        return client


class FakeStream:
    def __init__(self, track: TrackReference):
        self.track = track
        self.closed = False

    def close(self):
        self.closed = True


class FakeResolver:
    """Resolves every track unless its id is listed in ``failing``."""

    def __init__(self):
        self.calls: list[str] = []
        self.failing: set[str] = set()
        self.gates: dict[str, asyncio.Event] = {}

    async def resolve(self, track: TrackReference):
        self.calls.append(track.id)
        gate = self.gates.get(track.id)
        if gate is not None:
            await gate.wait()
        if track.id in self.failing:
            raise StreamResolutionError([ProviderAttempt("fake", False, RuntimeError("no stream"))])
        return FakeStream(track)


class FakePlayer:
    """Player that emits signals the way PlayerHandle does, driven by the test."""

    def __init__(self, voice_client):
        self.voice_client = voice_client
        self.signals: asyncio.Queue = asyncio.Queue()
        self.generation = 0
        self.played: list[str] = []
        self.stops: list[bool] = []
        self._playing = False
        self._paused = False

    async def play(self, stream) -> int:
        self.generation += 1
        self.played.append(stream.track.id)
        self._playing = True
        self._paused = False
        return self.generation

    def finish(self):
        self._playing = False
        self.signals.put_nowait(TrackEnded(self.generation))

    def fail(self, error):
        self._playing = False
        self.signals.put_nowait(TrackFailed(self.generation, error))

    def pause(self):
        self._playing = False
        self._paused = True

    def resume(self):
        self._playing = True
        self._paused = False

    def is_playing(self):
        return self._playing

    def is_paused(self):
        return self._paused

    def stop(self, force=False):
        self.stops.append(force)
        was_active = self._playing or self._paused
        self._playing = False
        self._paused = False
        if force:
            self.generation += 1
        elif was_active:
            self.signals.put_nowait(TrackEnded(self.generation))


class PlayerFactory:
    def __init__(self):
        self.created: list[FakePlayer] = []

    def __call__(self, voice_client):
        player = FakePlayer(voice_client)
        self.created.append(player)
        return player

    @property
    def current(self) -> FakePlayer:
        return self.created[-1]


class FakeQueueStore:
    def __init__(self):
        self.rows: list[TrackReference] = []
        self.load_calls = 0
        self.removed: list[int] = []
        self.cleared: list[int] = []
        self.append_gate: asyncio.Event | None = None
        self._next_id = 100

    async def load(self, guild_id):
        self.load_calls += 1
        await asyncio.sleep(0)
        return list(self.rows)

    async def append(self, guild_id, track):
        if self.append_gate is not None:
            await self.append_gate.wait()
        self._next_id += 1
        self.rows.append(track)
        return self._next_id

    async def remove(self, guild_id, row_id):
        self.removed.append(row_id)
        self.rows = [r for r in self.rows if r.queue_item_id != row_id]

    async def clear(self, guild_id):
        self.cleared.append(guild_id)
        self.rows = []


class RecordingNotifier:
    def __init__(self):
        self.events: list[tuple] = []

    def names(self) -> list[str]:
        return [e[0] for e in self.events]

    async def now_playing(self, session, track):
        self.events.append(("now_playing", track.id))

    async def queued(self, session, track, position):
        self.events.append(("queued", track.id, position))

    async def queue_finished(self, session):
        self.events.append(("queue_finished",))

    async def track_failed(self, session, track, error):
        self.events.append(("track_failed", track.id if track else None))

    async def fallback_applied(self, session, track):
        self.events.append(("fallback_applied", track.id))

    async def idle_disconnected(self, session):
        self.events.append(("idle_disconnected",))

    async def connection_lost(self, session):
        self.events.append(("connection_lost",))


