"""
Guild playback sessions - per-guild queue, voice connection and player state
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

import discord

from sonora.errors import InvalidTrackError, SonoraError
from sonora.services.fallback import FallbackAdvisor, is_login_required_error
from sonora.services.stream import ResolvedStream, StreamResolver, build_audio_source
from sonora.services.tracks import ContentSource, TrackReference, apply_fallback, resolve_track_source
from sonora.services.youtube import extract_youtube_id

logger = logging.getLogger(__name__)

IDLE_DISCONNECT_SECONDS = 300
RECONNECT_WINDOW_SECONDS = 5.0


# ==================== SIGNALS ====================

@dataclass(frozen=True)
class TrackEnded:
    generation: int


@dataclass(frozen=True)
class TrackFailed:
    generation: int
    error: Any


PlayerSignal = TrackEnded | TrackFailed


class PlayerHandle:
    """Audio player bound to one voice client.

    Completion is reported as ``TrackEnded``/``TrackFailed`` on ``signals``.
    Every ``play`` starts a new generation; a forced stop invalidates the
    current one so its completion is never acted upon.
    """

    def __init__(
        self,
        voice_client: discord.VoiceClient,
        source_factory: Callable[[ResolvedStream], Awaitable[discord.AudioSource]] = build_audio_source,
    ):
        self.voice_client = voice_client
        self.signals: asyncio.Queue[PlayerSignal] = asyncio.Queue()
        self.generation = 0
        self._loop = asyncio.get_running_loop()
        self._source_factory = source_factory
        self._skipped_generation: int | None = None

    async def play(self, stream: ResolvedStream) -> int:
        try:
            audio = await self._source_factory(stream)
        except BaseException:
            stream.close()
            raise

        self.generation += 1
        generation = self.generation

        def after_play(error):
            # Runs in discord.py's player thread
            if error is None and self._skipped_generation != generation:
                error = stream.failure()
            stream.close()
            signal = TrackFailed(generation, error) if error else TrackEnded(generation)
            self._loop.call_soon_threadsafe(self.signals.put_nowait, signal)

        try:
            self.voice_client.play(audio, after=after_play)
        except BaseException:
            stream.close()
            raise
        return generation

    def pause(self) -> None:
        self.voice_client.pause()

    def resume(self) -> None:
        self.voice_client.resume()

    def is_playing(self) -> bool:
        return self.voice_client.is_playing()

    def is_paused(self) -> bool:
        return self.voice_client.is_paused()

    def stop(self, force: bool = False) -> None:
        """Stop playback. Forced stops emit no completion for the current track."""
        if force:
            self.generation += 1
        else:
            self._skipped_generation = self.generation
        self.voice_client.stop()


# ==================== COLLABORATORS ====================

class QueueStore(Protocol):
    async def load(self, guild_id: int) -> list[TrackReference]: ...
    async def append(self, guild_id: int, track: TrackReference) -> int | None: ...
    async def remove(self, guild_id: int, row_id: int) -> None: ...
    async def clear(self, guild_id: int) -> None: ...


class PlaybackNotifier(Protocol):
    async def now_playing(self, session: "GuildPlaybackSession", track: TrackReference) -> None: ...
    async def queued(self, session: "GuildPlaybackSession", track: TrackReference, position: int) -> None: ...
    async def queue_finished(self, session: "GuildPlaybackSession") -> None: ...
    async def track_failed(self, session: "GuildPlaybackSession", track: TrackReference | None, error: Any) -> None: ...
    async def fallback_applied(self, session: "GuildPlaybackSession", track: TrackReference) -> None: ...
    async def idle_disconnected(self, session: "GuildPlaybackSession") -> None: ...
    async def connection_lost(self, session: "GuildPlaybackSession") -> None: ...


@dataclass
class Requester:
    """Who asked for a track and where they are."""
    display_name: str
    user_id: int
    voice_channel: Any  # discord.VoiceChannel or anything with .id and async connect()
    text_channel_id: int | None = None


# ==================== SESSION ====================

class GuildPlaybackSession:
    """Queue and playback state machine for one guild."""

    def __init__(
        self,
        guild_id: int,
        *,
        resolver: StreamResolver,
        store: QueueStore,
        advisor: FallbackAdvisor,
        notifier: PlaybackNotifier | None = None,
        player_factory: Callable[[Any], PlayerHandle] = PlayerHandle,
        member_counter: Callable[[int], int] | None = None,
        idle_timeout: float = IDLE_DISCONNECT_SECONDS,
        reconnect_window: float = RECONNECT_WINDOW_SECONDS,
    ):
        self.guild_id = guild_id
        self.resolver = resolver
        self.store = store
        self.advisor = advisor
        self.notifier = notifier
        self.player_factory = player_factory
        self.member_counter = member_counter
        self.idle_timeout = idle_timeout
        self.reconnect_window = reconnect_window

        self.queue: list[TrackReference] = []
        self.is_playing = False
        self.voice_client: Any = None
        self.player: PlayerHandle | None = None
        self.pending_search: list[TrackReference] | None = None
        self.voice_channel_id: int | None = None
        self.text_channel_id: int | None = None
        self.queue_loaded = False
        self.handling_error = False
        self.idle_timer: asyncio.Task | None = None

        self._lock = asyncio.Lock()
        self._load_task: asyncio.Task | None = None
        self._signal_task: asyncio.Task | None = None
        self._active_generation: int | None = None
        self._handling_generation: int | None = None
        self._background: set[asyncio.Task] = set()

    def __repr__(self) -> str:
        return f"<GuildPlaybackSession guild={self.guild_id} queue={len(self.queue)} playing={self.is_playing}>"

    # ---------- helpers ----------

    def _spawn(self, coro) -> asyncio.Task:
        """Fire-and-forget, keeping a reference until done."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _notify(self, event: str, *args) -> None:
        if self.notifier is None:
            return
        try:
            await getattr(self.notifier, event)(self, *args)
        except Exception as e:
            logger.error(f"Notifier {event} failed for guild {self.guild_id}: {e}")

    def _pop_head(self) -> TrackReference | None:
        if not self.queue:
            return None
        removed = self.queue.pop(0)
        if removed.queue_item_id is not None:
            self._spawn(self.store.remove(self.guild_id, removed.queue_item_id))
        return removed

    @staticmethod
    def _validate(track: TrackReference) -> None:
        if not track.url:
            raise InvalidTrackError("Invalid track URL")
        if resolve_track_source(track) is ContentSource.YOUTUBE and not extract_youtube_id(track.url):
            raise InvalidTrackError(f"Invalid YouTube URL: {track.url}")

    # ---------- queue loading ----------

    async def _load_from_store(self) -> None:
        if self.queue_loaded:
            return
        stored = await self.store.load(self.guild_id)
        # Never overwrite an in-memory queue that filled up meanwhile
        if stored and not self.queue:
            self.queue.extend(stored)
            logger.info(f"Restored {len(stored)} queued track(s) for guild {self.guild_id}")
        self.queue_loaded = True

    async def ensure_queue_loaded(self) -> None:
        if self.queue_loaded:
            return
        if self._load_task is None:
            self._load_task = asyncio.create_task(self._load_from_store())
        task = self._load_task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._load_task is task:
                self._load_task = None

    async def snapshot(self) -> list[TrackReference]:
        await self.ensure_queue_loaded()
        return list(self.queue)

    # ---------- connection / player wiring ----------

    async def _connect(self, voice_channel) -> None:
        if voice_channel is None:
            raise SonoraError("Requester is not in a voice channel")

        if self.voice_client is None or not self.voice_client.is_connected():
            self.voice_client = await voice_channel.connect(self_deaf=True, timeout=20.0)
            self.voice_channel_id = voice_channel.id
            logger.info(f"Connected to voice channel {voice_channel.id} in guild {self.guild_id}")
        elif self.voice_channel_id is None:
            self.voice_channel_id = voice_channel.id

        if self.player is None or self.player.voice_client is not self.voice_client:
            self._attach_player(self.player_factory(self.voice_client))

    def _attach_player(self, player: PlayerHandle) -> None:
        if self._signal_task is not None:
            self._signal_task.cancel()
        self.player = player
        self._active_generation = None
        self._signal_task = asyncio.create_task(self._consume_signals(player))

    async def _consume_signals(self, player: PlayerHandle) -> None:
        while True:
            signal = await player.signals.get()
            if signal.generation != self._active_generation:
                logger.debug(f"Ignoring stale {type(signal).__name__} (generation {signal.generation})")
                continue
            self._active_generation = None

            if isinstance(signal, TrackFailed):
                self._spawn(self.handle_playback_error(signal.error, signal.generation))
            else:
                async with self._lock:
                    await self._advance_after_completion()

    # ---------- playback ----------

    async def _play_next(self) -> bool:
        """Start the queue head, dropping heads that cannot be resolved. Lock must be held."""
        while self.queue:
            track = self.queue[0]
            self.is_playing = True
            try:
                self._validate(track)
                stream = await self.resolver.resolve(track)
                if self.player is None:
                    stream.close()
                    raise SonoraError("No audio player attached")
                generation = await self.player.play(stream)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Failed to play '{track.title}' in guild {self.guild_id}: {e}")
                await self._notify("track_failed", track, e)
                self._pop_head()
                continue

            self._active_generation = generation
            logger.info(f"Playing: {track.title} | {track.channel_title} | {resolve_track_source(track).value}")
            await self._notify("now_playing", track)
            return True

        self.is_playing = False
        return False

    async def _advance_after_completion(self) -> None:
        self._pop_head()
        if self.queue:
            await self._play_next()
        else:
            self.is_playing = False
            await self._notify("queue_finished")

    async def play_next(self) -> bool:
        async with self._lock:
            return await self._play_next()

    async def enqueue(self, track: TrackReference, requester: Requester) -> bool:
        """Queue a track; start playback if idle. Returns True when this call started it."""
        await self.ensure_queue_loaded()

        track.requested_by = requester.display_name
        track.requested_by_id = requester.user_id
        if requester.text_channel_id is not None:
            self.text_channel_id = requester.text_channel_id

        self.queue.append(track)
        row_id = await self.store.append(self.guild_id, track)
        if row_id is not None:
            track.queue_item_id = row_id

        if self.is_playing:
            await self._notify("queued", track, len(self.queue) - 1)
            return False

        async with self._lock:
            if not any(queued is track for queued in self.queue):
                # Cleared by stop() while the row was being written
                if track.queue_item_id is not None:
                    self._spawn(self.store.remove(self.guild_id, track.queue_item_id))
                return False
            if self.is_playing:
                await self._notify("queued", track, len(self.queue) - 1)
                return False
            try:
                await self._connect(requester.voice_channel)
            except Exception as e:
                logger.error(f"Failed to connect in guild {self.guild_id}: {e}")
                self.is_playing = False
                raise
            return await self._play_next()

    async def handle_playback_error(self, error: Any, generation: int | None = None) -> None:
        """Recover from a player error.

        Repeats of the fault being recovered are dropped. A failure of a track
        started by the recovery itself carries a newer generation and waits its
        turn instead.
        """
        if self.handling_error and generation == self._handling_generation:
            logger.info(f"Dropping playback error while recovery is in progress: {error}")
            return
        self.handling_error = True
        self._handling_generation = generation
        try:
            async with self._lock:
                self._handling_generation = generation
                await self._recover(error)
        finally:
            if self._handling_generation == generation:
                self.handling_error = False
                self._handling_generation = None

    async def _recover(self, error: Any) -> None:
        logger.error(f"Audio player error in guild {self.guild_id}: {error}")
        head = self.queue[0] if self.queue else None

        if (
            head is not None
            and resolve_track_source(head) is ContentSource.YOUTUBE
            and not head.fallback_attempted
            and is_login_required_error(error)
        ):
            head.mark_fallback_attempted()
            try:
                substitute = await self.advisor.find_substitute(head)
            except Exception as e:
                logger.error(f"Fallback search failed for '{head.title}': {e}")
                substitute = None

            if substitute is not None:
                apply_fallback(head, substitute)
                logger.info(f"YouTube blocked playback; switching to {head.source.value}: {head.title}")
                await self._notify("fallback_applied", head)
                if self.player is not None:
                    self.player.stop(force=True)
                self._active_generation = None
                await self._play_next()
                return

        await self._notify("track_failed", head, error)
        self._pop_head()
        if self.queue:
            await self._play_next()
        else:
            self.is_playing = False

    # ---------- controls ----------

    def is_paused(self) -> bool:
        return self.player is not None and self.player.is_paused()

    def is_active(self) -> bool:
        return self.player is not None and (self.player.is_playing() or self.player.is_paused())

    def pause(self) -> bool:
        if self.player is None or not self.player.is_playing():
            return False
        self.player.pause()
        return True

    def resume(self) -> bool:
        if self.player is None or not self.player.is_paused():
            return False
        self.player.resume()
        return True

    def skip(self) -> bool:
        """Stop the current track; the normal completion path advances the queue."""
        if not self.is_playing or not self.is_active():
            return False
        self.player.stop()
        return True

    async def _teardown(self) -> None:
        """Drop player and connection. Lock must be held."""
        self._active_generation = None
        if self.player is not None:
            try:
                self.player.stop(force=True)
            except Exception as e:
                logger.debug(f"Player stop failed: {e}")
        if self._signal_task is not None:
            self._signal_task.cancel()
            self._signal_task = None
        self.player = None
        self.is_playing = False

        if self.voice_client is not None:
            try:
                await self.voice_client.disconnect(force=True)
            except Exception as e:
                logger.warning(f"Voice disconnect failed in guild {self.guild_id}: {e}")
        self.voice_client = None
        self.voice_channel_id = None
        self._cancel_idle_timer()

    async def stop(self) -> bool:
        """Clear the queue everywhere and leave voice. False when nothing was playing or queued."""
        await self.ensure_queue_loaded()
        async with self._lock:
            if not self.is_playing and not self.queue:
                return False
            self.queue.clear()
            self._spawn(self.store.clear(self.guild_id))
            await self._teardown()
        logger.info(f"Stopped playback in guild {self.guild_id}")
        return True

    async def close(self) -> None:
        """Process shutdown: leave voice, keep the durable queue."""
        async with self._lock:
            await self._teardown()

    # ---------- presence ----------

    def _cancel_idle_timer(self) -> None:
        if self.idle_timer is not None:
            self.idle_timer.cancel()
            self.idle_timer = None

    def on_voice_presence(self, channel_id: int, listeners: int) -> None:
        """Start or cancel the idle timer from the listener count of a voice channel."""
        if self.voice_channel_id is None or channel_id != self.voice_channel_id:
            return
        if listeners > 0:
            if self.idle_timer is not None:
                logger.info(f"Listener rejoined in guild {self.guild_id}, idle timer cancelled")
            self._cancel_idle_timer()
        elif self.idle_timer is None:
            logger.info(f"Voice channel empty in guild {self.guild_id}, disconnecting in {self.idle_timeout}s")
            self.idle_timer = asyncio.create_task(self._idle_countdown(channel_id))

    def on_channel_moved(self, channel_id: int) -> None:
        self._cancel_idle_timer()
        self.voice_channel_id = channel_id

    async def _idle_countdown(self, channel_id: int) -> None:
        try:
            await asyncio.sleep(self.idle_timeout)
            async with self._lock:
                if self.voice_channel_id != channel_id:
                    return
                if self.member_counter is not None and self.member_counter(channel_id) > 0:
                    return
                self.idle_timer = None
                self.queue.clear()
                self._spawn(self.store.clear(self.guild_id))
                await self._teardown()
            logger.info(f"Disconnected from guild {self.guild_id} - channel idle")
            await self._notify("idle_disconnected")
        finally:
            if self.idle_timer is asyncio.current_task():
                self.idle_timer = None

    async def on_connection_lost(self) -> None:
        """Give the voice connection a short window to recover, then reset the session."""
        voice_client = self.voice_client
        if voice_client is None:
            return
        await asyncio.sleep(self.reconnect_window)
        async with self._lock:
            if self.voice_client is not voice_client or voice_client.is_connected():
                return
            # Durable rows stay; only the in-memory queue goes
            self.queue.clear()
            await self._teardown()
        logger.warning(f"Voice connection lost in guild {self.guild_id}")
        await self._notify("connection_lost")


class SessionRegistry:
    """Guild id to session. Sessions are created on first use and never removed."""

    def __init__(self, factory: Callable[[int], GuildPlaybackSession]):
        self._factory = factory
        self._sessions: dict[int, GuildPlaybackSession] = {}

    def get(self, guild_id: int) -> GuildPlaybackSession:
        session = self._sessions.get(guild_id)
        if session is None:
            session = self._factory(guild_id)
            self._sessions[guild_id] = session
        return session

    def peek(self, guild_id: int) -> GuildPlaybackSession | None:
        return self._sessions.get(guild_id)

    def __contains__(self, guild_id: int) -> bool:
        return guild_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self):
        return iter(list(self._sessions.values()))

    async def shutdown(self) -> None:
        for session in self:
            try:
                await session.close()
            except Exception as e:
                logger.error(f"Failed to close session for guild {session.guild_id}: {e}")
