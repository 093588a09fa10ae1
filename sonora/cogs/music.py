"""
Music Cog - slash commands, playback controls and voice presence
"""
import asyncio
import logging
from typing import Any
from urllib.parse import urlparse

import discord
from discord import app_commands
from discord.ext import commands

from sonora.config import config
from sonora.errors import SearchError, SonoraError
from sonora.services.search import SearchService, split_query_input
from sonora.services.session import GuildPlaybackSession, Requester, SessionRegistry
from sonora.services.tracks import TrackReference
from sonora.services.youtube import YouTubeService, build_fallback_track_from_url, parse_youtube_url

logger = logging.getLogger(__name__)

SEARCH_SELECT_TIMEOUT = 30
MAX_MULTI_QUERIES = 5
QUEUE_PAGE_SIZE = 10


def truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    if limit <= 3:
        return value[:limit]
    return f"{value[:limit - 3]}..."


def looks_like_url(value: str) -> bool:
    try:
        return urlparse(value.strip()).scheme in ("http", "https")
    except ValueError:
        return False


def count_listeners(channel: Any) -> int:
    """Non-bot members in a voice channel."""
    if channel is None:
        return 0
    return sum(1 for m in channel.members if not m.bot)


def track_embed(track: TrackReference, title: str, color: discord.Color) -> discord.Embed:
    embed = discord.Embed(title=title, description=f"**{track.title}**", color=color)
    if track.url.startswith("http"):
        embed.url = track.url
    if track.thumbnail:
        embed.set_thumbnail(url=track.thumbnail)
    embed.add_field(name="🎤 Channel", value=track.channel_title or "Unknown", inline=True)
    embed.add_field(name="⏳ Duration", value=track.duration or "Unknown", inline=True)
    if track.requested_by:
        embed.set_footer(text=f"Requested by {track.requested_by}")
    return embed


class DiscordNotifier:
    """Posts session events as embeds in the guild's text channel."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot

    def _channel(self, session: GuildPlaybackSession, fallback_to_general: bool = False):
        channel = self.bot.get_channel(session.text_channel_id) if session.text_channel_id else None
        if channel is None and fallback_to_general:
            guild = self.bot.get_guild(session.guild_id)
            if guild:
                channel = discord.utils.get(guild.text_channels, name="general")
        return channel

    async def _send(self, session: GuildPlaybackSession, fallback_to_general: bool = False, **kwargs) -> None:
        channel = self._channel(session, fallback_to_general)
        if channel is None:
            return
        try:
            await channel.send(**kwargs)
        except discord.HTTPException as e:
            logger.warning(f"Failed to send message in guild {session.guild_id}: {e}")

    async def now_playing(self, session: GuildPlaybackSession, track: TrackReference) -> None:
        embed = track_embed(track, "🎶 Now Playing", discord.Color.from_rgb(124, 58, 237))
        embed.add_field(name="📜 Queue", value=f"{max(0, len(session.queue) - 1)} up next", inline=True)
        await self._send(session, embed=embed, view=NowPlayingView(self.bot, session.guild_id))

    async def queued(self, session: GuildPlaybackSession, track: TrackReference, position: int) -> None:
        embed = track_embed(track, "🎵 Added to Queue", discord.Color.blue())
        embed.add_field(name="#️⃣ Position", value=str(position), inline=True)
        await self._send(session, embed=embed)

    async def queue_finished(self, session: GuildPlaybackSession) -> None:
        embed = discord.Embed(description="🎵 The queue has finished.", color=discord.Color.dark_grey())
        await self._send(session, embed=embed)

    async def track_failed(self, session: GuildPlaybackSession, track: TrackReference | None, error: Any) -> None:
        name = f"**{track.title}**" if track else "the current track"
        embed = discord.Embed(
            title="❌ Playback error",
            description=f"Could not play {name}. Skipping.",
            color=discord.Color.red()
        )
        await self._send(session, embed=embed)

    async def fallback_applied(self, session: GuildPlaybackSession, track: TrackReference) -> None:
        await self._send(session, content=f"⚠️ YouTube blocked this audio. Using SoundCloud: **{track.title}**")

    async def idle_disconnected(self, session: GuildPlaybackSession) -> None:
        embed = discord.Embed(
            description="👋 Left the voice channel after being alone for a while. Queue cleared.",
            color=discord.Color.dark_grey()
        )
        await self._send(session, fallback_to_general=True, embed=embed)

    async def connection_lost(self, session: GuildPlaybackSession) -> None:
        await self._send(session, content="🔌 Disconnected from the voice channel.")


def _same_channel_error(session: GuildPlaybackSession, member: discord.Member) -> str | None:
    """Message to show when ``member`` may not control this session, else None."""
    if not member.voice or not member.voice.channel:
        return "❌ You need to be in a voice channel!"
    bot_channel_id = session.voice_channel_id
    if bot_channel_id and member.voice.channel.id != bot_channel_id:
        return "❌ You must be in the same voice channel as the bot."
    return None


class NowPlayingView(discord.ui.View):
    """Interactive Now Playing controls."""

    def __init__(self, bot: commands.Bot, guild_id: int):
        super().__init__(timeout=600)
        self.bot = bot
        self.guild_id = guild_id

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        session = self.bot.sessions.get(self.guild_id)
        error = _same_channel_error(session, interaction.user)
        if error:
            await interaction.response.send_message(error, ephemeral=True)
            return False
        return True

    @discord.ui.button(emoji="⏯️", style=discord.ButtonStyle.primary)
    async def pause_resume(self, interaction: discord.Interaction, button: discord.ui.Button):
        session = self.bot.sessions.get(self.guild_id)
        if session.pause():
            await interaction.response.send_message("⏸️ Paused", ephemeral=True)
        elif session.resume():
            await interaction.response.send_message("▶️ Resumed", ephemeral=True)
        elif not interaction.response.is_done():
            await interaction.response.defer()

    @discord.ui.button(emoji="⏭️", style=discord.ButtonStyle.secondary)
    async def skip(self, interaction: discord.Interaction, button: discord.ui.Button):
        session = self.bot.sessions.get(self.guild_id)
        if session.skip():
            await interaction.response.send_message("⏭️ Skipped!", ephemeral=True)
        elif not interaction.response.is_done():
            await interaction.response.defer()

    @discord.ui.button(emoji="⏹️", style=discord.ButtonStyle.danger)
    async def stop_button(self, interaction: discord.Interaction, button: discord.ui.Button):
        session = self.bot.sessions.get(self.guild_id)
        if await session.stop():
            await interaction.response.send_message("⏹️ Stopped and cleared queue!", ephemeral=True)
            self.stop()
        elif not interaction.response.is_done():
            await interaction.response.defer()


class SearchSelect(discord.ui.Select):
    def __init__(self, tracks: list[TrackReference]):
        options = [
            discord.SelectOption(
                label=truncate(f"{i}. {t.title}", 100),
                description=truncate(f"{t.channel_title} · {t.duration or 'Unknown'}", 100),
                value=str(i - 1),
            )
            for i, t in enumerate(tracks, 1)
        ]
        super().__init__(placeholder="Pick a song", options=options)

    async def callback(self, interaction: discord.Interaction):
        await self.view.choose(interaction, int(self.values[0]))


class SearchResultsView(discord.ui.View):
    """Result picker for /search. Only the requester may choose."""

    def __init__(self, cog: "MusicCog", session: GuildPlaybackSession, requester: Requester, tracks: list[TrackReference]):
        super().__init__(timeout=SEARCH_SELECT_TIMEOUT)
        self.cog = cog
        self.session = session
        self.requester = requester
        self.tracks = tracks
        self.message: discord.Message | None = None
        self.add_item(SearchSelect(tracks))

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if interaction.user.id != self.requester.user_id:
            await interaction.response.send_message(
                "❌ Only the person who started the search can pick a song.", ephemeral=True
            )
            return False
        return True

    async def choose(self, interaction: discord.Interaction, index: int):
        track = self.tracks[index]
        self.session.pending_search = None
        self.stop()
        await interaction.response.edit_message(
            embed=track_embed(track, "✅ Song selected", discord.Color.green()), view=None
        )
        await self.cog.enqueue_for(self.session, track, self.requester, interaction)

    async def on_timeout(self):
        self.session.pending_search = None
        if self.message:
            embed = discord.Embed(
                title="⏱️ Time's up",
                description="No song was selected. Run `/search` again if you like.",
                color=discord.Color.red()
            )
            try:
                await self.message.edit(embed=embed, view=None)
            except discord.HTTPException as e:
                logger.debug(f"Failed to edit expired search message: {e}")


class MusicCog(commands.Cog):
    """Music playback commands and queue management."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.sessions: SessionRegistry = bot.sessions
        self.search: SearchService = bot.search
        self.youtube: YouTubeService = bot.youtube
        self._tasks: set[asyncio.Task] = set()

    async def cog_unload(self):
        """Leave every voice channel, keeping durable queues."""
        await self.sessions.shutdown()
        logger.info("Music cog unloaded")

    def get_session(self, guild_id: int) -> GuildPlaybackSession:
        return self.sessions.get(guild_id)

    # ==================== HELPERS ====================

    async def _voice_requester(self, interaction: discord.Interaction) -> Requester | None:
        """Requester for the caller, or None after replying with the reason."""
        if interaction.guild is None:
            await interaction.response.send_message("❌ This command only works in a server.", ephemeral=True)
            return None

        member = interaction.user
        if not member.voice or not member.voice.channel:
            await interaction.response.send_message("❌ You need to be in a voice channel!", ephemeral=True)
            return None

        channel = member.voice.channel
        permissions = channel.permissions_for(interaction.guild.me)
        if not permissions.connect or not permissions.speak:
            await interaction.response.send_message(
                "❌ I need permission to connect and speak in your voice channel.", ephemeral=True
            )
            return None

        session = self.get_session(interaction.guild_id)
        if session.voice_channel_id and session.voice_channel_id != channel.id:
            await interaction.response.send_message(
                "❌ You must be in the same voice channel as the bot.", ephemeral=True
            )
            return None

        return Requester(
            display_name=member.display_name,
            user_id=member.id,
            voice_channel=channel,
            text_channel_id=interaction.channel_id,
        )

    async def _control_session(self, interaction: discord.Interaction) -> GuildPlaybackSession | None:
        if interaction.guild is None:
            await interaction.response.send_message("❌ This command only works in a server.", ephemeral=True)
            return None
        session = self.get_session(interaction.guild_id)
        error = _same_channel_error(session, interaction.user)
        if error:
            await interaction.response.send_message(error, ephemeral=True)
            return None
        return session

    async def _resolve_url(self, url: str) -> TrackReference | None:
        parsed = parse_youtube_url(url)
        if not parsed:
            return None
        video_id, canonical = parsed
        track = await self.youtube.get_track_info(video_id)
        if track is None:
            logger.warning(f"No metadata for {canonical}, queueing it bare")
            return build_fallback_track_from_url(canonical)
        track.url = canonical
        return track

    async def enqueue_for(
        self,
        session: GuildPlaybackSession,
        track: TrackReference,
        requester: Requester,
        interaction: discord.Interaction,
    ) -> bool:
        try:
            await session.enqueue(track, requester)
            return True
        except SonoraError as e:
            await interaction.followup.send(f"❌ {e}", ephemeral=True)
        except (discord.ClientException, asyncio.TimeoutError) as e:
            logger.error(f"Failed to join voice in guild {session.guild_id}: {e}")
            await interaction.followup.send("❌ Failed to connect to your voice channel.", ephemeral=True)
        return False

    # ==================== COMMANDS ====================

    @app_commands.command(name="play", description="Play a YouTube link or the best search match")
    @app_commands.describe(query="YouTube URL or search terms")
    async def play(self, interaction: discord.Interaction, query: str):
        requester = await self._voice_requester(interaction)
        if requester is None:
            return
        await interaction.response.defer(ephemeral=True)
        session = self.get_session(interaction.guild_id)

        try:
            if looks_like_url(query):
                track = await self._resolve_url(query)
                if track is None:
                    await interaction.followup.send("❌ Only direct YouTube links are supported.", ephemeral=True)
                    return
            else:
                results = await self.search.search(query, 1)
                if not results:
                    await interaction.followup.send(f"❌ No results found for: `{query}`", ephemeral=True)
                    return
                track = results[0]
        except SearchError as e:
            logger.error(f"Play search failed: {e}")
            await interaction.followup.send("❌ Search is unavailable right now, try again later.", ephemeral=True)
            return

        logger.info(f"Selected track: {track.title}")
        if await self.enqueue_for(session, track, requester, interaction):
            await interaction.followup.send(f"✅ Queued **{track.title}**", ephemeral=True)

    @app_commands.command(name="playmany", description="Queue several searches separated by ; or ,")
    @app_commands.describe(queries="For example: song one; song two; song three")
    async def play_many(self, interaction: discord.Interaction, queries: str):
        requester = await self._voice_requester(interaction)
        if requester is None:
            return
        parts = split_query_input(queries, MAX_MULTI_QUERIES)
        if not parts:
            await interaction.response.send_message("❌ Give at least one search.", ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)
        session = self.get_session(interaction.guild_id)

        queued, missing = [], []
        for part in parts:
            try:
                track = await self.search.search_best(part, 5)
            except SearchError as e:
                logger.error(f"Search for '{part}' failed: {e}")
                track = None
            if track is None:
                missing.append(part)
                continue
            if not await self.enqueue_for(session, track, requester, interaction):
                return
            queued.append(track.title)

        lines = [f"✅ **{title}**" for title in queued] + [f"❌ `{q}`" for q in missing]
        await interaction.followup.send("\n".join(lines), ephemeral=True)

    @app_commands.command(name="search", description="Search YouTube and pick from the results")
    @app_commands.describe(query="Song or artist")
    async def search_command(self, interaction: discord.Interaction, query: str):
        requester = await self._voice_requester(interaction)
        if requester is None:
            return
        session = self.get_session(interaction.guild_id)
        if session.pending_search:
            await interaction.response.send_message(
                "❌ A search is already waiting for a pick. Choose a song or wait for it to expire.",
                ephemeral=True
            )
            return

        await interaction.response.defer()
        try:
            results = await self.search.search(query, config.SEARCH_RESULTS)
        except SearchError as e:
            logger.error(f"Search command failed: {e}")
            await interaction.followup.send("❌ Search is unavailable right now, try again later.")
            return
        if not results:
            await interaction.followup.send(f"❌ No results found for: `{query}`")
            return

        embed = discord.Embed(
            title=f"🔍 Results for \"{truncate(query, 200)}\"",
            description="Pick a song from the menu.",
            color=discord.Color.gold()
        )
        for i, track in enumerate(results, 1):
            embed.add_field(
                name=truncate(f"{i}. {track.title}", 256),
                value=f"**Channel:** {track.channel_title} | **Duration:** {track.duration or 'Unknown'}",
                inline=False
            )
        embed.set_footer(text=f"You have {SEARCH_SELECT_TIMEOUT} seconds to choose.")

        session.pending_search = results
        view = SearchResultsView(self, session, requester, results)
        view.message = await interaction.followup.send(embed=embed, view=view, wait=True)

    @app_commands.command(name="pause", description="Pause the current song")
    async def pause(self, interaction: discord.Interaction):
        session = await self._control_session(interaction)
        if session is None:
            return
        if session.pause():
            await interaction.response.send_message("⏸️ Paused")
        else:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)

    @app_commands.command(name="resume", description="Resume the paused song")
    async def resume(self, interaction: discord.Interaction):
        session = await self._control_session(interaction)
        if session is None:
            return
        if session.resume():
            await interaction.response.send_message("▶️ Resumed")
        else:
            await interaction.response.send_message("❌ Nothing is paused", ephemeral=True)

    @app_commands.command(name="skip", description="Skip the current song")
    async def skip(self, interaction: discord.Interaction):
        session = await self._control_session(interaction)
        if session is None:
            return
        if session.skip():
            await interaction.response.send_message("⏭️ Skipped!")
        else:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)

    @app_commands.command(name="stop", description="Stop playback, clear the queue and leave")
    async def stop(self, interaction: discord.Interaction):
        session = await self._control_session(interaction)
        if session is None:
            return
        await interaction.response.defer()
        if await session.stop():
            await interaction.followup.send("⏹️ Stopped and cleared queue!")
        else:
            await interaction.followup.send("❌ Nothing is playing")

    @app_commands.command(name="queue", description="Show the current queue")
    async def queue(self, interaction: discord.Interaction):
        if interaction.guild is None:
            await interaction.response.send_message("❌ This command only works in a server.", ephemeral=True)
            return
        session = self.get_session(interaction.guild_id)
        tracks = await session.snapshot()

        embed = discord.Embed(title="🎵 Queue", color=discord.Color.blue())
        if not tracks:
            embed.description = "Queue is empty"
        else:
            head, upcoming = tracks[0], tracks[1:]
            label = "Now Playing" if session.is_playing else "Up First"
            embed.add_field(name=label, value=f"**{head.title}**\n{head.channel_title}", inline=False)
            if upcoming:
                lines = [
                    f"{i}. **{truncate(t.title, 80)}** - {t.duration or '?'}"
                    for i, t in enumerate(upcoming[:QUEUE_PAGE_SIZE], 1)
                ]
                if len(upcoming) > QUEUE_PAGE_SIZE:
                    lines.append(f"...and {len(upcoming) - QUEUE_PAGE_SIZE} more")
                embed.add_field(name="Up Next", value="\n".join(lines), inline=False)

        await interaction.response.send_message(embed=embed, ephemeral=True)

    @app_commands.command(name="help", description="List the music commands")
    async def help(self, interaction: discord.Interaction):
        embed = discord.Embed(title="🎧 Commands", color=discord.Color.blurple())
        for command in self.get_app_commands():
            embed.add_field(name=f"/{command.name}", value=command.description, inline=False)
        await interaction.response.send_message(embed=embed, ephemeral=True)

    # ==================== EVENTS ====================

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState
    ):
        """Feed voice presence and connection changes to the guild's session."""
        session = self.sessions.peek(member.guild.id)
        if session is None:
            return

        if self.bot.user and member.id == self.bot.user.id:
            if after.channel is None and session.voice_client is not None:
                task = asyncio.create_task(session.on_connection_lost())
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            elif after.channel and before.channel and after.channel.id != before.channel.id:
                logger.info(f"Moved to voice channel {after.channel.id} in {member.guild.name}")
                session.on_channel_moved(after.channel.id)
                session.on_voice_presence(after.channel.id, count_listeners(after.channel))
            return

        if member.bot or session.voice_channel_id is None:
            return

        touched = {c.id for c in (before.channel, after.channel) if c}
        if session.voice_channel_id in touched:
            channel = member.guild.get_channel(session.voice_channel_id)
            session.on_voice_presence(session.voice_channel_id, count_listeners(channel))


async def setup(bot: commands.Bot):
    """Load the music cog."""
    await bot.add_cog(MusicCog(bot))
