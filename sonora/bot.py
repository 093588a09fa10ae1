"""
Sonora Discord Music Bot - Main Entry Point
"""
import asyncio
import logging
import os
from pathlib import Path

import discord
from discord.ext import commands

from sonora.config import config

logger = logging.getLogger("bot")


def setup_logging(log_path: Path | None = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("discord.player").setLevel(logging.WARNING)
    logging.getLogger("yt_dlp").setLevel(logging.WARNING)


class MusicBot(commands.Bot):
    """Slash-command music bot with per-guild playback sessions."""

    def __init__(self):
        intents = discord.Intents.default()
        intents.voice_states = True
        intents.guilds = True

        super().__init__(
            command_prefix="!",  # Fallback prefix, we use slash commands
            intents=intents,
            help_command=None,
        )

        # Will be initialized in setup_hook
        self.db = None
        self.youtube = None
        self.soundcloud = None
        self.search = None
        self.sessions = None

    async def setup_hook(self) -> None:
        """Called when the bot is starting up."""
        logger.info("Setting up bot...")

        from sonora.cogs.music import DiscordNotifier, count_listeners
        from sonora.database.connection import DatabaseManager
        from sonora.database.crud import QueueCRUD, SearchCacheCRUD
        from sonora.services.fallback import FallbackAdvisor
        from sonora.services.search import SearchService
        from sonora.services.session import GuildPlaybackSession, SessionRegistry
        from sonora.services.soundcloud import SoundCloudService
        from sonora.services.stream import StreamResolver
        from sonora.services.youtube import YouTubeService
        from sonora.services.ytdlp_binary import YtDlpBinary

        self.db = await DatabaseManager.create(config.DATABASE_PATH)
        logger.info(f"Database initialized at {config.DATABASE_PATH}")
        try:
            await self.db.prune_search_cache()
        except Exception as e:
            logger.warning(f"Search cache pruning skipped: {e}")

        self.youtube = YouTubeService(config.YOUTUBE_API_KEYS, config.YTDL_COOKIES_PATH, config.YTDL_PO_TOKEN)
        self.soundcloud = SoundCloudService()
        self.search = SearchService(self.youtube, SearchCacheCRUD(self.db))
        if not config.YOUTUBE_API_KEYS:
            logger.warning("No YouTube API keys configured; searches will use YouTube Music")

        binary = YtDlpBinary(config.YTDLP_PATH, config.YTDLP_AUTO_DOWNLOAD)
        resolver = StreamResolver.create(self.youtube, self.soundcloud, binary)
        queue_store = QueueCRUD(self.db)
        advisor = FallbackAdvisor(self.soundcloud)
        notifier = DiscordNotifier(self)

        def create_session(guild_id: int) -> GuildPlaybackSession:
            def member_counter(channel_id: int) -> int:
                guild = self.get_guild(guild_id)
                return count_listeners(guild.get_channel(channel_id) if guild else None)

            return GuildPlaybackSession(
                guild_id,
                resolver=resolver,
                store=queue_store,
                advisor=advisor,
                notifier=notifier,
                member_counter=member_counter,
                idle_timeout=config.IDLE_DISCONNECT_SECONDS,
            )

        self.sessions = SessionRegistry(create_session)
        logger.info("Services initialized")

        # Load all cogs from the cogs directory
        cogs_dir = Path(__file__).parent / "cogs"
        for cog_file in sorted(cogs_dir.glob("*.py")):
            if cog_file.name.startswith("_"):
                continue
            cog_name = f"sonora.cogs.{cog_file.stem}"
            try:
                await self.load_extension(cog_name)
                logger.info(f"Loaded cog: {cog_name}")
            except Exception as e:
                logger.error(f"Failed to load cog {cog_name}: {e}")

        logger.info("Syncing slash commands...")
        if config.DISCORD_GUILD_ID:
            guild = discord.Object(id=config.DISCORD_GUILD_ID)
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
        else:
            await self.tree.sync()
        logger.info("Slash commands synced")

    async def on_ready(self) -> None:
        """Called when the bot is fully ready."""
        logger.info(f"Logged in as {self.user} (ID: {self.user.id})")
        logger.info(f"Connected to {len(self.guilds)} guild(s)")

        activity = discord.Activity(type=discord.ActivityType.listening, name="/play")
        await self.change_presence(activity=activity)

    async def on_guild_join(self, guild: discord.Guild) -> None:
        logger.info(f"Joined guild: {guild.name} (ID: {guild.id})")

    async def on_guild_remove(self, guild: discord.Guild) -> None:
        logger.info(f"Left guild: {guild.name} (ID: {guild.id})")

    async def close(self) -> None:
        """Cleanup when the bot is shutting down."""
        logger.info("Shutting down...")

        # Unload music cog first so sessions leave voice and ffmpeg/yt-dlp are killed
        try:
            await self.unload_extension("sonora.cogs.music")
        except commands.ExtensionError as e:
            logger.debug(f"Music cog unload skipped: {e}")

        for service in (self.youtube, self.soundcloud):
            if service:
                await service.shutdown()

        if self.db:
            await self.db.close()

        await super().close()
        logger.info("Shutdown complete.")


async def main():
    """Main entry point."""
    setup_logging(config.LOG_PATH)
    if not config.DISCORD_TOKEN:
        raise SystemExit("DISCORD_TOKEN is not set")

    bot = MusicBot()
    async with bot:
        try:
            await bot.start(config.DISCORD_TOKEN)
        except KeyboardInterrupt:
            logger.info("Shutdown initiated by user...")
        finally:
            if not bot.is_closed():
                await bot.close()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        os._exit(0)
    except Exception as e:
        logger.critical(f"Fatal error: {e}")
        os._exit(1)


if __name__ == "__main__":
    run()
