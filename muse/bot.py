"""
Muse Music Bot - Main Entry Point
"""
import asyncio
import logging
import os
from datetime import datetime, UTC
from pathlib import Path

import discord
from discord.ext import commands

from muse.config import config

# Setup logging
Path(config.LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(config.LOG_FILE, encoding="utf-8"),
    ],
)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
logging.getLogger("discord").setLevel(logging.WARNING)
logger = logging.getLogger("bot")


class MusicBot(commands.Bot):
    """Discord music bot with a cached download queue."""

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
        self.cache = None
        self.ytdlp = None
        self.resolver = None
        self.sessions = None
        self.playback = None
        self.prefetcher = None
        self.rate_limiter = None
        self.start_time = datetime.now(UTC)

    async def setup_hook(self) -> None:
        """Called when the bot is starting up."""
        logger.info("Setting up bot...")

        from muse.database.media_cache import MediaCache
        from muse.playback.manager import PlaybackManager
        from muse.playback.models import SessionRegistry
        from muse.playback.prefetch import Prefetcher
        from muse.playback.ratelimit import RateLimiter
        from muse.playback.resolver import TrackResolver
        from muse.services.ffmpeg import AudioPipeline
        from muse.services.ytdlp import YtDlpService

        self.cache = MediaCache(config.DOWNLOAD_DIR, config.MAX_CACHE, config.CACHE_SAVE_DELAY)
        logger.info(f"Media cache at {config.DOWNLOAD_DIR} ({len(self.cache)}/{config.MAX_CACHE} entries)")

        self.ytdlp = YtDlpService(
            binary=config.YTDLP_PATH,
            download_dir=config.DOWNLOAD_DIR,
            download_timeout=config.DOWNLOAD_TIMEOUT,
            search_timeout=config.SEARCH_TIMEOUT,
            cookies_path=config.YTDL_COOKIES_PATH,
            max_playlist_items=config.MAX_PLAYLIST_ITEMS,
        )
        self.resolver = TrackResolver(self.cache, self.ytdlp, config.DOWNLOAD_DIR, config.PROGRESS_INTERVAL)
        pipeline = AudioPipeline(config.FFMPEG_PATH, config.MAX_BUFFER_BYTES, config.DECODE_TIMEOUT)

        self.sessions = SessionRegistry(default_volume=config.DEFAULT_VOLUME)
        self.rate_limiter = RateLimiter(config.MAX_DOWNLOADS_PER_USER, config.RATE_LIMIT_WINDOW)
        self.prefetcher = Prefetcher(
            self.sessions,
            self.resolver,
            pause=config.PREFETCH_PAUSE,
            batch_interval=config.BATCH_PROGRESS_INTERVAL,
        )
        self.playback = PlaybackManager(
            self.sessions,
            self.resolver,
            pipeline,
            prefetcher=self.prefetcher,
            max_failures=config.MAX_CONSECUTIVE_FAILURES,
            retry_delay=config.RETRY_DELAY,
        )
        logger.info("Services initialized")

        # Load all cogs from the cogs directory
        cogs_dir = Path(__file__).parent / "cogs"
        for cog_file in sorted(cogs_dir.glob("*.py")):
            if cog_file.name.startswith("_"):
                continue
            cog_name = f"muse.cogs.{cog_file.stem}"
            try:
                await self.load_extension(cog_name)
                logger.info(f"Loaded cog: {cog_name}")
            except commands.ExtensionError as e:
                logger.error(f"Failed to load cog {cog_name}: {e}")

        # Sync slash commands
        logger.info("Syncing slash commands...")
        await self.tree.sync()
        logger.info("Slash commands synced")

    async def on_ready(self) -> None:
        """Called when the bot is fully ready."""
        logger.info(f"Logged in as {self.user} (ID: {self.user.id})")
        logger.info(f"Connected to {len(self.guilds)} guild(s)")

        activity = discord.Activity(type=discord.ActivityType.listening, name="/play")
        await self.change_presence(activity=activity)

    async def close(self) -> None:
        """Cleanup when the bot is shutting down."""
        logger.info("Shutting down...")

        # Unload music first so sessions tear down and decoders are killed
        for extension in ("muse.cogs.music", "muse.cogs.dashboard"):
            if extension in self.extensions:
                try:
                    await self.unload_extension(extension)
                except commands.ExtensionError as e:
                    logger.warning(f"Failed to unload {extension}: {e}")

        for vc in self.voice_clients:
            try:
                await vc.disconnect(force=True)
            except Exception as e:
                logger.debug(f"Voice disconnect during shutdown failed: {e}")

        if self.prefetcher:
            await self.prefetcher.close()
        if self.cache:
            await self.cache.close()
        if self.ytdlp:
            await self.ytdlp.shutdown()

        await super().close()
        logger.info("Shutdown complete.")


async def main():
    """Main entry point."""
    if not config.DISCORD_TOKEN:
        logger.critical("DISCORD_TOKEN is not set")
        return

    bot = MusicBot()

    async with bot:
        try:
            await bot.start(config.DISCORD_TOKEN)
        except KeyboardInterrupt:
            logger.info("Shutdown initiated by user...")
        except discord.LoginFailure as e:
            logger.error(f"Login failed: {e}")
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
