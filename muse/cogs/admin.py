import logging
from pathlib import Path

import discord
from discord import app_commands
from discord.ext import commands

from muse.config import config

logger = logging.getLogger(__name__)


class AdminCog(commands.Cog):
    """Administrative commands for bot management."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @app_commands.command(name="logs", description="Get the latest bot logs (Admin only)")
    @app_commands.default_permissions(administrator=True)
    async def get_logs(self, interaction: discord.Interaction):
        """Send the log file as an attachment."""
        log_path = Path(config.LOG_FILE)

        if not log_path.exists():
            await interaction.response.send_message("Log file not found.", ephemeral=True)
            return

        # Discord limit is 25MB for most servers
        if log_path.stat().st_size > 25 * 1024 * 1024:
            await interaction.response.send_message("Log file is too large to send via Discord.", ephemeral=True)
            return

        await interaction.response.send_message("Here are the latest logs:", file=discord.File(log_path), ephemeral=True)

    @app_commands.command(name="debug", description="Show cache, session and download stats")
    @app_commands.default_permissions(administrator=True)
    async def debug(self, interaction: discord.Interaction):
        cache = self.bot.cache.stats()
        prefetch = self.bot.prefetcher.stats()
        playback = self.bot.playback.stats()
        limiter = self.bot.rate_limiter.stats()

        embed = discord.Embed(title="🛠️ Debug", color=discord.Color.dark_grey())
        embed.add_field(
            name="Cache",
            value=f"{cache['size']}/{cache['max_entries']} ({cache['utilization_percent']}%)",
            inline=True,
        )
        embed.add_field(
            name="Sessions",
            value=f"{playback['sessions']} active, {playback['playing']} playing, {playback['queued_tracks']} queued",
            inline=True,
        )
        embed.add_field(
            name="Prefetch",
            value=(
                f"{prefetch['queue_length']} waiting, {'running' if prefetch['active'] else 'idle'}, "
                f"{prefetch['processed']} done, {prefetch['failed']} failed"
            ),
            inline=False,
        )
        embed.add_field(name="Rate limiter", value=f"{limiter['active_users']} tracked users", inline=True)
        embed.add_field(name="Downloads", value=f"{self.bot.resolver.stats()['in_flight']} in flight", inline=True)

        session = self.bot.sessions.get(interaction.guild_id)
        if session:
            info = self.bot.playback.now_playing_info(session)
            embed.add_field(
                name="This guild",
                value=(
                    f"state `{info['state']}`{' (fetching)' if info['fetching'] else ''}, "
                    f"failures {session.consecutive_failures}, "
                    f"loop {info['loop_mode']}, volume {info['volume']}%"
                ),
                inline=False,
            )

        await interaction.response.send_message(embed=embed, ephemeral=True)

    @app_commands.command(name="cacheclear", description="Delete every cached download (Admin only)")
    @app_commands.default_permissions(administrator=True)
    async def cache_clear(self, interaction: discord.Interaction):
        busy = [s.guild_id for s in self.bot.sessions if s.is_busy or s.queue]
        if busy:
            await interaction.response.send_message(
                "❌ Stop playback in all servers before clearing the cache.", ephemeral=True
            )
            return
        removed, deleted = self.bot.cache.clear()
        logger.info(f"Cache cleared by {interaction.user} ({removed} entries, {deleted} files)")
        await interaction.response.send_message(
            f"🧹 Removed {removed} entries and {deleted} files.", ephemeral=True
        )


async def setup(bot: commands.Bot):
    await bot.add_cog(AdminCog(bot))
