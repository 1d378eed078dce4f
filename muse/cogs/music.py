"""
Music Cog - slash commands and channel notifications for the playback engine
"""
import asyncio
import logging

import discord
from discord import app_commands
from discord.ext import commands

from muse.config import config
from muse.errors import CapacityFatal, InvalidInput
from muse.playback.models import BatchProgress, Session, Track
from muse.playback.notifier import Notifier
from muse.playback.progress import ProgressInfo
from muse.utils.formatting import format_duration, progress_bar, truncate_message
from muse.utils.validation import clean_playlist_url, is_playlist_url, validate_url

logger = logging.getLogger(__name__)

JOIN_RETRIES = 2
JOIN_RETRY_DELAY = 0.7
VOLUME_STEP = 10
SWEEP_INTERVAL = 300


class ChannelNotifier(Notifier):
    """Posts engine events to the session's text channel."""

    def __init__(self, cog: "MusicCog", ttl: int = 10):
        self.cog = cog
        self.ttl = ttl
        self._downloads: dict[Track, discord.Message] = {}

    async def track_started(self, session: Session, track: Track) -> None:
        channel = session.text_channel
        if channel is None:
            return
        embed = self.cog.build_now_playing_embed(session)
        session.now_playing_message = await channel.send(embed=embed, view=NowPlayingView(self.cog, session.guild_id))

    async def track_ended(self, session: Session, track: Track | None) -> None:
        message = session.now_playing_message
        session.now_playing_message = None
        if message is None:
            return
        try:
            await message.delete()
        except discord.HTTPException as e:
            logger.debug(f"Failed to delete Now Playing message: {e}")

    async def track_failed(self, session: Session, track: Track, error: Exception) -> None:
        await self._finish_download(track)
        if session.text_channel is None:
            return
        text = truncate_message(f"❌ Could not play **{track.title}**: {error}", 500)
        await session.text_channel.send(text, delete_after=self.ttl)

    async def session_fatal(self, session: Session, error: CapacityFatal) -> None:
        # the failing track has already left the queue, so match by guild
        for track in [t for t, m in self._downloads.items() if m.guild and m.guild.id == session.guild_id]:
            await self._finish_download(track)
        if session.text_channel is None:
            return
        await session.text_channel.send(
            f"🛑 {error.failures} tracks in a row failed. Stopping playback and leaving the channel."
        )

    async def session_closed(self, session: Session, reason: str) -> None:
        if session.text_channel is None or reason != "queue_empty":
            return
        await session.text_channel.send("✅ Queue finished, leaving voice.", delete_after=self.ttl)

    async def download_progress(self, session: Session, track: Track, info: ProgressInfo) -> None:
        channel = session.text_channel
        if channel is None:
            return

        text = f"⬇️ **{track.title}** `{progress_bar(info.percent)}` {info.percent:.1f}%"
        if info.speed:
            text += f" at {info.speed}"
        if info.eta:
            text += f" (ETA {info.eta})"

        message = self._downloads.get(track)
        try:
            if message is None:
                message = await channel.send(text)
                self._downloads[track] = message
            else:
                await message.edit(content=text)
        except discord.HTTPException as e:
            logger.debug(f"Failed to update download progress: {e}")
            self._downloads.pop(track, None)
            return

        if info.percent >= 100:
            await self._finish_download(track)

    async def _finish_download(self, track: Track) -> None:
        """Schedule deletion of the track's download message, if it has one."""
        message = self._downloads.pop(track, None)
        if message is None:
            return
        try:
            await message.delete(delay=self.ttl)
        except discord.HTTPException as e:
            logger.debug(f"Failed to delete download message: {e}")

    async def batch_progress(
        self,
        session: Session,
        batch: BatchProgress,
        done: int,
        total: int,
        track: Track | None = None,
        info: ProgressInfo | None = None,
    ) -> bool:
        channel = session.text_channel
        if channel is None:
            return False

        percent = done / total * 100
        text = f"📥 **{batch.label}**: {done}/{total} ready `{progress_bar(percent)}`"
        if track is not None and info is not None:
            text += f"\n⬇️ {track.title}: {info.percent:.1f}%"
            if info.speed:
                text += f" at {info.speed}"
        try:
            if batch.message is None:
                batch.message = await channel.send(text)
            else:
                await batch.message.edit(content=text)
        except discord.NotFound:
            return False
        except discord.HTTPException as e:
            logger.debug(f"Failed to update batch progress for {batch.label}: {e}")
            return False

        if done >= total:
            await batch.message.delete(delay=self.ttl)
            return False
        return True


class NowPlayingView(discord.ui.View):
    """Interactive Now Playing controls."""

    def __init__(self, cog: "MusicCog", guild_id: int):
        super().__init__(timeout=None)
        self.cog = cog
        self.guild_id = guild_id

    async def _session(self, interaction: discord.Interaction) -> Session | None:
        session = self.cog.bot.sessions.get(self.guild_id)
        if session is None:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)
        return session

    @discord.ui.button(emoji="⏮️", style=discord.ButtonStyle.secondary)
    async def back(self, interaction: discord.Interaction, button: discord.ui.Button):
        session = await self._session(interaction)
        if session is None:
            return
        if self.cog.bot.playback.back(session):
            await interaction.response.defer()
        else:
            await interaction.response.send_message("❌ No previous track", ephemeral=True)

    @discord.ui.button(emoji="⏸️", style=discord.ButtonStyle.secondary)
    async def pause_resume(self, interaction: discord.Interaction, button: discord.ui.Button):
        session = await self._session(interaction)
        if session is None:
            return
        playback = self.cog.bot.playback
        if playback.pause(session):
            button.emoji = "▶️"
        elif playback.resume(session):
            button.emoji = "⏸️"
        await interaction.response.edit_message(view=self)

    @discord.ui.button(emoji="⏭️", style=discord.ButtonStyle.secondary)
    async def skip(self, interaction: discord.Interaction, button: discord.ui.Button):
        session = await self._session(interaction)
        if session is None:
            return
        self.cog.bot.playback.skip(session)
        await interaction.response.defer()

    @discord.ui.button(emoji="⏹️", style=discord.ButtonStyle.danger)
    async def stop_button(self, interaction: discord.Interaction, button: discord.ui.Button):
        session = await self._session(interaction)
        if session is None:
            return
        await interaction.response.send_message("⏹️ Stopped and cleared queue!", delete_after=config.STATUS_MESSAGE_TTL)
        await self.cog.bot.playback.stop(session)
        self.stop()

    @discord.ui.button(emoji="🔉", style=discord.ButtonStyle.secondary, row=1)
    async def volume_down(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self._step_volume(interaction, -VOLUME_STEP)

    @discord.ui.button(emoji="🔊", style=discord.ButtonStyle.secondary, row=1)
    async def volume_up(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self._step_volume(interaction, VOLUME_STEP)

    async def _step_volume(self, interaction: discord.Interaction, step: int):
        session = await self._session(interaction)
        if session is None:
            return
        volume = self.cog.bot.playback.set_volume(session, session.volume + step)
        await interaction.response.send_message(f"🔊 Volume: {volume}%", ephemeral=True)


class MusicCog(commands.Cog):
    """Music playback commands and queue management."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.notifier = ChannelNotifier(self, ttl=config.STATUS_MESSAGE_TTL)
        self._sweep_task: asyncio.Task | None = None

    async def cog_load(self):
        """Called when the cog is loaded."""
        self.bot.playback.notifier = self.notifier
        self.bot.prefetcher.notifier = self.notifier
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Music cog loaded")

    async def cog_unload(self):
        """Called when the cog is unloaded."""
        if self._sweep_task:
            self._sweep_task.cancel()
        await self.bot.playback.shutdown()
        logger.info("Music cog unloaded")

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(SWEEP_INTERVAL)
            removed = self.bot.rate_limiter.sweep()
            if removed:
                logger.debug(f"Swept {removed} rate limit windows")

    # ==================== HELPERS ====================

    async def _connect(self, interaction: discord.Interaction) -> Session | None:
        """Join the caller's voice channel and return the guild's session."""
        if not interaction.user.voice or not interaction.user.voice.channel:
            await interaction.followup.send("❌ You need to be in a voice channel!", ephemeral=True)
            return None

        channel = interaction.user.voice.channel
        sessions = self.bot.sessions
        session = sessions.get(interaction.guild_id)
        if session and session.voice_client and session.voice_client.is_connected():
            session.text_channel = interaction.channel
            return session

        voice_client = interaction.guild.voice_client
        last_error = None
        for attempt in range(JOIN_RETRIES + 1):
            if voice_client and voice_client.is_connected():
                break
            try:
                voice_client = await channel.connect(self_deaf=True, timeout=20.0)
                logger.info(f"Connected to {channel.name} in {interaction.guild.name}")
                break
            except (asyncio.TimeoutError, discord.ClientException) as e:
                last_error = e
                logger.warning(f"Voice connect attempt {attempt + 1} failed in {interaction.guild.name}: {e}")
                await asyncio.sleep(JOIN_RETRY_DELAY)
        else:
            await interaction.followup.send(f"❌ Failed to connect: {last_error}", ephemeral=True)
            return None

        return sessions.create(interaction.guild_id, voice_client=voice_client, text_channel=interaction.channel)

    def _active_session(self, interaction: discord.Interaction) -> Session | None:
        return self.bot.sessions.get(interaction.guild_id)

    def build_now_playing_embed(self, session: Session) -> discord.Embed:
        track = session.current
        embed = discord.Embed(title="🎵 Now Playing", color=discord.Color.from_rgb(124, 58, 237))
        if track is None:
            embed.description = "Nothing is playing"
            return embed

        embed.add_field(name="🎶 Track", value=f"**{track.title}**", inline=False)
        embed.add_field(name="⏳ Duration", value=format_duration(track.duration_seconds), inline=True)
        if track.requester_id:
            embed.add_field(name="📨 Requested by", value=f"<@{track.requester_id}>", inline=True)
        embed.add_field(name="🔁 Loop", value=session.loop_mode.value, inline=True)
        embed.add_field(name="🔀 Shuffle", value="on" if session.shuffle else "off", inline=True)
        embed.add_field(name="🔊 Volume", value=f"{session.volume}%", inline=True)
        embed.add_field(name="📜 Queue", value=f"{len(session.queue)} songs", inline=True)
        if track.url:
            embed.add_field(name="🔗 Link", value=f"[Source]({track.url})", inline=True)
        if session.queue:
            upcoming = session.queue[0]
            embed.add_field(
                name="⏭️ Up Next",
                value=f"**{upcoming.title}** ({format_duration(upcoming.duration_seconds)})",
                inline=False,
            )
        return embed

    # ==================== COMMANDS ====================

    @app_commands.command(name="play", description="Play a link, playlist or search result")
    @app_commands.describe(query="URL or search terms")
    async def play(self, interaction: discord.Interaction, query: str):
        """Resolve the query and add it to the queue."""
        await interaction.response.defer(ephemeral=True)

        if not self.bot.rate_limiter.check(interaction.user.id):
            wait = self.bot.rate_limiter.retry_after(interaction.user.id)
            await interaction.followup.send(f"⏳ Slow down! Try again in {wait:.0f}s.", ephemeral=True)
            return

        query = query.strip()
        try:
            if query.startswith(("http://", "https://")):
                url = validate_url(query)
                if is_playlist_url(url):
                    await self._play_playlist(interaction, clean_playlist_url(url))
                    return
                tracks = [Track(url=url, requester_id=interaction.user.id)]
            else:
                results = await self.bot.ytdlp.search(query, limit=1)
                if not results:
                    await interaction.followup.send(f"❌ No results found for: `{query}`", ephemeral=True)
                    return
                hit = results[0]
                tracks = [Track(
                    url=hit.url,
                    title=hit.title,
                    duration_seconds=hit.duration_seconds,
                    requester_id=interaction.user.id,
                )]
        except InvalidInput as e:
            await interaction.followup.send(f"❌ {e}", ephemeral=True)
            return

        session = await self._connect(interaction)
        if session is None:
            return

        try:
            position = self.bot.playback.enqueue(session, tracks[0])
        except InvalidInput as e:
            await interaction.followup.send(f"❌ {e}", ephemeral=True)
            return

        await interaction.followup.send(f"✅ Queued **{tracks[0].title}** (#{position})", ephemeral=True)

    async def _play_playlist(self, interaction: discord.Interaction, url: str):
        title, entries = await self.bot.ytdlp.get_playlist_entries(url, limit=config.MAX_PLAYLIST_ITEMS)
        if not entries:
            await interaction.followup.send("❌ Playlist is empty or unavailable.", ephemeral=True)
            return

        session = await self._connect(interaction)
        if session is None:
            return

        label = title or "Playlist"
        tracks = [
            Track(url=e.url, title=e.title, duration_seconds=e.duration_seconds, requester_id=interaction.user.id)
            for e in entries
        ]
        accepted = self.bot.playback.enqueue_many(session, tracks, group_label=label)
        await interaction.followup.send(f"✅ Queued {len(accepted)} songs from **{label}**", ephemeral=True)

    @app_commands.command(name="playcache", description="Queue every cached song")
    async def playcache(self, interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)
        entries = self.bot.cache.entries()
        tracks = []
        for entry in entries:
            if not self.bot.cache.has(entry.key):
                continue
            tracks.append(Track(
                url=None,
                title=entry.title or entry.key,
                duration_seconds=entry.duration,
                local_path=entry.path,
                requester_id=interaction.user.id,
            ))
        if not tracks:
            await interaction.followup.send("❌ The cache is empty.", ephemeral=True)
            return

        session = await self._connect(interaction)
        if session is None:
            return
        accepted = self.bot.playback.enqueue_many(session, tracks)
        await interaction.followup.send(f"✅ Queued {len(accepted)} cached songs", ephemeral=True)

    @app_commands.command(name="pause", description="Pause the current song")
    async def pause(self, interaction: discord.Interaction):
        session = self._active_session(interaction)
        if session and self.bot.playback.pause(session):
            await interaction.response.send_message("⏸️ Paused", delete_after=config.STATUS_MESSAGE_TTL)
        else:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)

    @app_commands.command(name="resume", description="Resume the paused song")
    async def resume(self, interaction: discord.Interaction):
        session = self._active_session(interaction)
        if session and self.bot.playback.resume(session):
            await interaction.response.send_message("▶️ Resumed", delete_after=config.STATUS_MESSAGE_TTL)
        else:
            await interaction.response.send_message("❌ Nothing is paused", ephemeral=True)

    @app_commands.command(name="skip", description="Skip the current song")
    async def skip(self, interaction: discord.Interaction):
        session = self._active_session(interaction)
        if session and self.bot.playback.skip(session):
            await interaction.response.send_message("⏭️ Skipped!", delete_after=config.STATUS_MESSAGE_TTL)
        else:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)

    @app_commands.command(name="back", description="Play the previous song again")
    async def back(self, interaction: discord.Interaction):
        session = self._active_session(interaction)
        if session and self.bot.playback.back(session):
            await interaction.response.send_message("⏮️ Going back", delete_after=config.STATUS_MESSAGE_TTL)
        else:
            await interaction.response.send_message("❌ No previous track", ephemeral=True)

    @app_commands.command(name="stop", description="Stop playback, clear the queue and leave")
    async def stop(self, interaction: discord.Interaction):
        session = self._active_session(interaction)
        if session is None:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)
            return
        await interaction.response.send_message("⏹️ Stopped and cleared queue!", delete_after=config.STATUS_MESSAGE_TTL)
        await self.bot.playback.stop(session)

    @app_commands.command(name="volume", description="Set the volume (0-100)")
    @app_commands.describe(level="Volume percentage")
    async def volume(self, interaction: discord.Interaction, level: app_commands.Range[int, 0, 100]):
        session = self._active_session(interaction)
        if session is None:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)
            return
        applied = self.bot.playback.set_volume(session, level)
        await interaction.response.send_message(f"🔊 Volume: {applied}%", delete_after=config.STATUS_MESSAGE_TTL)

    @app_commands.command(name="loop", description="Set the loop mode")
    @app_commands.choices(mode=[
        app_commands.Choice(name="Off", value="off"),
        app_commands.Choice(name="Track", value="track"),
        app_commands.Choice(name="Queue", value="queue"),
    ])
    async def loop(self, interaction: discord.Interaction, mode: app_commands.Choice[str] | None = None):
        session = self._active_session(interaction)
        if session is None:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)
            return
        playback = self.bot.playback
        applied = playback.set_loop_mode(session, mode.value) if mode else playback.cycle_loop_mode(session)
        await interaction.response.send_message(f"🔁 Loop: {applied.value}", delete_after=config.STATUS_MESSAGE_TTL)

    @app_commands.command(name="shuffle", description="Toggle shuffle for the upcoming songs")
    async def shuffle(self, interaction: discord.Interaction):
        session = self._active_session(interaction)
        if session is None:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)
            return
        enabled = self.bot.playback.toggle_shuffle(session)
        msg = "🔀 Shuffle enabled!" if enabled else "➡️ Shuffle disabled!"
        await interaction.response.send_message(msg, delete_after=config.STATUS_MESSAGE_TTL)

    @app_commands.command(name="clear", description="Clear the queue (DJ only)")
    @app_commands.default_permissions(manage_channels=True)
    async def clear(self, interaction: discord.Interaction):
        session = self._active_session(interaction)
        removed = self.bot.playback.clear_queue(session) if session else 0
        await interaction.response.send_message(f"🗑️ Removed {removed} songs from the queue", ephemeral=True)

    @app_commands.command(name="queue", description="Show the current queue")
    async def queue(self, interaction: discord.Interaction):
        session = self._active_session(interaction)
        embed = discord.Embed(title="🎵 Queue", color=discord.Color.blue())

        if session and session.current:
            embed.add_field(
                name="Now Playing",
                value=f"**{session.current.title}** ({format_duration(session.current.duration_seconds)})",
                inline=False,
            )

        upcoming = session.upcoming(10) if session else []
        if not upcoming:
            embed.add_field(name="Up Next", value="Queue is empty", inline=False)
        else:
            lines = [
                f"{i}. **{t.title}** ({format_duration(t.duration_seconds)}){' ✅' if t.local_path else ''}"
                for i, t in enumerate(upcoming, 1)
            ]
            remaining = len(session.queue) - len(upcoming)
            if remaining > 0:
                lines.append(f"...and {remaining} more")
            embed.add_field(name="Up Next", value=truncate_message("\n".join(lines), 1024), inline=False)

        if session:
            embed.set_footer(text=f"Loop: {session.loop_mode.value} | Shuffle: {'on' if session.shuffle else 'off'}")
        await interaction.response.send_message(embed=embed, ephemeral=True)

    @app_commands.command(name="nowplaying", description="Show the current song")
    async def nowplaying(self, interaction: discord.Interaction):
        session = self._active_session(interaction)
        if session is None or session.current is None:
            await interaction.response.send_message("❌ Nothing is playing", ephemeral=True)
            return
        await interaction.response.send_message(embed=self.build_now_playing_embed(session), ephemeral=True)

    # ==================== EVENTS ====================

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ):
        """Tear down the session when the bot is disconnected from voice."""
        if member.id != self.bot.user.id:
            return
        if before.channel is not None and after.channel is None:
            session = self.bot.sessions.get(member.guild.id)
            if session is not None and not session.closed:
                logger.info(f"Disconnected from voice in {member.guild.name}, ending session")
                await self.bot.playback.teardown(session, "disconnected")


async def setup(bot: commands.Bot):
    await bot.add_cog(MusicCog(bot))
