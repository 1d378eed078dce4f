"""
Tests for the channel notifier's status message housekeeping.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from muse.cogs.music import ChannelNotifier
from muse.errors import CapacityFatal, TransientFetchFailure
from muse.playback.models import BatchProgress, Session, Track
from muse.playback.progress import ProgressInfo


def make_message(guild_id=1):
    message = MagicMock()
    message.edit = AsyncMock()
    message.delete = AsyncMock()
    message.guild.id = guild_id
    return message


@pytest.fixture
def channel():
    channel = MagicMock()
    channel.send = AsyncMock(side_effect=lambda *args, **kwargs: make_message())
    return channel


@pytest.fixture
def notifier():
    return ChannelNotifier(cog=None, ttl=7)


class TestDownloadMessages:
    @pytest.mark.asyncio
    async def test_progress_edits_one_message_per_track(self, notifier, channel):
        session = Session(guild_id=1, text_channel=channel)
        track = Track(url="https://example.com/a", title="a")

        await notifier.download_progress(session, track, ProgressInfo(10.0))
        await notifier.download_progress(session, track, ProgressInfo(40.0, "1MiB/s", "00:03"))

        assert channel.send.await_count == 1
        message = notifier._downloads[track]
        assert "40.0%" in message.edit.await_args.kwargs["content"]

    @pytest.mark.asyncio
    async def test_completed_download_message_is_removed(self, notifier, channel):
        session = Session(guild_id=1, text_channel=channel)
        track = Track(url="https://example.com/a", title="a")

        await notifier.download_progress(session, track, ProgressInfo(50.0))
        message = notifier._downloads[track]
        await notifier.download_progress(session, track, ProgressInfo(100.0))

        message.delete.assert_awaited_once_with(delay=7)
        assert notifier._downloads == {}

    @pytest.mark.asyncio
    async def test_failed_download_message_is_removed(self, notifier, channel):
        session = Session(guild_id=1, text_channel=channel)
        track = Track(url="https://example.com/a", title="a")

        await notifier.download_progress(session, track, ProgressInfo(50.0))
        message = notifier._downloads[track]
        await notifier.track_failed(session, track, TransientFetchFailure("boom"))

        message.delete.assert_awaited_once_with(delay=7)
        assert notifier._downloads == {}
        assert channel.send.await_args.kwargs["delete_after"] == 7

    @pytest.mark.asyncio
    async def test_same_link_twice_gets_separate_messages(self, notifier, channel):
        session = Session(guild_id=1, text_channel=channel)
        first = Track(url="https://example.com/a", title="a")
        second = Track(url="https://example.com/a", title="a")

        await notifier.download_progress(session, first, ProgressInfo(50.0))
        await notifier.download_progress(session, second, ProgressInfo(50.0))

        assert channel.send.await_count == 2
        assert notifier._downloads[first] is not notifier._downloads[second]

    @pytest.mark.asyncio
    async def test_fatal_clears_the_guilds_download_messages(self, notifier, channel):
        session = Session(guild_id=1, text_channel=channel)
        track = Track(url="https://example.com/a", title="a")

        await notifier.download_progress(session, track, ProgressInfo(50.0))
        message = notifier._downloads[track]
        await notifier.session_fatal(session, CapacityFatal(1, 5))

        message.delete.assert_awaited_once_with(delay=7)
        assert "5 tracks in a row" in channel.send.await_args.args[0]


class TestBatchMessages:
    @pytest.mark.asyncio
    async def test_in_flight_track_is_shown(self, notifier, channel):
        session = Session(guild_id=1, text_channel=channel)
        batch = BatchProgress(label="Mix")
        track = Track(url="https://example.com/a", title="Song A")

        alive = await notifier.batch_progress(session, batch, 0, 3, track, ProgressInfo(42.0, "2MiB/s"))

        assert alive
        text = channel.send.await_args.args[0]
        assert "0/3" in text
        assert "Song A: 42.0% at 2MiB/s" in text

    @pytest.mark.asyncio
    async def test_completed_batch_stops_updating(self, notifier, channel):
        session = Session(guild_id=1, text_channel=channel)
        batch = BatchProgress(label="Mix")

        assert not await notifier.batch_progress(session, batch, 3, 3)
        batch.message.delete.assert_awaited_once_with(delay=7)
