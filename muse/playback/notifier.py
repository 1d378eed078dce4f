"""
UI surface used by the playback engine. The default implementation does nothing.
"""
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from muse.errors import CapacityFatal
    from muse.playback.models import BatchProgress, Session, Track
    from muse.playback.progress import ProgressInfo


class Notifier:
    async def track_started(self, session: "Session", track: "Track") -> None:
        """Called after a resource has been handed to the voice sink."""

    async def track_ended(self, session: "Session", track: "Track | None") -> None:
        """Clear any now-playing indicator."""

    async def track_failed(self, session: "Session", track: "Track", error: Exception) -> None:
        """One notice per dropped track."""

    async def session_fatal(self, session: "Session", error: "CapacityFatal") -> None:
        """The session hit its failure limit and is being torn down."""

    async def session_closed(self, session: "Session", reason: str) -> None:
        pass

    async def download_progress(self, session: "Session", track: "Track", info: "ProgressInfo") -> None:
        pass

    async def batch_progress(
        self,
        session: "Session",
        batch: "BatchProgress",
        done: int,
        total: int,
        track: "Track | None" = None,
        info: "ProgressInfo | None" = None,
    ) -> bool:
        """Show progress for a multi-track submission.

        ``track`` and ``info`` describe the download in flight, if any.
        Return False once the shared message is gone so updates stop.
        """
        return True
