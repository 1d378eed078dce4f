"""
Error taxonomy for the playback engine
"""


class MuseError(Exception):
    """Base class for engine errors."""


class InvalidInput(MuseError):
    """Malformed or disallowed reference, query or path. Rejected before any work is done."""


class TransientFetchFailure(MuseError):
    """The fetch tool failed, timed out or produced no file."""


class DecodeFailure(MuseError):
    """The decoder could not be spawned, timed out or produced no audio."""


class CacheIOFailure(MuseError):
    """Reading or writing the cache index failed."""


class CapacityFatal(MuseError):
    """A session hit its consecutive failure limit."""

    def __init__(self, guild_id: int, failures: int):
        super().__init__(f"Guild {guild_id} reached {failures} consecutive failures")
        self.guild_id = guild_id
        self.failures = failures
