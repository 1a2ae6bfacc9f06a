"""Error kinds raised by the sound resolution and voice layer.

Errors that carry ``reply_worthy = True`` belong to an interactive command and
are turned into a short chat reply. The others only ever reach the logs.
"""


class SoundboardError(Exception):
    reply_worthy = False


class VoiceConnectionError(SoundboardError):
    """The voice transport could not join, move or play."""


class VoiceTimeout(VoiceConnectionError):
    """The voice transport did not answer within the allowed time."""


class Busy(SoundboardError):
    """A playback is already running in the guild."""

    reply_worthy = True

    def __init__(self, guild_id):
        super().__init__(f"Already playing in guild {guild_id}")
        self.guild_id = guild_id


class UnknownSoundError(SoundboardError):
    reply_worthy = True

    def __init__(self, name: str):
        super().__init__(f"Unknown sound: {name!r}")
        self.name = name


class RemoteSourceError(SoundboardError):
    reply_worthy = True

    def __init__(self, url: str, message: str):
        super().__init__(message)
        self.url = url
        self.message = message


class MissingClipError(SoundboardError):
    """A configured intro clip is not in the catalog."""

    def __init__(self, clip_name: str):
        super().__init__(f"Could not play intro file: Missing file {clip_name}")
        self.clip_name = clip_name


class NotInVoiceChannel(SoundboardError):
    reply_worthy = True


class CatalogReadError(SoundboardError):
    def __init__(self, directory, reason: str):
        super().__init__(f"Cannot read sound directory {directory}: {reason}")
        self.directory = directory
