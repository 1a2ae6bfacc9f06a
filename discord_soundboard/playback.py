import logging
from typing import Awaitable, Callable

import discord

from . import fuzzy
from .catalog import SoundCatalog
from .errors import (
    Busy,
    CatalogReadError,
    NotInVoiceChannel,
    RemoteSourceError,
    UnknownSoundError,
    VoiceConnectionError,
)
from .remote import fetch_stream, is_remote_url
from .sessions import VoiceSession, VoiceSessionManager, release_source

logger = logging.getLogger(__name__)


class PlaybackOrchestrator:
    """Entry point for chat commands: turns a sound name or URL into playback."""

    def __init__(
        self,
        catalog: SoundCatalog,
        sessions: VoiceSessionManager,
        fetcher: Callable[[str], Awaitable] = fetch_stream,
        source_factory: Callable = discord.FFmpegPCMAudio,
        autocomplete_limit: int = fuzzy.MAX_AUTOCOMPLETE_RESULTS,
        strict_limit: bool = True,
    ):
        self.catalog = catalog
        self.sessions = sessions
        self.fetcher = fetcher
        self.source_factory = source_factory
        self.autocomplete_limit = autocomplete_limit
        self.strict_limit = strict_limit

    def list_sounds(self) -> list[str]:
        return self.catalog.names()

    def autocomplete(self, query: str) -> list[str]:
        return fuzzy.rank(
            query or "",
            self.catalog.names(),
            limit=self.autocomplete_limit,
            strict_limit=self.strict_limit,
        )

    async def play(
        self, guild_id, channel_hint, argument: str, enqueue: bool = False
    ) -> VoiceSession:
        """Play a catalog sound or a remote URL in the guild.

        `channel_hint` is the caller's voice channel; without one the guild's
        current voice channel is used. `enqueue` only applies to catalog
        sounds and only takes effect when the transport can queue.
        """
        argument = (argument or "").strip()
        channel_id = channel_hint
        if channel_id is None:
            channel_id = self.sessions.current_channel(guild_id)
        if channel_id is None:
            raise NotInVoiceChannel("You must be in a voice channel for this command.")
        if not argument:
            raise UnknownSoundError(argument)

        remote = is_remote_url(argument)
        queueing = enqueue and not remote and self.sessions.can_queue
        # fast path; play_in repeats the check under the guild lock
        if not queueing and self.sessions.is_busy(guild_id):
            raise Busy(guild_id)

        if remote:
            source = await self._fetch(argument)
        else:
            sound = self.catalog.get(argument)
            if sound is None:
                raise UnknownSoundError(argument)
            source = self.source_factory(sound.path)

        try:
            session = await self.sessions.play_in(guild_id, channel_id, source, enqueue=queueing)
        except Exception:
            release_source(source)
            raise
        logger.info(f"Playing {argument!r} in channel {channel_id} of guild {guild_id}")
        return session

    async def _fetch(self, url: str):
        try:
            return await self.fetcher(url)
        except RemoteSourceError:
            raise
        except Exception as exc:
            raise RemoteSourceError(url, f"Error streaming remote source: {exc}") from exc

    async def stop(self, guild_id) -> bool:
        return await self.sessions.stop(guild_id)

    async def leave(self, guild_id) -> bool:
        return await self.sessions.leave(guild_id)


def describe_error(error: Exception) -> str:
    """Short chat reply for an error raised while handling a command."""
    if isinstance(error, UnknownSoundError):
        if not error.name:
            return "Must provide name of the sound to play or a URL."
        return (
            f"I don't know this sound: **{error.name}**\n"
            "Type `/list` to see a list of sounds."
        )
    if isinstance(error, NotInVoiceChannel):
        return str(error) or "You must be in a voice channel for this command."
    if isinstance(error, Busy):
        return "Already playing a sound. Use `/stop` first."
    if isinstance(error, RemoteSourceError):
        return error.message
    if isinstance(error, VoiceConnectionError):
        return f"Voice connection problem: {error}"
    if isinstance(error, CatalogReadError):
        return "Sound library is unavailable right now."
    return f"Error: {error}"
