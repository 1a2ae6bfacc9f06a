"""py-cord backed voice transport used by VoiceSessionManager."""

import asyncio
import logging

import discord

from .errors import VoiceConnectionError

logger = logging.getLogger(__name__)

_VOICE_ERRORS = (discord.ClientException, discord.HTTPException, asyncio.TimeoutError)


class DiscordVoiceTransport:
    # VoiceClient plays one source at a time and has no queue of its own
    supports_queue = False

    def __init__(self, bot: discord.Client):
        self.bot = bot

    def _voice_channel(self, guild_id, channel_id) -> discord.VoiceChannel:
        channel = self.bot.get_channel(channel_id)
        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            raise VoiceConnectionError(f"Voice channel {channel_id} not found")
        if channel.guild.id != guild_id:
            raise VoiceConnectionError(
                f"Channel {channel_id} does not belong to guild {guild_id}"
            )
        return channel

    async def connect(self, guild_id, channel_id) -> discord.VoiceClient:
        channel = self._voice_channel(guild_id, channel_id)
        existing = channel.guild.voice_client
        try:
            if existing is not None:
                if existing.is_connected():
                    # Connected already but not tracked locally, reuse it
                    await existing.move_to(channel)
                    return existing
                await existing.disconnect(force=True)
            return await channel.connect()
        except _VOICE_ERRORS as exc:
            raise VoiceConnectionError(f"Failed to join voice channel: {exc}") from exc

    async def move(self, handle: discord.VoiceClient, channel_id):
        channel = self._voice_channel(handle.guild.id, channel_id)
        try:
            await handle.move_to(channel)
        except _VOICE_ERRORS as exc:
            raise VoiceConnectionError(f"Failed to move to voice channel: {exc}") from exc

    async def play(self, handle: discord.VoiceClient, source, after):
        try:
            handle.play(source, after=after)
        except discord.ClientException as exc:
            raise VoiceConnectionError(f"Failed to start playback: {exc}") from exc

    async def stop(self, handle: discord.VoiceClient):
        handle.stop()

    async def disconnect(self, handle: discord.VoiceClient):
        logger.debug(f"Disconnecting voice client in guild {handle.guild.id}")
        await handle.disconnect(force=True)

    def is_connected(self, handle: discord.VoiceClient) -> bool:
        return handle is not None and handle.is_connected()
