"""Per-guild voice sessions.

A guild has at most one session and at most one playback at a time. Calls for
the same guild are serialized by that guild's lock; different guilds never
wait on each other.
"""

import asyncio
import enum
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from .errors import Busy, VoiceConnectionError, VoiceTimeout

logger = logging.getLogger(__name__)


def release_source(source):
    """Free a source that never made it to the transport (ffmpeg process etc.)."""
    cleanup = getattr(source, "cleanup", None)
    if cleanup is not None:
        cleanup()


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class VoiceSession:
    guild_id: int
    channel_id: int
    handle: Any = None
    state: SessionState = SessionState.CONNECTING
    busy: bool = False
    playback_token: int = 0


class ConnectThrottle:
    """Keeps consecutive connection attempts to one guild apart."""

    def __init__(self, min_interval: float = 2.0):
        self.min_interval = min_interval
        self._last_connect: dict[int, float] = {}

    async def wait_if_needed(self, guild_id):
        last = self._last_connect.get(guild_id)
        if last is not None:
            elapsed = time.monotonic() - last
            if elapsed < self.min_interval:
                wait_time = self.min_interval - elapsed
                logger.info(
                    f"Rate limit: waiting {wait_time:.2f}s before connecting in guild {guild_id}"
                )
                await asyncio.sleep(wait_time)
        self._last_connect[guild_id] = time.monotonic()


class VoiceSessionManager:
    def __init__(
        self,
        transport,
        connect_timeout: float = 10.0,
        play_timeout: float = 5.0,
        connect_interval: float = 0.0,
    ):
        self.transport = transport
        self.connect_timeout = connect_timeout
        self.play_timeout = play_timeout
        self._sessions: dict[int, VoiceSession] = {}
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._throttle = ConnectThrottle(connect_interval)

    # -- queries -----------------------------------------------------------

    def session(self, guild_id) -> VoiceSession | None:
        return self._sessions.get(guild_id)

    def state(self, guild_id) -> SessionState:
        session = self._sessions.get(guild_id)
        return session.state if session else SessionState.DISCONNECTED

    def current_channel(self, guild_id):
        session = self._sessions.get(guild_id)
        if session is None or session.state is not SessionState.CONNECTED:
            return None
        return session.channel_id

    def is_busy(self, guild_id) -> bool:
        session = self._sessions.get(guild_id)
        return bool(session and session.busy)

    @property
    def can_queue(self) -> bool:
        return getattr(self.transport, "supports_queue", False)

    # -- connection --------------------------------------------------------

    async def join(self, guild_id, channel_id, timeout: float | None = None) -> VoiceSession:
        """Connect to `channel_id`, moving an existing connection if needed."""
        timeout = self.connect_timeout if timeout is None else timeout
        async with self._locks[guild_id]:
            return await self._join_locked(guild_id, channel_id, timeout)

    async def _join_locked(self, guild_id, channel_id, timeout) -> VoiceSession:
        session = self._sessions.get(guild_id)
        if session is not None and not self._alive(session):
            logger.info(f"Discarding stale voice connection in guild {guild_id}")
            self._drop(session)
            session = None
        if session is None:
            return await self._connect(guild_id, channel_id, timeout)
        if session.channel_id != channel_id:
            await self._move(session, channel_id, timeout)
        return session

    async def _connect(self, guild_id, channel_id, timeout) -> VoiceSession:
        session = VoiceSession(guild_id, channel_id)
        self._sessions[guild_id] = session
        try:
            await self._throttle.wait_if_needed(guild_id)
            logger.debug(f"Connecting to channel {channel_id} in guild {guild_id}")
            handle = await asyncio.wait_for(
                self.transport.connect(guild_id, channel_id), timeout
            )
            session.handle = handle
            session.state = SessionState.CONNECTED
        except asyncio.TimeoutError as exc:
            raise VoiceTimeout(
                f"Timed out joining channel {channel_id} in guild {guild_id}"
            ) from exc
        except VoiceConnectionError:
            raise
        except Exception as exc:
            raise VoiceConnectionError(f"Failed to join voice channel: {exc}") from exc
        finally:
            if session.state is not SessionState.CONNECTED:
                self._drop(session)
        logger.info(f"Connected to channel {channel_id} in guild {guild_id}")
        return session

    async def _move(self, session: VoiceSession, channel_id, timeout):
        try:
            await asyncio.wait_for(self.transport.move(session.handle, channel_id), timeout)
        except asyncio.TimeoutError as exc:
            self._drop(session)
            raise VoiceTimeout(
                f"Timed out moving to channel {channel_id} in guild {session.guild_id}"
            ) from exc
        except VoiceConnectionError:
            raise
        except Exception as exc:
            raise VoiceConnectionError(f"Failed to move to voice channel: {exc}") from exc
        logger.info(
            f"Moved from channel {session.channel_id} to {channel_id} in guild {session.guild_id}"
        )
        session.channel_id = channel_id

    async def leave(self, guild_id) -> bool:
        async with self._locks[guild_id]:
            session = self._sessions.pop(guild_id, None)
            if session is None:
                return False
            session.state = SessionState.DISCONNECTED
            session.busy = False
            session.playback_token += 1
            if session.handle is not None:
                try:
                    await self.transport.disconnect(session.handle)
                except Exception as exc:
                    raise VoiceConnectionError(f"Failed to leave voice channel: {exc}") from exc
            logger.info(f"Left voice channel in guild {guild_id}")
            return True

    async def close_all(self):
        for guild_id in list(self._sessions):
            try:
                await self.leave(guild_id)
            except VoiceConnectionError:
                logger.debug(f"Failed to disconnect voice client for guild {guild_id}")

    def forget(self, guild_id):
        """Drop local state after the platform reported we are no longer connected."""
        session = self._sessions.get(guild_id)
        if session is not None:
            logger.info(f"Voice connection in guild {guild_id} went away")
            self._drop(session)

    def observe_channel(self, guild_id, channel_id):
        if channel_id is None:
            self.forget(guild_id)
            return
        session = self._sessions.get(guild_id)
        if session is not None and session.channel_id != channel_id:
            logger.info(f"Voice connection in guild {guild_id} was moved to {channel_id}")
            session.channel_id = channel_id

    # -- playback ----------------------------------------------------------

    async def play(
        self, guild_id, source, enqueue: bool = False, timeout: float | None = None
    ) -> VoiceSession:
        """Start `source` in the guild, or raise `Busy` if something is playing.

        With `enqueue=True` and a transport that has a queue, a busy guild gets
        the source appended to the transport's queue instead.
        """
        timeout = self.play_timeout if timeout is None else timeout
        async with self._locks[guild_id]:
            session = self._require_connected(guild_id)
            return await self._start_playback(session, source, enqueue, timeout)

    async def play_in(
        self,
        guild_id,
        channel_id,
        source,
        enqueue: bool = False,
        connect_timeout: float | None = None,
        timeout: float | None = None,
    ) -> VoiceSession:
        """Join `channel_id` and start `source` as one step.

        The busy check, the connect or move and the start all happen under the
        guild lock, so a refused request never moves the bot and a granted one
        always plays in the channel it asked for. A busy guild only accepts the
        source into the transport queue when it is already in `channel_id`.
        """
        connect_timeout = self.connect_timeout if connect_timeout is None else connect_timeout
        timeout = self.play_timeout if timeout is None else timeout
        async with self._locks[guild_id]:
            session = self._sessions.get(guild_id)
            if session is not None and session.busy and self._alive(session):
                if not (enqueue and self.can_queue and session.channel_id == channel_id):
                    raise Busy(guild_id)
            session = await self._join_locked(guild_id, channel_id, connect_timeout)
            return await self._start_playback(session, source, enqueue, timeout)

    async def _start_playback(self, session: VoiceSession, source, enqueue, timeout):
        guild_id = session.guild_id
        if session.busy:
            if not (enqueue and self.can_queue):
                raise Busy(guild_id)
            start = self.transport.enqueue
            logger.debug(f"Queueing source in guild {guild_id}")
        else:
            start = self.transport.play

        previous_token = session.playback_token
        was_busy = session.busy
        session.playback_token += 1
        token = session.playback_token
        session.busy = True
        try:
            await asyncio.wait_for(
                start(session.handle, source, self._completion_callback(session, token)),
                timeout,
            )
        except asyncio.TimeoutError as exc:
            self._abort(session, token, was_busy, previous_token)
            raise VoiceTimeout(f"Timed out starting playback in guild {guild_id}") from exc
        except VoiceConnectionError:
            self._abort(session, token, was_busy, previous_token)
            raise
        except Exception as exc:
            self._abort(session, token, was_busy, previous_token)
            raise VoiceConnectionError(f"Failed to start playback: {exc}") from exc
        return session

    async def stop(self, guild_id) -> bool:
        async with self._locks[guild_id]:
            session = self._sessions.get(guild_id)
            if session is None or not session.busy:
                return False
            session.playback_token += 1
            session.busy = False
            try:
                await self.transport.stop(session.handle)
            except Exception as exc:
                raise VoiceConnectionError(f"Failed to stop playback: {exc}") from exc
            logger.debug(f"Stopped playback in guild {guild_id}")
            return True

    def _completion_callback(self, session: VoiceSession, token: int):
        # The transport may call back from its audio thread.
        loop = asyncio.get_running_loop()

        def after(error=None):
            if not loop.is_closed():
                loop.call_soon_threadsafe(self._on_finished, session, token, error)

        return after

    def _on_finished(self, session: VoiceSession, token: int, error):
        if error is not None:
            logger.error(f"Playback error in guild {session.guild_id}: {error}")
        self._finish(session, token)

    @staticmethod
    def _finish(session: VoiceSession, token: int):
        # A newer playback owns the flag once the token has moved on.
        if session.playback_token == token:
            session.busy = False

    @staticmethod
    def _abort(session: VoiceSession, token: int, was_busy: bool, previous_token: int):
        if session.playback_token != token:
            return
        if was_busy:
            # failed enqueue: the running playback still owns the flag
            session.playback_token = previous_token
        else:
            session.busy = False

    # -- helpers -----------------------------------------------------------

    def _alive(self, session: VoiceSession) -> bool:
        return session.handle is not None and self.transport.is_connected(session.handle)

    def _require_connected(self, guild_id) -> VoiceSession:
        session = self._sessions.get(guild_id)
        if session is None or session.state is not SessionState.CONNECTED:
            raise VoiceConnectionError(f"Not connected to a voice channel in guild {guild_id}")
        if not self._alive(session):
            self._drop(session)
            raise VoiceConnectionError(f"Voice connection in guild {guild_id} was lost")
        return session

    def _drop(self, session: VoiceSession):
        session.state = SessionState.DISCONNECTED
        session.busy = False
        session.playback_token += 1
        if self._sessions.get(session.guild_id) is session:
            del self._sessions[session.guild_id]
