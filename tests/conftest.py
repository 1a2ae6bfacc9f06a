import asyncio
import sys
import pathlib

import pytest

# Ensure project root is on sys.path so tests can import the package
ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from discord_soundboard.sessions import VoiceSessionManager  # noqa: E402


class FakeHandle:
    def __init__(self, guild_id, channel_id):
        self.guild_id = guild_id
        self.channel_id = channel_id
        self.connected = True


class FakeTransport:
    """Records every call the session manager makes to the voice transport."""

    supports_queue = False

    def __init__(self):
        self.calls = []
        self.pending_after = []
        self.connect_error = None
        self.connect_gates = {}  # guild_id -> asyncio.Event that connect waits on
        self.hang_play = False

    async def connect(self, guild_id, channel_id):
        self.calls.append(("connect", guild_id, channel_id))
        gate = self.connect_gates.get(guild_id)
        if gate is not None:
            await gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        return FakeHandle(guild_id, channel_id)

    async def move(self, handle, channel_id):
        self.calls.append(("move", handle.guild_id, channel_id))
        handle.channel_id = channel_id

    async def play(self, handle, source, after):
        self.calls.append(("play", handle.guild_id, handle.channel_id, source))
        if self.hang_play:
            await asyncio.Event().wait()
        self.pending_after.append(after)

    async def stop(self, handle):
        self.calls.append(("stop", handle.guild_id))

    async def disconnect(self, handle):
        self.calls.append(("disconnect", handle.guild_id))
        handle.connected = False

    def is_connected(self, handle):
        return handle.connected

    def finish(self, error=None):
        """Signal completion of every playback started so far."""
        pending, self.pending_after = self.pending_after, []
        for after in pending:
            after(error)

    def named(self, kind):
        return [c for c in self.calls if c[0] == kind]


class QueueingTransport(FakeTransport):
    supports_queue = True

    async def enqueue(self, handle, source, after):
        self.calls.append(("enqueue", handle.guild_id, handle.channel_id, source))
        self.pending_after.append(after)


class DummySource:
    def __init__(self, path):
        self.path = path
        self.cleaned_up = False

    def cleanup(self):
        self.cleaned_up = True

    def __repr__(self):
        return f"DummySource({self.path!r})"


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sessions(transport):
    return VoiceSessionManager(transport, connect_timeout=1, play_timeout=1)


@pytest.fixture
def sound_dir(tmp_path):
    for name in ("airhorn.mp3", "bruh.wav", "sad_trombone.m4a", "notes.txt"):
        (tmp_path / name).write_bytes(b"\x00")
    return tmp_path
