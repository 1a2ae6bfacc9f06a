import asyncio

import pytest

from conftest import DummySource, QueueingTransport
from discord_soundboard.catalog import SoundCatalog
from discord_soundboard.errors import (
    Busy,
    NotInVoiceChannel,
    RemoteSourceError,
    UnknownSoundError,
    VoiceConnectionError,
)
from discord_soundboard.playback import PlaybackOrchestrator, describe_error
from discord_soundboard.sessions import VoiceSessionManager

GUILD = 1
CHANNEL = 10


def make_orchestrator(sound_dir, sessions, fetcher=None):
    async def no_fetch(url):
        raise AssertionError("fetcher should not be called")

    return PlaybackOrchestrator(
        SoundCatalog(sound_dir),
        sessions,
        fetcher=fetcher or no_fetch,
        source_factory=DummySource,
    )


@pytest.mark.asyncio
async def test_play_catalog_sound_joins_then_plays(sound_dir, sessions, transport):
    playback = make_orchestrator(sound_dir, sessions)

    await playback.play(GUILD, CHANNEL, "airhorn")

    assert [c[0] for c in transport.calls] == ["connect", "play"]
    assert transport.calls[0] == ("connect", GUILD, CHANNEL)
    _, guild_id, channel_id, source = transport.calls[1]
    assert (guild_id, channel_id) == (GUILD, CHANNEL)
    assert source.path == str(sound_dir / "airhorn.mp3")


@pytest.mark.asyncio
async def test_unknown_sound_names_the_sound_and_hints_list(sound_dir, sessions, transport):
    playback = make_orchestrator(sound_dir, sessions)

    with pytest.raises(UnknownSoundError) as excinfo:
        await playback.play(GUILD, CHANNEL, "unknown-sound")

    reply = describe_error(excinfo.value)
    assert "unknown-sound" in reply
    assert "/list" in reply
    assert transport.calls == []


@pytest.mark.asyncio
async def test_empty_argument(sound_dir, sessions):
    playback = make_orchestrator(sound_dir, sessions)

    with pytest.raises(UnknownSoundError) as excinfo:
        await playback.play(GUILD, CHANNEL, "   ")

    assert "Must provide" in describe_error(excinfo.value)


@pytest.mark.asyncio
async def test_url_goes_through_fetcher(sound_dir, sessions, transport):
    fetched = []

    async def fetcher(url):
        fetched.append(url)
        return DummySource(url)

    playback = make_orchestrator(sound_dir, sessions, fetcher=fetcher)
    url = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"

    await playback.play(GUILD, CHANNEL, url)

    assert fetched == [url]
    assert transport.named("play")[0][3].path == url


@pytest.mark.asyncio
async def test_fetch_failure_keeps_upstream_message(sound_dir, sessions, transport):
    async def fetcher(url):
        raise RuntimeError("Video unavailable")

    playback = make_orchestrator(sound_dir, sessions, fetcher=fetcher)

    with pytest.raises(RemoteSourceError) as excinfo:
        await playback.play(GUILD, CHANNEL, "https://example.com/clip")

    assert "Video unavailable" in describe_error(excinfo.value)
    assert transport.calls == []


@pytest.mark.asyncio
async def test_not_in_voice_channel_without_session(sound_dir, sessions):
    playback = make_orchestrator(sound_dir, sessions)

    with pytest.raises(NotInVoiceChannel) as excinfo:
        await playback.play(GUILD, None, "airhorn")

    assert "voice channel" in describe_error(excinfo.value)


@pytest.mark.asyncio
async def test_falls_back_to_current_channel(sound_dir, sessions, transport):
    playback = make_orchestrator(sound_dir, sessions)
    await sessions.join(GUILD, 33)

    await playback.play(GUILD, None, "bruh")

    assert transport.named("play")[0][2] == 33
    assert transport.named("move") == []


@pytest.mark.asyncio
async def test_busy_guild_rejects_interactive_play(sound_dir, sessions, transport):
    playback = make_orchestrator(sound_dir, sessions)
    await playback.play(GUILD, CHANNEL, "airhorn")

    with pytest.raises(Busy) as excinfo:
        await playback.play(GUILD, CHANNEL, "bruh")

    assert "Already playing" in describe_error(excinfo.value)
    assert len(transport.named("play")) == 1


@pytest.mark.asyncio
async def test_source_is_released_when_join_fails(sound_dir, sessions, transport):
    created = []

    def factory(path):
        created.append(DummySource(path))
        return created[-1]

    playback = PlaybackOrchestrator(SoundCatalog(sound_dir), sessions, source_factory=factory)
    transport.connect_error = VoiceConnectionError("Missing permissions")

    with pytest.raises(VoiceConnectionError):
        await playback.play(GUILD, CHANNEL, "airhorn")

    assert created[0].cleaned_up


@pytest.mark.asyncio
async def test_stop_and_leave(sound_dir, sessions, transport):
    playback = make_orchestrator(sound_dir, sessions)
    await playback.play(GUILD, CHANNEL, "airhorn")

    assert await playback.stop(GUILD) is True
    assert await playback.stop(GUILD) is False
    assert await playback.leave(GUILD) is True
    assert transport.named("stop") == [("stop", GUILD)]


def test_list_and_autocomplete(sound_dir, sessions):
    playback = make_orchestrator(sound_dir, sessions)

    assert sorted(playback.list_sounds()) == ["airhorn", "bruh", "sad_trombone"]
    assert playback.autocomplete("airhorn")[0] == "airhorn"
    assert playback.autocomplete("trb") == ["sad_trombone"]
    assert sorted(playback.autocomplete("")) == ["airhorn", "bruh", "sad_trombone"]


@pytest.mark.asyncio
async def test_concurrent_plays_from_different_channels(sound_dir, sessions, transport):
    created = []

    def factory(path):
        created.append(DummySource(path))
        return created[-1]

    playback = PlaybackOrchestrator(SoundCatalog(sound_dir), sessions, source_factory=factory)
    gate = asyncio.Event()
    transport.connect_gates[GUILD] = gate

    first = asyncio.create_task(playback.play(GUILD, 10, "airhorn"))
    second = asyncio.create_task(playback.play(GUILD, 20, "bruh"))
    while not transport.named("connect"):
        await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(first, second, return_exceptions=True)

    assert not isinstance(results[0], Exception)
    assert isinstance(results[1], Busy)
    plays = transport.named("play")
    assert len(plays) == 1
    assert plays[0][2] == 10
    assert plays[0][3].path.endswith("airhorn.mp3")
    assert transport.named("move") == []
    assert created[1].cleaned_up


@pytest.mark.asyncio
async def test_second_channel_gets_its_clip_after_first_finishes(sound_dir, sessions, transport):
    playback = make_orchestrator(sound_dir, sessions)
    await playback.play(GUILD, 10, "airhorn")
    transport.finish()
    await asyncio.sleep(0)

    await playback.play(GUILD, 20, "bruh")

    plays = transport.named("play")
    assert [(p[2], p[3].path.rsplit(".", 1)[1]) for p in plays] == [(10, "mp3"), (20, "wav")]


@pytest.mark.asyncio
async def test_enqueue_flag_without_queueing_transport_is_busy(sound_dir, sessions, transport):
    playback = make_orchestrator(sound_dir, sessions)
    await playback.play(GUILD, 10, "airhorn")

    with pytest.raises(Busy):
        await playback.play(GUILD, 20, "bruh", enqueue=True)

    assert transport.named("move") == []
    assert sessions.current_channel(GUILD) == 10


@pytest.mark.asyncio
async def test_enqueue_with_queueing_transport(sound_dir):
    transport = QueueingTransport()
    sessions = VoiceSessionManager(transport)
    playback = make_orchestrator(sound_dir, sessions)
    await playback.play(GUILD, CHANNEL, "airhorn")

    await playback.play(GUILD, CHANNEL, "bruh", enqueue=True)
    with pytest.raises(Busy):
        await playback.play(GUILD, 20, "sad_trombone", enqueue=True)

    assert len(transport.named("enqueue")) == 1
    assert transport.named("move") == []
