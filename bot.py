#!/usr/bin/env python3
"""Discord Soundboard: sound clips and user intros in voice channels


Quick summary:
- Configuration: supplied via `--config <path>` JSON (no environment vars).
- Sounds: every `.m4a`, `.wav` and `.mp3` file in `sound_dir` is playable by
    its file name without extension; the directory is rescanned per request.
- Commands: `/play <sound or URL>` (with autocomplete), `/list`, `/stop`,
    `/leave`. URLs are streamed through yt-dlp, files through ffmpeg.
- Intros: users listed under `intros.user_intros` get their clip played when
    they connect to one of `intros.channels`. Moving between channels does not
    replay it.
- One voice connection and one playback per guild; a second `/play` while a
    sound is running is refused rather than queued.
"""

import argparse
import asyncio
import os
import sys

import discord
from discord.ext import commands
import traceback
import logging
import signal

from discord_soundboard.catalog import SoundCatalog
from discord_soundboard.config import load_config, parse_intro_rules, redact_config
from discord_soundboard.errors import CatalogReadError, SoundboardError
from discord_soundboard.fuzzy import MAX_AUTOCOMPLETE_RESULTS
from discord_soundboard.intro import IntroTrigger, PresenceTransition
from discord_soundboard.playback import PlaybackOrchestrator, describe_error
from discord_soundboard.sessions import VoiceSessionManager
from discord_soundboard.transport import DiscordVoiceTransport

# Configure package logger early so every module logger inherits the handler
logger = logging.getLogger("discord_soundboard")
logger.setLevel(logging.DEBUG)
if not logger.handlers:
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(logging.DEBUG)
    fmt = logging.Formatter(
        "[%(levelname)s:%(name)s] %(asctime)s %(message)s", "%Y-%m-%d %H:%M:%S"
    )
    handler.setFormatter(fmt)
    logger.addHandler(handler)
    # Keep discord library logs reasonable
    logging.getLogger("discord").setLevel(logging.INFO)

bot = None


# Static list of debug targets. Use these names with --debug or with individual
# flags like --debug-voice, --debug-intros, etc.
DEBUG_TARGETS = [
    "catalog",
    "voice",
    "playback",
    "intros",
    "commands",
    "config",
]

DISCORD_MESSAGE_LIMIT = 2000
AUTO_LEAVE_DELAY = 5

# Strong references to fire-and-forget tasks until they finish
_background_tasks: set[asyncio.Task] = set()


def spawn_background(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


class SoundboardBot(commands.Bot):
    def __init__(self, config: dict):
        intents = discord.Intents.default()
        # Require members and voice state intents for reliable member/voice data
        intents.members = True
        intents.voice_states = True
        super().__init__(command_prefix="!", intents=intents)
        self.config = config
        self.rate_limits = config.get("rate_limits", {})
        self.sound_dir = config.get("sound_dir", "./audio")
        self.command_channels = set(config.get("command_channels") or [])
        # Only file sounds may queue, and only on a transport that can queue
        self.queue_file_requests = config.get("queue_file_requests", False)
        self.auto_leave_when_alone = config.get("auto_leave_when_alone", True)

        self.catalog = SoundCatalog(
            self.sound_dir,
            case_insensitive=config.get("case_insensitive_extensions", False),
        )
        self.sessions = VoiceSessionManager(
            DiscordVoiceTransport(self),
            connect_timeout=config.get("connect_timeout", 10),
            play_timeout=config.get("play_timeout", 5),
            connect_interval=self.rate_limits.get("connect_interval", 2.0),
        )
        self.playback = PlaybackOrchestrator(
            self.catalog,
            self.sessions,
            autocomplete_limit=config.get("autocomplete_limit", MAX_AUTOCOMPLETE_RESULTS),
            strict_limit=config.get("strict_autocomplete_limit", True),
        )
        self.intros = IntroTrigger(
            parse_intro_rules(config),
            self.catalog,
            self.sessions,
            discord.FFmpegPCMAudio,
        )

        # runtime debug targets (set by CLI args)
        self.debug_targets: set[str] = set()

    def set_debug_targets(self, targets: set):
        self.debug_targets = set(targets or [])

    def debug_enabled(self, target: str) -> bool:
        return target in getattr(self, "debug_targets", set())

    def debug(self, target: str, msg: str):
        if self.debug_enabled(target):
            # Route debug through the package logger so stdout/stderr capture works
            logger.debug(f"[{target}] {msg}")


bot: SoundboardBot | None = None


async def send_msg(ctx, msg: str, ephemeral: bool = True):
    """Reply to a slash command whether or not it was answered already."""
    if hasattr(ctx, "respond"):
        await ctx.respond(msg, ephemeral=ephemeral)
    elif hasattr(ctx, "response"):
        if not ctx.response.is_done():
            await ctx.response.send_message(msg, ephemeral=ephemeral)
        else:
            await ctx.followup.send(msg, ephemeral=ephemeral)


def caller_voice_channel_id(ctx):
    user = getattr(ctx, "author", None) or getattr(ctx, "user", None)
    voice = getattr(user, "voice", None)
    channel = getattr(voice, "channel", None)
    return channel.id if channel is not None else None


def command_allowed(ctx) -> bool:
    if not bot.command_channels:
        return True
    channel = getattr(ctx, "channel", None)
    return getattr(channel, "name", None) in bot.command_channels


def format_sound_list(names: list[str], limit: int = DISCORD_MESSAGE_LIMIT) -> list[str]:
    """Render the sound listing as one or more messages under `limit` chars."""
    if not names:
        return ["No sounds available."]
    lines = ["Type `/play <sound name>` to play a sound.", "Available sounds:"]
    lines += [f"\t- {name}" for name in names]
    parts, buf, count = [], [], 0
    for line in lines:
        if buf and count + len(line) + 1 > limit:
            parts.append("\n".join(buf))
            buf, count = [], 0
        buf.append(line)
        count += len(line) + 1
    if buf:
        parts.append("\n".join(buf))
    return parts


async def sound_autocomplete(ctx: discord.AutocompleteContext) -> list[str]:
    query = ctx.value or ""
    try:
        suggestions = bot.playback.autocomplete(query)
    except CatalogReadError as exc:
        logger.error(f"[Autocomplete] Error fetching sound files: {exc}")
        return []
    bot.debug("commands", f"autocomplete {query!r} -> {suggestions}")
    return suggestions


async def run_play_command(ctx, sound: str):
    """Common logic for `/play`: resolve `sound` and play it for the caller."""
    guild = ctx.guild
    if not guild:
        await send_msg(ctx, "This command must be used in a guild.")
        return
    if not command_allowed(ctx):
        await send_msg(ctx, "Sound commands are not available in this channel.")
        return

    channel_hint = caller_voice_channel_id(ctx)
    bot.debug(
        "commands",
        f"/play {sound!r} in guild={guild.id} caller_channel={channel_hint}",
    )
    # Remote lookups can outlast the interaction response window
    defer = getattr(ctx, "defer", None)
    if defer is not None:
        await defer(ephemeral=True)

    try:
        await bot.playback.play(
            guild.id, channel_hint, sound, enqueue=bot.queue_file_requests
        )
    except SoundboardError as exc:
        bot.debug("playback", f"/play {sound!r} failed: {exc!r}")
        if not exc.reply_worthy:
            logger.error(f"Failed to play {sound!r} in guild {guild.id}: {exc}")
        await send_msg(ctx, describe_error(exc))
        return
    await send_msg(ctx, f"Playing **{sound.strip()}**.")


async def run_list_command(ctx):
    if not command_allowed(ctx):
        await send_msg(ctx, "Sound commands are not available in this channel.")
        return
    try:
        names = bot.playback.list_sounds()
    except CatalogReadError as exc:
        logger.error(str(exc))
        await send_msg(ctx, describe_error(exc))
        return
    for part in format_sound_list(names):
        await send_msg(ctx, part, ephemeral=False)


async def run_stop_command(ctx):
    guild = ctx.guild
    if not guild:
        await send_msg(ctx, "This command must be used in a guild.")
        return
    try:
        stopped = await bot.playback.stop(guild.id)
    except SoundboardError as exc:
        logger.error(f"Failed to stop playback in guild {guild.id}: {exc}")
        await send_msg(ctx, describe_error(exc))
        return
    await send_msg(ctx, "Stopped." if stopped else "Nothing is playing.")


async def run_leave_command(ctx):
    guild = ctx.guild
    if not guild:
        await send_msg(ctx, "This command must be used in a guild.")
        return
    try:
        left = await bot.playback.leave(guild.id)
    except SoundboardError as exc:
        logger.error(f"Failed to leave voice in guild {guild.id}: {exc}")
        await send_msg(ctx, describe_error(exc))
        return
    await send_msg(ctx, "Left voice channel." if left else "Not connected.")


async def auto_leave_if_alone(guild_id, delay: float = AUTO_LEAVE_DELAY):
    """Leave the guild's voice channel when only bots remain after `delay`."""
    await asyncio.sleep(delay)
    channel_id = bot.sessions.current_channel(guild_id)
    if channel_id is None or bot.sessions.is_busy(guild_id):
        return
    channel = bot.get_channel(channel_id)
    if channel is None:
        return
    non_bots = [m for m in channel.members if not getattr(m, "bot", False)]
    if len(non_bots) == 0:
        try:
            await bot.sessions.leave(guild_id)
            logger.info(
                f"Auto-disconnect: left voice channel in guild {guild_id} (no non-bot users)"
            )
        except SoundboardError:
            logger.debug(
                f"Auto-disconnect failed for guild {guild_id}: {traceback.format_exc()}"
            )


async def handle_voice_state_update(member, before, after):
    """Feed voice state changes to the session manager and the intro trigger."""
    guild = getattr(member, "guild", None)
    if not guild:
        return

    before_id = before.channel.id if before.channel else None
    after_id = after.channel.id if after.channel else None

    # Our own connection being moved or dropped from the outside
    if bot.user is not None and member.id == bot.user.id:
        bot.debug("voice", f"own voice state in guild {guild.id}: {before_id}->{after_id}")
        bot.sessions.observe_channel(guild.id, after_id)
        return

    event = PresenceTransition(member.id, guild.id, before_id, after_id)
    outcome = await bot.intros.on_transition(event)
    bot.debug(
        "intros",
        f"user={member.id} {before_id}->{after_id}: {outcome.status.value} ({outcome.reason})",
    )

    if bot.auto_leave_when_alone and bot.sessions.current_channel(guild.id) is not None:
        spawn_background(auto_leave_if_alone(guild.id))


async def cleanup_and_shutdown(bot_obj, sig_name: str | int = None):
    """Module-level cleanup routine to stop playback, disconnect voice clients
    and close the bot. Separated from `main()` so it can be tested directly.
    """
    logger.info(f"Shutdown requested ({sig_name}); cleaning up voice connections")
    try:
        sessions = getattr(bot_obj, "sessions", None)
        if sessions is not None:
            await sessions.close_all()

        # Voice clients the session manager does not know about
        for guild in list(getattr(bot_obj, "guilds", [])):
            try:
                vc = getattr(guild, "voice_client", None)
                if vc:
                    try:
                        vc.stop()
                    except Exception:
                        pass
                    # Support both sync and async disconnect APIs
                    disc = vc.disconnect
                    if asyncio.iscoroutinefunction(disc):
                        await disc()
                    else:
                        disc()
            except Exception:
                logger.debug(
                    f"Failed to disconnect vc for guild {getattr(guild, 'id', None)}"
                )
    except Exception:
        logger.exception("Error during cleanup")
    finally:
        try:
            # Attempt to close the bot if it provides an async close
            close_fn = getattr(bot_obj, "close", None)
            if close_fn:
                if asyncio.iscoroutinefunction(close_fn):
                    await close_fn()
                else:
                    close_fn()
        except Exception:
            pass


def main():
    parser = argparse.ArgumentParser(description="Discord soundboard bot")
    parser.add_argument(
        "--config", required=True, help="Path to JSON config file (no env vars)."
    )
    parser.add_argument(
        "--debug",
        action="append",
        choices=DEBUG_TARGETS,
        help="Enable debugging for a target (can be passed multiple times).",
    )
    parser.add_argument(
        "--debug-all", action="store_true", help="Enable all debug targets."
    )
    # individual debug flags for convenience
    for t in DEBUG_TARGETS:
        parser.add_argument(
            f"--debug-{t.replace('_', '-')}",
            action="store_true",
            help=f"Enable debug target: {t}",
        )
    args = parser.parse_args()

    config_path = args.config
    if not os.path.exists(config_path):
        logger.error(f"Config file not found: {config_path}")
        sys.exit(2)

    config = load_config(config_path)

    # Basic startup checks
    token = config.get("token")
    if not token:
        logger.error("Config must include 'token' field. No env vars are used.")
        sys.exit(2)

    global bot
    try:
        bot = SoundboardBot(config)
    except ValueError as exc:
        logger.error(f"Invalid config: {exc}")
        sys.exit(2)

    # Register graceful shutdown handlers on the loop the bot will run on
    loop = bot.loop

    def _register_signal_handlers():
        async def _on_signal(sig):
            await cleanup_and_shutdown(bot, sig)

        for s in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(
                    s, lambda s=s: spawn_background(_on_signal(s))
                )
            except NotImplementedError:
                # Event loop does not support add_signal_handler (e.g., on Windows), ignore
                pass

    _register_signal_handlers()

    # Configure debug targets on the bot
    selected: set[str] = set()
    if getattr(args, "debug_all", False):
        selected = set(DEBUG_TARGETS)
    if getattr(args, "debug", None):
        selected.update(args.debug)
    for t in DEBUG_TARGETS:
        flag_name = f"debug_{t.replace('-', '_')}"
        if getattr(args, flag_name, False):
            selected.add(t)
    bot.set_debug_targets(selected)
    bot.debug("config", f"Debug targets: {sorted(list(selected))}")
    bot.debug("config", f"Loaded config: {redact_config(config)}")
    try:
        bot.debug("catalog", f"{len(bot.catalog.names())} sounds in {bot.sound_dir}")
    except CatalogReadError as exc:
        logger.warning(str(exc))
    intro_rules = bot.intros.rules
    logger.info(
        f"Loaded {len(intro_rules.rules)} intro rule(s) for {len(intro_rules.channels)} channel(s)"
    )

    @bot.event
    async def on_ready():
        logger.info(f"Bot ready: {bot.user} ({bot.user.id})")
        try:
            logger.info("Attempting global command sync...")
            await bot.sync_commands()
            logger.info("Global command sync complete.")
        except Exception:
            logger.exception("Command sync failed on startup. Exiting.")
            sys.exit(1)

    @bot.event
    async def on_application_command_error(ctx: discord.ApplicationContext, error: Exception):
        logger.error(f"Unhandled command error: {error}")
        try:
            await send_msg(ctx, f"Error: {error}")
        except Exception:
            pass

    @bot.event
    async def on_voice_state_update(member: discord.Member, before, after):
        try:
            await handle_voice_state_update(member, before, after)
        except Exception:
            logger.exception("on_voice_state_update handler error")

    @bot.event
    async def on_guild_remove(guild: discord.Guild):
        bot.sessions.forget(guild.id)

    @bot.slash_command(name="play", description="Play a sound or stream a URL")
    async def play_command(
        ctx: discord.ApplicationContext,
        sound: discord.Option(
            str,
            "Name of the sound to play. Use the list command to see all possible values",
            autocomplete=sound_autocomplete,
        ),
    ):
        await run_play_command(ctx, sound)

    @bot.slash_command(name="list", description="List all available sounds")
    async def list_command(ctx: discord.ApplicationContext):
        await run_list_command(ctx)

    @bot.slash_command(name="stop", description="Stop the sound that is playing")
    async def stop_command(ctx: discord.ApplicationContext):
        await run_stop_command(ctx)

    @bot.slash_command(name="leave", description="Leave the voice channel")
    async def leave_command(ctx: discord.ApplicationContext):
        await run_leave_command(ctx)

    bot.run(token)


if __name__ == "__main__":
    main()
