"""Intro clips played when a configured user shows up in a monitored channel."""

import enum
import logging
from dataclasses import dataclass, field
from typing import Callable

from .catalog import SoundCatalog
from .errors import (
    Busy,
    CatalogReadError,
    MissingClipError,
    SoundboardError,
)
from .sessions import VoiceSessionManager, release_source

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntroRule:
    user_id: int
    clip_name: str


@dataclass(frozen=True)
class IntroRules:
    rules: tuple[IntroRule, ...] = ()
    channels: frozenset = frozenset()
    _by_user: dict = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        by_user = {}
        for rule in self.rules:
            # first rule in configuration order wins
            by_user.setdefault(rule.user_id, rule)
        object.__setattr__(self, "_by_user", by_user)

    def rule_for(self, user_id) -> IntroRule | None:
        return self._by_user.get(user_id)


@dataclass(frozen=True)
class PresenceTransition:
    user_id: int
    guild_id: int
    previous_channel_id: int | None = None
    new_channel_id: int | None = None

    @property
    def is_join(self) -> bool:
        return self.previous_channel_id is None and self.new_channel_id is not None


class IntroStatus(enum.Enum):
    TRIGGERED = "triggered"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class IntroOutcome:
    status: IntroStatus
    reason: str | None = None
    error: Exception | None = None

    @classmethod
    def triggered(cls, clip_name: str) -> "IntroOutcome":
        return cls(IntroStatus.TRIGGERED, reason=clip_name)

    @classmethod
    def skipped(cls, reason: str) -> "IntroOutcome":
        return cls(IntroStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, error: Exception) -> "IntroOutcome":
        return cls(IntroStatus.FAILED, reason=str(error), error=error)


class IntroTrigger:
    def __init__(
        self,
        rules: IntroRules,
        catalog: SoundCatalog,
        sessions: VoiceSessionManager,
        source_factory: Callable,
    ):
        self._rules = rules
        self.catalog = catalog
        self.sessions = sessions
        self.source_factory = source_factory

    @property
    def rules(self) -> IntroRules:
        return self._rules

    def reload(self, rules: IntroRules):
        self._rules = rules

    async def on_transition(self, event: PresenceTransition) -> IntroOutcome:
        if not event.is_join:
            return IntroOutcome.skipped("not-a-join")

        rules = self._rules
        rule = rules.rule_for(event.user_id)
        if rule is None:
            return IntroOutcome.skipped("no-rule")

        if event.new_channel_id not in rules.channels:
            return IntroOutcome.skipped("channel-not-monitored")

        try:
            sound = self.catalog.get(rule.clip_name)
            if sound is None:
                raise MissingClipError(rule.clip_name)
        except (MissingClipError, CatalogReadError) as exc:
            logger.error(str(exc))
            return IntroOutcome.failed(exc)

        # Intros never interrupt or move away from a running playback
        if self.sessions.is_busy(event.guild_id):
            return IntroOutcome.skipped("busy")

        source = None
        try:
            source = self.source_factory(sound.path)
            await self.sessions.play_in(event.guild_id, event.new_channel_id, source)
        except Busy:
            release_source(source)
            logger.debug(f"Dropping intro for user {event.user_id}: guild is busy")
            return IntroOutcome.skipped("busy")
        except SoundboardError as exc:
            release_source(source)
            logger.error(f"Error playing intro in guild {event.guild_id}: {exc}")
            return IntroOutcome.failed(exc)

        logger.info(
            f"Playing intro {rule.clip_name!r} for user {event.user_id} in channel {event.new_channel_id}"
        )
        return IntroOutcome.triggered(rule.clip_name)
