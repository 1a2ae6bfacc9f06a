"""Sound clip and intro playback for a Discord voice bot."""

from .catalog import SoundCatalog, SoundDescriptor, scan
from .errors import (
    Busy,
    CatalogReadError,
    MissingClipError,
    NotInVoiceChannel,
    RemoteSourceError,
    SoundboardError,
    UnknownSoundError,
    VoiceConnectionError,
    VoiceTimeout,
)
from .fuzzy import rank
from .intro import IntroOutcome, IntroRule, IntroRules, IntroStatus, IntroTrigger, PresenceTransition
from .playback import PlaybackOrchestrator, describe_error
from .sessions import SessionState, VoiceSession, VoiceSessionManager
