import logging
import os
from dataclasses import dataclass

from .errors import CatalogReadError

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = ("m4a", "wav", "mp3")


@dataclass(frozen=True)
class SoundDescriptor:
    name: str
    extension: str
    path: str


def scan(directory, case_insensitive: bool = False) -> dict[str, SoundDescriptor]:
    """Map sound name (file name minus extension) to its descriptor.

    Only direct entries of `directory` are considered. A missing directory is
    an empty catalog; any other read failure raises `CatalogReadError`. When
    two files share a base name the one scanned last wins.
    """
    sounds: dict[str, SoundDescriptor] = {}
    try:
        with os.scandir(directory) as entries:
            for entry in entries:
                if not entry.is_file():
                    continue
                base, dot_ext = os.path.splitext(entry.name)
                ext = dot_ext[1:]
                if not base or not ext:
                    continue
                wanted = ext.lower() if case_insensitive else ext
                if wanted not in ALLOWED_EXTENSIONS:
                    continue
                if base in sounds:
                    logger.debug(
                        "Sound name %r provided by %s and %s; keeping the latter",
                        base,
                        sounds[base].path,
                        entry.path,
                    )
                sounds[base] = SoundDescriptor(base, ext, entry.path)
    except FileNotFoundError:
        logger.debug(f"Sound directory {directory} does not exist")
        return {}
    except OSError as exc:
        raise CatalogReadError(directory, exc.strerror or str(exc)) from exc
    return sounds


class SoundCatalog:
    """Sound directory that is rescanned on every lookup."""

    def __init__(self, directory, case_insensitive: bool = False):
        self.directory = directory
        self.case_insensitive = case_insensitive

    def scan(self) -> dict[str, SoundDescriptor]:
        return scan(self.directory, case_insensitive=self.case_insensitive)

    def names(self) -> list[str]:
        return list(self.scan())

    def get(self, name: str) -> SoundDescriptor | None:
        return self.scan().get(name)
