"""Archive helpers used when installing distributions."""
from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from .errors import InvalidDistributionError
from .providers.commands import CommandRunner

LOGGER = logging.getLogger(__name__)


class ArchiveKind(Enum):
    """Supported distribution sources."""

    TAR_GZ = "tar.gz"
    TAR = "tar"
    ZIP = "zip"
    DIRECTORY = "directory"


SUFFIXES: tuple[tuple[str, ArchiveKind], ...] = (
    (".tar.gz", ArchiveKind.TAR_GZ),
    (".tgz", ArchiveKind.TAR_GZ),
    (".tar", ArchiveKind.TAR),
    (".zip", ArchiveKind.ZIP),
)


def detect_kind(path: Path) -> ArchiveKind:
    """Return the kind of distribution source at *path*.

    Existing directories are always :attr:`ArchiveKind.DIRECTORY`; anything
    else is classified by its file name.
    """
    if path.is_dir():
        return ArchiveKind.DIRECTORY
    for suffix, kind in SUFFIXES:
        if path.name.endswith(suffix):
            return kind
    raise InvalidDistributionError(
        f"{path} is neither a directory nor a .tar.gz, .tgz, .tar or .zip archive"
    )


def strip_suffix(name: str) -> str:
    """Return *name* without a known archive suffix."""
    for suffix, _kind in SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def extract(path: Path, kind: ArchiveKind, dest: Path, runner: CommandRunner) -> None:
    """Unpack the archive at *path* into the existing directory *dest*."""
    LOGGER.info("Extracting %s archive %s", kind.value, path)
    if kind is ArchiveKind.TAR_GZ:
        runner.extract_tar(path, dest, compressed=True)
    elif kind is ArchiveKind.TAR:
        runner.extract_tar(path, dest, compressed=False)
    elif kind is ArchiveKind.ZIP:
        runner.extract_zip(path, dest)
    else:
        raise InvalidDistributionError(f"{path} is a directory, not an archive")


def single_top_level_dir(directory: Path) -> Path | None:
    """Return the only entry of *directory* when it is a directory."""
    entries = list(directory.iterdir())
    if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
        return entries[0]
    return None


__all__ = [
    "ArchiveKind",
    "SUFFIXES",
    "detect_kind",
    "extract",
    "single_top_level_dir",
    "strip_suffix",
]
