"""Installed binary releases and the installer that unpacks them."""
from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from collections.abc import Container, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from packaging.version import InvalidVersion, Version

from .archive import ArchiveKind, detect_kind, extract, single_top_level_dir, strip_suffix
from .errors import DistributionExistsError, VersionNotFoundError
from .providers.commands import CommandRunner

LOGGER = logging.getLogger(__name__)

DEFAULT_PORT = 3306

REQUIRED_FILES: tuple[str, ...] = (
    "share/mysql_system_tables.sql",
    "share/mysql_system_tables_data.sql",
    "share/mysql_test_data_timezone.sql",
    "share/fill_help_tables.sql",
    "include/mysql_version.h",
)

# SQL files fed to ``mysqld --bootstrap``, in order.
BOOTSTRAP_FILES: tuple[str, ...] = REQUIRED_FILES[:4]

VERSION_HEADER = "include/mysql_version.h"

_DEFINE_RE = re.compile(r"^#\s*define\s+(\w+)\s+(.*)")
_VERSION_LINE_RE = re.compile(r"^\S+\s+Ver\s+(\d+\.\d+\.\d+\S*)\s+for\s+(\S+)")
_NUMERIC_VERSION_RE = re.compile(r"\d+(?:\.\d+)*")

# Servers up to this version take ``language`` instead of ``lc_messages``.
LEGACY_LANGUAGE_VERSION = Version("5.5.0")


def parse_version_string(line: str) -> tuple[str, str] | None:
    """Return ``(version, platform)`` parsed from ``mysqld --version`` output."""
    match = _VERSION_LINE_RE.match(line)
    if match is None:
        return None
    return match.group(1), match.group(2)


def numeric_version(value: str) -> Version | None:
    """Return the leading numeric part of *value* as a comparable version."""
    match = _NUMERIC_VERSION_RE.match(value.strip())
    if match is None:
        return None
    try:
        return Version(match.group(0))
    except InvalidVersion:
        return None


@dataclass(slots=True)
class Distribution:
    """A binary release unpacked below ``<stable>/dist``."""

    name: str
    root: Path
    version: str = ""
    server_version: str = ""
    default_port: int = DEFAULT_PORT

    @property
    def bin_dir(self) -> Path:
        return self.root / "bin"

    @property
    def share_dir(self) -> Path:
        return self.root / "share"

    @property
    def mysqld_path(self) -> Path:
        """Return the server binary."""
        return self.bin_dir / "mysqld"

    @property
    def client_path(self) -> Path:
        """Return the command line client binary."""
        return self.bin_dir / "mysql"

    def uses_legacy_language_option(self) -> bool:
        """Return True when the server expects ``language`` over ``lc_messages``."""
        parsed = numeric_version(self.version)
        return parsed is not None and parsed <= LEGACY_LANGUAGE_VERSION

    def check_files(self) -> None:
        """Raise :class:`FileNotFoundError` for the first required file missing."""
        for relative in REQUIRED_FILES:
            path = self.root / relative
            if not path.is_file():
                raise FileNotFoundError(f"Required distribution file missing: {path}")

    def scan_version_file(self) -> None:
        """Read ``version`` and ``default_port`` from the version header.

        The whole file is scanned; later definitions overwrite earlier ones.
        """
        path = self.root / VERSION_HEADER
        found_version = False
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                match = _DEFINE_RE.match(line.rstrip("\n"))
                if match is None:
                    continue
                key, value = match.group(1), match.group(2).strip('" \t')
                if key == "MYSQL_SERVER_VERSION":
                    self.version = value
                    found_version = True
                elif key == "MYSQL_PORT":
                    try:
                        self.default_port = int(value)
                    except ValueError as exc:
                        raise ValueError(f"Invalid MYSQL_PORT {value!r} in {path}") from exc
        if not found_version:
            raise VersionNotFoundError(f"MYSQL_SERVER_VERSION not defined in {path}")

    def read_server_info(self, runner: CommandRunner) -> None:
        """Populate ``server_version`` from ``mysqld --version``."""
        line = runner.query_version(self.mysqld_path)
        parsed = parse_version_string(line)
        if parsed is None:
            LOGGER.warning("Unrecognised version output from %s: %r", self.mysqld_path, line)
            self.server_version = ""
            return
        self.server_version = parsed[0]

    def to_dict(self) -> dict[str, Any]:
        """Return the persisted representation."""
        return {
            "name": self.name,
            "root": str(self.root),
            "version": self.version,
            "server_version": self.server_version,
            "default_port": self.default_port,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Distribution:
        """Rebuild a distribution from :meth:`to_dict` output."""
        return cls(
            name=str(payload["name"]),
            root=Path(str(payload["root"])),
            version=str(payload.get("version") or ""),
            server_version=str(payload.get("server_version") or ""),
            default_port=int(payload.get("default_port") or DEFAULT_PORT),
        )


class DistributionInstaller:
    """Unpack or link a distribution source into ``<stable>/dist``."""

    def __init__(self, *, dist_dir: Path, tmp_dir: Path, runner: CommandRunner) -> None:
        """Install below *dist_dir*, staging archives in *tmp_dir*."""
        self.dist_dir = dist_dir
        self.tmp_dir = tmp_dir
        self.runner = runner

    def install(self, source: Path, *, reserved: Container[str] = ()) -> Distribution:
        """Install *source* and return the validated distribution.

        Names in *reserved* (already registered) or already present on disk
        raise :class:`DistributionExistsError`. On any failure everything this
        call created is removed before the error propagates.
        """
        kind = detect_kind(source)
        if kind is ArchiveKind.DIRECTORY:
            return self._link_directory(source, reserved)
        return self._unpack_archive(source, kind, reserved)

    def _link_directory(self, source: Path, reserved: Container[str]) -> Distribution:
        name = source.resolve().name
        target = self._target_for(name, reserved)
        os.symlink(source.resolve(), target, target_is_directory=True)
        LOGGER.info("Linked distribution %s -> %s", target, source)
        try:
            return self._validate(name, target)
        except BaseException:
            target.unlink(missing_ok=True)
            raise

    def _unpack_archive(
        self, source: Path, kind: ArchiveKind, reserved: Container[str]
    ) -> Distribution:
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        staging_dir = Path(tempfile.mkdtemp(prefix="stablectl-dist-", dir=str(self.tmp_dir)))
        installed: Path | None = None
        try:
            extract(source, kind, staging_dir, self.runner)
            top_level = single_top_level_dir(staging_dir)
            name = top_level.name if top_level is not None else strip_suffix(source.name)
            target = self._target_for(name, reserved)
            shutil.move(str(top_level or staging_dir), str(target))
            installed = target
            return self._validate(name, target)
        except BaseException:
            if installed is not None and installed.exists():
                shutil.rmtree(installed, ignore_errors=True)
            raise
        finally:
            if staging_dir.exists():
                shutil.rmtree(staging_dir, ignore_errors=True)

    def _target_for(self, name: str, reserved: Container[str]) -> Path:
        target = self.dist_dir / name
        if name in reserved or target.exists() or target.is_symlink():
            raise DistributionExistsError(f"Distribution {name!r} already exists")
        return target

    def _validate(self, name: str, root: Path) -> Distribution:
        distribution = Distribution(name=name, root=root)
        distribution.check_files()
        distribution.scan_version_file()
        distribution.read_server_info(self.runner)
        LOGGER.info(
            "Installed distribution %s (version %s, server %s)",
            name,
            distribution.version,
            distribution.server_version or "unknown",
        )
        return distribution


__all__ = [
    "BOOTSTRAP_FILES",
    "DEFAULT_PORT",
    "Distribution",
    "DistributionInstaller",
    "REQUIRED_FILES",
    "numeric_version",
    "parse_version_string",
]
