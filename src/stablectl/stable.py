"""The stable: a directory tree of distributions and the servers built from them.

Layout below ``<location>/.stable``::

    stable.yml   persisted registry (see :meth:`Stable.to_dict`)
    dist/        unpacked or linked distributions
    server/      one directory per server instance
    tmp/         staging area for archive extraction

Ports and server ids are handed out from monotonically increasing counters and
are never reused, even after the server that held them is removed.
"""
from __future__ import annotations

import fnmatch
import logging
import shutil
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from .distribution import Distribution, DistributionInstaller
from .errors import (
    DistributionNotFoundError,
    InvalidPatternError,
    ServerError,
    ServerExistsError,
    ServerNotFoundError,
    StableExistsError,
    StableNotFoundError,
)
from .providers.commands import CommandRunner
from .server import DEFAULT_DATABASE, DEFAULT_HOST, DEFAULT_USER, ServerInstance, ServerStatus
from .state import SCHEMA_VERSION, StateRegistry, StateRegistryError, migrate

LOGGER = logging.getLogger(__name__)

STABLE_DIR = ".stable"
DIST_DIR = "dist"
SERVER_DIR = "server"
TMP_DIR = "tmp"

DEFAULT_BASE_PORT = 12000
DEFAULT_FIRST_SERVER_ID = 1


def stable_root(location: Path) -> Path:
    """Return the absolute stable root for *location*."""
    return location.expanduser().absolute() / STABLE_DIR


class Stable:
    """Registry of distributions, servers and allocation counters."""

    def __init__(
        self,
        root: Path,
        *,
        next_port: int = DEFAULT_BASE_PORT,
        next_server_id: int = DEFAULT_FIRST_SERVER_ID,
        runner: CommandRunner | None = None,
    ) -> None:
        """Wrap an existing stable root; use :meth:`create` or :meth:`open`."""
        self.root = root
        self.next_port = next_port
        self.next_server_id = next_server_id
        self.distributions: dict[str, Distribution] = {}
        self.servers: dict[str, ServerInstance] = {}
        self.runner = runner or CommandRunner()
        self.registry = StateRegistry(root)

    @property
    def dist_dir(self) -> Path:
        return self.root / DIST_DIR

    @property
    def server_dir(self) -> Path:
        return self.root / SERVER_DIR

    @property
    def tmp_dir(self) -> Path:
        return self.root / TMP_DIR

    # Lifecycle ------------------------------------------------------------
    @classmethod
    def create(
        cls,
        location: Path,
        *,
        base_port: int = DEFAULT_BASE_PORT,
        first_server_id: int = DEFAULT_FIRST_SERVER_ID,
        runner: CommandRunner | None = None,
    ) -> Stable:
        """Create and persist an empty stable below *location*."""
        root = stable_root(location)
        try:
            root.mkdir(parents=True)
        except FileExistsError as exc:
            raise StableExistsError(f"A stable already exists at {root}") from exc

        stable = cls(root, next_port=base_port, next_server_id=first_server_id, runner=runner)
        try:
            for directory in (stable.dist_dir, stable.server_dir, stable.tmp_dir):
                directory.mkdir()
            stable.write_config()
        except BaseException:
            shutil.rmtree(root, ignore_errors=True)
            raise
        LOGGER.info("Created stable at %s", root)
        return stable

    @classmethod
    def open(cls, location: Path, *, runner: CommandRunner | None = None) -> Stable:
        """Load the stable persisted below *location*."""
        root = stable_root(location)
        registry = StateRegistry(root)
        try:
            raw = registry.read_state()
        except FileNotFoundError as exc:
            raise StableNotFoundError(f"No stable found at {root}") from exc
        return cls.from_dict(migrate(raw), root=root, runner=runner)

    @classmethod
    def from_dict(
        cls,
        payload: Mapping[str, Any],
        *,
        root: Path,
        runner: CommandRunner | None = None,
    ) -> Stable:
        """Rebuild a stable from a migrated registry document."""
        try:
            stable = cls(
                root,
                next_port=int(payload["next_port"]),
                next_server_id=int(payload["next_server_id"]),
                runner=runner,
            )
            for name, entry in (payload.get("distributions") or {}).items():
                stable.distributions[str(name)] = Distribution.from_dict(entry)
            for name, entry in (payload.get("servers") or {}).items():
                stable.servers[str(name)] = ServerInstance.from_dict(entry, stable.distributions)
        except (KeyError, TypeError, ValueError, AttributeError, DistributionNotFoundError) as exc:
            raise StateRegistryError(f"Malformed stable document in {root}: {exc}") from exc
        for server in stable.servers.values():
            server.fix_dynamic_fields()
        return stable

    def to_dict(self) -> dict[str, Any]:
        """Return the persisted registry document."""
        return {
            "schema_version": SCHEMA_VERSION,
            "root": str(self.root),
            "next_port": self.next_port,
            "next_server_id": self.next_server_id,
            "distributions": {
                name: dist.to_dict() for name, dist in sorted(self.distributions.items())
            },
            "servers": {name: server.to_dict() for name, server in sorted(self.servers.items())},
        }

    def write_config(self) -> None:
        """Persist the registry atomically."""
        self.registry.write_state(self.to_dict())
        LOGGER.debug("Wrote %s", self.registry.state_path)

    def destroy(self) -> None:
        """Remove the stable root and everything below it."""
        LOGGER.info("Removing stable at %s", self.root)
        shutil.rmtree(self.root)

    # Allocation -----------------------------------------------------------
    def fetch_port_number(self) -> int:
        """Return the next free port and advance the counter."""
        port = self.next_port
        self.next_port += 1
        return port

    def fetch_server_id(self) -> int:
        """Return the next server id and advance the counter."""
        server_id = self.next_server_id
        self.next_server_id += 1
        return server_id

    # Distributions --------------------------------------------------------
    def add_dist(self, path: Path) -> Distribution:
        """Install the archive or directory at *path* and register it."""
        installer = DistributionInstaller(
            dist_dir=self.dist_dir, tmp_dir=self.tmp_dir, runner=self.runner
        )
        distribution = installer.install(path, reserved=self.distributions)
        self.distributions[distribution.name] = distribution
        return distribution

    def get_distribution(self, name: str) -> Distribution:
        try:
            return self.distributions[name]
        except KeyError:
            raise DistributionNotFoundError(f"No distribution named {name!r}") from None

    def del_dist_by_name(self, name: str) -> list[str]:
        """Deregister distribution *name* and delete every server built from it.

        Returns the names of the deleted servers. The unpacked files stay in
        ``dist/``.
        """
        distribution = self.get_distribution(name)
        bound = [
            server for _, server in sorted(self.servers.items())
            if server.distribution is distribution
        ]
        for server in bound:
            self.del_server(server)
        del self.distributions[name]
        LOGGER.info("Removed distribution %s", name)
        return [server.name for server in bound]

    # Servers --------------------------------------------------------------
    def add_server(
        self,
        name: str,
        distribution: Distribution,
        *,
        host: str = DEFAULT_HOST,
        user: str = DEFAULT_USER,
        database: str = DEFAULT_DATABASE,
    ) -> ServerInstance:
        """Provision, bootstrap and register a new server."""
        if not name or name in {".", ".."} or "/" in name:
            raise ServerError(f"Invalid server name {name!r}")
        if name in self.servers:
            raise ServerExistsError(f"Server {name!r} already exists")
        base_dir = self.server_dir / name
        if base_dir.exists():
            raise ServerExistsError(f"Server directory {base_dir} already exists")

        server = ServerInstance(
            name=name,
            distribution=distribution,
            base_dir=base_dir,
            port=self.fetch_port_number(),
            server_id=self.fetch_server_id(),
            host=host,
            user=user,
            database=database,
        )
        try:
            server.setup()
            server.bootstrap(self.runner)
        except BaseException:
            if base_dir.exists():
                shutil.rmtree(base_dir, ignore_errors=True)
            raise
        self.servers[name] = server
        LOGGER.info("Added server %s on port %d", name, server.port)
        return server

    def get_server(self, name: str) -> ServerInstance:
        try:
            return self.servers[name]
        except KeyError:
            raise ServerNotFoundError(f"No server named {name!r}") from None

    def del_server(self, server: ServerInstance) -> None:
        """Remove *server*'s directory tree and its registry entry."""
        if server.status() is ServerStatus.RUNNING:
            LOGGER.warning("Removing server %s while its PID file exists", server.name)
        if server.base_dir.exists():
            shutil.rmtree(server.base_dir)
        self.servers.pop(server.name, None)
        LOGGER.info("Removed server %s", server.name)

    def del_server_by_name(self, name: str) -> None:
        self.del_server(self.get_server(name))

    def find_matching_servers(self, patterns: Iterable[str]) -> list[ServerInstance]:
        """Return servers matching any glob in *patterns*.

        Matches are grouped per pattern in name order; a server matched by two
        patterns appears twice.
        """
        patterns = list(patterns)
        for pattern in patterns:
            validate_pattern(pattern)
        names = sorted(self.servers)
        matches: list[ServerInstance] = []
        for pattern in patterns:
            matches.extend(
                self.servers[name] for name in names if fnmatch.fnmatchcase(name, pattern)
            )
        return matches


def validate_pattern(pattern: str) -> None:
    """Raise :class:`InvalidPatternError` for an unterminated ``[`` class."""
    index = 0
    length = len(pattern)
    while index < length:
        if pattern[index] == "[":
            closing = index + 1
            if closing < length and pattern[closing] == "!":
                closing += 1
            if closing < length and pattern[closing] == "]":
                closing += 1
            closing = pattern.find("]", closing)
            if closing < 0:
                raise InvalidPatternError(f"Unterminated character class in {pattern!r}")
            index = closing
        index += 1


__all__ = [
    "DEFAULT_BASE_PORT",
    "DEFAULT_FIRST_SERVER_ID",
    "STABLE_DIR",
    "Stable",
    "stable_root",
    "validate_pattern",
]
