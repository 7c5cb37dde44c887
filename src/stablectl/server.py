"""Server instances created from an installed distribution.

Each server owns ``<stable>/server/<name>`` laid out as::

    my.cnf
    data/   persistent server state, filled by the bootstrap step
    run/    mysqld.pid and mysqld.sock
    log/    mysqld.err and bootstrap.log
    tmp/    bootstrap.sql

A server is RUNNING exactly when its PID file exists. Nothing else is tracked:
processes are spawned detached and are never supervised.
"""
from __future__ import annotations

import ipaddress
import logging
import signal
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .cnf import ConfigDocument
from .distribution import BOOTSTRAP_FILES, Distribution
from .errors import (
    DistributionNotFoundError,
    FormatFieldError,
    NonLocalServerError,
    ServerError,
    ServerNotRunningError,
    ServerRunningError,
)
from .providers.commands import CommandRunner

LOGGER = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_USER = "root"
DEFAULT_DATABASE = "test"

BOOTSTRAP_HEADER: tuple[str, ...] = (
    "SET SESSION SQL_LOG_BIN = 0;",
    "CREATE DATABASE IF NOT EXISTS mysql;",
    "CREATE DATABASE IF NOT EXISTS test;",
    "USE mysql;",
)
BOOTSTRAP_FOOTER: tuple[str, ...] = ("SET SESSION SQL_LOG_BIN = 1;",)

FORMAT_FIELDS: tuple[str, ...] = (
    "name",
    "host",
    "port",
    "socket",
    "server_id",
    "base_dir",
    "data_dir",
    "config_file",
    "bin_path",
    "log_path",
    "pid_path",
    "user",
    "database",
    "distribution",
    "version",
)


class ServerStatus(Enum):
    """Process state derived from the PID file."""

    STOPPED = "stopped"
    RUNNING = "running"


def is_local_host(host: str) -> bool:
    """Return True for ``localhost`` and loopback addresses."""
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


class _FieldMap(dict[str, str]):
    def __missing__(self, key: str) -> str:
        raise FormatFieldError(
            f"Unknown field {{{key}}}; expected one of: {', '.join(FORMAT_FIELDS)}"
        )


@dataclass(slots=True, eq=False)
class ServerInstance:
    """A server registered in the stable."""

    name: str
    distribution: Distribution
    base_dir: Path
    port: int
    server_id: int
    host: str = DEFAULT_HOST
    user: str = DEFAULT_USER
    password: str = ""
    database: str = DEFAULT_DATABASE
    options: ConfigDocument = field(default_factory=ConfigDocument)
    data_dir: Path = field(init=False)
    config_file: Path = field(init=False)
    socket: Path = field(init=False)
    bin_path: Path = field(init=False)
    log_path: Path = field(init=False)
    pid_path: Path = field(init=False)

    def __post_init__(self) -> None:
        """Derive the directory layout from ``base_dir``."""
        self.data_dir = self.base_dir / "data"
        self.config_file = self.base_dir / "my.cnf"
        self.socket = self.run_dir / "mysqld.sock"
        self.fix_dynamic_fields()

    # Layout ---------------------------------------------------------------
    @property
    def run_dir(self) -> Path:
        return self.base_dir / "run"

    @property
    def log_dir(self) -> Path:
        return self.base_dir / "log"

    @property
    def tmp_dir(self) -> Path:
        return self.base_dir / "tmp"

    @property
    def bootstrap_script_path(self) -> Path:
        return self.tmp_dir / "bootstrap.sql"

    @property
    def bootstrap_log_path(self) -> Path:
        return self.log_dir / "bootstrap.log"

    def fix_dynamic_fields(self) -> None:
        """Fill in derived paths that are not set yet.

        Paths already set, e.g. restored from the registry, are kept so that a
        change in the layout rules never moves a live server's PID file.
        """
        if getattr(self, "bin_path", None) is None:
            self.bin_path = self.distribution.mysqld_path
        if getattr(self, "log_path", None) is None:
            self.log_path = self.log_dir / "mysqld.err"
        if getattr(self, "pid_path", None) is None:
            self.pid_path = self.run_dir / "mysqld.pid"

    # Provisioning ---------------------------------------------------------
    def default_options(self) -> dict[str, dict[str, object]]:
        """Return the option file contents for a fresh server."""
        mysqld: dict[str, object] = {
            "basedir": self.distribution.root,
            "datadir": self.data_dir,
            "socket": self.socket,
            "port": self.port,
            "pid_file": self.pid_path,
            "server_id": self.server_id,
        }
        if self.distribution.uses_legacy_language_option():
            mysqld["language"] = self.distribution.share_dir / "english"
        else:
            mysqld["lc_messages_dir"] = self.distribution.share_dir
            mysqld["lc_messages"] = "en_US"
        return {
            "mysqladmin": {
                "socket": self.socket,
                "user": DEFAULT_USER,
                "host": self.host,
                "port": self.port,
            },
            "mysqld": mysqld,
            "mysql": {
                "protocol": "tcp",
                "host": self.host,
                "port": self.port,
                "prompt": f"'{self.name}> '",
            },
        }

    def setup(self) -> None:
        """Create the server directories and write ``my.cnf``.

        Raises :class:`FileExistsError` when the base directory exists.
        """
        self.base_dir.mkdir(parents=False, exist_ok=False)
        for directory in (self.data_dir, self.run_dir, self.log_dir, self.tmp_dir):
            directory.mkdir()
        self.options.import_sections(self.default_options())
        self.options.write_path(self.config_file)
        LOGGER.info("Wrote %s", self.config_file)

    def write_bootstrap_file(self) -> Path:
        """Assemble the bootstrap SQL script and return its path."""
        path = self.bootstrap_script_path
        with path.open("w", encoding="utf-8") as handle:
            for line in BOOTSTRAP_HEADER:
                handle.write(f"{line}\n")
            for relative in BOOTSTRAP_FILES:
                source = self.distribution.root / relative
                content = source.read_text(encoding="utf-8", errors="replace")
                handle.write(content)
                if not content.endswith("\n"):
                    handle.write("\n")
            for line in BOOTSTRAP_FOOTER:
                handle.write(f"{line}\n")
        return path

    def bootstrap(self, runner: CommandRunner) -> None:
        """Initialise the data directory with ``mysqld --bootstrap``."""
        script = self.write_bootstrap_file()
        runner.bootstrap(
            self.bin_path,
            defaults_file=self.config_file,
            script_path=script,
            log_path=self.bootstrap_log_path,
        )
        LOGGER.info("Bootstrapped server %s", self.name)

    # Process control ------------------------------------------------------
    def status(self) -> ServerStatus:
        """Return RUNNING when the PID file exists."""
        return ServerStatus.RUNNING if self.pid_path.exists() else ServerStatus.STOPPED

    def pid(self) -> int:
        """Return the PID recorded by the running server."""
        try:
            raw = self.pid_path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ServerError(f"Cannot read PID file {self.pid_path}: {exc}") from exc
        try:
            return int(raw)
        except ValueError as exc:
            raise ServerError(f"Invalid PID {raw!r} in {self.pid_path}") from exc

    def is_local(self) -> bool:
        return is_local_host(self.host)

    def start(self, runner: CommandRunner, extra_args: Sequence[str] = ()) -> int:
        """Spawn the server detached and return its PID.

        The call returns immediately; readiness is not checked.
        """
        if self.status() is ServerStatus.RUNNING:
            raise ServerRunningError(f"Server {self.name!r} is already running")
        args = [str(self.bin_path), f"--defaults-file={self.config_file}", *extra_args]
        pid = runner.spawn_daemon(args, cwd=self.base_dir, log_path=self.log_path)
        LOGGER.info("Started server %s (pid %d)", self.name, pid)
        return pid

    def stop(self, runner: CommandRunner) -> int:
        """Send SIGTERM to the running server and return its PID."""
        if not self.is_local():
            raise NonLocalServerError(
                f"Server {self.name!r} runs on {self.host}; only local servers can be stopped"
            )
        if self.status() is not ServerStatus.RUNNING:
            raise ServerNotRunningError(f"Server {self.name!r} is not running")
        pid = self.pid()
        try:
            runner.send_signal(pid, signal.SIGTERM)
        except ProcessLookupError as exc:
            raise ServerNotRunningError(
                f"Server {self.name!r} has a stale PID file {self.pid_path} (pid {pid})"
            ) from exc
        LOGGER.info("Sent SIGTERM to server %s (pid %d)", self.name, pid)
        return pid

    # Client access --------------------------------------------------------
    def tcp_dsn(self) -> str:
        return f"{self.user}:{self.password}@tcp({self.host}:{self.port})/{self.database}"

    def socket_dsn(self) -> str:
        return f"{self.user}:{self.password}@unix({self.socket})/{self.database}"

    def client_command(self, extra_args: Sequence[str] = ()) -> list[str]:
        """Return argv running the distribution's client against this server."""
        return [
            str(self.distribution.client_path),
            f"--defaults-file={self.config_file}",
            *extra_args,
        ]

    def format_fields(self) -> dict[str, str]:
        """Return the values available to :meth:`format_string`."""
        return {
            "name": self.name,
            "host": self.host,
            "port": str(self.port),
            "socket": str(self.socket),
            "server_id": str(self.server_id),
            "base_dir": str(self.base_dir),
            "data_dir": str(self.data_dir),
            "config_file": str(self.config_file),
            "bin_path": str(self.bin_path),
            "log_path": str(self.log_path),
            "pid_path": str(self.pid_path),
            "user": self.user,
            "database": self.database,
            "distribution": self.distribution.name,
            "version": self.distribution.version,
        }

    def format_string(self, template: str) -> str:
        """Substitute ``{field}`` placeholders in *template*.

        Use ``{{`` and ``}}`` for literal braces.
        """
        try:
            return template.format_map(_FieldMap(self.format_fields()))
        except (IndexError, ValueError) as exc:
            raise FormatFieldError(f"Invalid format string {template!r}: {exc}") from exc

    # Persistence ----------------------------------------------------------
    def to_dict(self) -> dict[str, Any]:
        """Return the persisted representation; password and database are omitted."""
        return {
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "socket": str(self.socket),
            "server_id": self.server_id,
            "base_dir": str(self.base_dir),
            "data_dir": str(self.data_dir),
            "config_file": str(self.config_file),
            "bin_path": str(self.bin_path),
            "log_path": str(self.log_path),
            "pid_path": str(self.pid_path),
            "user": self.user,
            "distribution": self.distribution.name,
            "options": self.options.to_dict(),
        }

    @classmethod
    def from_dict(
        cls,
        payload: Mapping[str, Any],
        distributions: Mapping[str, Distribution],
    ) -> ServerInstance:
        """Rebuild a server, re-linking it to its distribution by name."""
        dist_name = str(payload.get("distribution") or "")
        distribution = distributions.get(dist_name)
        if distribution is None:
            raise DistributionNotFoundError(
                f"Server {payload.get('name')!r} refers to unknown distribution {dist_name!r}"
            )
        server = cls(
            name=str(payload["name"]),
            distribution=distribution,
            base_dir=Path(str(payload["base_dir"])),
            port=int(payload["port"]),
            server_id=int(payload["server_id"]),
            host=str(payload.get("host") or DEFAULT_HOST),
            user=str(payload.get("user") or DEFAULT_USER),
            options=ConfigDocument.from_dict(payload.get("options") or {}),
        )
        for key in ("data_dir", "config_file", "socket", "bin_path", "log_path", "pid_path"):
            value = payload.get(key)
            if value:
                setattr(server, key, Path(str(value)))
        return server


__all__ = [
    "BOOTSTRAP_FOOTER",
    "BOOTSTRAP_HEADER",
    "DEFAULT_DATABASE",
    "DEFAULT_HOST",
    "DEFAULT_USER",
    "FORMAT_FIELDS",
    "ServerInstance",
    "ServerStatus",
    "is_local_host",
]
