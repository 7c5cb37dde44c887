"""Server instance layout, configuration and process control tests."""
from __future__ import annotations

import signal
import time
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from stablectl.cnf import ConfigDocument
from stablectl.distribution import Distribution
from stablectl.errors import (
    DistributionNotFoundError,
    FormatFieldError,
    NonLocalServerError,
    ServerError,
    ServerNotRunningError,
    ServerRunningError,
)
from stablectl.providers.commands import CommandRunner
from stablectl.server import (
    BOOTSTRAP_FOOTER,
    BOOTSTRAP_HEADER,
    ServerInstance,
    ServerStatus,
    is_local_host,
)

DistFactory = Callable[..., Path]


class RecordingRunner(CommandRunner):
    """Runner that records daemon and signal calls instead of acting."""

    def __init__(self) -> None:
        super().__init__()
        self.spawned: list[list[str]] = []
        self.signals: list[tuple[int, int]] = []

    def spawn_daemon(self, args: Sequence[str], *, cwd: Path, log_path: Path) -> int:
        self.spawned.append(list(args))
        return 4242

    def send_signal(self, pid: int, sig: int) -> None:
        self.signals.append((pid, sig))


def _server(
    tmp_path: Path,
    make_distribution: DistFactory,
    *,
    version: str = "5.6.14",
    host: str = "localhost",
) -> ServerInstance:
    root = make_distribution(version=version)
    distribution = Distribution(name=root.name, root=root, version=version)
    return ServerInstance(
        name="s1",
        distribution=distribution,
        base_dir=tmp_path / "server" / "s1",
        port=12000,
        server_id=1,
        host=host,
    )


def test_layout_is_derived_from_base_dir(tmp_path: Path, make_distribution: DistFactory) -> None:
    """Paths follow the fixed per-server layout."""
    server = _server(tmp_path, make_distribution)
    base = tmp_path / "server" / "s1"

    assert server.data_dir == base / "data"
    assert server.config_file == base / "my.cnf"
    assert server.socket == base / "run" / "mysqld.sock"
    assert server.pid_path == base / "run" / "mysqld.pid"
    assert server.log_path == base / "log" / "mysqld.err"
    assert server.bin_path == server.distribution.root / "bin" / "mysqld"


def test_default_options_modern_server(tmp_path: Path, make_distribution: DistFactory) -> None:
    """Newer servers get lc_messages settings and the standard sections."""
    server = _server(tmp_path, make_distribution)

    options = server.default_options()

    assert set(options) == {"mysqladmin", "mysqld", "mysql"}
    assert options["mysqladmin"]["user"] == "root"
    assert options["mysqld"]["port"] == 12000
    assert options["mysqld"]["server_id"] == 1
    assert options["mysqld"]["pid_file"] == server.pid_path
    assert options["mysqld"]["lc_messages"] == "en_US"
    assert "language" not in options["mysqld"]
    assert options["mysqld"]["basedir"] == server.distribution.root
    assert options["mysql"]["protocol"] == "tcp"
    assert options["mysql"]["prompt"] == "'s1> '"


def test_default_options_legacy_server(tmp_path: Path, make_distribution: DistFactory) -> None:
    """Servers up to 5.5.0 use the language directory option."""
    server = _server(tmp_path, make_distribution, version="5.1.73")

    mysqld = server.default_options()["mysqld"]

    assert mysqld["language"] == server.distribution.root / "share" / "english"
    assert "lc_messages" not in mysqld


def test_setup_writes_layout_and_config(tmp_path: Path, make_distribution: DistFactory) -> None:
    """Setup creates the directories and a readable my.cnf."""
    server = _server(tmp_path, make_distribution)
    (tmp_path / "server").mkdir()

    server.setup()

    for name in ("data", "run", "log", "tmp"):
        assert (server.base_dir / name).is_dir()
    document = ConfigDocument()
    document.read_path(server.config_file)
    assert document["mysqld"].get("datadir") == str(server.data_dir)
    assert document["mysqld"].get("port") == "12000"
    assert document["mysql"].get("prompt") == "'s1> '"

    with pytest.raises(FileExistsError):
        server.setup()


def test_bootstrap_file_contents(tmp_path: Path, make_distribution: DistFactory) -> None:
    """The bootstrap script wraps the distribution SQL in header and footer."""
    server = _server(tmp_path, make_distribution)
    (tmp_path / "server").mkdir()
    server.setup()

    script = server.write_bootstrap_file().read_text().splitlines()

    assert script[: len(BOOTSTRAP_HEADER)] == list(BOOTSTRAP_HEADER)
    assert script[-len(BOOTSTRAP_FOOTER) :] == list(BOOTSTRAP_FOOTER)
    assert "-- mysql_system_tables.sql" in script
    assert script.index("-- mysql_system_tables.sql") < script.index("-- fill_help_tables.sql")


def test_bootstrap_runs_stub_server(tmp_path: Path, make_distribution: DistFactory) -> None:
    """Bootstrapping feeds the script to mysqld and keeps its output."""
    server = _server(tmp_path, make_distribution)
    (tmp_path / "server").mkdir()
    server.setup()

    server.bootstrap(CommandRunner())

    assert "bootstrap read" in server.bootstrap_log_path.read_text()


def test_status_and_pid(tmp_path: Path, make_distribution: DistFactory) -> None:
    """Status mirrors the PID file and malformed PID files raise ServerError."""
    server = _server(tmp_path, make_distribution)
    server.run_dir.mkdir(parents=True)

    assert server.status() is ServerStatus.STOPPED
    with pytest.raises(ServerError):
        server.pid()

    server.pid_path.write_text("1234\n")
    assert server.status() is ServerStatus.RUNNING
    assert server.pid() == 1234

    server.pid_path.write_text("nonsense")
    with pytest.raises(ServerError, match="Invalid PID"):
        server.pid()


def test_start_refuses_running_server(tmp_path: Path, make_distribution: DistFactory) -> None:
    """A present PID file blocks a second start."""
    server = _server(tmp_path, make_distribution)
    server.run_dir.mkdir(parents=True)
    server.pid_path.write_text("1")
    runner = RecordingRunner()

    with pytest.raises(ServerRunningError):
        server.start(runner)

    assert runner.spawned == []


def test_start_passes_defaults_file_and_extra_args(
    tmp_path: Path,
    make_distribution: DistFactory,
) -> None:
    """The daemon argv is the binary, its defaults file and the extra options."""
    server = _server(tmp_path, make_distribution)
    runner = RecordingRunner()

    pid = server.start(runner, ["--skip-grant-tables"])

    assert pid == 4242
    assert runner.spawned == [
        [str(server.bin_path), f"--defaults-file={server.config_file}", "--skip-grant-tables"]
    ]


def test_stop_sends_sigterm(tmp_path: Path, make_distribution: DistFactory) -> None:
    """Stopping signals the recorded PID with SIGTERM."""
    server = _server(tmp_path, make_distribution)
    server.run_dir.mkdir(parents=True)
    server.pid_path.write_text("4321")
    runner = RecordingRunner()

    assert server.stop(runner) == 4321
    assert runner.signals == [(4321, signal.SIGTERM)]


def test_stop_requires_running_local_server(
    tmp_path: Path,
    make_distribution: DistFactory,
) -> None:
    """Stopped or remote servers cannot be stopped."""
    runner = RecordingRunner()

    with pytest.raises(ServerNotRunningError):
        _server(tmp_path, make_distribution).stop(runner)

    remote = _server(tmp_path, make_distribution, host="db.example.com")
    with pytest.raises(NonLocalServerError):
        remote.stop(runner)
    assert runner.signals == []


def test_stop_with_stale_pid_file(
    tmp_path: Path,
    make_distribution: DistFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A PID file pointing at no process is reported as not running."""
    server = _server(tmp_path, make_distribution)
    server.run_dir.mkdir(parents=True)
    server.pid_path.write_text("999999")

    def no_such_process(self: CommandRunner, pid: int, sig: int) -> None:
        raise ProcessLookupError(pid)

    monkeypatch.setattr(CommandRunner, "send_signal", no_such_process)

    with pytest.raises(ServerNotRunningError, match="stale"):
        server.stop(CommandRunner())


@pytest.mark.mutation_timeout
def test_start_and_stop_stub_daemon(tmp_path: Path, make_distribution: DistFactory) -> None:
    """The stub daemon writes its PID file on start and removes it on SIGTERM."""
    server = _server(tmp_path, make_distribution)
    (tmp_path / "server").mkdir()
    server.setup()
    runner = CommandRunner()

    pid = server.start(runner)

    deadline = time.monotonic() + 5
    while server.status() is not ServerStatus.RUNNING and time.monotonic() < deadline:
        time.sleep(0.05)
    assert server.status() is ServerStatus.RUNNING
    assert server.pid() == pid

    server.stop(runner)

    deadline = time.monotonic() + 5
    while server.status() is ServerStatus.RUNNING and time.monotonic() < deadline:
        time.sleep(0.05)
    assert server.status() is ServerStatus.STOPPED


@pytest.mark.parametrize(
    ("host", "local"),
    [("localhost", True), ("127.0.0.1", True), ("::1", True), ("10.0.0.1", False), ("db", False)],
)
def test_is_local_host(host: str, local: bool) -> None:
    """Only localhost and loopback addresses count as local."""
    assert is_local_host(host) is local


def test_connection_strings(tmp_path: Path, make_distribution: DistFactory) -> None:
    """TCP and socket DSNs embed credentials and the database."""
    server = _server(tmp_path, make_distribution)
    server.password = "secret"

    assert server.tcp_dsn() == "root:secret@tcp(localhost:12000)/test"
    assert server.socket_dsn() == f"root:secret@unix({server.socket})/test"


def test_format_string(tmp_path: Path, make_distribution: DistFactory) -> None:
    """Placeholders are filled from the server fields."""
    server = _server(tmp_path, make_distribution)

    assert server.format_string("{name}:{port} id={server_id} {{raw}}") == "s1:12000 id=1 {raw}"
    assert server.format_string("{version}") == "5.6.14"

    with pytest.raises(FormatFieldError, match="password"):
        server.format_string("{password}")
    with pytest.raises(FormatFieldError):
        server.format_string("{0}")
    with pytest.raises(FormatFieldError):
        server.format_string("{name")


def test_client_command(tmp_path: Path, make_distribution: DistFactory) -> None:
    """The client reads the server's option file."""
    server = _server(tmp_path, make_distribution)

    assert server.client_command(["-e", "SELECT 1"]) == [
        str(server.distribution.root / "bin" / "mysql"),
        f"--defaults-file={server.config_file}",
        "-e",
        "SELECT 1",
    ]


def test_to_dict_round_trip(tmp_path: Path, make_distribution: DistFactory) -> None:
    """Persisted servers re-link to their distribution by name."""
    server = _server(tmp_path, make_distribution)
    server.options.import_sections(server.default_options())
    server.password = "not persisted"

    payload = server.to_dict()
    loaded = ServerInstance.from_dict(payload, {server.distribution.name: server.distribution})

    assert "password" not in payload
    assert payload["distribution"] == server.distribution.name
    assert loaded.to_dict() == payload
    assert loaded.distribution is server.distribution
    assert loaded.password == ""
    assert loaded.database == "test"

    with pytest.raises(DistributionNotFoundError):
        ServerInstance.from_dict(payload, {})


def test_from_dict_restores_persisted_paths(
    tmp_path: Path,
    make_distribution: DistFactory,
) -> None:
    """Persisted derived paths are kept and not recomputed on load."""
    server = _server(tmp_path, make_distribution)
    payload = server.to_dict()
    payload["pid_path"] = "/custom/legacy.pid"
    payload["bin_path"] = "/custom/bin/mysqld"

    loaded = ServerInstance.from_dict(payload, {server.distribution.name: server.distribution})
    loaded.fix_dynamic_fields()

    assert loaded.pid_path == Path("/custom/legacy.pid")
    assert loaded.bin_path == Path("/custom/bin/mysqld")
    assert loaded.log_path == server.log_path
