"""External command execution for archive tools and ``mysqld``."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..config import AppConfig

LOGGER = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Raised when an external command fails, times out or cannot be started."""

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        returncode: int | None = None,
        output: str = "",
    ) -> None:
        """Store the failing command line alongside its exit status and output."""
        super().__init__(message)
        self.command = list(command)
        self.returncode = returncode
        self.output = output


@dataclass(slots=True)
class CommandRunner:
    """Run the external programs stablectl depends on.

    Timeouts are in seconds; ``None`` waits indefinitely.
    """

    tar_bin: str = "tar"
    unzip_bin: str = "unzip"
    unpack_timeout: float | None = 600.0
    bootstrap_timeout: float | None = 600.0
    version_timeout: float | None = 60.0

    @classmethod
    def from_config(cls, config: AppConfig) -> CommandRunner:
        """Build a runner from the tool and timeout settings of *config*."""
        return cls(
            tar_bin=config.tools.tar_bin,
            unzip_bin=config.tools.unzip_bin,
            unpack_timeout=config.timeouts.unpack,
            bootstrap_timeout=config.timeouts.bootstrap,
            version_timeout=config.timeouts.version_query,
        )

    # Archive tools --------------------------------------------------------
    def extract_tar(self, archive: Path, dest: Path, *, compressed: bool) -> None:
        """Unpack a tar archive (gzip compressed when *compressed*) into *dest*."""
        flags = "-xzf" if compressed else "-xf"
        self._run_command(
            [self.tar_bin, flags, str(archive), "-C", str(dest)],
            error_prefix=f"{self.tar_bin} {flags} {archive}",
            timeout=self.unpack_timeout,
        )

    def extract_zip(self, archive: Path, dest: Path) -> None:
        """Unpack a zip archive into *dest*."""
        self._run_command(
            [self.unzip_bin, "-q", str(archive), "-d", str(dest)],
            error_prefix=f"{self.unzip_bin} {archive}",
            timeout=self.unpack_timeout,
        )

    # mysqld ---------------------------------------------------------------
    def query_version(self, binary: Path) -> str:
        """Return the first line printed by ``binary --version``."""
        result = self._run_command(
            [str(binary), "--version"],
            error_prefix=f"{binary} --version",
            timeout=self.version_timeout,
        )
        lines = (result.stdout or "").splitlines()
        return lines[0] if lines else ""

    def bootstrap(
        self,
        binary: Path,
        *,
        defaults_file: Path,
        script_path: Path,
        log_path: Path,
    ) -> None:
        """Feed *script_path* to ``mysqld --bootstrap`` and log its output."""
        args = [str(binary), f"--defaults-file={defaults_file}", "--bootstrap"]
        LOGGER.debug("Bootstrapping with %s", " ".join(args))
        with script_path.open("rb") as stdin, log_path.open("wb") as log:
            returncode = self._run_logged(
                args, stdin=stdin, log=log, timeout=self.bootstrap_timeout
            )
        if returncode != 0:
            raise CommandError(
                f"{binary} --bootstrap failed (exit {returncode}): see {log_path}",
                command=args,
                returncode=returncode,
                output=_tail(log_path),
            )

    def spawn_daemon(self, args: Sequence[str], *, cwd: Path, log_path: Path) -> int:
        """Start *args* detached from this process and return its PID.

        The child runs in a new session with stdin on the null device and
        stdout/stderr appended to *log_path*. It is never waited for.
        """
        LOGGER.debug("Spawning %s in %s", " ".join(args), cwd)
        with log_path.open("ab") as log:
            try:
                process = subprocess.Popen(  # noqa: S603
                    list(args),
                    cwd=str(cwd),
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except FileNotFoundError as exc:
                raise CommandError(f"{args[0]} not found: {exc}", command=args) from exc
        # The child outlives this handle; mark it settled so Popen does not
        # report it as still running when the handle is finalized.
        process.returncode = 0
        return process.pid

    def run_foreground(self, args: Sequence[str]) -> int:
        """Run *args* attached to the current terminal and return its exit code."""
        try:
            result = subprocess.run(list(args), check=False)  # noqa: S603
        except FileNotFoundError as exc:
            raise CommandError(f"{args[0]} not found: {exc}", command=args) from exc
        return result.returncode

    def send_signal(self, pid: int, sig: int) -> None:
        """Deliver *sig* to process *pid*."""
        LOGGER.debug("Sending signal %d to %d", sig, pid)
        os.kill(pid, sig)

    # Seams (isolated for testing) -----------------------------------------
    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        timeout: float | None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise CommandError(f"{args[0]} not found: {exc}", command=args) from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandError(
                f"{error_prefix} timed out after {timeout} seconds", command=args
            ) from exc
        if result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise CommandError(
                f"{error_prefix} failed (exit {result.returncode}): {message}",
                command=args,
                returncode=result.returncode,
                output=message,
            )
        return result

    def _run_logged(
        self,
        args: Sequence[str],
        *,
        stdin: IO[bytes],
        log: IO[bytes],
        timeout: float | None,
    ) -> int:
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                stdin=stdin,
                stdout=log,
                stderr=subprocess.STDOUT,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise CommandError(f"{args[0]} not found: {exc}", command=args) from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandError(
                f"{args[0]} timed out after {timeout} seconds", command=args
            ) from exc
        return result.returncode


def _tail(path: Path, *, lines: int = 20) -> str:
    """Return the last *lines* lines of *path*, or an empty string."""
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    return "\n".join(content.splitlines()[-lines:])


__all__ = ["CommandError", "CommandRunner"]
