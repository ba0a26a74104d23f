"""Provider wrapping the ``pg_ctl`` control program."""
from __future__ import annotations

import logging
import re
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..errors import ExternalToolFailure, ExternalToolTimeout, IOFailure, MalformedStatusOutput

NO_SERVER_SENTINEL = "pg_ctl: no server running"
PIDFILE_NAME = "postmaster.pid"
_PID_RE = re.compile(r"\(PID: (\d+)\)")

LOGGER = logging.getLogger(__name__)


class InstanceState(str, Enum):
    """Lifecycle state derived from the control program."""

    STOPPED = "stopped"
    RUNNING = "running"


class StatusStrategy(str, Enum):
    """How :meth:`PgCtlProvider.status` determines whether a server runs."""

    COMMAND = "command"
    PIDFILE = "pidfile"


@dataclass(frozen=True, slots=True)
class ProcessStatus:
    """State of a data directory's server process."""

    state: InstanceState
    pid: int | None = None

    @property
    def is_running(self) -> bool:
        """Return True when a server process is running."""
        return self.state is InstanceState.RUNNING

    @classmethod
    def stopped(cls) -> ProcessStatus:
        """Return the stopped status."""
        return cls(state=InstanceState.STOPPED)

    @classmethod
    def running(cls, pid: int) -> ProcessStatus:
        """Return a running status for *pid*."""
        return cls(state=InstanceState.RUNNING, pid=pid)


@dataclass(slots=True)
class PgCtlProvider:
    """Initialise, start, stop and query PostgreSQL data directories."""

    binary: Path
    timeout: float = 60.0
    status_strategy: StatusStrategy = StatusStrategy.COMMAND
    stop_mode: str = "fast"
    initdb_options: Sequence[str] = field(default_factory=tuple)

    def initialize(self, directory: Path) -> subprocess.CompletedProcess[str]:
        """Create a fresh data directory at *directory*."""
        options = ["--no-sync", *self.initdb_options]
        return self._pg_ctl(
            "init",
            directory,
            ["--options", " ".join(options)],
        )

    def start(
        self,
        directory: Path,
        log_file: Path,
        socket_directory: Path,
    ) -> subprocess.CompletedProcess[str]:
        """Start the server for *directory*, listening on a unix socket.

        pg_ctl passes ``--options`` to the server through the shell, so the
        socket path is quoted.
        """
        sockets = socket_directory.expanduser().resolve()
        return self._pg_ctl(
            "start",
            directory,
            ["--log", str(log_file), "--options", f"-k{shlex.quote(str(sockets))}", "--wait"],
        )

    def stop(self, directory: Path, *, wait: bool = True) -> subprocess.CompletedProcess[str]:
        """Stop the server for *directory*; block for shutdown when *wait*."""
        return self._pg_ctl(
            "stop",
            directory,
            ["--mode", self.stop_mode, "--wait" if wait else "--no-wait"],
        )

    def status(self, directory: Path) -> ProcessStatus:
        """Return the process status for *directory*."""
        if self.status_strategy is StatusStrategy.PIDFILE:
            return self._status_from_pidfile(directory)
        return self._status_from_command(directory)

    # ------------------------------------------------------------------
    def _status_from_command(self, directory: Path) -> ProcessStatus:
        result = self._pg_ctl("status", directory, check=False)
        stdout = result.stdout or ""
        if stdout.startswith(NO_SERVER_SENTINEL):
            return ProcessStatus.stopped()
        if result.returncode != 0:
            raise ExternalToolFailure(result.args, result.returncode, _error_text(result))
        match = _PID_RE.search(stdout)
        if match is None:
            raise MalformedStatusOutput(stdout, source=f"{self.binary} status")
        return ProcessStatus.running(int(match.group(1)))

    def _status_from_pidfile(self, directory: Path) -> ProcessStatus:
        pidfile = directory / PIDFILE_NAME
        try:
            text = pidfile.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ProcessStatus.stopped()
        except OSError as exc:
            raise IOFailure(f"Failed to read {pidfile}: {exc}", path=pidfile) from exc
        first_line = text.splitlines()[0].strip() if text.strip() else ""
        if not first_line.isdigit() or int(first_line) <= 0:
            raise MalformedStatusOutput(text, source=str(pidfile))
        return ProcessStatus.running(int(first_line))

    def _pg_ctl(
        self,
        command: str,
        directory: Path,
        extra: Sequence[str] = (),
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args = [str(self.binary), "--pgdata", str(directory), *extra, command]
        return self._run_command(args, check=check)

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
    ) -> subprocess.CompletedProcess[str]:
        LOGGER.debug("Running %s", " ".join(args))
        try:
            result = subprocess.run(  # noqa: S603 - controlled command execution
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            stderr = exc.stderr.decode() if isinstance(exc.stderr, bytes) else exc.stderr or ""
            raise ExternalToolTimeout(args, self.timeout, stderr.strip()) from exc
        except OSError as exc:
            raise IOFailure(f"{args[0]} could not be executed: {exc}", path=self.binary) from exc
        if check and result.returncode != 0:
            raise ExternalToolFailure(args, result.returncode, _error_text(result))
        return result


def _error_text(result: subprocess.CompletedProcess[str]) -> str:
    stdout = getattr(result, "stdout", "") or ""
    stderr = getattr(result, "stderr", "") or ""
    return stderr.strip() or stdout.strip()


__all__ = [
    "InstanceState",
    "PgCtlProvider",
    "ProcessStatus",
    "StatusStrategy",
]
