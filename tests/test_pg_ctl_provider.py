"""Tests for the pg_ctl provider."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from quickpg.errors import (
    ExternalToolFailure,
    ExternalToolTimeout,
    IOFailure,
    MalformedStatusOutput,
)
from quickpg.providers.pg_ctl import InstanceState, PgCtlProvider, StatusStrategy


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(
        self,
        args: Sequence[str] = (),
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Initialise the dummy result."""
        self.args = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def _recorder(
    monkeypatch: pytest.MonkeyPatch,
    *,
    returncode: int = 0,
    stdout: str = "",
    stderr: str = "",
) -> list[list[str]]:
    calls: list[list[str]] = []

    def fake_run(args: Sequence[str], **kwargs: Any) -> DummyResult:
        calls.append(list(args))
        assert kwargs["capture_output"] is True
        assert kwargs["check"] is False
        return DummyResult(args, returncode, stdout, stderr)

    monkeypatch.setattr("quickpg.providers.pg_ctl.subprocess.run", fake_run)
    return calls


@pytest.fixture
def provider() -> PgCtlProvider:
    """Return a provider whose binary is never really executed."""
    return PgCtlProvider(binary=Path("/opt/pg/bin/pg_ctl"), timeout=5.0)


def test_initialize_passes_initdb_options(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    """Init runs without fsync and forwards extra initdb options."""
    calls = _recorder(monkeypatch)
    provider = PgCtlProvider(
        binary=Path("/opt/pg/bin/pg_ctl"),
        initdb_options=("--auth=trust", "--username=tester"),
    )

    provider.initialize(tmp_path / "data")

    assert calls == [
        [
            "/opt/pg/bin/pg_ctl",
            "--pgdata",
            str(tmp_path / "data"),
            "--options",
            "--no-sync --auth=trust --username=tester",
            "init",
        ]
    ]


def test_start_uses_absolute_socket_directory(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    provider: PgCtlProvider,
) -> None:
    """The socket directory is resolved before it reaches the server."""
    calls = _recorder(monkeypatch, stdout="server started\n")
    monkeypatch.chdir(tmp_path)
    (tmp_path / "sockets").mkdir()

    provider.start(Path("data"), Path("logs/a.log"), Path("sockets"))

    args = calls[0]
    assert args[-1] == "start"
    assert args[args.index("--log") + 1] == "logs/a.log"
    assert args[args.index("--options") + 1] == f"-k{(tmp_path / 'sockets').resolve()}"
    assert "--wait" in args


def test_start_quotes_socket_directory_with_spaces(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    provider: PgCtlProvider,
) -> None:
    """Server options go through the shell, so paths with spaces are quoted."""
    calls = _recorder(monkeypatch, stdout="server started\n")
    sockets = tmp_path / "my sockets"
    sockets.mkdir()

    provider.start(tmp_path / "data", tmp_path / "a.log", sockets)

    options = calls[0][calls[0].index("--options") + 1]
    assert options == f"-k'{sockets.resolve()}'"


@pytest.mark.parametrize(("wait", "flag"), [(True, "--wait"), (False, "--no-wait")])
def test_stop_uses_configured_mode(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    wait: bool,
    flag: str,
) -> None:
    """Stop forwards the shutdown mode and the wait flag."""
    calls = _recorder(monkeypatch)
    provider = PgCtlProvider(binary=Path("pg_ctl"), stop_mode="immediate")

    provider.stop(tmp_path, wait=wait)

    assert calls[0][-4:] == ["--mode", "immediate", flag, "stop"]


def test_non_zero_exit_raises_tool_failure(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    provider: PgCtlProvider,
) -> None:
    """Failures carry the argv, the exit status and stderr."""
    _recorder(monkeypatch, returncode=1, stderr="pg_ctl: could not start server\n")

    with pytest.raises(ExternalToolFailure) as excinfo:
        provider.start(tmp_path, tmp_path / "log", tmp_path)

    assert excinfo.value.returncode == 1
    assert excinfo.value.stderr.strip() == "pg_ctl: could not start server"
    assert excinfo.value.command[0] == "/opt/pg/bin/pg_ctl"


def test_tool_failure_falls_back_to_stdout(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    provider: PgCtlProvider,
) -> None:
    """When stderr is empty the message comes from stdout."""
    _recorder(monkeypatch, returncode=1, stdout="initdb: directory exists\n")

    with pytest.raises(ExternalToolFailure) as excinfo:
        provider.initialize(tmp_path)

    assert excinfo.value.stderr == "initdb: directory exists"


def test_timeout_is_reported(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    provider: PgCtlProvider,
) -> None:
    """A hung control program becomes ExternalToolTimeout."""

    def fake_run(args: Sequence[str], **kwargs: Any) -> DummyResult:
        raise subprocess.TimeoutExpired(args, kwargs["timeout"], stderr=b"")

    monkeypatch.setattr("quickpg.providers.pg_ctl.subprocess.run", fake_run)

    with pytest.raises(ExternalToolTimeout) as excinfo:
        provider.stop(tmp_path)
    assert excinfo.value.timeout == 5.0
    assert isinstance(excinfo.value, ExternalToolFailure)


def test_missing_binary_is_io_failure(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    provider: PgCtlProvider,
) -> None:
    """A binary that cannot be spawned is an IO failure, not a tool failure."""

    def fake_run(args: Sequence[str], **kwargs: Any) -> DummyResult:
        raise FileNotFoundError(2, "No such file or directory", args[0])

    monkeypatch.setattr("quickpg.providers.pg_ctl.subprocess.run", fake_run)

    with pytest.raises(IOFailure) as excinfo:
        provider.status(tmp_path)
    assert excinfo.value.path == Path("/opt/pg/bin/pg_ctl")


def test_status_command_stopped(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    provider: PgCtlProvider,
) -> None:
    """The no-server sentinel means stopped, whatever the exit status."""
    _recorder(monkeypatch, returncode=3, stdout="pg_ctl: no server running\n")

    status = provider.status(tmp_path)

    assert status.state is InstanceState.STOPPED
    assert status.pid is None
    assert not status.is_running


def test_status_command_running(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    provider: PgCtlProvider,
) -> None:
    """The pid is parsed from the running form."""
    _recorder(
        monkeypatch,
        stdout='pg_ctl: server is running (PID: 4242)\n/usr/bin/postgres "-D" "/data"\n',
    )

    status = provider.status(tmp_path)

    assert status.is_running
    assert status.pid == 4242


def test_status_command_malformed(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    provider: PgCtlProvider,
) -> None:
    """Output matching neither form is never guessed at."""
    _recorder(monkeypatch, stdout="pg_ctl: something unexpected\n")

    with pytest.raises(MalformedStatusOutput) as excinfo:
        provider.status(tmp_path)
    assert excinfo.value.output.startswith("pg_ctl: something unexpected")


def test_status_command_other_failure(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    provider: PgCtlProvider,
) -> None:
    """A non-zero exit without the sentinel is a tool failure."""
    _recorder(monkeypatch, returncode=4, stderr="pg_ctl: directory is not a database cluster")

    with pytest.raises(ExternalToolFailure) as excinfo:
        provider.status(tmp_path)
    assert excinfo.value.returncode == 4


def test_status_pidfile_strategy(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """The pidfile strategy never runs the control program."""
    calls = _recorder(monkeypatch)
    provider = PgCtlProvider(binary=Path("pg_ctl"), status_strategy=StatusStrategy.PIDFILE)

    assert provider.status(tmp_path).state is InstanceState.STOPPED

    (tmp_path / "postmaster.pid").write_text(f"777\n{tmp_path}\n", encoding="utf-8")
    status = provider.status(tmp_path)
    assert status.is_running
    assert status.pid == 777
    assert calls == []


@pytest.mark.parametrize("content", ["", "not-a-pid\n", "0\n"])
def test_status_pidfile_malformed(tmp_path: Path, content: str) -> None:
    """An unreadable pid file is reported rather than treated as stopped."""
    provider = PgCtlProvider(binary=Path("pg_ctl"), status_strategy=StatusStrategy.PIDFILE)
    (tmp_path / "postmaster.pid").write_text(content, encoding="utf-8")

    with pytest.raises(MalformedStatusOutput):
        provider.status(tmp_path)
