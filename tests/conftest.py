"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from quickpg.config import load_config
from quickpg.lifecycle import InstanceManager
from quickpg.providers.database import DatabaseProvisioner

# Emulates the subset of pg_ctl that quickpg drives. A running server is
# represented by postmaster.pid; the recorded pid is the script's own.
FAKE_PG_CTL = """#!/bin/sh
echo "$*" >> "$(dirname "$0")/calls.log"
DATA=""
LOG=""
WAIT="wait"
CMD=""
while [ $# -gt 0 ]; do
  case "$1" in
    --pgdata) DATA="$2"; shift 2 ;;
    --log) LOG="$2"; shift 2 ;;
    --options) shift 2 ;;
    --mode) shift 2 ;;
    --wait) WAIT="wait"; shift ;;
    --no-wait) WAIT="no-wait"; shift ;;
    *) CMD="$1"; shift ;;
  esac
done
PIDFILE="$DATA/postmaster.pid"
case "$CMD" in
  init)
    if [ -n "$FAKE_PG_CTL_FAIL_INIT" ]; then
      echo "initdb: error: simulated failure" >&2
      exit 1
    fi
    for d in base/1 base/5 global pg_wal/archive_status pg_xact pg_multixact/members pg_notify pg_tblspc pg_stat_tmp pg_logical; do
      mkdir -p "$DATA/$d"
    done
    chmod 700 "$DATA"
    echo "16" > "$DATA/PG_VERSION"
    echo "catalog" > "$DATA/base/1/1259"
    echo "template" > "$DATA/base/5/1259"
    echo "control" > "$DATA/global/pg_control"
    echo "wal" > "$DATA/pg_wal/000000010000000000000001"
    echo "local all all trust" > "$DATA/pg_hba.conf"
    echo "# initdb defaults" > "$DATA/postgresql.conf"
    echo "Success. You can now start the database server."
    ;;
  start)
    if [ -n "$FAKE_PG_CTL_FAIL_START" ]; then
      echo "pg_ctl: could not start server" >&2
      exit 1
    fi
    if [ -f "$PIDFILE" ]; then
      echo "pg_ctl: another server might be running" >&2
      exit 1
    fi
    if [ -n "$LOG" ]; then
      echo "database system is ready to accept connections" >> "$LOG"
    fi
    if [ -z "$FAKE_PG_CTL_START_DIES" ]; then
      printf '%s\\n%s\\n' "$$" "$DATA" > "$PIDFILE"
    fi
    echo "server started"
    ;;
  stop)
    if [ ! -f "$PIDFILE" ]; then
      echo "pg_ctl: PID file \\"$PIDFILE\\" does not exist" >&2
      echo "Is server running?" >&2
      exit 1
    fi
    rm -f "$PIDFILE"
    if [ "$WAIT" = "wait" ]; then
      echo "server stopped"
    else
      echo "server shutting down"
    fi
    ;;
  status)
    if [ -n "$FAKE_PG_CTL_GARBLED_STATUS" ]; then
      echo "pg_ctl: something unexpected"
      exit 0
    fi
    if [ -f "$PIDFILE" ]; then
      PID=$(head -n 1 "$PIDFILE")
      echo "pg_ctl: server is running (PID: $PID)"
      echo "/usr/lib/postgresql/16/bin/postgres \\"-D\\" \\"$DATA\\""
      exit 0
    fi
    echo "pg_ctl: no server running"
    exit 3
    ;;
  *)
    echo "pg_ctl: unrecognized operation mode \\"$CMD\\"" >&2
    exit 1
    ;;
esac
exit 0
"""


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def write_fake_pg_ctl(bin_dir: Path) -> Path:
    """Write the fake ``pg_ctl`` into *bin_dir* and return its path."""
    bin_dir.mkdir(parents=True, exist_ok=True)
    path = bin_dir / "pg_ctl"
    path.write_text(FAKE_PG_CTL, encoding="utf-8")
    path.chmod(0o755)
    return path


def read_calls(bin_dir: Path) -> list[str]:
    """Return the argument lines recorded by the fake ``pg_ctl``."""
    log = bin_dir / "calls.log"
    if not log.exists():
        return []
    return log.read_text(encoding="utf-8").splitlines()


@pytest.fixture(autouse=True)
def _clear_fake_pg_ctl_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Make sure failure switches never leak between tests."""
    for name in (
        "FAKE_PG_CTL_FAIL_INIT",
        "FAKE_PG_CTL_FAIL_START",
        "FAKE_PG_CTL_START_DIES",
        "FAKE_PG_CTL_GARBLED_STATUS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_pg_ctl(tmp_path: Path) -> Path:
    """Install the fake ``pg_ctl`` under ``<tmp>/bin``."""
    return write_fake_pg_ctl(tmp_path / "bin")


@pytest.fixture
def created_databases(monkeypatch: pytest.MonkeyPatch) -> list[tuple[str, str, int]]:
    """Stub out ``CREATE DATABASE`` and record each request."""
    calls: list[tuple[str, str, int]] = []

    def fake_create(
        self: DatabaseProvisioner,
        dbname: str,
        *,
        host: str,
        port: int,
    ) -> bool:
        calls.append((dbname, host, port))
        return dbname != "postgres"

    monkeypatch.setattr(DatabaseProvisioner, "create_database", fake_create)
    return calls


@pytest.fixture
def manager(
    tmp_path: Path,
    fake_pg_ctl: Path,
    created_databases: list[tuple[str, str, int]],
) -> InstanceManager:
    """Return a manager rooted at the temporary path using the fake ``pg_ctl``."""
    config = load_config(
        config_file=tmp_path / "absent.yml",
        env={},
        overrides={
            "root": str(tmp_path),
            "lock_timeout": 2.0,
            "database": {"user": "tester"},
        },
    )
    return InstanceManager.from_config(config)


@pytest.fixture
def pg_ctl_calls(fake_pg_ctl: Path) -> Callable[[], list[str]]:
    """Return a reader for the fake ``pg_ctl`` invocations so far."""
    return lambda: read_calls(fake_pg_ctl.parent)
