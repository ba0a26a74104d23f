"""Per-instance locks serialising mutating lifecycle operations.

Two layers are combined:

* a ``threading.Lock`` per instance id, created lazily and never discarded,
  serialises threads inside one process;
* an exclusive ``flock`` on ``<locks_dir>/<id>.lock`` serialises separate
  processes sharing the same data root.

The lock file is left in place after release; it carries the pid of the last
holder for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import threading
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import ErrorKind, QuickPgError

_POLL_INTERVAL = 0.05


class LockTimeoutError(QuickPgError):
    """Raised when a lock cannot be acquired before the timeout elapses."""

    kind = ErrorKind.LOCK_TIMEOUT

    def __init__(self, name: str, timeout: float, path: Path) -> None:
        """Record which lock timed out."""
        self.name = name
        self.timeout = timeout
        self.path = path
        super().__init__(f"Timed out after {timeout:g}s waiting for lock on '{name}' ({path}).")


@dataclass(slots=True)
class LockHandle:
    """A held lock and how long it took to acquire."""

    name: str
    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of held locks acquired together."""

    handles: list[LockHandle]
    wait_ms: int


class LockManager:
    """Hand out per-instance locks rooted at *locks_dir*."""

    def __init__(self, locks_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default acquisition timeout."""
        self.locks_dir = Path(locks_dir).expanduser()
        self.default_timeout = default_timeout
        self._registry_guard = threading.Lock()
        self._thread_locks: dict[str, threading.Lock] = {}

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        return self.locks_dir / f"{name}.lock"

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for instance *name* for the duration of the block."""
        effective_timeout = self.default_timeout if timeout is None else timeout
        path = self.lock_path(name)
        started = time.monotonic()
        deadline = started + effective_timeout

        thread_lock = self._thread_lock(name)
        if not thread_lock.acquire(timeout=max(effective_timeout, 0)):
            raise LockTimeoutError(name, effective_timeout, path)
        try:
            fd = self._acquire_file_lock(name, path, deadline, effective_timeout)
            try:
                wait_ms = int((time.monotonic() - started) * 1000)
                self._write_metadata(fd, name, path)
                yield LockHandle(name=name, path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)
        finally:
            thread_lock.release()

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Hold the locks for every instance in *names*.

        Locks are taken in sorted order so that two operations touching the
        same pair of instances cannot deadlock.
        """
        started = time.monotonic()
        with ExitStack() as stack:
            handles = [
                stack.enter_context(self.instance_lock(name, timeout=timeout))
                for name in sorted(set(names))
            ]
            wait_ms = int((time.monotonic() - started) * 1000)
            yield LockBundle(handles=handles, wait_ms=wait_ms)

    def is_locked(self, name: str) -> bool:
        """Return True when some thread or process currently holds *name*."""
        with self._registry_guard:
            thread_lock = self._thread_locks.get(name)
        if thread_lock is not None and thread_lock.locked():
            return True
        path = self.lock_path(name)
        try:
            fd = os.open(path, os.O_RDONLY)
        except FileNotFoundError:
            return False
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        else:
            fcntl.flock(fd, fcntl.LOCK_UN)
            return False
        finally:
            os.close(fd)

    # ------------------------------------------------------------------
    def _thread_lock(self, name: str) -> threading.Lock:
        with self._registry_guard:
            lock = self._thread_locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._thread_locks[name] = lock
            return lock

    def _acquire_file_lock(
        self,
        name: str,
        path: Path,
        deadline: float,
        timeout: float,
    ) -> int:
        self.locks_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    return fd
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockTimeoutError(name, timeout, path) from None
                    time.sleep(_POLL_INTERVAL)
        except BaseException:
            os.close(fd)
            raise

    @staticmethod
    def _write_metadata(fd: int, name: str, path: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "name": name,
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(),
        }
        data = json.dumps(payload).encode("utf-8")
        os.ftruncate(fd, 0)
        os.pwrite(fd, data, 0)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
