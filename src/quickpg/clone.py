"""Concurrent copy of PostgreSQL data directories.

A freshly initialised data directory has a fixed shape: a few flat files at
the top, a set of directories that are always empty while the server is
stopped, a set of directories holding a bounded number of small files, and
``base`` which holds the bulk of the on-disk data. Each category is copied
with its own strategy:

* root files: one task copying every top-level file in turn;
* empty directories: one task creating them, nothing else (one that is
  unexpectedly populated is copied like a small directory, with a warning);
* small directories: one task per directory, copied recursively;
* large directories: one task per entry inside them.

Classification enumerates the source, so unknown entries are still copied
(files with the root files, directories as small directories).
"""
from __future__ import annotations

import concurrent.futures
import logging
import os
import shutil
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .errors import CloneFailed

LOGGER = logging.getLogger(__name__)

DIRECTORY_MODE = 0o700


@dataclass(frozen=True, slots=True)
class DataDirectoryLayout:
    """Names of the top-level entries by copy strategy."""

    empty_dirs: frozenset[str] = frozenset()
    small_dirs: frozenset[str] = frozenset()
    large_dirs: frozenset[str] = frozenset()
    excluded_files: frozenset[str] = frozenset()


POSTGRES_LAYOUT = DataDirectoryLayout(
    empty_dirs=frozenset(
        {
            "pg_commit_ts",
            "pg_dynshmem",
            "pg_notify",
            "pg_replslot",
            "pg_serial",
            "pg_snapshots",
            "pg_stat_tmp",
            "pg_tblspc",
            "pg_twophase",
        }
    ),
    small_dirs=frozenset(
        {"global", "pg_logical", "pg_multixact", "pg_stat", "pg_subtrans", "pg_wal", "pg_xact"}
    ),
    large_dirs=frozenset({"base"}),
    # A stale pid file would make the clone look like a running server.
    excluded_files=frozenset({"postmaster.pid"}),
)


@dataclass(frozen=True, slots=True)
class CloneResult:
    """Totals for a completed clone."""

    files_copied: int
    directories_created: int
    tasks: int


@dataclass(slots=True)
class _Counts:
    files: int = 0
    directories: int = 0

    def merge(self, other: _Counts) -> None:
        self.files += other.files
        self.directories += other.directories


@dataclass(slots=True)
class _CopyTask:
    label: str
    run: Callable[[], _Counts]


@dataclass(slots=True)
class CloneEngine:
    """Copy a data directory with bounded concurrency."""

    layout: DataDirectoryLayout = field(default_factory=lambda: POSTGRES_LAYOUT)
    max_workers: int = 8

    def clone(self, source: Path, destination: Path) -> CloneResult:
        """Copy *source* into the not yet existing *destination*.

        Every directory in the copy, the destination root included, is
        readable only by its owner. On failure the destination may be
        partially populated; callers clone into a scratch location.
        """
        source = Path(source)
        destination = Path(destination)
        if not source.is_dir():
            raise CloneFailed(source, destination, "source is not a directory")
        if destination.exists() or destination.is_symlink():
            raise CloneFailed(source, destination, "destination already exists")

        totals = _Counts()
        try:
            _make_private_dir(destination)
            totals.directories += 1
            tasks = self._plan(source, destination, totals)
        except OSError as exc:
            raise CloneFailed(source, destination, str(exc)) from exc

        totals.merge(self._run(tasks, source, destination))
        LOGGER.debug(
            "Cloned %s -> %s: %s files, %s directories, %s tasks",
            source,
            destination,
            totals.files,
            totals.directories,
            len(tasks),
        )
        return CloneResult(
            files_copied=totals.files,
            directories_created=totals.directories,
            tasks=len(tasks),
        )

    # ------------------------------------------------------------------
    def _plan(self, source: Path, destination: Path, totals: _Counts) -> list[_CopyTask]:
        root_files: list[Path] = []
        empty_dirs: list[Path] = []
        tasks: list[_CopyTask] = []

        for entry in sorted(source.iterdir()):
            name = entry.name
            if entry.is_symlink() or entry.is_file():
                if name not in self.layout.excluded_files:
                    root_files.append(entry)
            elif entry.is_dir():
                if name in self.layout.empty_dirs:
                    if next(entry.iterdir(), None) is None:
                        empty_dirs.append(destination / name)
                        continue
                    # A stopped cluster can still hold prepared transactions or slots here.
                    LOGGER.warning("Expected %s to be empty; copying its contents", entry)
                    tasks.append(_CopyTask(label=name, run=_bind_copy(entry, destination / name)))
                elif name in self.layout.large_dirs:
                    # Created up front so per-entry tasks can run in parallel.
                    target = destination / name
                    _make_private_dir(target)
                    totals.directories += 1
                    for child in sorted(entry.iterdir()):
                        tasks.append(
                            _CopyTask(
                                label=f"{name}/{child.name}",
                                run=_bind_copy(child, target / child.name),
                            )
                        )
                else:
                    tasks.append(_CopyTask(label=name, run=_bind_copy(entry, destination / name)))
            else:
                LOGGER.debug("Skipping special file %s", entry)

        if root_files:
            tasks.insert(
                0,
                _CopyTask(label="root files", run=_bind_files(root_files, destination)),
            )
        if empty_dirs:
            tasks.insert(0, _CopyTask(label="empty directories", run=_bind_dirs(empty_dirs)))
        return tasks

    def _run(self, tasks: list[_CopyTask], source: Path, destination: Path) -> _Counts:
        totals = _Counts()
        if not tasks:
            return totals

        failed = threading.Event()
        guard = threading.Lock()
        failures: list[tuple[_CopyTask, Exception]] = []

        def execute(task: _CopyTask) -> _Counts | None:
            # Tasks still queued when a sibling fails never start; running ones finish.
            if failed.is_set():
                return None
            try:
                return task.run()
            except Exception as exc:
                with guard:
                    failures.append((task, exc))
                failed.set()
                return None

        max_workers = max(1, min(self.max_workers, len(tasks)))
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="quickpg-clone",
        ) as executor:
            for counts in executor.map(execute, tasks):
                if counts is not None:
                    totals.merge(counts)

        if failures:
            task, exc = failures[0]
            raise CloneFailed(source, destination, f"{task.label}: {exc}") from exc
        return totals


def _bind_copy(source: Path, destination: Path) -> Callable[[], _Counts]:
    def run() -> _Counts:
        counts = _Counts()
        _copy_entry(source, destination, counts)
        return counts

    return run


def _bind_files(files: list[Path], destination: Path) -> Callable[[], _Counts]:
    def run() -> _Counts:
        counts = _Counts()
        for path in files:
            _copy_file(path, destination / path.name)
            counts.files += 1
        return counts

    return run


def _bind_dirs(directories: list[Path]) -> Callable[[], _Counts]:
    def run() -> _Counts:
        for directory in directories:
            _make_private_dir(directory)
        return _Counts(directories=len(directories))

    return run


def _copy_entry(source: Path, destination: Path, counts: _Counts) -> None:
    if source.is_symlink() or not source.is_dir():
        _copy_file(source, destination)
        counts.files += 1
        return
    _make_private_dir(destination)
    counts.directories += 1
    for child in source.iterdir():
        _copy_entry(child, destination / child.name, counts)


def _copy_file(source: Path, destination: Path) -> None:
    if source.is_symlink():
        os.symlink(os.readlink(source), destination)
        return
    shutil.copy(source, destination)


def _make_private_dir(path: Path) -> None:
    path.mkdir(mode=DIRECTORY_MODE)
    # mkdir honours the umask; chmod does not.
    os.chmod(path, DIRECTORY_MODE)


__all__ = ["CloneEngine", "CloneResult", "DataDirectoryLayout", "POSTGRES_LAYOUT"]
