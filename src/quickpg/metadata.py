"""Per-instance metadata records.

Each instance directory carries a ``quickpg.json`` file holding the values
that are fixed at creation time (logical database name and port). The record
is the only durable description of an instance besides the directory itself,
so reads always go to disk and failures are never papered over with defaults.
"""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .errors import IOFailure, MetadataCorrupt, MetadataMissing

METADATA_FILENAME = "quickpg.json"


@dataclass(frozen=True, slots=True)
class InstanceMetadata:
    """Write-once values recorded for an instance."""

    dbname: str
    port: int

    def to_dict(self) -> dict[str, object]:
        """Return the JSON payload stored on disk."""
        return {"dbname": self.dbname, "port": self.port}


@dataclass(frozen=True, slots=True)
class MetadataStore:
    """Read and write ``quickpg.json`` inside instance directories."""

    filename: str = METADATA_FILENAME

    def path_for(self, directory: Path) -> Path:
        """Return the metadata path inside *directory*."""
        return directory / self.filename

    def exists(self, directory: Path) -> bool:
        """Return True when *directory* holds a metadata record."""
        return self.path_for(directory).is_file()

    def write(self, directory: Path, metadata: InstanceMetadata) -> Path:
        """Atomically persist *metadata* into *directory*."""
        path = self.path_for(directory)
        problem = _problem(metadata.dbname, metadata.port)
        if problem is not None:
            raise ValueError(f"Refusing to write metadata {path}: {problem}")
        try:
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(directory), prefix=f".{self.filename}.")
        except OSError as exc:
            raise IOFailure(f"Failed to write metadata {path}: {exc}", path=path) from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(metadata.to_dict(), handle)
                handle.write("\n")
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise IOFailure(f"Failed to write metadata {path}: {exc}", path=path) from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return path

    def read(self, directory: Path) -> InstanceMetadata:
        """Return the metadata stored in *directory*."""
        path = self.path_for(directory)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise MetadataMissing(path) from exc
        except OSError as exc:
            raise IOFailure(f"Failed to read metadata {path}: {exc}", path=path) from exc

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MetadataCorrupt(path, f"invalid JSON ({exc})") from exc
        if not isinstance(data, Mapping):
            raise MetadataCorrupt(path, "expected a JSON object")

        dbname = data.get("dbname")
        port = data.get("port")
        problem = _problem(dbname, port)
        if problem is not None:
            raise MetadataCorrupt(path, problem)
        return InstanceMetadata(dbname=str(dbname), port=int(port))  # type: ignore[arg-type]


def _problem(dbname: object, port: object) -> str | None:
    if not isinstance(dbname, str) or not dbname.strip():
        return "'dbname' must be a non-empty string"
    if isinstance(port, bool) or not isinstance(port, int):
        return "'port' must be an integer"
    if not 0 < port < 65536:
        return f"'port' out of range: {port}"
    return None


__all__ = ["METADATA_FILENAME", "InstanceMetadata", "MetadataStore"]
