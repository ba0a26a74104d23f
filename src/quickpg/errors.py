"""Error taxonomy shared by the quickpg core.

Every failure the lifecycle manager surfaces is a :class:`QuickPgError`
subclass tagged with an :class:`ErrorKind`. Callers (the CLI included) branch
on ``exc.kind`` and never need to parse messages. The core never encodes
presentation concerns; rendering belongs to the caller.
"""
from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
from pathlib import Path


class ErrorKind(str, Enum):
    """Stable tags for the error taxonomy."""

    IO_ERROR = "io_error"
    EXTERNAL_TOOL_FAILURE = "external_tool_failure"
    MALFORMED_STATUS_OUTPUT = "malformed_status_output"
    DATA_DIRECTORY_NOT_FOUND = "data_directory_not_found"
    TEMPLATE_STILL_RUNNING = "template_still_running"
    DATABASE_CREATION_FAILED = "database_creation_failed"
    CLONE_FAILED = "clone_failed"
    METADATA_ERROR = "metadata_error"
    NOT_INITIALIZED = "not_initialized"
    ALREADY_EXISTS = "already_exists"
    NOT_RUNNING = "not_running"
    INVALID_REQUEST = "invalid_request"
    TEMPLATE_ERROR = "template_error"
    LOCK_TIMEOUT = "lock_timeout"


class QuickPgError(RuntimeError):
    """Base class for classified lifecycle errors."""

    kind: ErrorKind = ErrorKind.IO_ERROR

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-safe description of the error."""
        payload: dict[str, object] = {"kind": self.kind.value, "message": str(self)}
        for key, value in vars(self).items():
            if key.startswith("_"):
                continue
            if isinstance(value, Path):
                payload[key] = str(value)
            elif isinstance(value, (str, int, float, bool)) or value is None:
                payload[key] = value
            elif isinstance(value, (list, tuple)):
                payload[key] = [str(item) for item in value]
            else:
                payload[key] = str(value)
        return payload


class IOFailure(QuickPgError):
    """Raised when a filesystem operation or subprocess spawn fails."""

    kind = ErrorKind.IO_ERROR

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        """Record the failing *path* alongside the message."""
        super().__init__(message)
        self.path = path


class ExternalToolFailure(QuickPgError):
    """Raised when the control program exits with a non-zero status."""

    kind = ErrorKind.EXTERNAL_TOOL_FAILURE

    def __init__(self, command: Sequence[str], returncode: int, stderr: str) -> None:
        """Capture the argv, exit status and standard error text."""
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        message = stderr.strip() or "no output"
        super().__init__(f"{' '.join(self.command)} failed (exit {returncode}): {message}")


class ExternalToolTimeout(ExternalToolFailure):
    """Raised when the control program does not finish within its timeout."""

    def __init__(self, command: Sequence[str], timeout: float, stderr: str = "") -> None:
        """Capture the argv and the timeout that elapsed."""
        super().__init__(command, -1, stderr or f"timed out after {timeout:g}s")
        self.timeout = timeout


class MalformedStatusOutput(QuickPgError):
    """Raised when status output matches neither a stopped nor a running form."""

    kind = ErrorKind.MALFORMED_STATUS_OUTPUT

    def __init__(self, output: str, *, source: str) -> None:
        """Keep the offending *output* and where it came from."""
        self.output = output
        self.source = source
        snippet = output.strip().splitlines()[0] if output.strip() else "<empty>"
        super().__init__(f"Unrecognised status output from {source}: {snippet!r}")


class DataDirectoryNotFound(QuickPgError):
    """Raised when an operation targets an instance that does not exist."""

    kind = ErrorKind.DATA_DIRECTORY_NOT_FOUND

    def __init__(self, instance_id: str, path: Path | None = None) -> None:
        """Record the missing instance id and its expected data directory."""
        self.instance_id = instance_id
        self.path = path
        super().__init__(f"Instance '{instance_id}' not found (no data directory).")


class TemplateStillRunning(QuickPgError):
    """Raised when a fork is requested from a running template."""

    kind = ErrorKind.TEMPLATE_STILL_RUNNING

    def __init__(self, instance_id: str, pid: int | None = None) -> None:
        """Record the template id and the pid of its server."""
        self.instance_id = instance_id
        self.pid = pid
        super().__init__(
            f"Template '{instance_id}' is still running (pid {pid}); stop it before forking."
        )


class DatabaseCreationFailed(QuickPgError):
    """Raised when the post-start ``CREATE DATABASE`` fails.

    The instance is already running when this is raised and is left as is.
    """

    kind = ErrorKind.DATABASE_CREATION_FAILED

    def __init__(self, instance_id: str, dbname: str, reason: str) -> None:
        """Record which database could not be created and why."""
        self.instance_id = instance_id
        self.dbname = dbname
        self.reason = reason
        super().__init__(
            f"Instance '{instance_id}' is running but creating database '{dbname}' failed: "
            f"{reason}"
        )


class CloneFailed(QuickPgError):
    """Raised when the clone engine cannot copy a data directory."""

    kind = ErrorKind.CLONE_FAILED

    def __init__(self, source: Path, destination: Path, reason: str) -> None:
        """Record both trees and the first failure observed."""
        self.source = source
        self.destination = destination
        self.reason = reason
        super().__init__(f"Cloning {source} -> {destination} failed: {reason}")


class TemplateRenderFailed(QuickPgError):
    """Raised when the server configuration template cannot be rendered."""

    kind = ErrorKind.TEMPLATE_ERROR

    def __init__(self, template_name: str, reason: str) -> None:
        """Record the template and the rendering failure."""
        self.template_name = template_name
        self.reason = reason
        super().__init__(f"Template {template_name} could not be rendered: {reason}")


class MetadataError(QuickPgError):
    """Base class for metadata record failures."""

    kind = ErrorKind.METADATA_ERROR

    def __init__(self, message: str, *, path: Path) -> None:
        """Record the metadata *path* alongside the message."""
        super().__init__(message)
        self.path = path


class MetadataMissing(MetadataError):
    """Raised when an instance directory has no metadata record."""

    def __init__(self, path: Path) -> None:
        """Record the missing metadata path."""
        super().__init__(f"Metadata file {path} is missing.", path=path)


class MetadataCorrupt(MetadataError):
    """Raised when a metadata record cannot be parsed."""

    def __init__(self, path: Path, reason: str) -> None:
        """Record the unreadable path and the parse failure."""
        super().__init__(f"Metadata file {path} is unreadable: {reason}", path=path)
        self.reason = reason


class InstanceNotInitialized(QuickPgError):
    """Raised when an instance directory is observed mid-creation."""

    kind = ErrorKind.NOT_INITIALIZED

    def __init__(self, instance_id: str) -> None:
        """Record the instance id that is still being set up."""
        self.instance_id = instance_id
        super().__init__(f"Instance '{instance_id}' is not initialised yet.")


class InstanceAlreadyExists(QuickPgError):
    """Raised when creating an instance whose id is already taken."""

    kind = ErrorKind.ALREADY_EXISTS

    def __init__(self, instance_id: str, path: Path | None = None) -> None:
        """Record the conflicting id and its data directory."""
        self.instance_id = instance_id
        self.path = path
        super().__init__(f"Instance '{instance_id}' already exists.")


class InstanceNotRunning(QuickPgError):
    """Raised when a start does not leave the server running."""

    kind = ErrorKind.NOT_RUNNING

    def __init__(self, instance_id: str, log_file: Path | None = None) -> None:
        """Record the instance id and where its server log lives."""
        self.instance_id = instance_id
        self.log_file = log_file
        hint = f" (see {log_file})" if log_file is not None else ""
        super().__init__(f"Instance '{instance_id}' did not start{hint}.")


class InvalidRequest(QuickPgError):
    """Raised when an operation's arguments are unusable."""

    kind = ErrorKind.INVALID_REQUEST


class InvalidInstanceId(InvalidRequest):
    """Raised when an instance id is not a safe directory name."""

    def __init__(self, instance_id: str) -> None:
        """Record the rejected id."""
        self.instance_id = instance_id
        super().__init__(
            f"Invalid instance id {instance_id!r}: use letters, digits, '-' or '_' "
            "(max 64 characters, must start with a letter or digit)."
        )


__all__ = [
    "CloneFailed",
    "DataDirectoryNotFound",
    "DatabaseCreationFailed",
    "ErrorKind",
    "ExternalToolFailure",
    "ExternalToolTimeout",
    "IOFailure",
    "InstanceAlreadyExists",
    "InstanceNotInitialized",
    "InstanceNotRunning",
    "InvalidInstanceId",
    "InvalidRequest",
    "MalformedStatusOutput",
    "MetadataCorrupt",
    "MetadataError",
    "MetadataMissing",
    "QuickPgError",
    "TemplateRenderFailed",
    "TemplateStillRunning",
]
