"""Process exit codes and the error kinds that map onto them.

``VALIDATION`` covers requests that cannot succeed as asked, ``ENVIRONMENT``
covers problems with the data root or host, and ``PROVIDER`` covers failures
reported by ``pg_ctl``, the server or the clone engine.
"""
from __future__ import annotations

from enum import IntEnum

from .errors import ErrorKind


class ExitCode(IntEnum):
    """Exit codes returned by every ``quickpg`` command."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4


EXIT_CODES: dict[ErrorKind, ExitCode] = {
    ErrorKind.DATA_DIRECTORY_NOT_FOUND: ExitCode.VALIDATION,
    ErrorKind.ALREADY_EXISTS: ExitCode.VALIDATION,
    ErrorKind.TEMPLATE_STILL_RUNNING: ExitCode.VALIDATION,
    ErrorKind.INVALID_REQUEST: ExitCode.VALIDATION,
    ErrorKind.IO_ERROR: ExitCode.ENVIRONMENT,
    ErrorKind.LOCK_TIMEOUT: ExitCode.ENVIRONMENT,
    ErrorKind.METADATA_ERROR: ExitCode.ENVIRONMENT,
    ErrorKind.NOT_INITIALIZED: ExitCode.ENVIRONMENT,
    ErrorKind.TEMPLATE_ERROR: ExitCode.ENVIRONMENT,
    ErrorKind.EXTERNAL_TOOL_FAILURE: ExitCode.PROVIDER,
    ErrorKind.MALFORMED_STATUS_OUTPUT: ExitCode.PROVIDER,
    ErrorKind.DATABASE_CREATION_FAILED: ExitCode.PROVIDER,
    ErrorKind.CLONE_FAILED: ExitCode.PROVIDER,
    ErrorKind.NOT_RUNNING: ExitCode.PROVIDER,
}


def exit_code_for(kind: ErrorKind) -> ExitCode:
    """Return the exit code used for failures of *kind*."""
    return EXIT_CODES.get(kind, ExitCode.PROVIDER)


__all__ = ["EXIT_CODES", "ExitCode", "exit_code_for"]
