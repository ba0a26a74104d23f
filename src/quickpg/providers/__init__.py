"""Provider interfaces for quickpg."""
from __future__ import annotations

from .database import DatabaseProvisioner, DatabaseProvisionError
from .pg_ctl import InstanceState, PgCtlProvider, ProcessStatus, StatusStrategy

__all__ = [
    "DatabaseProvisionError",
    "DatabaseProvisioner",
    "InstanceState",
    "PgCtlProvider",
    "ProcessStatus",
    "StatusStrategy",
]
