"""Post-start provisioning of the logical database inside a running server."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import psycopg
from psycopg import sql

LOGGER = logging.getLogger(__name__)

MAINTENANCE_DATABASE = "postgres"


class DatabaseProvisionError(RuntimeError):
    """Raised when the logical database cannot be created."""


@dataclass(slots=True)
class DatabaseProvisioner:
    """Create databases over the server's own protocol."""

    user: str
    connect_attempts: int = 5
    retry_delay: float = 0.5
    connect_timeout: int = 10

    def create_database(self, dbname: str, *, host: str, port: int) -> bool:
        """Create *dbname* owned by the configured user.

        Returns False when nothing had to be created (the maintenance
        database always exists).
        """
        if dbname == MAINTENANCE_DATABASE:
            return False

        statement = sql.SQL("CREATE DATABASE {} OWNER {}").format(
            sql.Identifier(dbname),
            sql.Identifier(self.user),
        )
        attempt = 0
        while True:
            attempt += 1
            try:
                with psycopg.connect(
                    host=host,
                    port=port,
                    dbname=MAINTENANCE_DATABASE,
                    user=self.user,
                    autocommit=True,
                    connect_timeout=self.connect_timeout,
                ) as conn:
                    conn.execute(statement)
                return True
            except psycopg.OperationalError as exc:
                if attempt >= self.connect_attempts:
                    raise DatabaseProvisionError(str(exc).strip()) from exc
                LOGGER.debug(
                    "Connecting to %s:%s failed (attempt %s/%s): %s",
                    host,
                    port,
                    attempt,
                    self.connect_attempts,
                    exc,
                )
                time.sleep(self.retry_delay)
            except psycopg.Error as exc:
                raise DatabaseProvisionError(str(exc).strip()) from exc


__all__ = ["DatabaseProvisionError", "DatabaseProvisioner", "MAINTENANCE_DATABASE"]
