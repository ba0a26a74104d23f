"""Instance lifecycle orchestration.

:class:`InstanceManager` composes the metadata store, the ``pg_ctl`` provider,
the clone engine and the database provisioner into the public operations
(``init``, ``start``, ``stop``, ``status``, ``fork``, ``destroy`` and
``list``). It is the only place that builds paths below the data root.

Mutating operations hold the per-instance lock of every id they touch.
``init`` and ``fork`` assemble the new instance under ``staging/`` and
publish it into ``data/`` with a single rename, so a half-built instance is
never visible; ``destroy`` retires the directory into ``staging/`` before
deleting it for the same reason. Nothing is cached between calls: state is
re-derived from disk and from the control program every time.
"""
from __future__ import annotations

import logging
import os
import re
import secrets
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

from .clone import CloneEngine
from .config import AppConfig
from .errors import (
    DatabaseCreationFailed,
    DataDirectoryNotFound,
    InstanceAlreadyExists,
    InstanceNotInitialized,
    InstanceNotRunning,
    InvalidInstanceId,
    InvalidRequest,
    IOFailure,
    MetadataError,
    MetadataMissing,
    QuickPgError,
    TemplateStillRunning,
)
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .metadata import InstanceMetadata, MetadataStore
from .pgconf import CONF_FILENAME, PostgresqlConf, read_port
from .providers import (
    DatabaseProvisioner,
    DatabaseProvisionError,
    InstanceState,
    PgCtlProvider,
    ProcessStatus,
    StatusStrategy,
)
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

INSTANCE_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9_-]{0,63}")
_REMOVE_ATTEMPTS = 5
_REMOVE_DELAY = 0.2


def validate_instance_id(instance_id: str) -> str:
    """Return *instance_id* when it is usable as a directory name."""
    if not isinstance(instance_id, str) or INSTANCE_ID_PATTERN.fullmatch(instance_id) is None:
        raise InvalidInstanceId(str(instance_id))
    return instance_id


def _validate_request(dbname: str | None, port: int) -> None:
    if dbname is not None and (not isinstance(dbname, str) or not dbname.strip()):
        raise InvalidRequest("Database name must be a non-empty string.")
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise InvalidRequest(f"Port must be an integer between 1 and 65535. Got {port!r}.")


@dataclass(frozen=True, slots=True)
class RootLayout:
    """Paths below the quickpg data root."""

    root: Path

    @property
    def bin_dir(self) -> Path:
        return self.root / "bin"

    @property
    def data_dir(self) -> Path:
        return self.root / "data"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def sockets_dir(self) -> Path:
        return self.root / "sockets"

    @property
    def staging_dir(self) -> Path:
        return self.root / "staging"

    @property
    def locks_dir(self) -> Path:
        return self.root / "locks"

    @property
    def templates_dir(self) -> Path:
        return self.root / "templates"

    def instance_dir(self, instance_id: str) -> Path:
        """Return the data directory of *instance_id*."""
        return self.data_dir / instance_id

    def log_file(self, instance_id: str) -> Path:
        """Return the server log of *instance_id*."""
        return self.logs_dir / f"{instance_id}.log"

    def staging_path(self, instance_id: str, purpose: str) -> Path:
        """Return a fresh scratch path for *instance_id* under ``staging/``."""
        return self.staging_dir / f"{instance_id}.{purpose}.{secrets.token_hex(4)}"


@dataclass(frozen=True, slots=True)
class Instance:
    """Observed state of one instance."""

    id: str
    dbname: str
    port: int
    state: InstanceState
    pid: int | None
    data_directory: Path
    log_file: Path
    socket_directory: Path
    user: str
    host: str

    @property
    def is_running(self) -> bool:
        """Return True when the server process is running."""
        return self.state is InstanceState.RUNNING

    def connection_info(self) -> dict[str, object]:
        """Return the parameters a client needs to connect."""
        return {
            "user": self.user,
            "host": self.host,
            "port": self.port,
            "dbname": self.dbname,
        }

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "id": self.id,
            "dbname": self.dbname,
            "port": self.port,
            "state": self.state.value,
            "pid": self.pid,
            "data_directory": str(self.data_directory),
            "log_file": str(self.log_file),
            "conn_info": self.connection_info(),
            "proc_info": {"pid": self.pid} if self.pid is not None else None,
        }


class InstanceManager:
    """Run lifecycle operations against instances below one data root."""

    def __init__(
        self,
        *,
        layout: RootLayout,
        controller: PgCtlProvider,
        provisioner: DatabaseProvisioner,
        locks: LockManager,
        logger: StructuredLogger,
        templates: TemplateEngine,
        clone_engine: CloneEngine | None = None,
        server_defaults: PostgresqlConf | None = None,
        metadata: MetadataStore | None = None,
        database_host: str | None = None,
    ) -> None:
        """Wire the collaborators together."""
        self.layout = layout
        self.controller = controller
        self.provisioner = provisioner
        self.locks = locks
        self.logger = logger
        self.templates = templates
        self.clone_engine = clone_engine or CloneEngine()
        self.server_defaults = server_defaults or PostgresqlConf()
        self.metadata = metadata or MetadataStore()
        self.database_host = database_host

    @classmethod
    def from_config(cls, config: AppConfig) -> InstanceManager:
        """Build a manager from resolved configuration."""
        layout = RootLayout(config.root)
        controller = PgCtlProvider(
            binary=config.pg_ctl.binary,
            timeout=config.pg_ctl.timeout,
            status_strategy=StatusStrategy(config.pg_ctl.status_strategy),
            stop_mode=config.pg_ctl.stop_mode,
            initdb_options=config.pg_ctl.initdb_options,
        )
        provisioner = DatabaseProvisioner(
            user=config.database.user,
            connect_attempts=config.database.connect_attempts,
            retry_delay=config.database.retry_delay,
        )
        return cls(
            layout=layout,
            controller=controller,
            provisioner=provisioner,
            locks=LockManager(layout.locks_dir, config.lock_timeout),
            logger=StructuredLogger(config.logs_dir),
            templates=TemplateEngine.with_overrides(layout.templates_dir),
            clone_engine=CloneEngine(max_workers=config.clone.max_workers),
            server_defaults=config.server,
            database_host=config.database.host,
        )

    # ------------------------------------------------------------------
    @property
    def host(self) -> str:
        """Return the host clients and the provisioner connect through."""
        if self.database_host:
            return self.database_host
        return str(self.layout.sockets_dir.expanduser().resolve())

    def ensure_layout(self) -> None:
        """Create the directories below the data root."""
        for path, mode in (
            (self.layout.data_dir, 0o700),
            (self.layout.logs_dir, 0o750),
            (self.layout.sockets_dir, 0o700),
            (self.layout.staging_dir, 0o700),
            (self.layout.locks_dir, 0o750),
        ):
            if path.is_dir():
                continue
            try:
                path.mkdir(parents=True, exist_ok=True)
                os.chmod(path, mode)
            except OSError as exc:
                raise IOFailure(f"Failed to create {path}: {exc}", path=path) from exc

    # Public operations ------------------------------------------------
    def init(
        self,
        instance_id: str,
        dbname: str,
        port: int,
        conf: PostgresqlConf | None = None,
    ) -> Instance:
        """Create, start and provision a fresh instance."""
        validate_instance_id(instance_id)
        _validate_request(dbname, port)
        settings = conf or self.server_defaults
        self.ensure_layout()
        target = self.layout.instance_dir(instance_id)
        log_file = self.layout.log_file(instance_id)

        with self.logger.operation(
            "instance init",
            args={"dbname": dbname, "port": port, "crash_unsafe": settings.crash_unsafe},
            target={"kind": "instance", "id": instance_id},
        ) as op:
            with self.locks.mutate_instances([instance_id]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                self._ensure_absent(instance_id, target)
                metadata = InstanceMetadata(dbname=dbname, port=port)
                staging = self.layout.staging_path(instance_id, "init")
                location = staging
                started = False
                try:
                    self.controller.initialize(staging)
                    op.add_step("pg_ctl.init", detail=str(staging))
                    self._write_instance_files(staging, metadata, settings, op)
                    self._publish(staging, target)
                    location = target
                    op.add_step("publish", detail=str(target))
                    started = True
                    process = self._start_and_confirm(instance_id, target, log_file)
                    op.add_step("pg_ctl.start", detail=f"pid={process.pid}")
                except BaseException:
                    self._discard(instance_id, location, log_file, stop=started, op=op)
                    raise

                self._create_database(instance_id, dbname, port, op)
                instance = self._instance(instance_id, metadata, process)
                op.success(
                    f"Instance '{instance_id}' initialised.",
                    changed=1,
                    context=instance.to_dict(),
                )
                return instance

    def start(self, instance_id: str) -> Instance:
        """Start a stopped instance and confirm that it runs."""
        validate_instance_id(instance_id)
        target = self.layout.instance_dir(instance_id)
        log_file = self.layout.log_file(instance_id)

        with self.logger.operation(
            "instance start",
            target={"kind": "instance", "id": instance_id},
        ) as op:
            with self.locks.mutate_instances([instance_id]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                self._require_exists(instance_id, target)
                metadata = self.metadata.read(target)
                current = self.controller.status(target)
                if current.is_running:
                    op.add_step("pg_ctl.start", status="skipped", detail="already running")
                    instance = self._instance(instance_id, metadata, current)
                    op.success(f"Instance '{instance_id}' already running.", changed=0)
                    return instance
                process = self._start_and_confirm(instance_id, target, log_file)
                op.add_step("pg_ctl.start", detail=f"pid={process.pid}")
                instance = self._instance(instance_id, metadata, process)
                op.success(f"Instance '{instance_id}' started.", changed=1)
                return instance

    def stop(self, instance_id: str, wait: bool = True) -> None:
        """Stop a running instance; a stopped instance is left alone."""
        validate_instance_id(instance_id)
        target = self.layout.instance_dir(instance_id)

        with self.logger.operation(
            "instance stop",
            args={"wait": wait},
            target={"kind": "instance", "id": instance_id},
        ) as op:
            with self.locks.mutate_instances([instance_id]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                self._require_exists(instance_id, target)
                self.metadata.read(target)
                current = self.controller.status(target)
                if not current.is_running:
                    op.add_step("pg_ctl.stop", status="skipped", detail="not running")
                    op.success(f"Instance '{instance_id}' already stopped.", changed=0)
                    return
                self.controller.stop(target, wait=wait)
                op.add_step("pg_ctl.stop", detail="wait" if wait else "no-wait")
                op.success(f"Instance '{instance_id}' stopped.", changed=1)

    def status(self, instance_id: str) -> Instance:
        """Return the current state of *instance_id*."""
        validate_instance_id(instance_id)
        with self.logger.operation(
            "instance status",
            target={"kind": "instance", "id": instance_id},
        ) as op:
            instance = self._describe(instance_id)
            op.success(f"Instance '{instance_id}' is {instance.state.value}.", changed=0)
            return instance

    def fork(
        self,
        template_id: str,
        new_id: str,
        port: int,
        conf: PostgresqlConf | None = None,
        dbname: str | None = None,
    ) -> Instance:
        """Clone the stopped *template_id* into a new running instance."""
        validate_instance_id(template_id)
        validate_instance_id(new_id)
        _validate_request(dbname, port)
        if template_id == new_id:
            raise InvalidRequest("A fork needs an id different from its template.")
        settings = conf or self.server_defaults
        self.ensure_layout()
        template_dir = self.layout.instance_dir(template_id)
        target = self.layout.instance_dir(new_id)
        log_file = self.layout.log_file(new_id)

        with self.logger.operation(
            "instance fork",
            args={"template": template_id, "dbname": dbname, "port": port},
            target={"kind": "instance", "id": new_id},
        ) as op:
            with self.locks.mutate_instances([template_id, new_id]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                self._require_exists(template_id, template_dir)
                template_metadata = self.metadata.read(template_dir)
                self._ensure_absent(new_id, target)
                resolved_dbname = dbname or template_metadata.dbname
                metadata = InstanceMetadata(dbname=resolved_dbname, port=port)

                template_status = self.controller.status(template_dir)
                if template_status.is_running:
                    raise TemplateStillRunning(template_id, template_status.pid)
                op.add_step("template.check", detail="stopped")

                staging = self.layout.staging_path(new_id, "fork")
                location = staging
                started = False
                try:
                    result = self.clone_engine.clone(template_dir, staging)
                    op.add_step(
                        "clone",
                        detail=(
                            f"{result.files_copied} files, "
                            f"{result.directories_created} directories, {result.tasks} tasks"
                        ),
                    )
                    self._write_instance_files(staging, metadata, settings, op)
                    self._publish(staging, target)
                    location = target
                    op.add_step("publish", detail=str(target))
                    started = True
                    process = self._start_and_confirm(new_id, target, log_file)
                    op.add_step("pg_ctl.start", detail=f"pid={process.pid}")
                except BaseException:
                    self._discard(new_id, location, log_file, stop=started, op=op)
                    raise

                if resolved_dbname != template_metadata.dbname:
                    self._create_database(new_id, resolved_dbname, port, op)
                instance = self._instance(new_id, metadata, process)
                op.success(
                    f"Instance '{new_id}' forked from '{template_id}'.",
                    changed=1,
                    context=instance.to_dict(),
                )
                return instance

    def destroy(self, instance_id: str) -> None:
        """Stop (without waiting) and remove an instance and its log."""
        validate_instance_id(instance_id)
        target = self.layout.instance_dir(instance_id)
        log_file = self.layout.log_file(instance_id)

        with self.logger.operation(
            "instance destroy",
            target={"kind": "instance", "id": instance_id},
        ) as op:
            with self.locks.mutate_instances([instance_id]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                self._require_exists(instance_id, target)
                current = self.controller.status(target)
                if current.is_running:
                    self.controller.stop(target, wait=False)
                    op.add_step("pg_ctl.stop", detail=f"no-wait pid={current.pid}")

                self.ensure_layout()
                retired = self.layout.staging_path(instance_id, "destroy")
                try:
                    os.rename(target, retired)
                except OSError as exc:
                    raise IOFailure(
                        f"Failed to retire {target}: {exc}", path=target
                    ) from exc
                op.add_step("retire", detail=str(retired))
                _remove_tree(retired)
                op.add_step("remove.data", detail=str(retired))
                try:
                    log_file.unlink(missing_ok=True)
                except OSError as exc:
                    raise IOFailure(f"Failed to remove {log_file}: {exc}", path=log_file) from exc
                op.add_step("remove.log", detail=str(log_file))
                op.success(f"Instance '{instance_id}' destroyed.", changed=1)

    def reserved_ports(self) -> set[int]:
        """Return the ports recorded by every instance directory."""
        ports: set[int] = set()
        for instance_id in self._instance_ids():
            directory = self.layout.instance_dir(instance_id)
            try:
                ports.add(self.metadata.read(directory).port)
                continue
            except MetadataError as exc:
                LOGGER.debug("Falling back to %s for %s: %s", CONF_FILENAME, instance_id, exc)
            try:
                ports.add(read_port(directory / CONF_FILENAME))
            except MetadataError as exc:
                LOGGER.debug("No port recorded for %s: %s", instance_id, exc)
        return ports

    # Internal helpers -------------------------------------------------
    def _instance_ids(self) -> list[str]:
        data_dir = self.layout.data_dir
        if not data_dir.is_dir():
            return []
        try:
            entries = sorted(data_dir.iterdir(), key=lambda entry: entry.name)
        except OSError as exc:
            raise IOFailure(f"Failed to list {data_dir}: {exc}", path=data_dir) from exc
        ids: list[str] = []
        for entry in entries:
            if not entry.is_dir():
                continue
            if INSTANCE_ID_PATTERN.fullmatch(entry.name) is None:
                LOGGER.debug("Ignoring unexpected entry %s", entry)
                continue
            ids.append(entry.name)
        return ids

    def _describe(self, instance_id: str) -> Instance:
        target = self.layout.instance_dir(instance_id)
        self._require_exists(instance_id, target)
        try:
            metadata = self.metadata.read(target)
        except MetadataMissing:
            if not target.is_dir():
                raise DataDirectoryNotFound(instance_id, target) from None
            if self.locks.is_locked(instance_id):
                raise InstanceNotInitialized(instance_id) from None
            raise
        # No lock is held: a concurrent destroy may retire the directory at any point.
        try:
            process = self.controller.status(target)
        except QuickPgError:
            self._require_exists(instance_id, target)
            raise
        self._require_exists(instance_id, target)
        return self._instance(instance_id, metadata, process)

    def _instance(
        self,
        instance_id: str,
        metadata: InstanceMetadata,
        process: ProcessStatus,
    ) -> Instance:
        return Instance(
            id=instance_id,
            dbname=metadata.dbname,
            port=metadata.port,
            state=process.state,
            pid=process.pid if process.is_running else None,
            data_directory=self.layout.instance_dir(instance_id),
            log_file=self.layout.log_file(instance_id),
            socket_directory=self.layout.sockets_dir,
            user=self.provisioner.user,
            host=self.host,
        )

    def _require_exists(self, instance_id: str, directory: Path) -> None:
        if not directory.is_dir():
            raise DataDirectoryNotFound(instance_id, directory)

    def _ensure_absent(self, instance_id: str, directory: Path) -> None:
        if directory.exists() or directory.is_symlink():
            raise InstanceAlreadyExists(instance_id, directory)

    def _write_instance_files(
        self,
        directory: Path,
        metadata: InstanceMetadata,
        settings: PostgresqlConf,
        op: OperationScope,
    ) -> None:
        conf_path = settings.write(directory, metadata.port, self.templates)
        op.add_step("config.write", detail=str(conf_path))
        metadata_path = self.metadata.write(directory, metadata)
        op.add_step("metadata.write", detail=str(metadata_path))

    def _publish(self, staging: Path, target: Path) -> None:
        try:
            os.rename(staging, target)
        except OSError as exc:
            raise IOFailure(f"Failed to publish {staging} as {target}: {exc}", path=target) from exc

    def _start_and_confirm(
        self,
        instance_id: str,
        directory: Path,
        log_file: Path,
    ) -> ProcessStatus:
        self.controller.start(directory, log_file, self.layout.sockets_dir)
        process = self.controller.status(directory)
        if not process.is_running:
            raise InstanceNotRunning(instance_id, log_file)
        return process

    def _create_database(
        self,
        instance_id: str,
        dbname: str,
        port: int,
        op: OperationScope,
    ) -> None:
        try:
            created = self.provisioner.create_database(dbname, host=self.host, port=port)
        except DatabaseProvisionError as exc:
            op.add_step("database.create", status="error", detail=str(exc))
            raise DatabaseCreationFailed(instance_id, dbname, str(exc)) from exc
        op.add_step(
            "database.create",
            status="success" if created else "skipped",
            detail=dbname,
        )

    def _discard(
        self,
        instance_id: str,
        directory: Path,
        log_file: Path,
        *,
        stop: bool,
        op: OperationScope,
    ) -> None:
        """Undo a failed init or fork; the original error is re-raised by the caller."""
        if stop:
            try:
                self.controller.stop(directory, wait=True)
                op.add_step("rollback.stop", detail=str(directory))
            except QuickPgError as exc:
                op.add_step("rollback.stop", status="error", detail=str(exc))
                LOGGER.warning("Rollback of %s could not stop the server: %s", instance_id, exc)
        for path, remove in ((directory, _remove_tree), (log_file, _remove_file)):
            if not path.exists():
                continue
            try:
                remove(path)
                op.add_step("rollback.remove", detail=str(path))
            except IOFailure as exc:
                op.add_step("rollback.remove", status="error", detail=str(exc))
                LOGGER.warning("Rollback of %s left %s behind: %s", instance_id, path, exc)

    # Defined last: the method name shadows the builtin in the class body.
    def list(self) -> list[Instance]:
        """Return every published instance, sorted by id."""
        with self.logger.operation(
            "instance list",
            target={"kind": "instance", "scope": "all"},
        ) as op:
            instances: list[Instance] = []
            for instance_id in self._instance_ids():
                try:
                    instances.append(self._describe(instance_id))
                except InstanceNotInitialized:
                    op.add_step("describe", status="skipped", detail=f"{instance_id} initialising")
                except DataDirectoryNotFound:
                    op.add_step("describe", status="skipped", detail=f"{instance_id} removed")
            op.success(f"Listed {len(instances)} instance(s).", changed=0)
            return instances


def _remove_tree(path: Path) -> None:
    # A server told to stop without waiting may still be writing into the tree.
    for attempt in range(1, _REMOVE_ATTEMPTS + 1):
        try:
            shutil.rmtree(path)
            return
        except FileNotFoundError:
            return
        except OSError as exc:
            if attempt == _REMOVE_ATTEMPTS:
                raise IOFailure(f"Failed to remove {path}: {exc}", path=path) from exc
            time.sleep(_REMOVE_DELAY)


def _remove_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        raise IOFailure(f"Failed to remove {path}: {exc}", path=path) from exc


__all__ = [
    "INSTANCE_ID_PATTERN",
    "Instance",
    "InstanceManager",
    "RootLayout",
    "validate_instance_id",
]
