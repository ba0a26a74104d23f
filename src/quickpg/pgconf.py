"""Rendering of ``postgresql.conf`` for quickpg instances."""
from __future__ import annotations

import re
from dataclasses import dataclass, replace
from pathlib import Path

from .errors import IOFailure, MetadataCorrupt, TemplateRenderFailed
from .templates import TemplateEngine, TemplateRenderError

CONF_FILENAME = "postgresql.conf"
TEMPLATE_NAME = "postgresql/postgresql.conf.j2"

# PostgreSQL memory units are binary multiples.
_BYTE_UNITS: tuple[tuple[str, int], ...] = (
    ("TB", 1024**4),
    ("GB", 1024**3),
    ("MB", 1024**2),
    ("kB", 1024),
)
_BYTE_SIZE_RE = re.compile(r"^\s*(\d+)\s*(B|kB|KB|MB|GB|TB)?\s*$")
_PORT_LINE_RE = re.compile(r"^\s*port\s*=\s*(\S+)\s*(?:#.*)?$")


def parse_byte_size(value: int | str) -> int:
    """Return the number of bytes described by *value* (``128MB``, ``1GB``...)."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid byte size: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Byte size must be non-negative: {value}")
        return value
    match = _BYTE_SIZE_RE.match(value)
    if match is None:
        raise ValueError(f"Invalid byte size: {value!r}")
    amount = int(match.group(1))
    unit = match.group(2) or "B"
    if unit == "B":
        return amount
    multiplier = dict(_BYTE_UNITS)["kB" if unit == "KB" else unit]
    return amount * multiplier


def format_byte_size(size: int) -> str:
    """Format *size* bytes using the largest PostgreSQL unit that divides it."""
    if size <= 0:
        return "0"
    for unit, multiplier in _BYTE_UNITS:
        if size % multiplier == 0:
            return f"{size // multiplier}{unit}"
    # PostgreSQL has no byte unit for memory settings; round up to kB.
    return f"{-(-size // 1024)}kB"


def quote(value: str) -> str:
    """Return *value* as a single-quoted configuration string."""
    return "'" + value.replace("'", "''") + "'"


@dataclass(frozen=True)
class PostgresqlConf:
    """Server settings rendered into an instance's ``postgresql.conf``.

    The port is deliberately not part of the settings: it is assigned per
    instance and passed to :meth:`render` explicitly.
    """

    listen_addresses: str = "*"
    max_connections: int = 100
    shared_buffers: int = parse_byte_size("128MB")
    max_wal_size: int = parse_byte_size("1GB")
    min_wal_size: int = parse_byte_size("80MB")
    timezone: str = "America/Toronto"
    locale: str = "en_US.UTF-8"
    dynamic_shared_memory_type: str = "posix"
    datestyle: str = "iso, mdy"
    default_text_search_config: str = "pg_catalog.english"
    crash_unsafe: bool = False

    def with_crash_unsafe(self, enabled: bool = True) -> PostgresqlConf:
        """Return a copy with the crash-unsafe profile toggled."""
        return replace(self, crash_unsafe=enabled)

    def context(self, port: int) -> dict[str, object]:
        """Return the template context for *port*."""
        return {
            "listen_addresses": quote(self.listen_addresses),
            "port": port,
            "max_connections": self.max_connections,
            "shared_buffers": format_byte_size(self.shared_buffers),
            "dynamic_shared_memory_type": quote(self.dynamic_shared_memory_type),
            "max_wal_size": format_byte_size(self.max_wal_size),
            "min_wal_size": format_byte_size(self.min_wal_size),
            "timezone": quote(self.timezone),
            "datestyle": quote(self.datestyle),
            "locale": quote(self.locale),
            "default_text_search_config": quote(self.default_text_search_config),
            "crash_unsafe": self.crash_unsafe,
        }

    def render(self, port: int, templates: TemplateEngine) -> str:
        """Return the configuration text for an instance listening on *port*."""
        return templates.render_to_string(TEMPLATE_NAME, self.context(port))

    def write(self, directory: Path, port: int, templates: TemplateEngine) -> Path:
        """Write ``postgresql.conf`` into *directory* and return its path."""
        path = directory / CONF_FILENAME
        try:
            templates.render_to_path(TEMPLATE_NAME, path, self.context(port), mode=0o600)
        except TemplateRenderError as exc:
            raise TemplateRenderFailed(TEMPLATE_NAME, str(exc.__cause__ or exc)) from exc
        except OSError as exc:
            raise IOFailure(f"Failed to write {path}: {exc}", path=path) from exc
        return path


def read_port(path: Path) -> int:
    """Return the ``port`` value configured in the file at *path*."""
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError as exc:
        raise MetadataCorrupt(path, "configuration file is missing") from exc
    except OSError as exc:
        raise IOFailure(f"Failed to read {path}: {exc}", path=path) from exc

    for line in lines:
        match = _PORT_LINE_RE.match(line)
        if match is None:
            continue
        try:
            return int(match.group(1))
        except ValueError as exc:
            raise MetadataCorrupt(path, f"cannot parse port value {match.group(1)!r}") from exc
    raise MetadataCorrupt(path, "port setting missing")


__all__ = [
    "CONF_FILENAME",
    "PostgresqlConf",
    "format_byte_size",
    "parse_byte_size",
    "quote",
    "read_port",
]
