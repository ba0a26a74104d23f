"""Tests for postgresql.conf rendering and parsing."""
from __future__ import annotations

from pathlib import Path

import pytest

from quickpg.errors import MetadataCorrupt
from quickpg.pgconf import (
    PostgresqlConf,
    format_byte_size,
    parse_byte_size,
    quote,
    read_port,
)
from quickpg.templates import TemplateEngine


@pytest.fixture
def templates() -> TemplateEngine:
    """Return the packaged template engine."""
    return TemplateEngine.with_overrides(None)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (0, 0),
        (8192, 8192),
        ("512", 512),
        ("64kB", 64 * 1024),
        ("64KB", 64 * 1024),
        ("128MB", 128 * 1024**2),
        (" 1 GB ", 1024**3),
        ("2TB", 2 * 1024**4),
    ],
)
def test_parse_byte_size(value: int | str, expected: int) -> None:
    assert parse_byte_size(value) == expected


@pytest.mark.parametrize("value", ["", "12XB", "-5MB", "MB", True, -1])
def test_parse_byte_size_rejects_garbage(value: int | str) -> None:
    with pytest.raises(ValueError):
        parse_byte_size(value)


@pytest.mark.parametrize(
    ("size", "expected"),
    [
        (0, "0"),
        (1024, "1kB"),
        (1536, "2kB"),
        (128 * 1024**2, "128MB"),
        (80 * 1024**2, "80MB"),
        (1024**3, "1GB"),
        (3 * 1024**4, "3TB"),
    ],
)
def test_format_byte_size(size: int, expected: str) -> None:
    assert format_byte_size(size) == expected


def test_quote_escapes_single_quotes() -> None:
    assert quote("it's") == "'it''s'"


def test_default_render_contains_settings(templates: TemplateEngine) -> None:
    """Defaults match a stock development server."""
    text = PostgresqlConf().render(5544, templates)

    assert "port = 5544\n" in text
    assert "max_connections = 100\n" in text
    assert "shared_buffers = 128MB\n" in text
    assert "max_wal_size = 1GB\n" in text
    assert "min_wal_size = 80MB\n" in text
    assert "timezone = 'America/Toronto'\n" in text
    assert "lc_messages = 'en_US.UTF-8'\n" in text
    assert "fsync" not in text


def test_crash_unsafe_profile(templates: TemplateEngine) -> None:
    """The crash-unsafe profile disables durability."""
    conf = PostgresqlConf().with_crash_unsafe()

    text = conf.render(5544, templates)

    assert conf.crash_unsafe is True
    assert PostgresqlConf().crash_unsafe is False
    for line in ("fsync = off", "full_page_writes = off", "synchronous_commit = off"):
        assert f"{line}\n" in text


def test_write_replaces_existing_file(tmp_path: Path, templates: TemplateEngine) -> None:
    """The generated file replaces whatever initdb left behind."""
    (tmp_path / "postgresql.conf").write_text("port = 5432\n", encoding="utf-8")

    path = PostgresqlConf(max_connections=20).write(tmp_path, 6100, templates)

    assert read_port(path) == 6100
    assert "max_connections = 20\n" in path.read_text(encoding="utf-8")
    assert oct(path.stat().st_mode & 0o777) == "0o600"


def test_read_port_ignores_comments(tmp_path: Path) -> None:
    path = tmp_path / "postgresql.conf"
    path.write_text("#port = 1\n  port = 7001   # assigned\n", encoding="utf-8")

    assert read_port(path) == 7001


@pytest.mark.parametrize("content", ["max_connections = 5\n", "port = 'abc'\n"])
def test_read_port_rejects_bad_files(tmp_path: Path, content: str) -> None:
    path = tmp_path / "postgresql.conf"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(MetadataCorrupt):
        read_port(path)


def test_read_port_missing_file(tmp_path: Path) -> None:
    with pytest.raises(MetadataCorrupt):
        read_port(tmp_path / "postgresql.conf")
