"""Tests for per-instance metadata records."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from quickpg.errors import MetadataCorrupt, MetadataMissing
from quickpg.metadata import METADATA_FILENAME, InstanceMetadata, MetadataStore


def test_write_then_read(tmp_path: Path) -> None:
    """Records survive a write and are stored as plain JSON."""
    store = MetadataStore()

    path = store.write(tmp_path, InstanceMetadata(dbname="demo", port=6001))

    assert path == tmp_path / METADATA_FILENAME
    assert json.loads(path.read_text(encoding="utf-8")) == {"dbname": "demo", "port": 6001}
    assert oct(path.stat().st_mode & 0o777) == "0o600"
    assert store.read(tmp_path) == InstanceMetadata(dbname="demo", port=6001)
    assert store.exists(tmp_path)
    # No temporary files are left next to the record.
    assert [entry.name for entry in tmp_path.iterdir()] == [METADATA_FILENAME]


def test_missing_record(tmp_path: Path) -> None:
    store = MetadataStore()

    assert not store.exists(tmp_path)
    with pytest.raises(MetadataMissing) as excinfo:
        store.read(tmp_path)
    assert excinfo.value.path == tmp_path / METADATA_FILENAME


@pytest.mark.parametrize(
    ("content", "fragment"),
    [
        ("{not json", "invalid JSON"),
        ("[1, 2]", "expected a JSON object"),
        ('{"port": 6001}', "'dbname'"),
        ('{"dbname": "  ", "port": 6001}', "'dbname'"),
        ('{"dbname": "demo"}', "'port'"),
        ('{"dbname": "demo", "port": "6001"}', "'port'"),
        ('{"dbname": "demo", "port": true}', "'port'"),
        ('{"dbname": "demo", "port": 70000}', "out of range"),
    ],
)
def test_corrupt_records_are_rejected(tmp_path: Path, content: str, fragment: str) -> None:
    """Bad records are reported, never replaced by defaults."""
    (tmp_path / METADATA_FILENAME).write_text(content, encoding="utf-8")

    with pytest.raises(MetadataCorrupt) as excinfo:
        MetadataStore().read(tmp_path)
    assert fragment in excinfo.value.reason


def test_write_refuses_invalid_values(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        MetadataStore().write(tmp_path, InstanceMetadata(dbname="", port=6001))
    assert not MetadataStore().exists(tmp_path)


def test_custom_filename(tmp_path: Path) -> None:
    store = MetadataStore(filename="meta.json")
    store.write(tmp_path, InstanceMetadata(dbname="demo", port=1))

    assert (tmp_path / "meta.json").is_file()
    assert not MetadataStore().exists(tmp_path)
