"""Tests for the JSON file backend."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from etnopapers.storage.local_store import LocalStoreGateway
from etnopapers.storage.persistence import (
    InMemoryPersistence,
    JsonFilePersistence,
    create_persistence,
)
from etnopapers.storage.schemas import (
    ArticleRecord,
    EntityKind,
    ExtractionMetadata,
    PlantSpecies,
    SyncStatus,
)
from etnopapers.utils.errors import StorageError

META = ExtractionMetadata(extractor_name="patterns", extractor_version="1.0")


def _record(excerpt: str) -> ArticleRecord:
    return ArticleRecord(
        document_id="doc-1",
        species=[PlantSpecies(scientific_name="Salix alba", key="salix alba")],
        excerpts=[excerpt],
    )


def test_state_survives_reload(tmp_path: Path) -> None:
    path = tmp_path / "records.json"
    store = LocalStoreGateway(persistence=JsonFilePersistence(path))
    record_id = store.upsert(_record("Salix alba was used for baskets."), META)
    store.set_sync_status(record_id, SyncStatus.PENDING_PUSH)

    reloaded = LocalStoreGateway(persistence=JsonFilePersistence(path))

    stored = reloaded.require(record_id)
    assert stored.status == SyncStatus.PENDING_PUSH
    assert stored.record.species_keys == ["salix alba"]
    assert reloaded.find_by_fingerprint(stored.fingerprint) == record_id
    assert reloaded.find_entity(EntityKind.SPECIES, "salix alba") is not None


def test_change_sequence_continues_after_reload(tmp_path: Path) -> None:
    path = tmp_path / "records.json"
    store = LocalStoreGateway(persistence=JsonFilePersistence(path))
    store.upsert(_record("first"), META)
    cursor = store.get_changes_since(0).cursor

    reloaded = LocalStoreGateway(persistence=JsonFilePersistence(path))
    new_id = reloaded.upsert(_record("second"), META)

    assert [e.record_id for e in reloaded.get_changes_since(cursor).entries] == [new_id]


def test_write_leaves_no_temporary_file(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "records.json"
    backend = JsonFilePersistence(path)
    LocalStoreGateway(persistence=backend).upsert(_record("first"), META)

    assert path.exists()
    assert not path.with_suffix(".json.tmp").exists()
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == 1


def test_corrupt_file_raises_storage_error(tmp_path: Path) -> None:
    path = tmp_path / "records.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(StorageError, match="Failed to read"):
        JsonFilePersistence(path)


def test_failed_write_rolls_back(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "records.json"
    store = LocalStoreGateway(persistence=JsonFilePersistence(path))

    def _fail(*args, **kwargs):
        raise OSError("read-only file system")

    monkeypatch.setattr("etnopapers.storage.persistence.os.replace", _fail)

    with pytest.raises(StorageError, match="read-only"):
        store.upsert(_record("first"), META)

    assert store.count() == 0


def test_failed_entity_write_rolls_back(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    backend = JsonFilePersistence(tmp_path / "records.json")
    species = PlantSpecies(scientific_name="Salix alba", key="salix alba")

    def _fail(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr("etnopapers.storage.persistence.os.replace", _fail)

    with pytest.raises(StorageError, match="disk full"):
        backend.save_entity(EntityKind.SPECIES, "salix alba", species)

    assert backend.load_entity_by_key(EntityKind.SPECIES, "salix alba") is None


def test_tombstones_and_sync_cursor_survive_reload(tmp_path: Path) -> None:
    path = tmp_path / "records.json"
    store = LocalStoreGateway(persistence=JsonFilePersistence(path))
    record_id = store.upsert(_record("Salix alba was used for baskets."), META)
    store.delete_record(record_id)
    store.save_remote_cursor("42")

    reloaded = LocalStoreGateway(persistence=JsonFilePersistence(path))

    assert reloaded.get(record_id) is None
    assert reloaded.is_deleted(record_id)
    assert reloaded.remote_cursor() == "42"


def test_create_persistence_by_name(tmp_path: Path) -> None:
    assert isinstance(create_persistence("memory", tmp_path / "x.json"), InMemoryPersistence)
    assert isinstance(create_persistence("json", tmp_path / "x.json"), JsonFilePersistence)
    with pytest.raises(ValueError, match="Unknown storage backend"):
        create_persistence("sqlite", tmp_path / "x.json")
