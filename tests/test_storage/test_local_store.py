"""Tests for LocalStoreGateway writes, change feed and sync bookkeeping."""

from __future__ import annotations

import pytest

from etnopapers.storage.local_store import LocalStoreGateway
from etnopapers.storage.schemas import (
    ArticleRecord,
    Community,
    EntityKind,
    ExtractionMetadata,
    PlantSpecies,
    RemoteSnapshot,
    SyncStatus,
)
from etnopapers.utils.config import StorageConfig
from etnopapers.utils.errors import (
    RecordNotFound,
    StaleRemoteWrite,
    StorageError,
    StorageLimitError,
)

META = ExtractionMetadata(extractor_name="patterns", extractor_version="1.0")


def _record(excerpt: str = "Quercus robur was used by the Sami for tanning.", **overrides):
    data = {
        "document_id": "doc-1",
        "species": [PlantSpecies(scientific_name="Quercus robur", key="quercus robur")],
        "communities": [Community(name="Sami", key="sami")],
        "excerpts": [excerpt],
    }
    data.update(overrides)
    return ArticleRecord(**data)


@pytest.fixture()
def store() -> LocalStoreGateway:
    return LocalStoreGateway(config=StorageConfig(backend="memory", max_records=10))


def test_upsert_stores_new_record_as_local(store: LocalStoreGateway) -> None:
    record = _record()

    record_id = store.upsert(record, META)

    stored = store.require(record_id)
    assert record_id == record.id
    assert stored.status == SyncStatus.LOCAL
    assert stored.revision == 0
    assert stored.local_revision == 1
    assert stored.common_revision is None
    assert stored.metadata == [META]
    assert store.find_by_fingerprint(stored.fingerprint) == record_id


def test_upsert_is_idempotent_by_fingerprint(store: LocalStoreGateway) -> None:
    first_id = store.upsert(_record(), META)

    second_id = store.upsert(_record(), META)

    assert second_id == first_id
    assert store.count() == 1


def test_upsert_does_not_overwrite_user_edit(store: LocalStoreGateway) -> None:
    record_id = store.upsert(_record(), META)
    store.edit_record(record_id, notes="checked against herbarium")

    assert store.upsert(_record(), META) == record_id

    assert store.require(record_id).record.notes == "checked against herbarium"


def test_fingerprint_ignores_whitespace_and_case(store: LocalStoreGateway) -> None:
    first_id = store.upsert(_record("Quercus robur was used."), META)

    assert store.upsert(_record("  QUERCUS   robur was used. "), META) == first_id


def test_upsert_registers_entities(store: LocalStoreGateway) -> None:
    record = _record()
    store.upsert(record, META)

    species = store.find_entity(EntityKind.SPECIES, "quercus robur")
    community = store.find_entity(EntityKind.COMMUNITY, "sami")

    assert species is not None and species.id == record.species[0].id
    assert community is not None and community.id == record.communities[0].id
    assert store.find_entity(EntityKind.SPECIES, "salix alba") is None


def test_storage_limit_is_enforced() -> None:
    store = LocalStoreGateway(config=StorageConfig(backend="memory", max_records=1))
    store.upsert(_record("first"), META)

    with pytest.raises(StorageLimitError) as excinfo:
        store.upsert(_record("second"), META)

    assert excinfo.value.details == {"current_count": 1, "max_count": 1}
    assert store.count() == 1


def test_edit_marks_record_dirty(store: LocalStoreGateway) -> None:
    record_id = store.upsert(_record(), META)

    edited = store.edit_record(record_id, uses=["dyeing"])

    stored = store.require(record_id)
    assert edited.uses == ["dyeing"]
    assert stored.user_edited is True
    assert stored.local_revision == 2
    assert stored.is_dirty


def test_edit_rejects_immutable_fields(store: LocalStoreGateway) -> None:
    record_id = store.upsert(_record(), META)

    with pytest.raises(ValueError, match="cannot be edited"):
        store.edit_record(record_id, document_id="other")


def test_edit_rejects_record_without_entities(store: LocalStoreGateway) -> None:
    record_id = store.upsert(_record(), META)

    with pytest.raises(ValueError):
        store.edit_record(record_id, species=[], communities=[])

    assert store.require(record_id).local_revision == 1


def test_delete_and_missing_records(store: LocalStoreGateway) -> None:
    record_id = store.upsert(_record(), META)

    store.delete_record(record_id)

    assert store.get(record_id) is None
    assert store.is_deleted(record_id)
    assert not store.is_deleted("missing")
    with pytest.raises(RecordNotFound):
        store.delete_record(record_id)
    with pytest.raises(RecordNotFound):
        store.require("missing")


def test_changes_feed_follows_writes(store: LocalStoreGateway) -> None:
    first_id = store.upsert(_record("first"), META)
    second_id = store.upsert(_record("second"), META)

    initial = store.get_changes_since(0)
    assert [entry.record_id for entry in initial.entries] == [first_id, second_id]

    store.edit_record(first_id, notes="edited")
    later = store.get_changes_since(initial.cursor)

    assert [entry.record_id for entry in later.entries] == [first_id]
    assert later.cursor > initial.cursor
    assert store.get_changes_since(later.cursor).entries == []


def test_list_records_filters_by_status(store: LocalStoreGateway) -> None:
    first_id = store.upsert(_record("first"), META)
    store.upsert(_record("second"), META)
    store.set_sync_status(first_id, SyncStatus.PENDING_PUSH)

    pending = store.list_records(SyncStatus.PENDING_PUSH)

    assert [stored.record_id for stored in pending] == [first_id]
    assert store.status_counts() == {SyncStatus.PENDING_PUSH: 1, SyncStatus.LOCAL: 1}


def test_apply_remote_overwrites_with_newer_revision(store: LocalStoreGateway) -> None:
    record_id = store.upsert(_record(), META)
    remote = _record(notes="remote notes")

    stored = store.apply_remote(record_id, remote, 4)

    assert stored.record.id == record_id
    assert stored.record.notes == "remote notes"
    assert stored.revision == 4
    assert stored.common_revision == 4
    assert not stored.is_dirty


def test_apply_remote_rejects_stale_revision(store: LocalStoreGateway) -> None:
    record_id = store.upsert(_record(), META)
    store.apply_remote(record_id, _record(notes="v5"), 5)

    for revision in (5, 3):
        with pytest.raises(StaleRemoteWrite):
            store.apply_remote(record_id, _record(notes="older"), revision)

    stored = store.require(record_id)
    assert stored.revision == 5
    assert stored.record.notes == "v5"


def test_forced_apply_remote_keeps_revision_counter(store: LocalStoreGateway) -> None:
    record_id = store.upsert(_record(), META)
    store.apply_remote(record_id, _record(notes="v5"), 5)

    stored = store.apply_remote(record_id, _record(notes="rolled back"), 3, force=True)

    assert stored.record.notes == "rolled back"
    assert stored.revision == 5
    assert stored.common_revision == 3
    assert not stored.is_dirty


def test_apply_remote_inserts_unknown_record(store: LocalStoreGateway) -> None:
    remote = _record("remote only")

    stored = store.apply_remote("remote-1", remote, 2)

    assert stored.status == SyncStatus.PENDING_PULL
    assert store.require("remote-1").record.id == "remote-1"
    assert store.find_by_fingerprint(stored.fingerprint) == "remote-1"


def test_mark_synced_keeps_edits_made_during_push(store: LocalStoreGateway) -> None:
    record_id = store.upsert(_record(), META)
    acknowledged = store.require(record_id).local_revision
    store.edit_record(record_id, notes="edited while pushing")

    stored = store.mark_synced(record_id, 1, acknowledged)

    assert stored.revision == 1
    assert stored.local_revision == 2
    assert stored.status == SyncStatus.PENDING_PUSH
    assert stored.is_dirty


def test_mark_synced_without_pending_edits(store: LocalStoreGateway) -> None:
    record_id = store.upsert(_record(), META)

    stored = store.mark_synced(record_id, 1, store.require(record_id).local_revision)

    assert stored.status == SyncStatus.SYNCED
    assert stored.common_revision == 1
    assert stored.last_synced_at is not None
    assert not stored.is_dirty


def test_conflict_snapshot_only_kept_in_conflict(store: LocalStoreGateway) -> None:
    record_id = store.upsert(_record(), META)
    snapshot = RemoteSnapshot(record=_record(notes="remote"), revision=3)

    assert store.set_sync_status(record_id, SyncStatus.CONFLICT, snapshot).conflict is not None
    assert store.set_sync_status(record_id, SyncStatus.PENDING_PUSH, snapshot).conflict is None


def test_rebase_on_remote_keeps_local_content(store: LocalStoreGateway) -> None:
    record_id = store.upsert(_record(notes="local"), META)

    stored = store.rebase_on_remote(record_id, 6)

    assert stored.record.notes == "local"
    assert stored.revision == 6
    assert stored.local_revision == 7
    assert stored.status == SyncStatus.PENDING_PUSH


def test_backend_failures_become_storage_errors() -> None:
    class _Broken:
        def __init__(self) -> None:
            self.inner = LocalStoreGateway().persistence

        def __getattr__(self, name):
            return getattr(self.inner, name)

        def save(self, record_id, stored):
            raise RuntimeError("disk full")

    store = LocalStoreGateway(persistence=_Broken())

    with pytest.raises(StorageError, match="disk full"):
        store.upsert(_record(), META)

    assert store.count() == 0
    assert store.find_by_fingerprint(store.fingerprint_for(_record())) is None
