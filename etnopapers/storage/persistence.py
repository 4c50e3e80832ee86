"""Backing stores for the local record gateway.

The gateway only talks to a :class:`PersistenceBackend`; where and how the data
lands is the backend's concern. Two implementations ship with the package: an
in-memory backend for tests and ephemeral runs, and a JSON file backend that
rewrites a single state file atomically on every save.
"""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from etnopapers.storage.schemas import (
    Community,
    EntityKind,
    PlantSpecies,
    StoredRecord,
)
from etnopapers.utils.errors import StorageError

Entity = PlantSpecies | Community


class PersistenceBackend(Protocol):
    """Contract consumed by :class:`~etnopapers.storage.local_store.LocalStoreGateway`."""

    def load(self, record_id: str) -> Optional[StoredRecord]: ...

    def save(self, record_id: str, stored: StoredRecord) -> None: ...

    def delete(self, record_id: str) -> bool: ...

    def is_deleted(self, record_id: str) -> bool: ...

    def enumerate_since(self, cursor: int) -> Iterator[StoredRecord]: ...

    def load_entity_by_key(self, kind: EntityKind, normalized_key: str) -> Optional[Entity]: ...

    def save_entity(self, kind: EntityKind, normalized_key: str, entity: Entity) -> None: ...

    def count(self) -> int: ...

    def load_sync_cursor(self) -> Optional[str]: ...

    def save_sync_cursor(self, cursor: Optional[str]) -> None: ...


class InMemoryPersistence:
    """Dictionary-backed store; state lives as long as the instance.

    Deleting a record leaves a tombstone so that the sync reconciler does not
    re-insert it from the remote change feed.
    """

    def __init__(self) -> None:
        self._records: Dict[str, StoredRecord] = {}
        self._species: Dict[str, PlantSpecies] = {}
        self._communities: Dict[str, Community] = {}
        self._tombstones: Dict[str, datetime] = {}
        self._sync_cursor: Optional[str] = None

    def load(self, record_id: str) -> Optional[StoredRecord]:
        stored = self._records.get(record_id)
        return stored.model_copy(deep=True) if stored else None

    def save(self, record_id: str, stored: StoredRecord) -> None:
        self._records[record_id] = stored.model_copy(deep=True)

    def delete(self, record_id: str) -> bool:
        if self._records.pop(record_id, None) is None:
            return False
        self._tombstones[record_id] = datetime.now(UTC)
        return True

    def is_deleted(self, record_id: str) -> bool:
        return record_id in self._tombstones

    def enumerate_since(self, cursor: int) -> Iterator[StoredRecord]:
        for stored in sorted(self._records.values(), key=lambda s: s.change_seq):
            if stored.change_seq > cursor:
                yield stored.model_copy(deep=True)

    def load_entity_by_key(self, kind: EntityKind, normalized_key: str) -> Optional[Entity]:
        return self._entities(kind).get(normalized_key)

    def save_entity(self, kind: EntityKind, normalized_key: str, entity: Entity) -> None:
        self._entities(kind)[normalized_key] = entity

    def count(self) -> int:
        return len(self._records)

    def load_sync_cursor(self) -> Optional[str]:
        return self._sync_cursor

    def save_sync_cursor(self, cursor: Optional[str]) -> None:
        self._sync_cursor = cursor

    def _entities(self, kind: EntityKind) -> Dict[str, Entity]:
        return self._species if kind == EntityKind.SPECIES else self._communities


class PersistedState(BaseModel):
    """Serialized JSON file layout."""

    model_config = ConfigDict(extra="ignore")

    version: int = 1
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    records: Dict[str, StoredRecord] = Field(default_factory=dict)
    species: Dict[str, PlantSpecies] = Field(default_factory=dict)
    communities: Dict[str, Community] = Field(default_factory=dict)
    tombstones: Dict[str, datetime] = Field(default_factory=dict)
    sync_cursor: Optional[str] = None


class JsonFilePersistence(InMemoryPersistence):
    """JSON file store: loads on construction, rewrites the file on each mutation.

    A failed write restores the in-memory state it was about to persist.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            state = self._load_state(self.path)
            self._records = dict(state.records)
            self._species = dict(state.species)
            self._communities = dict(state.communities)
            self._tombstones = dict(state.tombstones)
            self._sync_cursor = state.sync_cursor
            logger.info(
                "Loaded {} records and {} entities from {}",
                len(self._records),
                len(self._species) + len(self._communities),
                self.path,
            )

    def save(self, record_id: str, stored: StoredRecord) -> None:
        previous = self._records.get(record_id)
        super().save(record_id, stored)
        try:
            self._persist()
        except StorageError:
            _restore(self._records, record_id, previous)
            raise

    def delete(self, record_id: str) -> bool:
        previous = self._records.get(record_id)
        previous_tombstone = self._tombstones.get(record_id)
        removed = super().delete(record_id)
        if removed:
            try:
                self._persist()
            except StorageError:
                self._records[record_id] = previous
                _restore(self._tombstones, record_id, previous_tombstone)
                raise
        return removed

    def save_entity(self, kind: EntityKind, normalized_key: str, entity: Entity) -> None:
        entities = self._entities(kind)
        previous = entities.get(normalized_key)
        super().save_entity(kind, normalized_key, entity)
        try:
            self._persist()
        except StorageError:
            _restore(entities, normalized_key, previous)
            raise

    def save_sync_cursor(self, cursor: Optional[str]) -> None:
        previous = self._sync_cursor
        super().save_sync_cursor(cursor)
        try:
            self._persist()
        except StorageError:
            self._sync_cursor = previous
            raise

    def _persist(self) -> None:
        state = PersistedState(
            records=self._records,
            species=self._species,
            communities=self._communities,
            tombstones=self._tombstones,
            sync_cursor=self._sync_cursor,
        )
        payload = json.dumps(state.model_dump(mode="json"), indent=2, sort_keys=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StorageError(
                f"Failed to write record store: {exc}", {"path": str(self.path)}
            ) from exc

    @staticmethod
    def _load_state(path: Path) -> PersistedState:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Failed to read record store: {exc}", {"path": str(path)}) from exc
        return PersistedState.model_validate(data)


def create_persistence(backend: str, data_path: str | Path) -> PersistenceBackend:
    """Build the backend named in the storage configuration."""
    if backend == "memory":
        return InMemoryPersistence()
    if backend == "json":
        return JsonFilePersistence(data_path)
    raise ValueError(f"Unknown storage backend: {backend}")


def all_records(backend: PersistenceBackend) -> List[StoredRecord]:
    """Every stored record in change-feed order."""
    return list(backend.enumerate_since(-1))


def _restore(mapping: Dict[str, Any], key: str, previous: Any) -> None:
    if previous is None:
        mapping.pop(key, None)
    else:
        mapping[key] = previous
