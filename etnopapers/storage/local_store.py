"""Local record store gateway: idempotent upserts, change feed and sync bookkeeping."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from loguru import logger

from etnopapers.normalization.string_normalizer import StringNormalizer
from etnopapers.storage.persistence import (
    InMemoryPersistence,
    PersistenceBackend,
    all_records,
    create_persistence,
)
from etnopapers.storage.schemas import (
    ArticleRecord,
    ChangeEntry,
    ChangeSet,
    Community,
    EntityKind,
    ExtractionMetadata,
    PlantSpecies,
    RemoteSnapshot,
    StoredRecord,
    SyncStatus,
)
from etnopapers.utils.config import StorageConfig
from etnopapers.utils.errors import (
    RecordNotFound,
    StaleRemoteWrite,
    StorageError,
    StorageLimitError,
)
from etnopapers.utils.fingerprints import record_fingerprint
from etnopapers.utils.keyed_lock import KeyedLock

# Fields a user edit may not touch.
IMMUTABLE_FIELDS = {"id", "document_id", "created_at"}


class LocalStoreGateway:
    """Owns persisted record state on top of a :class:`PersistenceBackend`.

    Methods are synchronous and must be called from the event loop thread.
    Callers that need check-and-set semantics across several calls hold
    ``lock_for(record_id)`` (or the fingerprint) while doing so.
    """

    def __init__(
        self,
        persistence: PersistenceBackend | None = None,
        config: StorageConfig | None = None,
        normalizer: StringNormalizer | None = None,
    ) -> None:
        self.config = config or StorageConfig()
        self.persistence = persistence or InMemoryPersistence()
        self.normalizer = normalizer or StringNormalizer()
        self._locks = KeyedLock()

        self._fingerprints: Dict[str, str] = {}
        self._seq = 0
        for stored in all_records(self.persistence):
            self._fingerprints.setdefault(stored.fingerprint, stored.record_id)
            self._seq = max(self._seq, stored.change_seq)

        logger.info(
            "Initialized LocalStoreGateway with {} records",
            len(self._fingerprints),
            max_records=self.config.max_records,
        )

    @classmethod
    def from_config(
        cls, config: StorageConfig, normalizer: StringNormalizer | None = None
    ) -> "LocalStoreGateway":
        return cls(
            persistence=create_persistence(config.backend, config.data_path),
            config=config,
            normalizer=normalizer,
        )

    def lock_for(self, key: str):
        """Per-identity lock context (``async with store.lock_for(record_id):``)."""
        return self._locks(key)

    # ------------------------------------------------------------------
    # Record writes from extraction and user actions
    # ------------------------------------------------------------------
    def fingerprint_for(self, record: ArticleRecord) -> str:
        return record_fingerprint(
            record.document_id, record.primary_excerpt, normalizer=self.normalizer
        )

    def find_by_fingerprint(self, fingerprint: str) -> Optional[str]:
        return self._fingerprints.get(fingerprint)

    def upsert(self, record: ArticleRecord, metadata: ExtractionMetadata) -> str:
        """Store a newly built record unless its fingerprint is already known.

        Returns:
            The id of the stored record (the existing one for a known fingerprint)

        Raises:
            StorageLimitError: If ``max_records`` has been reached
            StorageError: If the backing store fails
        """
        fingerprint = self.fingerprint_for(record)
        existing_id = self._fingerprints.get(fingerprint)
        if existing_id is not None:
            logger.debug(
                "Record already stored for fingerprint {}", fingerprint[:12], record_id=existing_id
            )
            return existing_id

        current = self.persistence.count()
        if current >= self.config.max_records:
            raise StorageLimitError(current, self.config.max_records)

        stored = StoredRecord(
            record=record,
            metadata=[metadata],
            fingerprint=fingerprint,
            status=SyncStatus.LOCAL,
            revision=0,
            local_revision=1,
            change_seq=self._next_seq(),
        )
        self._register_entities(record)
        self._save(stored)
        self._fingerprints[fingerprint] = record.id

        logger.info("Stored new record {}", record.id, document_id=record.document_id)
        return record.id

    def edit_record(self, record_id: str, **changes: Any) -> ArticleRecord:
        """Apply a user edit; marks the record dirty for the next sync cycle."""
        stored = self.require(record_id)
        blocked = IMMUTABLE_FIELDS.intersection(changes)
        if blocked:
            raise ValueError(f"Fields cannot be edited: {sorted(blocked)}")

        data = stored.record.model_dump()
        data.update(changes)
        data["updated_at"] = datetime.now(UTC)
        record = ArticleRecord.model_validate(data)

        stored.record = record
        stored.user_edited = True
        stored.local_revision += 1
        stored.change_seq = self._next_seq()
        self._register_entities(record)
        self._save(stored)

        logger.info("Edited record {}", record_id, fields=sorted(changes))
        return record

    def delete_record(self, record_id: str) -> None:
        """Remove a record at the user's request, leaving a tombstone behind."""
        stored = self.require(record_id)
        if not self.persistence.delete(record_id):
            raise RecordNotFound(record_id)
        if self._fingerprints.get(stored.fingerprint) == record_id:
            del self._fingerprints[stored.fingerprint]
        logger.info("Deleted record {}", record_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, record_id: str) -> Optional[StoredRecord]:
        return self.persistence.load(record_id)

    def require(self, record_id: str) -> StoredRecord:
        stored = self.persistence.load(record_id)
        if stored is None:
            raise RecordNotFound(record_id)
        return stored

    def list_records(self, status: SyncStatus | None = None) -> List[StoredRecord]:
        records = all_records(self.persistence)
        if status is None:
            return records
        return [stored for stored in records if stored.status == status]

    def count(self) -> int:
        return self.persistence.count()

    def status_counts(self) -> Dict[SyncStatus, int]:
        counts: Dict[SyncStatus, int] = {}
        for stored in all_records(self.persistence):
            counts[stored.status] = counts.get(stored.status, 0) + 1
        return counts

    def find_entity(self, kind: EntityKind, key: str) -> Optional[PlantSpecies | Community]:
        return self.persistence.load_entity_by_key(kind, key)

    def is_deleted(self, record_id: str) -> bool:
        """True once the user deleted ``record_id``; remote copies stay ignored."""
        return self.persistence.is_deleted(record_id)

    def get_changes_since(self, cursor: int) -> ChangeSet:
        """Records whose content changed after ``cursor``, plus the next cursor."""
        entries: List[ChangeEntry] = []
        next_cursor = cursor
        for stored in self.persistence.enumerate_since(cursor):
            entries.append(
                ChangeEntry(
                    record_id=stored.record_id,
                    status=stored.status,
                    revision=stored.revision,
                    change_seq=stored.change_seq,
                )
            )
            next_cursor = max(next_cursor, stored.change_seq)
        return ChangeSet(entries=entries, cursor=next_cursor)

    # ------------------------------------------------------------------
    # Sync bookkeeping (written by the reconciler only)
    # ------------------------------------------------------------------
    def remote_cursor(self) -> Optional[str]:
        return self.persistence.load_sync_cursor()

    def save_remote_cursor(self, cursor: Optional[str]) -> None:
        if cursor != self.persistence.load_sync_cursor():
            self.persistence.save_sync_cursor(cursor)

    def apply_remote(
        self,
        record_id: str,
        remote_record: ArticleRecord,
        remote_revision: int,
        *,
        force: bool = False,
    ) -> StoredRecord:
        """Overwrite local content with a newer remote revision.

        Unknown ids are inserted with status ``PENDING_PULL``; the reconciler
        settles the status afterwards. With ``force`` an older remote revision
        (a remote rollback the user chose to accept) replaces the content while
        the stored revision counter is kept, so revisions never go backwards.

        Raises:
            StaleRemoteWrite: If ``remote_revision`` is not newer than the stored
                revision and ``force`` is not set
        """
        remote_record = remote_record.model_copy(update={"id": record_id})
        stored = self.persistence.load(record_id)

        if stored is None:
            stored = StoredRecord(
                record=remote_record,
                fingerprint=self.fingerprint_for(remote_record),
                status=SyncStatus.PENDING_PULL,
                revision=remote_revision,
                common_revision=remote_revision,
                local_revision=remote_revision,
                change_seq=self._next_seq(),
            )
            self._register_entities(remote_record)
            self._save(stored)
            self._fingerprints.setdefault(stored.fingerprint, record_id)
            logger.info("Inserted remote record {} at revision {}", record_id, remote_revision)
            return stored

        if remote_revision <= stored.revision and not force:
            raise StaleRemoteWrite(record_id, remote_revision, stored.revision)

        revision = max(stored.revision, remote_revision)
        stored.record = remote_record
        stored.revision = revision
        stored.common_revision = remote_revision
        stored.local_revision = revision
        stored.conflict = None
        stored.change_seq = self._next_seq()
        self._register_entities(remote_record)
        self._save(stored)

        logger.info("Applied remote revision {} to record {}", remote_revision, record_id)
        return stored

    def set_sync_status(
        self, record_id: str, status: SyncStatus, conflict: RemoteSnapshot | None = None
    ) -> StoredRecord:
        stored = self.require(record_id)
        stored.status = status
        stored.conflict = conflict if status == SyncStatus.CONFLICT else None
        if status == SyncStatus.SYNCED:
            stored.last_synced_at = datetime.now(UTC)
        self._save(stored)
        return stored

    def mark_synced(
        self, record_id: str, revision: int, acknowledged_local_revision: int
    ) -> StoredRecord:
        """Record an accepted push.

        Edits made after ``acknowledged_local_revision`` was read stay pending on
        top of the new revision, and the record remains ``PENDING_PUSH``.
        """
        stored = self.require(record_id)
        new_revision = max(stored.revision, revision)
        pending = max(stored.local_revision - acknowledged_local_revision, 0)

        stored.revision = new_revision
        stored.common_revision = new_revision
        stored.local_revision = new_revision + pending
        stored.status = SyncStatus.SYNCED if pending == 0 else SyncStatus.PENDING_PUSH
        stored.conflict = None
        stored.last_synced_at = datetime.now(UTC)
        self._save(stored)
        return stored

    def rebase_on_remote(self, record_id: str, remote_revision: int) -> StoredRecord:
        """Keep local content but treat ``remote_revision`` as the common ancestor."""
        stored = self.require(record_id)
        base = max(stored.revision, remote_revision)
        stored.revision = base
        stored.common_revision = remote_revision
        stored.local_revision = base + 1
        stored.status = SyncStatus.PENDING_PUSH
        stored.conflict = None
        self._save(stored)
        return stored

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _register_entities(self, record: ArticleRecord) -> None:
        for species in record.species:
            if self.persistence.load_entity_by_key(EntityKind.SPECIES, species.key) is None:
                self.persistence.save_entity(EntityKind.SPECIES, species.key, species)
        for community in record.communities:
            if self.persistence.load_entity_by_key(EntityKind.COMMUNITY, community.key) is None:
                self.persistence.save_entity(EntityKind.COMMUNITY, community.key, community)

    def _save(self, stored: StoredRecord) -> None:
        try:
            self.persistence.save(stored.record_id, stored)
        except StorageError:
            raise
        except Exception as exc:  # noqa: BLE001 - normalize backend failures
            raise StorageError(
                f"Failed to save record {stored.record_id}: {exc}",
                {"record_id": stored.record_id},
            ) from exc
