"""Pydantic models for article records, entities, provenance and sync state."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SyncStatus(str, Enum):
    """Synchronization state of a stored record."""

    LOCAL = "local"
    PENDING_PUSH = "pending_push"
    SYNCED = "synced"
    PENDING_PULL = "pending_pull"
    CONFLICT = "conflict"


class EntityKind(str, Enum):
    """Kinds of entities deduplicated by natural key."""

    SPECIES = "species"
    COMMUNITY = "community"


class PlantSpecies(BaseModel):
    """Taxonomic entity referenced by article records."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Entity identifier")
    scientific_name: str = Field(..., description="Scientific (binomial) name")
    key: str = Field(..., description="Natural key: normalized scientific name")
    common_names: List[str] = Field(default_factory=list, description="Vernacular names")
    rank_chain: List[str] = Field(
        default_factory=list, description="Optional taxonomic ranks, broadest first"
    )
    use_types: List[str] = Field(default_factory=list, description="Observed use categories")

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Species key cannot be empty")
        return v


class Community(BaseModel):
    """Named human group or locale referenced by article records."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Entity identifier")
    name: str = Field(..., description="Community name as written")
    key: str = Field(..., description="Natural key: normalized name plus optional region")
    region: Optional[str] = Field(default=None, description="Region qualifier")
    people: Optional[str] = Field(default=None, description="Ethnic group, when distinct")

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Community key cannot be empty")
        return v


class ArticleRecord(BaseModel):
    """A structured ethnobotanical observation extracted from a document."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="Stable record identifier")
    document_id: str = Field(..., description="Source document reference")
    species: List[PlantSpecies] = Field(default_factory=list)
    communities: List[Community] = Field(default_factory=list)
    excerpts: List[str] = Field(default_factory=list, description="Source excerpts, primary first")
    uses: List[str] = Field(default_factory=list, description="Described uses")
    field_confidence: Dict[str, float] = Field(default_factory=dict)
    title: Optional[str] = None
    authors: List[str] = Field(default_factory=list)
    year: Optional[int] = None
    doi: Optional[str] = None
    abstract: Optional[str] = None
    notes: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def validate_has_entity(self) -> "ArticleRecord":
        """A record must reference at least one species or one community."""
        if not self.species and not self.communities:
            raise ValueError("ArticleRecord requires at least one species or community reference")
        return self

    @field_validator("field_confidence")
    @classmethod
    def validate_confidence(cls, v: Dict[str, float]) -> Dict[str, float]:
        for field_name, score in v.items():
            if not 0.0 <= score <= 1.0:
                raise ValueError(f"Confidence for {field_name} must be between 0 and 1")
        return v

    @property
    def primary_excerpt(self) -> str:
        return self.excerpts[0] if self.excerpts else ""

    @property
    def species_keys(self) -> List[str]:
        return [s.key for s in self.species]

    @property
    def community_keys(self) -> List[str]:
        return [c.key for c in self.communities]


class ExtractionMetadata(BaseModel):
    """Provenance attached to a record; never mutated once created."""

    model_config = ConfigDict(frozen=True)

    extractor_name: str
    extractor_version: str
    extracted_at: datetime = Field(default_factory=_utcnow)
    field_confidence: Dict[str, float] = Field(default_factory=dict)
    low_confidence_fields: List[str] = Field(default_factory=list)
    failed_fields: List[str] = Field(default_factory=list)
    candidate_fingerprint: str = ""


class RemoteSnapshot(BaseModel):
    """Remote copy of a record held while a conflict awaits a user decision."""

    record: ArticleRecord
    revision: int
    detected_at: datetime = Field(default_factory=_utcnow)


class StoredRecord(BaseModel):
    """Unit persisted by the local store: record, provenance and sync bookkeeping."""

    record: ArticleRecord
    metadata: List[ExtractionMetadata] = Field(default_factory=list)
    fingerprint: str
    status: SyncStatus = SyncStatus.LOCAL
    revision: int = Field(default=0, ge=0, description="Stored revision agreed with the remote")
    common_revision: Optional[int] = Field(
        default=None, description="Revision recorded at the last successful sync"
    )
    local_revision: int = Field(default=1, ge=0, description="Local edit counter")
    change_seq: int = Field(default=0, ge=0, description="Position in the local change feed")
    user_edited: bool = False
    conflict: Optional[RemoteSnapshot] = None
    last_synced_at: Optional[datetime] = None

    @property
    def record_id(self) -> str:
        return self.record.id

    @property
    def is_dirty(self) -> bool:
        """Local content differs from what was last agreed with the remote."""
        return self.local_revision > self.revision


class ChangeEntry(BaseModel):
    """One entry of the local change feed."""

    model_config = ConfigDict(frozen=True)

    record_id: str
    status: SyncStatus
    revision: int
    change_seq: int


class ChangeSet(BaseModel):
    """Changes after a cursor plus the cursor to resume from."""

    entries: List[ChangeEntry] = Field(default_factory=list)
    cursor: int = 0


class StatusSummary(BaseModel):
    """Aggregate sync state published to UI subscribers."""

    total_records: int = 0
    by_status: Dict[SyncStatus, int] = Field(default_factory=dict)
    pending_conflicts: List[str] = Field(default_factory=list)
    retrying: Dict[str, int] = Field(default_factory=dict)
    total_synced: int = 0
    last_sync_at: Optional[datetime] = None
    is_connected: bool = False
    error: Optional[str] = None

    def count(self, status: SyncStatus) -> int:
        return self.by_status.get(status, 0)

    def to_display(self) -> Dict[str, Any]:
        return {
            "total": self.total_records,
            **{status.value: count for status, count in self.by_status.items()},
            "conflicts": len(self.pending_conflicts),
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "connected": self.is_connected,
        }
