"""Data models for extraction candidates and build results."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from etnopapers.storage.schemas import ArticleRecord, ExtractionMetadata


class CandidateField(str, Enum):
    """Kinds of raw candidates a capability can emit."""

    SPECIES = "species"
    COMMUNITY = "community"
    USE = "use"
    VERNACULAR = "vernacular"

    @property
    def is_entity(self) -> bool:
        return self in (CandidateField.SPECIES, CandidateField.COMMUNITY)


class CandidateLocation(BaseModel):
    """Character span of a candidate in the decoded text."""

    model_config = ConfigDict(frozen=True)

    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)
    page: Optional[int] = Field(default=None, ge=1)


class CandidateMatch(BaseModel):
    """Raw candidate emitted by an extraction capability."""

    model_config = ConfigDict(frozen=True)

    field: CandidateField
    text: str
    location: CandidateLocation
    excerpt: str = Field(..., description="Sentence containing the match")
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("text")
    @classmethod
    def validate_text(cls, v: str) -> str:
        return v.strip()


class DocumentMetadata(BaseModel):
    """Article-level metadata found in a document; copied onto each of its records."""

    title: Optional[str] = None
    authors: List[str] = Field(default_factory=list)
    year: Optional[int] = None
    doi: Optional[str] = None
    abstract: Optional[str] = None

    def record_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude_defaults=True)


class ExtractedDocument(BaseModel):
    """Materialized extraction output for one document."""

    candidates: List[CandidateMatch] = Field(default_factory=list)
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)


class IssueKind(str, Enum):
    """Non-fatal problems reported alongside build and store results."""

    NO_ENTITY_MATCHED = "no_entity_matched"
    BUILD_FAILED = "build_failed"
    STORAGE_FAILED = "storage_failed"
    POSSIBLE_DUPLICATE = "possible_duplicate"


class ValidationIssue(BaseModel):
    """A per-group or per-record issue; data, not an exception."""

    model_config = ConfigDict(frozen=True)

    kind: IssueKind
    message: str
    excerpt: str = ""
    record_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class BuildResult(BaseModel):
    """Output of ``RecordBuilder.build``: records paired with their metadata."""

    records: List[ArticleRecord] = Field(default_factory=list)
    metadata: List[ExtractionMetadata] = Field(default_factory=list)
    issues: List[ValidationIssue] = Field(default_factory=list)

    def pairs(self) -> List[tuple[ArticleRecord, ExtractionMetadata]]:
        return list(zip(self.records, self.metadata))
