"""Extraction package exports."""

from etnopapers.extraction.adapter import CandidateSequence, ExtractorAdapter
from etnopapers.extraction.capability import (
    ExtractionCapability,
    PatternCapability,
    create_capability,
    register_capability,
)
from etnopapers.extraction.models import (
    BuildResult,
    CandidateField,
    CandidateLocation,
    CandidateMatch,
    IssueKind,
    ValidationIssue,
)
from etnopapers.extraction.record_builder import RecordBuilder

__all__ = [
    "BuildResult",
    "CandidateField",
    "CandidateLocation",
    "CandidateMatch",
    "CandidateSequence",
    "ExtractionCapability",
    "ExtractorAdapter",
    "IssueKind",
    "PatternCapability",
    "RecordBuilder",
    "ValidationIssue",
    "create_capability",
    "register_capability",
]
