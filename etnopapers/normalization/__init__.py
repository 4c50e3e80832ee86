"""Normalization package."""

from etnopapers.normalization.duplicate_detector import DuplicateCandidate, DuplicateDetector
from etnopapers.normalization.string_normalizer import (
    NormalizationResult,
    NormalizationRules,
    StringNormalizer,
)

__all__ = [
    "DuplicateCandidate",
    "DuplicateDetector",
    "NormalizationResult",
    "NormalizationRules",
    "StringNormalizer",
]
