"""RapidFuzz-based detection of records that probably describe the same observation."""

from __future__ import annotations

from typing import Callable, Iterable, List, Sequence

from loguru import logger
from pydantic import BaseModel, ConfigDict
from rapidfuzz import fuzz

from etnopapers.normalization.string_normalizer import StringNormalizer
from etnopapers.storage.schemas import ArticleRecord
from etnopapers.utils.config import NormalizationConfig

# Weights of the similarity components; they sum to 1.
EXCERPT_WEIGHT = 0.6
SPECIES_WEIGHT = 0.2
COMMUNITY_WEIGHT = 0.2


class DuplicateCandidate(BaseModel):
    """An existing record that resembles a new one."""

    model_config = ConfigDict(frozen=True)

    record_id: str
    existing_id: str
    score: float  # 0-1
    excerpt_score: float  # 0-1
    shared_species: List[str]
    shared_communities: List[str]


class DuplicateDetector:
    """Score a new record against stored ones.

    The score combines excerpt similarity with the overlap of species and
    community keys. Records above ``duplicate_threshold`` are reported; the
    caller decides what to do with them.
    """

    def __init__(
        self,
        config: NormalizationConfig | None = None,
        normalizer: StringNormalizer | None = None,
        scorer: Callable[[str, str], float] | None = None,
    ) -> None:
        self.config = config or NormalizationConfig()
        self.normalizer = normalizer or StringNormalizer(config=self.config)
        self.scorer: Callable[[str, str], float] = scorer or fuzz.ratio

    @property
    def threshold(self) -> float:
        return self.config.duplicate_threshold

    def score(self, record: ArticleRecord, existing: ArticleRecord) -> DuplicateCandidate:
        excerpt_score = self._excerpt_score(record.primary_excerpt, existing.primary_excerpt)
        shared_species = sorted(set(record.species_keys) & set(existing.species_keys))
        shared_communities = sorted(set(record.community_keys) & set(existing.community_keys))

        score = (
            excerpt_score * EXCERPT_WEIGHT
            + _overlap(record.species_keys, existing.species_keys) * SPECIES_WEIGHT
            + _overlap(record.community_keys, existing.community_keys) * COMMUNITY_WEIGHT
        )
        return DuplicateCandidate(
            record_id=record.id,
            existing_id=existing.id,
            score=round(score, 4),
            excerpt_score=excerpt_score,
            shared_species=shared_species,
            shared_communities=shared_communities,
        )

    def find_duplicates(
        self, record: ArticleRecord, existing: Iterable[ArticleRecord]
    ) -> List[DuplicateCandidate]:
        """Existing records scoring at or above the threshold, best first."""
        if not self.config.enable_duplicate_detection:
            return []

        scored = (self.score(record, other) for other in existing if other.id != record.id)
        matches = [candidate for candidate in scored if candidate.score >= self.threshold]
        if matches:
            logger.debug("Found {} potential duplicates for record {}", len(matches), record.id)
        return sorted(matches, key=lambda item: item.score, reverse=True)

    def _excerpt_score(self, left: str, right: str) -> float:
        left_norm = self.normalizer.normalize(left).normalized
        right_norm = self.normalizer.normalize(right).normalized
        if not left_norm or not right_norm:
            return 0.0
        return self.scorer(left_norm, right_norm) / 100.0


def _overlap(left: Sequence[str], right: Sequence[str]) -> float:
    """Jaccard overlap of two key lists; two empty lists do not count as a match."""
    left_set, right_set = set(left), set(right)
    union = left_set | right_set
    if not union:
        return 0.0
    return len(left_set & right_set) / len(union)
