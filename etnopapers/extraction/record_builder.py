"""Group raw candidates into validated article records with provenance."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from loguru import logger

from etnopapers.extraction.models import (
    BuildResult,
    CandidateField,
    CandidateMatch,
    DocumentMetadata,
    IssueKind,
    ValidationIssue,
)
from etnopapers.normalization.string_normalizer import StringNormalizer
from etnopapers.storage.schemas import (
    ArticleRecord,
    Community,
    EntityKind,
    ExtractionMetadata,
    PlantSpecies,
)
from etnopapers.utils.config import ExtractionConfig
from etnopapers.utils.fingerprints import record_fingerprint

Entity = PlantSpecies | Community

# Confidence map keys per candidate field.
FIELD_KEYS = {
    CandidateField.SPECIES: "species",
    CandidateField.COMMUNITY: "communities",
    CandidateField.USE: "uses",
    CandidateField.VERNACULAR: "common_names",
}


class EntityRegistry(Protocol):
    """Read-only entity lookup by natural key."""

    def find_entity(self, kind: EntityKind, key: str) -> Optional[Entity]: ...


@dataclass
class CandidateGroup:
    """Candidates that describe a single observation."""

    excerpt: str
    candidates: List[CandidateMatch] = field(default_factory=list)
    end: int = 0

    def add(self, candidate: CandidateMatch) -> None:
        self.candidates.append(candidate)
        self.end = max(self.end, candidate.location.end)

    def has_field(self, field_: CandidateField) -> bool:
        return any(candidate.field == field_ for candidate in self.candidates)

    @property
    def excerpts(self) -> List[str]:
        seen: List[str] = [self.excerpt]
        for candidate in self.candidates:
            if candidate.excerpt and candidate.excerpt not in seen:
                seen.append(candidate.excerpt)
        return seen


class RecordBuilder:
    """Turn a candidate sequence into :class:`ArticleRecord` values.

    Entities are resolved by natural key against the registry so that existing
    identities are reused; the builder itself never writes.
    """

    def __init__(
        self,
        registry: EntityRegistry | None = None,
        normalizer: StringNormalizer | None = None,
        config: ExtractionConfig | None = None,
    ) -> None:
        self.registry = registry
        self.normalizer = normalizer or StringNormalizer()
        self.config = config or ExtractionConfig()

    def build(
        self,
        candidates: Iterable[CandidateMatch],
        document_id: str,
        *,
        extractor_name: str = "patterns",
        extractor_version: str = "1.0",
        document_metadata: DocumentMetadata | None = None,
    ) -> BuildResult:
        """Build records for every candidate group of a document.

        Article fields of ``document_metadata`` (title, authors, year, DOI and
        abstract) are copied onto every record.
        """
        result = BuildResult()
        article_fields = document_metadata.record_fields() if document_metadata else {}
        entity_cache: Dict[Tuple[EntityKind, str], Entity] = {}

        groups = self.group_candidates(candidates)
        for group in groups:
            try:
                built = self._build_group(
                    group, document_id, entity_cache, extractor_name, extractor_version
                )
            except Exception as exc:  # noqa: BLE001 - one bad group must not sink the document
                logger.warning(
                    "Failed to build record from group: {}", exc, document_id=document_id
                )
                result.issues.append(
                    ValidationIssue(
                        kind=IssueKind.BUILD_FAILED,
                        message=str(exc),
                        excerpt=group.excerpt,
                        details={"document_id": document_id},
                    )
                )
                continue

            if isinstance(built, ValidationIssue):
                result.issues.append(built)
                continue

            record, metadata = built
            if article_fields:
                record = record.model_copy(update=article_fields)
            result.records.append(record)
            result.metadata.append(metadata)

        logger.info(
            "Built {} records from {} groups ({} issues)",
            len(result.records),
            len(groups),
            len(result.issues),
            document_id=document_id,
        )
        return result

    def group_candidates(self, candidates: Iterable[CandidateMatch]) -> List[CandidateGroup]:
        """Group by shared excerpt, letting nearby candidates complete the preceding group.

        A use or vernacular candidate joins the previous group when it starts
        within ``proximity_chars`` of it. An entity candidate does the same
        only when the previous group names the other entity kind and not its
        own, so a species and the community using it stay together across a
        sentence break.
        """
        groups: List[CandidateGroup] = []
        by_excerpt: Dict[str, CandidateGroup] = {}

        for candidate in sorted(candidates, key=lambda c: c.location.start):
            group = by_excerpt.get(candidate.excerpt)
            if group is None and groups and self._completes(groups[-1], candidate):
                group = groups[-1]
                if candidate.field.is_entity:
                    by_excerpt[candidate.excerpt] = group
            if group is None:
                group = CandidateGroup(excerpt=candidate.excerpt)
                groups.append(group)
                by_excerpt[candidate.excerpt] = group
            group.add(candidate)

        return groups

    def _completes(self, previous: CandidateGroup, candidate: CandidateMatch) -> bool:
        if candidate.location.start - previous.end > self.config.proximity_chars:
            return False
        if not candidate.field.is_entity:
            return True
        other = (
            CandidateField.COMMUNITY
            if candidate.field == CandidateField.SPECIES
            else CandidateField.SPECIES
        )
        return previous.has_field(other) and not previous.has_field(candidate.field)

    def _build_group(
        self,
        group: CandidateGroup,
        document_id: str,
        entity_cache: Dict[Tuple[EntityKind, str], Entity],
        extractor_name: str,
        extractor_version: str,
    ) -> Tuple[ArticleRecord, ExtractionMetadata] | ValidationIssue:
        species: Dict[str, PlantSpecies] = {}
        communities: Dict[str, Community] = {}
        uses: List[str] = []
        common_names: List[str] = []
        failed_fields: List[str] = []
        confidence: Dict[str, float] = {}

        for candidate in group.candidates:
            field_key = FIELD_KEYS[candidate.field]

            if candidate.field == CandidateField.SPECIES:
                key = self.normalizer.species_key(candidate.text)
                if not key:
                    failed_fields.append(f"species:{candidate.text}")
                    continue
                if key not in species:
                    species[key] = self._resolve_species(key, candidate.text, entity_cache)
            elif candidate.field == CandidateField.COMMUNITY:
                region = candidate.attributes.get("region")
                key = self.normalizer.community_key(candidate.text, region)
                if not key:
                    failed_fields.append(f"community:{candidate.text}")
                    continue
                if key not in communities:
                    communities[key] = self._resolve_community(
                        key, candidate.text, region, entity_cache
                    )
            elif candidate.field == CandidateField.USE:
                use = self.normalizer.normalize(candidate.text).normalized
                if not use:
                    failed_fields.append("use")
                    continue
                if use not in uses:
                    uses.append(use)
            else:
                name = self.normalizer.normalize(candidate.text).display
                if not name:
                    failed_fields.append("common_names")
                    continue
                if name not in common_names:
                    common_names.append(name)

            # A field is only as trustworthy as its weakest candidate.
            confidence[field_key] = min(confidence.get(field_key, 1.0), candidate.confidence)

        if not species and not communities:
            return ValidationIssue(
                kind=IssueKind.NO_ENTITY_MATCHED,
                message="No species or community found in candidate group",
                excerpt=group.excerpt,
                details={"document_id": document_id, "failed_fields": failed_fields},
            )

        species_list = list(species.values())
        if species_list and (common_names or uses):
            first = species_list[0]
            species_list[0] = first.model_copy(
                update={
                    "common_names": _merge(first.common_names, common_names),
                    "use_types": _merge(first.use_types, uses),
                }
            )

        record = ArticleRecord(
            document_id=document_id,
            species=species_list,
            communities=list(communities.values()),
            excerpts=group.excerpts,
            uses=uses,
            field_confidence=confidence,
        )
        low_confidence = sorted(
            name for name, score in confidence.items() if score < self.config.confidence_threshold
        )
        metadata = ExtractionMetadata(
            extractor_name=extractor_name,
            extractor_version=extractor_version,
            field_confidence=confidence,
            low_confidence_fields=low_confidence,
            failed_fields=failed_fields,
            candidate_fingerprint=record_fingerprint(
                document_id, record.primary_excerpt, normalizer=self.normalizer
            ),
        )
        return record, metadata

    def _resolve_species(
        self, key: str, raw_name: str, cache: Dict[Tuple[EntityKind, str], Entity]
    ) -> PlantSpecies:
        cached = cache.get((EntityKind.SPECIES, key))
        if cached is None and self.registry is not None:
            cached = self.registry.find_entity(EntityKind.SPECIES, key)
        if cached is None:
            display = self.normalizer.species_display(raw_name)
            cached = PlantSpecies(scientific_name=display, key=key)
        cache[(EntityKind.SPECIES, key)] = cached
        return cached  # type: ignore[return-value]

    def _resolve_community(
        self,
        key: str,
        raw_name: str,
        region: str | None,
        cache: Dict[Tuple[EntityKind, str], Entity],
    ) -> Community:
        cached = cache.get((EntityKind.COMMUNITY, key))
        if cached is None and self.registry is not None:
            cached = self.registry.find_entity(EntityKind.COMMUNITY, key)
        if cached is None:
            cached = Community(
                name=self.normalizer.normalize(raw_name).display,
                key=key,
                region=self.normalizer.normalize(region).display or None,
            )
        cache[(EntityKind.COMMUNITY, key)] = cached
        return cached  # type: ignore[return-value]


def _merge(existing: List[str], extra: List[str]) -> List[str]:
    merged = list(existing)
    for item in extra:
        if item not in merged:
            merged.append(item)
    return merged
