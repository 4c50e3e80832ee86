"""Tests for RecordBuilder grouping, entity reuse and provenance."""

from __future__ import annotations

from unittest.mock import MagicMock

from etnopapers.extraction.models import (
    CandidateField,
    CandidateLocation,
    CandidateMatch,
    DocumentMetadata,
    IssueKind,
)
from etnopapers.extraction.record_builder import RecordBuilder
from etnopapers.normalization.string_normalizer import NormalizationRules, StringNormalizer
from etnopapers.storage.schemas import EntityKind, PlantSpecies
from etnopapers.utils.config import ExtractionConfig

SENTENCE = "Quercus robur was used by the Sami community for tanning."


def _candidate(
    field: CandidateField,
    text: str,
    start: int,
    excerpt: str = SENTENCE,
    confidence: float = 0.9,
    **attributes,
) -> CandidateMatch:
    return CandidateMatch(
        field=field,
        text=text,
        location=CandidateLocation(start=start, end=start + len(text), page=1),
        excerpt=excerpt,
        confidence=confidence,
        attributes=attributes,
    )


def _builder(registry=None, **config) -> RecordBuilder:
    return RecordBuilder(
        registry=registry,
        normalizer=StringNormalizer(rules=NormalizationRules()),
        config=ExtractionConfig(**config),
    )


def test_builds_one_record_per_excerpt() -> None:
    other = "Salix alba was used for baskets."
    candidates = [
        _candidate(CandidateField.SPECIES, "Quercus robur", 0),
        _candidate(CandidateField.COMMUNITY, "Sami", 30),
        _candidate(CandidateField.USE, "tanning", 49, confidence=0.6),
        _candidate(CandidateField.SPECIES, "Salix alba", 200, excerpt=other),
    ]

    result = _builder().build(candidates, "doc-1")

    assert len(result.records) == 2
    first, second = result.records
    assert first.species_keys == ["quercus robur"]
    assert first.community_keys == ["sami"]
    assert first.uses == ["tanning"]
    assert first.excerpts == [SENTENCE]
    assert second.species_keys == ["salix alba"]
    assert second.excerpts == [other]
    assert len(result.metadata) == 2
    assert result.issues == []


def test_nearby_use_joins_previous_group() -> None:
    follow_up = "It was also used for dyeing."
    candidates = [
        _candidate(CandidateField.SPECIES, "Quercus robur", 0),
        _candidate(CandidateField.USE, "dyeing", len(SENTENCE) + 10, excerpt=follow_up),
    ]

    result = _builder(proximity_chars=100).build(candidates, "doc-1")

    assert len(result.records) == 1
    assert result.records[0].uses == ["dyeing"]
    assert result.records[0].excerpts == [SENTENCE, follow_up]


def test_distant_use_is_reported_without_entity() -> None:
    follow_up = "Later it was used for dyeing."
    candidates = [
        _candidate(CandidateField.SPECIES, "Quercus robur", 0),
        _candidate(CandidateField.USE, "dyeing", 500, excerpt=follow_up),
    ]

    result = _builder(proximity_chars=10).build(candidates, "doc-1")

    assert len(result.records) == 1
    assert [issue.kind for issue in result.issues] == [IssueKind.NO_ENTITY_MATCHED]
    assert result.issues[0].excerpt == follow_up


def test_nearby_community_completes_species_group() -> None:
    species_only = "Quercus robur subsp. robur grows on the slopes."
    community_only = "The Sami community used it for tanning."
    offset = len(species_only) + 1
    candidates = [
        _candidate(CandidateField.SPECIES, "Quercus robur", 0, excerpt=species_only),
        _candidate(CandidateField.COMMUNITY, "Sami", offset + 4, excerpt=community_only),
        _candidate(CandidateField.USE, "tanning", offset + 31, excerpt=community_only),
    ]

    result = _builder(proximity_chars=40).build(candidates, "doc-1")

    assert len(result.records) == 1
    record = result.records[0]
    assert record.species_keys == ["quercus robur"]
    assert record.community_keys == ["sami"]
    assert record.uses == ["tanning"]
    assert record.excerpts == [species_only, community_only]


def test_nearby_species_does_not_join_a_complete_group() -> None:
    other = "Salix alba was used for baskets."
    candidates = [
        _candidate(CandidateField.SPECIES, "Quercus robur", 0),
        _candidate(CandidateField.COMMUNITY, "Sami", 30),
        _candidate(CandidateField.SPECIES, "Salix alba", len(SENTENCE) + 1, excerpt=other),
    ]

    result = _builder(proximity_chars=40).build(candidates, "doc-1")

    assert [r.species_keys for r in result.records] == [["quercus robur"], ["salix alba"]]


def test_low_confidence_fields_are_flagged() -> None:
    candidates = [
        _candidate(CandidateField.SPECIES, "Quercus robur", 0),
        _candidate(CandidateField.USE, "tanning", 49, confidence=0.3),
    ]

    result = _builder().build(candidates, "doc-1")

    metadata = result.metadata[0]
    assert metadata.low_confidence_fields == ["uses"]
    assert metadata.field_confidence == {"species": 0.9, "uses": 0.3}
    assert result.records[0].field_confidence == metadata.field_confidence


def test_field_confidence_takes_weakest_candidate() -> None:
    candidates = [
        _candidate(CandidateField.SPECIES, "Quercus robur", 0, confidence=0.9),
        _candidate(CandidateField.SPECIES, "Salix alba", 20, confidence=0.55),
    ]

    result = _builder().build(candidates, "doc-1")

    assert result.records[0].field_confidence["species"] == 0.55
    assert result.metadata[0].low_confidence_fields == []


def test_vernacular_and_uses_merge_into_first_species() -> None:
    candidates = [
        _candidate(CandidateField.SPECIES, "Achillea millefolium", 0),
        _candidate(CandidateField.VERNACULAR, "yarrow", 30, confidence=0.7),
        _candidate(CandidateField.USE, "wounds", 60, confidence=0.6),
    ]

    record = _builder().build(candidates, "doc-1").records[0]

    assert record.species[0].common_names == ["yarrow"]
    assert record.species[0].use_types == ["wounds"]


def test_existing_entities_are_reused() -> None:
    known = PlantSpecies(scientific_name="Quercus robur", key="quercus robur")
    registry = MagicMock()
    registry.find_entity.side_effect = lambda kind, key: (
        known if kind == EntityKind.SPECIES and key == "quercus robur" else None
    )

    result = _builder(registry=registry).build(
        [_candidate(CandidateField.SPECIES, "Quercus robur", 0)], "doc-1"
    )

    assert result.records[0].species[0].id == known.id


def test_entities_are_shared_across_groups_within_a_build() -> None:
    other = "Quercus robur bark was also boiled."
    candidates = [
        _candidate(CandidateField.SPECIES, "Quercus robur", 0),
        _candidate(CandidateField.SPECIES, "Quercus robur", 300, excerpt=other),
    ]

    result = _builder().build(candidates, "doc-1")

    first, second = result.records
    assert first.species[0].id == second.species[0].id


def test_unnormalizable_species_is_recorded_as_failed_field() -> None:
    candidates = [
        _candidate(CandidateField.SPECIES, "Quercus", 0),
        _candidate(CandidateField.COMMUNITY, "Sami", 30),
    ]

    result = _builder().build(candidates, "doc-1")

    assert result.records[0].species == []
    assert result.metadata[0].failed_fields == ["species:Quercus"]


def test_group_without_entities_yields_issue() -> None:
    candidates = [_candidate(CandidateField.USE, "tanning", 49)]

    result = _builder().build(candidates, "doc-1")

    assert result.records == []
    assert result.issues[0].kind == IssueKind.NO_ENTITY_MATCHED
    assert result.issues[0].details["document_id"] == "doc-1"


def test_failing_group_does_not_sink_the_document() -> None:
    other = "Salix alba was used for baskets."
    registry = MagicMock()

    def _find(kind, key):
        if key == "quercus robur":
            raise RuntimeError("registry unavailable")
        return None

    registry.find_entity.side_effect = _find
    candidates = [
        _candidate(CandidateField.SPECIES, "Quercus robur", 0),
        _candidate(CandidateField.SPECIES, "Salix alba", 200, excerpt=other),
    ]

    result = _builder(registry=registry).build(candidates, "doc-1")

    assert [r.species_keys for r in result.records] == [["salix alba"]]
    assert [issue.kind for issue in result.issues] == [IssueKind.BUILD_FAILED]
    assert "registry unavailable" in result.issues[0].message


def test_metadata_records_extractor_and_fingerprint() -> None:
    builder = _builder()
    candidates = [_candidate(CandidateField.SPECIES, "Quercus robur", 0)]

    first = builder.build(candidates, "doc-1", extractor_name="patterns", extractor_version="2.0")
    second = builder.build(candidates, "doc-1")

    metadata = first.metadata[0]
    assert metadata.extractor_name == "patterns"
    assert metadata.extractor_version == "2.0"
    assert metadata.candidate_fingerprint
    assert metadata.candidate_fingerprint == second.metadata[0].candidate_fingerprint
    assert first.records[0].id != second.records[0].id


def test_article_metadata_is_copied_onto_each_record() -> None:
    other = "Salix alba was used for baskets."
    candidates = [
        _candidate(CandidateField.SPECIES, "Quercus robur", 0),
        _candidate(CandidateField.SPECIES, "Salix alba", 200, excerpt=other),
    ]
    article = DocumentMetadata(title="Tanning plants", authors=["AIKIO, A."], year=2011)

    result = _builder().build(candidates, "doc-1", document_metadata=article)

    assert len(result.records) == 2
    for record in result.records:
        assert record.title == "Tanning plants"
        assert record.authors == ["AIKIO, A."]
        assert record.year == 2011
        assert record.doi is None
