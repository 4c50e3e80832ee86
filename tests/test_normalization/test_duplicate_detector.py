from __future__ import annotations

from etnopapers.normalization.duplicate_detector import DuplicateDetector
from etnopapers.normalization.string_normalizer import NormalizationRules, StringNormalizer
from etnopapers.storage.schemas import ArticleRecord, Community, PlantSpecies
from etnopapers.utils.config import NormalizationConfig


def _record(excerpt: str, species: str | None = "quercus robur", community: str | None = "sami"):
    return ArticleRecord(
        document_id="doc",
        species=[PlantSpecies(scientific_name=species, key=species)] if species else [],
        communities=[Community(name=community, key=community)] if community else [],
        excerpts=[excerpt],
    )


def _detector(**overrides) -> DuplicateDetector:
    config = NormalizationConfig(**overrides)
    return DuplicateDetector(config=config, normalizer=StringNormalizer(rules=NormalizationRules()))


def test_near_identical_record_is_flagged() -> None:
    detector = _detector()
    existing = _record("Quercus robur was used by the Sami community for tanning.")
    new = _record("Quercus robur was used by the Sami community for tanning hides.")

    matches = detector.find_duplicates(new, [existing])

    assert len(matches) == 1
    assert matches[0].existing_id == existing.id
    assert matches[0].shared_species == ["quercus robur"]
    assert matches[0].score >= detector.threshold


def test_unrelated_record_is_not_flagged() -> None:
    detector = _detector()
    existing = _record("Quercus robur was used by the Sami community for tanning.")
    new = _record(
        "Achillea millefolium leaves were applied to wounds.",
        species="achillea millefolium",
        community=None,
    )

    assert detector.find_duplicates(new, [existing]) == []


def test_record_is_not_compared_with_itself() -> None:
    detector = _detector()
    record = _record("Quercus robur was used by the Sami community for tanning.")

    assert detector.find_duplicates(record, [record]) == []


def test_detection_can_be_disabled() -> None:
    detector = _detector(enable_duplicate_detection=False)
    existing = _record("Quercus robur was used by the Sami community for tanning.")
    new = _record("Quercus robur was used by the Sami community for tanning.")

    assert detector.find_duplicates(new, [existing]) == []
