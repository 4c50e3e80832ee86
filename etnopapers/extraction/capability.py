"""Pluggable extraction capabilities.

A capability turns raw document bytes into text and text into raw
:class:`CandidateMatch` values. Capabilities must be deterministic for a given
``version``: the same text always yields the same candidates in the same order.
"""

from __future__ import annotations

import bisect
import io
import re
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Tuple

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pypdf import PdfReader

from etnopapers.extraction.models import (
    CandidateField,
    CandidateLocation,
    CandidateMatch,
    DocumentMetadata,
)
from etnopapers.utils.config import ExtractionConfig
from etnopapers.utils.errors import ConfigurationError, ExtractionUnavailable

PDF_MAGIC = b"%PDF"
PAGE_SEPARATOR = "\f"


class ExtractionCapability(Protocol):
    """Contract for OCR/text-recognition and candidate finding backends."""

    name: str
    version: str

    def extract_text(self, document_bytes: bytes) -> str: ...

    def find_candidates(self, text: str) -> Iterator[CandidateMatch]: ...

    def extract_metadata(self, text: str) -> DocumentMetadata: ...


class PatternGroup(BaseModel):
    """One group of regex patterns emitting candidates for a single field."""

    model_config = ConfigDict(extra="ignore")

    field: CandidateField
    patterns: List[str]
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    ignore_case: bool = False
    # Matches whose first or last word is listed here are dropped.
    stop_first_words: List[str] = Field(default_factory=list)
    stop_last_words: List[str] = Field(default_factory=list)
    max_length: int = 80


def default_pattern_groups() -> List[PatternGroup]:
    """Built-in patterns used when no patterns file is configured."""
    return [
        PatternGroup(
            field=CandidateField.SPECIES,
            patterns=[
                r"\b(?P<value>[A-Z][a-z]{2,} (?:x )?[a-z]{3,}(?: (?:subsp|var)\. [a-z]{3,})?)\b",
            ],
            confidence=0.9,
            stop_first_words=[
                "The", "This", "These", "That", "Those", "In", "It", "Its", "Several",
                "Many", "Some", "Most", "Both", "Each", "All", "Other", "Such", "Their",
                "They", "Our", "We", "Among", "During", "After", "Before", "When", "Where",
                "While", "Although", "However", "Local", "Traditional", "Indigenous", "Leaves",
                "Roots", "Bark", "Seeds", "Fruits", "Plants", "Informants",
            ],
            stop_last_words=[
                "was", "were", "are", "has", "have", "had", "been", "can", "could", "may",
                "might", "will", "would", "also", "and", "for", "from", "with", "that",
                "this", "which", "used", "community", "communities", "people", "peoples",
                "tribe", "tribes", "village", "villages", "species", "plant", "plants",
                "leaves", "roots", "bark", "known", "called",
            ],
        ),
        PatternGroup(
            field=CandidateField.COMMUNITY,
            patterns=[
                r"(?:\b[Tt]he\s+)?\b(?P<value>[A-Z][\w'-]+(?:\s+[A-Z][\w'-]+)*)\s+"
                r"(?:community|communities|people|peoples|tribe|villagers)"
                r"(?:\s+(?:of|in|from)\s+(?P<region>[A-Z][\w'-]+(?:\s+[A-Z][\w'-]+)*))?",
            ],
            confidence=0.85,
            stop_first_words=[
                "The", "A", "An", "These", "Those", "Their", "Its", "Local", "Indigenous",
                "Rural", "This", "Each", "Every", "Whole",
            ],
        ),
        PatternGroup(
            field=CandidateField.USE,
            patterns=[
                r"\b(?:[Uu]sed|[Ee]mployed|[Uu]tili[sz]ed)\s+(?:by\s+[^.;\n]+?\s+)?"
                r"(?:for|as|to\s+treat|against)\s+(?P<value>[a-z][a-z\s-]{2,40}?)"
                r"(?=\s*(?:[.,;\n]|$))",
            ],
            confidence=0.6,
        ),
        PatternGroup(
            field=CandidateField.VERNACULAR,
            patterns=[
                r"\b(?:known\s+(?:locally\s+)?as|called)\s+[\"'“]?"
                r"(?P<value>[A-Za-z][\w' -]{1,40}?)"
                r"[\"'”]?(?=\s*(?:[.,;)\n]|$))",
            ],
            confidence=0.7,
        ),
    ]


def load_pattern_groups(patterns_path: str | Path | None) -> List[PatternGroup]:
    """Load pattern groups from YAML; missing file means built-in defaults."""
    if patterns_path is None:
        return default_pattern_groups()

    path = Path(patterns_path)
    if not path.exists():
        logger.warning("Patterns file {} not found, using built-in patterns", path)
        return default_pattern_groups()

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Patterns file root must be a mapping/dict: {path}")

    groups = [PatternGroup(**raw) for raw in data.get("pattern_groups", [])]
    if not groups:
        logger.warning("Patterns file {} defines no pattern groups, using built-in patterns", path)
        return default_pattern_groups()
    return groups


_SENTENCE_END_RE = re.compile(r"[.!?](?=\s|$)|\f|\n\s*\n")
_TRAILING_TOKEN_RE = re.compile(r"(?<![\w.])([A-Za-z](?:[A-Za-z.]*[A-Za-z])?)$")
# Periods after these never end a sentence.
_ABBREVIATIONS = frozenset(
    {"subsp", "ssp", "var", "cf", "aff", "sp", "spp", "f", "ca", "al", "e.g", "i.e", "fig", "vs"}
)
_WHITESPACE_RE = re.compile(r"\s+")

# Article header fields are only looked for near the start of the text.
_HEADER_CHARS = 3000
_HEADER_FIELD_RE = re.compile(
    r"^\s*(?P<label>title|authors?|year|doi)\s*:\s*(?P<value>.+)$", re.IGNORECASE | re.MULTILINE
)
_YEAR_RE = re.compile(r"\b(1[89]\d{2}|20\d{2})\b")
_DOI_RE = re.compile(r'\b10\.\d{4,9}/[^\s"<>]+')


class PatternCapability:
    """Regex capability: pypdf/UTF-8 decoding plus YAML-configured pattern groups."""

    name = "patterns"
    version = "1.0"

    def __init__(
        self,
        config: ExtractionConfig | None = None,
        patterns_path: str | Path | None = None,
        groups: List[PatternGroup] | None = None,
    ) -> None:
        self.config = config or ExtractionConfig()
        if groups is None:
            groups = load_pattern_groups(patterns_path or self.config.patterns_file)
        self.groups = groups
        self._compiled: List[Tuple[PatternGroup, List[re.Pattern[str]]]] = []
        for group in self.groups:
            flags = re.IGNORECASE if group.ignore_case else 0
            try:
                compiled = [re.compile(p, flags) for p in group.patterns]
            except re.error as exc:
                raise ConfigurationError(
                    f"Invalid {group.field.value} pattern: {exc}", {"field": group.field.value}
                ) from exc
            self._compiled.append((group, compiled))

        logger.info(
            "Initialized PatternCapability with {} pattern groups",
            len(self.groups),
            version=self.version,
        )

    def extract_text(self, document_bytes: bytes) -> str:
        """Decode a PDF (pages joined by form feeds) or UTF-8 text document."""
        return decode_document(document_bytes, self.config.max_document_bytes)

    def extract_metadata(self, text: str) -> DocumentMetadata:
        """Labelled header fields (Title:, Authors:, Year:, DOI:) plus any bare DOI."""
        header = text[:_HEADER_CHARS]
        labelled = {
            m.group("label").lower(): _WHITESPACE_RE.sub(" ", m.group("value")).strip()
            for m in _HEADER_FIELD_RE.finditer(header)
        }

        year = None
        year_match = _YEAR_RE.search(labelled.get("year", ""))
        if year_match:
            year = int(year_match.group(0))

        doi = labelled.get("doi")
        doi_match = _DOI_RE.search(doi or text)
        doi = doi_match.group(0).rstrip(".,;)") if doi_match else None

        authors_field = labelled.get("authors") or labelled.get("author") or ""
        authors = [a.strip() for a in authors_field.split(";") if a.strip()]

        return DocumentMetadata(
            title=labelled.get("title") or None, authors=authors, year=year, doi=doi
        )

    def find_candidates(self, text: str) -> Iterator[CandidateMatch]:
        """Yield candidates ordered by position, entity fields first at equal offsets."""
        sentences = sentence_spans(text)
        starts = [start for start, _ in sentences]
        page_breaks = [m.start() for m in re.finditer(PAGE_SEPARATOR, text)]

        found: List[CandidateMatch] = []
        community_spans: List[Tuple[int, int]] = []
        deferred_species: List[CandidateMatch] = []

        for group, patterns in self._compiled:
            for pattern in patterns:
                for match in pattern.finditer(text):
                    candidate = self._to_candidate(
                        group, match, text, sentences, starts, page_breaks
                    )
                    if candidate is None:
                        continue
                    if group.field == CandidateField.SPECIES:
                        deferred_species.append(candidate)
                        continue
                    if group.field == CandidateField.COMMUNITY:
                        community_spans.append((candidate.location.start, candidate.location.end))
                    found.append(candidate)

        for candidate in deferred_species:
            if not _overlaps(candidate.location, community_spans):
                found.append(candidate)

        field_order = {field: idx for idx, field in enumerate(CandidateField)}
        seen: set[Tuple[CandidateField, int, int]] = set()
        for candidate in sorted(
            found, key=lambda c: (c.location.start, field_order[c.field], c.location.end)
        ):
            key = (candidate.field, candidate.location.start, candidate.location.end)
            if key in seen:
                continue
            seen.add(key)
            yield candidate

    def _to_candidate(
        self,
        group: PatternGroup,
        match: re.Match[str],
        text: str,
        sentences: List[Tuple[int, int]],
        starts: List[int],
        page_breaks: List[int],
    ) -> Optional[CandidateMatch]:
        if "value" in match.re.groupindex:
            value = match.group("value")
            start, end = match.span("value")
        else:
            value = match.group(0)
            start, end = match.span(0)
        if not value:
            return None

        value = _WHITESPACE_RE.sub(" ", value).strip()
        words = value.split(" ")
        if not value or len(value) > group.max_length:
            return None
        if words[0] in group.stop_first_words or words[-1] in group.stop_last_words:
            return None

        attributes: Dict[str, str] = {}
        if "region" in match.re.groupindex and match.group("region"):
            attributes["region"] = _WHITESPACE_RE.sub(" ", match.group("region")).strip()

        idx = max(bisect.bisect_right(starts, start) - 1, 0)
        s_start, s_end = sentences[idx] if sentences else (0, len(text))
        excerpt = _WHITESPACE_RE.sub(" ", text[s_start:s_end]).strip()

        return CandidateMatch(
            field=group.field,
            text=value,
            location=CandidateLocation(
                start=start, end=end, page=bisect.bisect_right(page_breaks, start) + 1
            ),
            excerpt=excerpt,
            confidence=group.confidence,
            attributes=attributes,
        )


def decode_document(document_bytes: bytes, max_document_bytes: int) -> str:
    """Decode a PDF (pages joined by form feeds) or UTF-8 text document.

    Raises:
        ExtractionUnavailable: If the document is empty, too large, corrupt or
            in an unsupported format
    """
    if not document_bytes or not document_bytes.strip():
        raise ExtractionUnavailable("Document is empty")
    if len(document_bytes) > max_document_bytes:
        raise ExtractionUnavailable(
            "Document exceeds maximum size",
            {"size": len(document_bytes), "max_size": max_document_bytes},
        )

    if document_bytes.startswith(PDF_MAGIC):
        text = _extract_pdf_text(document_bytes)
    else:
        try:
            text = document_bytes.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ExtractionUnavailable(
                "Unsupported document format: not a PDF and not UTF-8 text"
            ) from exc

    if not text.replace(PAGE_SEPARATOR, "").strip():
        raise ExtractionUnavailable("Document contains no extractable text")
    return text


def _extract_pdf_text(document_bytes: bytes) -> str:
    try:
        reader = PdfReader(io.BytesIO(document_bytes))
        pages = [page.extract_text() or "" for page in reader.pages]
    except Exception as exc:  # noqa: BLE001 - pypdf raises a wide range of errors
        raise ExtractionUnavailable(f"Corrupt or unreadable PDF: {exc}") from exc
    return PAGE_SEPARATOR.join(pages)


def sentence_spans(text: str) -> List[Tuple[int, int]]:
    """Split text into (start, end) sentence spans, skipping abbreviation periods."""
    spans: List[Tuple[int, int]] = []
    start = 0
    for match in _SENTENCE_END_RE.finditer(text):
        if match.group() == "." and _is_abbreviation(text, match.start()):
            continue
        end = match.end()
        if text[start:end].strip():
            spans.append((start, end))
        start = end
    if text[start:].strip():
        spans.append((start, len(text)))
    return spans


def _is_abbreviation(text: str, period: int) -> bool:
    """True for author initials ("L.") and taxonomic or Latin abbreviations."""
    match = _TRAILING_TOKEN_RE.search(text[max(0, period - 16) : period])
    if match is None:
        return False
    token = match.group(1)
    if len(token) == 1 and token.isupper():
        return True
    return token.lower() in _ABBREVIATIONS


def _overlaps(location: CandidateLocation, spans: List[Tuple[int, int]]) -> bool:
    return any(location.start < end and start < location.end for start, end in spans)


CapabilityFactory = Callable[[ExtractionConfig], ExtractionCapability]


def _create_llm_capability(config: ExtractionConfig) -> ExtractionCapability:
    # Imported here; llm_capability depends on this module.
    from etnopapers.extraction.llm_capability import LLMCapability

    return LLMCapability(config=config)


_REGISTRY: Dict[str, CapabilityFactory] = {
    "patterns": lambda config: PatternCapability(config=config),
    "llm": _create_llm_capability,
}


def register_capability(name: str, factory: CapabilityFactory) -> None:
    """Register a capability factory under ``name`` (overrides an existing entry)."""
    _REGISTRY[name] = factory
    logger.debug("Registered extraction capability {}", name)


def create_capability(config: ExtractionConfig | None = None) -> ExtractionCapability:
    """Instantiate the capability named in the extraction configuration."""
    config = config or ExtractionConfig()
    try:
        factory = _REGISTRY[config.capability]
    except KeyError as exc:
        raise ConfigurationError(
            f"Unknown extraction capability: {config.capability}",
            {"available": sorted(_REGISTRY)},
        ) from exc
    return factory(config)
