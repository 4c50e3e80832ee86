"""String normalization for natural keys of species and communities."""

from __future__ import annotations

import re
import unicodedata
from pathlib import Path
from typing import Dict, List, Sequence

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator

from etnopapers.utils.config import NormalizationConfig


class NormalizationResult(BaseModel):
    """Result of a normalization call."""

    model_config = ConfigDict(frozen=True)

    original: str
    normalized: str
    display: str


class NormalizationRules(BaseModel):
    """Normalization rule set loaded from YAML."""

    model_config = ConfigDict(extra="ignore")

    unicode_form: str = "NFKC"
    strip_accents: bool = False
    punctuation_replacements: Dict[str, str] = Field(
        default_factory=lambda: {
            "“": '"',
            "”": '"',
            "‘": "'",
            "’": "'",
            "–": "-",
            "—": "-",
            "−": "-",
            "×": "x",
        }
    )
    strip_characters: List[str] = Field(default_factory=lambda: ["​", "﻿", "\xad"])
    strip_articles: List[str] = Field(default_factory=lambda: ["the", "a", "an"])
    keep_symbols: List[str] = Field(default_factory=lambda: ["-", "'", "."])
    # Authority abbreviations trailing a binomial ("Quercus robur L.") are not part of the key.
    species_authority_pattern: str = r"\s+(?:[A-Z][a-z]*\.?\s*)+$"
    # Hybrid markers are kept as a plain "x" between genus and epithet.
    species_min_words: int = 2

    @classmethod
    def from_yaml(cls, rules_file: Path | None) -> NormalizationRules:
        """Load rules from YAML, merging with defaults."""
        base = cls()

        if rules_file is None or not rules_file.exists():
            return base

        loaded = yaml.safe_load(rules_file.read_text(encoding="utf-8")) or {}
        if not isinstance(loaded, dict):
            raise ValueError("Normalization rules must be a mapping/dict.")

        merged = base.model_dump()
        for key, value in loaded.items():
            if key not in merged:
                continue
            if isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value

        return cls(**merged)

    @field_validator("unicode_form")
    @classmethod
    def _validate_unicode_form(cls, value: str) -> str:
        valid_forms = {"NFC", "NFD", "NFKC", "NFKD"}
        upper_value = value.upper()
        if upper_value not in valid_forms:
            raise ValueError(f"Invalid unicode_form '{value}'. Must be one of {valid_forms}.")
        return upper_value


class StringNormalizer:
    """Build deterministic natural keys for plant species and communities.

    Keys are case-insensitive and whitespace-collapsed so that independent
    extractions of the same entity resolve to the same identity.
    """

    def __init__(
        self,
        config: NormalizationConfig | None = None,
        rules_path: str | Path | None = None,
        rules: NormalizationRules | None = None,
    ) -> None:
        self.config = config or NormalizationConfig()

        rules_file = Path(rules_path) if rules_path else Path(self.config.rules_file)
        self.rules = rules or NormalizationRules.from_yaml(rules_file)

        self._punctuation_translation = {
            ord(src): dest for src, dest in self.rules.punctuation_replacements.items()
        }
        allowed_symbols = "".join(re.escape(sym) for sym in self.rules.keep_symbols)
        self._unwanted_punct_re = re.compile(rf"[^\w\s{allowed_symbols}]")
        self._whitespace_re = re.compile(r"\s+")
        self._authority_re = re.compile(self.rules.species_authority_pattern)

        if self.rules.strip_articles:
            articles_pattern = "|".join(re.escape(a) for a in self.rules.strip_articles)
            self._articles_re = re.compile(rf"^({articles_pattern})\s+", re.IGNORECASE)
        else:
            self._articles_re = None

        logger.debug("Loaded normalization rules from {}", rules_file)

    def normalize(self, text: str | None) -> NormalizationResult:
        """Normalize a single string."""
        if text is None:
            return NormalizationResult(original="", normalized="", display="")

        working = text.strip()
        if not working:
            return NormalizationResult(original=text, normalized="", display="")

        display = self._apply_rules(working)
        return NormalizationResult(original=text, normalized=display.lower(), display=display)

    def normalize_batch(self, texts: Sequence[str | None]) -> List[NormalizationResult]:
        """Normalize a batch of strings."""
        return [self.normalize(text) for text in texts]

    def species_key(self, scientific_name: str | None) -> str:
        """Natural key for a plant species: lower-cased binomial, whitespace collapsed.

        Returns an empty string when the name does not look like a binomial.
        """
        display = self.normalize(scientific_name).display
        display = self._authority_re.sub("", display) if display.count(" ") >= 2 else display
        key = display.lower().strip(" .")
        if len(key.split(" ")) < self.rules.species_min_words:
            return ""
        return key

    def species_display(self, scientific_name: str) -> str:
        """Display form of a scientific name: capitalized genus, lower-case epithets."""
        key = self.species_key(scientific_name)
        if not key:
            return self.normalize(scientific_name).display
        genus, _, rest = key.partition(" ")
        return f"{genus.capitalize()} {rest}"

    def community_key(self, name: str | None, region: str | None = None) -> str:
        """Natural key for a community: normalized name plus optional region qualifier."""
        name_key = self._strip_leading_articles(self.normalize(name).display).lower()
        if not name_key:
            return ""
        region_key = self._strip_leading_articles(self.normalize(region).display).lower()
        return f"{name_key}|{region_key}" if region_key else name_key

    def _apply_rules(self, text: str) -> str:
        text = unicodedata.normalize(self.rules.unicode_form, text)
        for ch in self.rules.strip_characters:
            text = text.replace(ch, "")
        if self._punctuation_translation:
            text = text.translate(self._punctuation_translation)
        if self.rules.strip_accents:
            text = "".join(
                ch for ch in unicodedata.normalize("NFD", text) if not unicodedata.combining(ch)
            )
        text = self._unwanted_punct_re.sub(" ", text)
        text = self._whitespace_re.sub(" ", text)
        return text.strip()

    def _strip_leading_articles(self, text: str) -> str:
        if not self._articles_re:
            return text

        while True:
            new_text = self._articles_re.sub("", text)
            if new_text == text or not new_text.strip():
                break
            text = new_text
        return text
