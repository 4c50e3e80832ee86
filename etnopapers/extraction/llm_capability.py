"""Language-model extraction capability.

Sends the decoded document to an OpenAI-compatible or Anthropic chat model
with a YAML-configured prompt and turns the structured JSON answer into
located :class:`CandidateMatch` values plus article metadata. Answers are
cached per text so that repeated iteration over one document yields the same
candidates and costs a single request.
"""

from __future__ import annotations

import bisect
import hashlib
import json
import re
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import yaml
from loguru import logger

from etnopapers.extraction.capability import (
    PAGE_SEPARATOR,
    decode_document,
    sentence_spans,
)
from etnopapers.extraction.models import (
    CandidateField,
    CandidateLocation,
    CandidateMatch,
    DocumentMetadata,
)
from etnopapers.utils.config import ExtractionConfig
from etnopapers.utils.errors import ConfigurationError, ExtractionUnavailable
from etnopapers.utils.llm_client import create_openai_client

PROMPT_KEY = "ethnobotany_extraction"
_CACHE_SIZE = 32
_WHITESPACE_RE = re.compile(r"\s+")

# English keys first, then the Portuguese keys of the original prompt.
_KEYS = {
    "title": ("title", "titulo"),
    "authors": ("authors", "autores"),
    "year": ("year", "ano"),
    "doi": ("doi", "DOI"),
    "abstract": ("abstract", "resumo"),
    "communities": ("communities", "comunidades"),
    "name": ("name", "nome"),
    "region": ("region", "local"),
    "municipality": ("municipality", "municipio"),
    "state": ("state", "estado"),
    "plants": ("plants", "plantas"),
    "scientific_names": ("scientific_names", "nomeCientifico"),
    "vernacular_names": ("vernacular_names", "nomeVernacular"),
    "uses": ("uses", "tipoUso"),
}


class LLMCapability:
    """LLM capability with provider switch, retries and a per-text answer cache."""

    name = "llm"

    def __init__(
        self,
        config: ExtractionConfig | None = None,
        prompts_path: str | Path | None = None,
        *,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.config = config or ExtractionConfig()
        self.llm = self.config.llm
        self.version = f"1.0+{self.llm.provider}:{self.llm.model}"
        self.prompts_path = Path(prompts_path or self.llm.prompts_file)
        self.prompts = self._load_prompts(self.prompts_path)
        self._sleep = sleep_fn or time.sleep
        self._answers: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._lock = threading.Lock()

        logger.info(
            "Initialized LLMCapability",
            provider=self.llm.provider,
            model=self.llm.model,
            prompts=str(self.prompts_path),
        )

    # -----------------------
    # Capability contract
    # -----------------------
    def extract_text(self, document_bytes: bytes) -> str:
        return decode_document(document_bytes, self.config.max_document_bytes)

    def find_candidates(self, text: str) -> Iterator[CandidateMatch]:
        """Yield located candidates for every plant observation in the answer.

        Names the model reports but that cannot be found in ``text`` are
        dropped; every candidate of one observation carries the sentence of
        its first located species as excerpt.
        """
        answer = self._answer_for(text)
        sentences = sentence_spans(text)
        starts = [start for start, _ in sentences]
        page_breaks = [m.start() for m in re.finditer(PAGE_SEPARATOR, text)]

        def candidate(
            field: CandidateField,
            value: str,
            span: Tuple[int, int],
            excerpt: str,
            attributes: Optional[Dict[str, str]] = None,
        ) -> CandidateMatch:
            return CandidateMatch(
                field=field,
                text=value,
                location=CandidateLocation(
                    start=span[0],
                    end=span[1],
                    page=bisect.bisect_right(page_breaks, span[0]) + 1,
                ),
                excerpt=excerpt,
                confidence=self.llm.confidence,
                attributes=attributes or {},
            )

        found: List[CandidateMatch] = []
        for community in _items(answer, "communities"):
            community_name = _text(community, "name")
            region = _region(community)
            community_span = _locate(text, community_name) if community_name else None

            for plant in _items(community, "plants"):
                species_spans = [
                    (name, span)
                    for name in _strings(plant, "scientific_names")
                    for span in [_locate(text, name)]
                    if span is not None
                ]
                if not species_spans:
                    logger.debug(
                        "Skipping plant not found in text",
                        names=_strings(plant, "scientific_names"),
                    )
                    continue

                anchor = species_spans[0][1]
                idx = max(bisect.bisect_right(starts, anchor[0]) - 1, 0)
                s_start, s_end = sentences[idx] if sentences else (0, len(text))
                excerpt = _WHITESPACE_RE.sub(" ", text[s_start:s_end]).strip()

                for name, span in species_spans:
                    found.append(candidate(CandidateField.SPECIES, name, span, excerpt))
                if community_name:
                    found.append(
                        candidate(
                            CandidateField.COMMUNITY,
                            community_name,
                            community_span or anchor,
                            excerpt,
                            {"region": region} if region else None,
                        )
                    )
                for use in _strings(plant, "uses"):
                    found.append(
                        candidate(
                            CandidateField.USE, use, _locate(text, use) or anchor, excerpt
                        )
                    )
                for vernacular in _strings(plant, "vernacular_names"):
                    found.append(
                        candidate(
                            CandidateField.VERNACULAR,
                            vernacular,
                            _locate(text, vernacular) or anchor,
                            excerpt,
                        )
                    )

        field_order = {field: idx for idx, field in enumerate(CandidateField)}
        seen: set[Tuple[CandidateField, str, str]] = set()
        for match in sorted(
            found, key=lambda c: (c.location.start, field_order[c.field], c.location.end)
        ):
            key = (match.field, match.text.lower(), match.excerpt)
            if key in seen:
                continue
            seen.add(key)
            yield match

    def extract_metadata(self, text: str) -> DocumentMetadata:
        """Article metadata from the (cached) model answer for ``text``."""
        answer = self._answer_for(text)

        year = None
        raw_year = _first(answer, "year")
        match = re.search(r"\d{4}", str(raw_year)) if raw_year is not None else None
        if match:
            year = int(match.group(0))

        return DocumentMetadata(
            title=_text(answer, "title") or None,
            authors=_strings(answer, "authors"),
            year=year,
            doi=_text(answer, "doi") or None,
            abstract=_text(answer, "abstract") or None,
        )

    # -----------------------
    # Answer cache
    # -----------------------
    def _answer_for(self, text: str) -> Dict[str, Any]:
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
        with self._lock:
            cached = self._answers.get(digest)
            if cached is not None:
                self._answers.move_to_end(digest)
                return cached

        system, user = self._render_prompt(PROMPT_KEY, {"document_text": self._truncate(text)})
        try:
            raw_response = self._call_llm(system=system, user=user)
        except Exception as exc:  # noqa: BLE001 - provider errors vary by SDK
            raise ExtractionUnavailable(
                f"Language model request failed: {exc}",
                {"provider": self.llm.provider, "model": self.llm.model},
            ) from exc

        data = self._extract_json(raw_response)
        if not isinstance(data, dict):
            raise ExtractionUnavailable(
                "Language model answer is not a JSON object",
                {"provider": self.llm.provider, "model": self.llm.model},
            )

        with self._lock:
            self._answers[digest] = data
            while len(self._answers) > _CACHE_SIZE:
                self._answers.popitem(last=False)
        return data

    def _truncate(self, text: str) -> str:
        if len(text) <= self.llm.max_input_chars:
            return text
        logger.warning(
            "Document text truncated for the language model",
            chars=len(text),
            max_chars=self.llm.max_input_chars,
        )
        return text[: self.llm.max_input_chars]

    # -----------------------
    # Prompt handling
    # -----------------------
    def _load_prompts(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise ConfigurationError(f"Extraction prompt template not found: {path}")
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Prompt template root must be a mapping/dict: {path}")
        if PROMPT_KEY not in data:
            raise ConfigurationError(f"Prompt key not found in template: {PROMPT_KEY}")
        return data

    def _render_prompt(self, key: str, context: Dict[str, Any]) -> Tuple[str, str]:
        prompt = self.prompts.get(key) or {}
        system = str(prompt.get("system", "")).strip()
        user_template = str(prompt.get("user_template", "{document_text}"))

        try:
            user = user_template.format(**context)
        except KeyError as exc:
            raise ConfigurationError(
                f"Missing placeholder '{exc.args[0]}' in prompt context for '{key}'"
            ) from exc
        return system, user

    # -----------------------
    # LLM invocation
    # -----------------------
    def _call_llm(self, *, system: str, user: str) -> str:
        attempts = max(1, self.llm.retry_attempts)
        last_error: Exception | None = None

        logger.info(
            "Calling LLM for extraction using {}: {}", self.llm.provider, self.llm.model
        )

        for attempt in range(1, attempts + 1):
            try:
                if self.llm.provider == "openai":
                    return self._call_openai(system=system, user=user)
                if self.llm.provider == "anthropic":
                    return self._call_anthropic(system=system, user=user)
                raise ValueError(f"Unsupported LLM provider: {self.llm.provider}")
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning(
                    "LLM request failed",
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(exc),
                )
                if attempt >= attempts:
                    break
                self._sleep(min(2 ** (attempt - 1), 8))

        if last_error:
            raise last_error
        raise RuntimeError("LLM request failed for unknown reasons")

    def _call_openai(self, *, system: str, user: str) -> str:
        client = create_openai_client(
            api_key=self.llm.api_key, base_url=self.llm.base_url, timeout=self.llm.timeout
        )
        response = client.chat.completions.create(
            model=self.llm.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            temperature=self.llm.temperature,
            max_tokens=self.llm.max_tokens,
            response_format={"type": "json_object"},
        )
        return str(response.choices[0].message.content or "")

    def _call_anthropic(self, *, system: str, user: str) -> str:
        import anthropic

        client_kwargs: Dict[str, Any] = {"timeout": self.llm.timeout}
        if self.llm.api_key:
            client_kwargs["api_key"] = self.llm.api_key
        if self.llm.base_url:
            client_kwargs["base_url"] = self.llm.base_url

        client = anthropic.Anthropic(**client_kwargs)
        message = client.messages.create(
            model=self.llm.model,
            system=system,
            messages=[{"role": "user", "content": user}],
            max_tokens=self.llm.max_tokens,
            temperature=self.llm.temperature,
        )
        parts = [
            getattr(block, "text", "")
            for block in message.content
            if getattr(block, "type", None) == "text"
        ]
        return "\n".join(parts).strip()

    def _extract_json(self, text: str) -> Any:
        if not text:
            return None

        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass

        # Models sometimes wrap the object in markdown fences or prose.
        match = re.search(r"\{.*\}", text, flags=re.DOTALL)
        if not match:
            return None

        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            return None


# -----------------------
# Answer parsing helpers
# -----------------------
def _first(data: Any, key: str) -> Any:
    if not isinstance(data, dict):
        return None
    for alias in _KEYS[key]:
        if data.get(alias) is not None:
            return data[alias]
    return None


def _text(data: Any, key: str) -> str:
    value = _first(data, key)
    if value is None or isinstance(value, (dict, list)):
        return ""
    return _WHITESPACE_RE.sub(" ", str(value)).strip()


def _strings(data: Any, key: str) -> List[str]:
    value = _first(data, key)
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    cleaned = (_WHITESPACE_RE.sub(" ", str(item)).strip() for item in value if item)
    return [item for item in cleaned if item]


def _items(data: Any, key: str) -> List[Dict[str, Any]]:
    value = _first(data, key)
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _region(community: Dict[str, Any]) -> str:
    parts = [_text(community, key) for key in ("region", "municipality", "state")]
    return ", ".join(part for part in parts if part)


def _locate(text: str, value: str) -> Optional[Tuple[int, int]]:
    """Span of the first case-insensitive occurrence of ``value``.

    Whitespace and hyphens in ``value`` match any run of whitespace or a hyphen.
    """
    words = [w for w in re.split(r"[\s-]+", value) if w]
    if not words:
        return None
    pattern = r"[\s-]+".join(re.escape(word) for word in words)
    match = re.search(rf"(?<!\w){pattern}(?!\w)", text, flags=re.IGNORECASE)
    return match.span() if match else None
