"""Adapter between raw documents and the pluggable extraction capability."""

from __future__ import annotations

import asyncio
from typing import Iterator, List

from loguru import logger

from etnopapers.extraction.capability import ExtractionCapability, create_capability
from etnopapers.extraction.models import CandidateMatch, DocumentMetadata, ExtractedDocument
from etnopapers.utils.config import ExtractionConfig


class CandidateSequence:
    """Lazy, finite, restartable sequence of candidates for one decoded document.

    Each iteration re-runs the capability over the decoded text; a deterministic
    capability therefore yields the same candidates every time.
    """

    def __init__(self, capability: ExtractionCapability, text: str, document_id: str) -> None:
        self.capability = capability
        self.text = text
        self.document_id = document_id

    def __iter__(self) -> Iterator[CandidateMatch]:
        return iter(self.capability.find_candidates(self.text))

    def to_list(self) -> List[CandidateMatch]:
        return list(self)

    def metadata(self) -> DocumentMetadata:
        return self.capability.extract_metadata(self.text)

    @property
    def page_count(self) -> int:
        return self.text.count("\f") + 1


class ExtractorAdapter:
    """Wraps an :class:`ExtractionCapability` behind ``extract``.

    ``extract`` validates and decodes eagerly so that :class:`ExtractionUnavailable`
    surfaces immediately; candidate matching stays lazy.
    """

    def __init__(
        self,
        capability: ExtractionCapability | None = None,
        config: ExtractionConfig | None = None,
    ) -> None:
        self.config = config or ExtractionConfig()
        self.capability = capability or create_capability(self.config)

    @property
    def name(self) -> str:
        return self.capability.name

    @property
    def version(self) -> str:
        return self.capability.version

    def extract(self, document_bytes: bytes, document_id: str) -> CandidateSequence:
        """Decode a document and return its candidate sequence.

        Raises:
            ExtractionUnavailable: If the document is empty, corrupt, too large or
                in an unsupported format. Not retried.
        """
        text = self.capability.extract_text(document_bytes)
        logger.debug(
            "Decoded document {} ({} chars)",
            document_id,
            len(text),
            capability=self.capability.name,
        )
        return CandidateSequence(self.capability, text, document_id)

    async def extract_async(self, document_bytes: bytes, document_id: str) -> ExtractedDocument:
        """Decode, match and read article metadata in a worker thread.

        The result is materialized. Cancelling the awaiting task leaves no side
        effects behind.
        """

        def _run() -> ExtractedDocument:
            sequence = self.extract(document_bytes, document_id)
            return ExtractedDocument(candidates=sequence.to_list(), metadata=sequence.metadata())

        return await asyncio.to_thread(_run)
