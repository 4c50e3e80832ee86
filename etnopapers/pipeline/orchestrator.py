"""Document-to-record pipeline.

This module orchestrates the processing of a single uploaded document:
1. Decoding and candidate extraction (pluggable capability, worker thread)
2. Record building with natural-key entity resolution
3. Idempotent storage in the local record store
4. Notifying the sync reconciler of new local changes
"""

import asyncio
import time
from typing import Iterable, List, Optional, Sequence, Tuple

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from etnopapers.extraction.adapter import ExtractorAdapter
from etnopapers.extraction.models import BuildResult, IssueKind, ValidationIssue
from etnopapers.extraction.record_builder import RecordBuilder
from etnopapers.normalization.duplicate_detector import DuplicateDetector
from etnopapers.normalization.string_normalizer import StringNormalizer
from etnopapers.storage.local_store import LocalStoreGateway
from etnopapers.sync.reconciler import SyncReconciler
from etnopapers.utils.config import Config
from etnopapers.utils.errors import ExtractionUnavailable, StorageError
from etnopapers.utils.fingerprints import document_id_for

DocumentInput = bytes | Tuple[bytes, Optional[str]]


class DocumentResult(BaseModel):
    """Result of processing one document."""

    model_config = ConfigDict(extra="allow")

    document_id: str
    success: bool
    records_created: int = 0
    records_skipped: int = 0
    record_ids: List[str] = Field(default_factory=list)
    issues: List[ValidationIssue] = Field(default_factory=list)
    extractor_error: Optional[str] = None
    error: Optional[str] = None
    processing_time: float = 0.0

    def issues_of(self, kind: IssueKind) -> List[ValidationIssue]:
        return [issue for issue in self.issues if issue.kind == kind]


class PipelineOrchestrator:
    """Coordinate extractor, builder, store and reconciler for each document.

    Example:
        >>> orchestrator = PipelineOrchestrator(config, store=store)
        >>> result = await orchestrator.process(pdf_bytes)
        >>> print(f"Created {result.records_created} records")
    """

    def __init__(
        self,
        config: Config,
        store: LocalStoreGateway | None = None,
        adapter: ExtractorAdapter | None = None,
        builder: RecordBuilder | None = None,
        reconciler: SyncReconciler | None = None,
        duplicate_detector: DuplicateDetector | None = None,
        normalizer: StringNormalizer | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Application configuration (read-only)
            store: Local record store; built from ``config.storage`` when omitted
            adapter: Extractor adapter; built from ``config.extraction`` when omitted
            builder: Record builder reading entities from ``store``
            reconciler: Sync reconciler notified after each document, if any
            duplicate_detector: Potential-duplicate detector, if any
            normalizer: Shared string normalizer
        """
        self.config = config
        self.normalizer = normalizer or StringNormalizer(config=config.normalization)
        self.store = store or LocalStoreGateway.from_config(config.storage, self.normalizer)
        self.adapter = adapter or ExtractorAdapter(config=config.extraction)
        self.builder = builder or RecordBuilder(
            registry=self.store, normalizer=self.normalizer, config=config.extraction
        )
        self.reconciler = reconciler
        if duplicate_detector is None and config.normalization.enable_duplicate_detection:
            duplicate_detector = DuplicateDetector(
                config=config.normalization, normalizer=self.normalizer
            )
        self.duplicate_detector = duplicate_detector

        self.stats = {
            "documents_processed": 0,
            "documents_failed": 0,
            "records_created": 0,
            "records_skipped": 0,
            "issues_reported": 0,
            "total_processing_time": 0.0,
        }

        logger.info("PipelineOrchestrator initialized", capability=self.adapter.name)

    async def process(
        self,
        document_bytes: bytes,
        document_id: str | None = None,
        config: Config | None = None,
    ) -> DocumentResult:
        """Process one document end to end.

        Args:
            document_bytes: Raw PDF or text bytes
            document_id: Caller-supplied document reference; derived from content when omitted
            config: Per-call configuration override for extraction settings

        Returns:
            DocumentResult describing created/skipped records and issues
        """
        start_time = time.time()
        document_id = document_id or document_id_for(document_bytes)
        adapter, builder = self._components_for(config)
        logger.info("Processing document {}", document_id, size=len(document_bytes))

        try:
            extracted = await adapter.extract_async(document_bytes, document_id)
        except ExtractionUnavailable as exc:
            logger.warning("Extraction unavailable for {}: {}", document_id, exc.message)
            return self._finish(
                DocumentResult(
                    document_id=document_id, success=False, extractor_error=exc.message
                ),
                start_time,
            )

        # Records committed before a failure stay in the result.
        result = DocumentResult(document_id=document_id, success=True)
        try:
            build = builder.build(
                extracted.candidates,
                document_id,
                extractor_name=adapter.name,
                extractor_version=adapter.version,
                document_metadata=extracted.metadata,
            )
            await self._store_records(result, build)
            if result.records_created and self.reconciler is not None:
                await self.reconciler.notify_local_changes()
        except Exception as exc:  # noqa: BLE001 - failures surface in the result
            logger.exception("Unexpected failure processing {}: {}", document_id, exc)
            result.success = False
            result.error = str(exc)

        if self.reconciler is not None:
            await self.reconciler.publish_status()
        return self._finish(result, start_time)

    async def process_many(self, documents: Iterable[DocumentInput]) -> List[DocumentResult]:
        """Process several documents concurrently (bounded by ``max_concurrent_documents``)."""
        items: Sequence[Tuple[bytes, Optional[str]]] = [
            doc if isinstance(doc, tuple) else (doc, None) for doc in documents
        ]
        semaphore = asyncio.Semaphore(self.config.pipeline.max_concurrent_documents)

        async def _run(document_bytes: bytes, document_id: Optional[str]) -> DocumentResult:
            async with semaphore:
                return await self.process(document_bytes, document_id)

        logger.info("Processing batch of {} documents", len(items))
        results = list(await asyncio.gather(*(_run(data, doc_id) for data, doc_id in items)))

        successful = sum(1 for r in results if r.success)
        created = sum(r.records_created for r in results)
        total_time = sum(r.processing_time for r in results)
        logger.info(
            "Batch processing complete: {}/{} successful, {} records created, {:.2f}s total",
            successful,
            len(results),
            created,
            total_time,
        )
        return results

    async def _store_records(self, result: DocumentResult, build: BuildResult) -> None:
        document_id = result.document_id
        result.issues.extend(build.issues)

        for record, metadata in build.pairs():
            fingerprint = self.store.fingerprint_for(record)
            try:
                async with self.store.lock_for(f"fingerprint:{fingerprint}"):
                    existing_id = self.store.find_by_fingerprint(fingerprint)
                    if existing_id is not None:
                        result.records_skipped += 1
                        result.record_ids.append(existing_id)
                        continue

                    duplicates = []
                    if self.duplicate_detector is not None:
                        stored = [s.record for s in self.store.list_records()]
                        duplicates = self.duplicate_detector.find_duplicates(record, stored)
                    record_id = self.store.upsert(record, metadata)
            except StorageError as exc:
                logger.error(
                    "Storage failed for {}, aborting remaining records: {}",
                    document_id,
                    exc.message,
                )
                result.issues.append(
                    ValidationIssue(
                        kind=IssueKind.STORAGE_FAILED,
                        message=exc.message,
                        excerpt=record.primary_excerpt,
                        details=exc.details,
                    )
                )
                break

            result.records_created += 1
            result.record_ids.append(record_id)
            for duplicate in duplicates:
                result.issues.append(
                    ValidationIssue(
                        kind=IssueKind.POSSIBLE_DUPLICATE,
                        message=f"Record resembles existing record {duplicate.existing_id}",
                        excerpt=record.primary_excerpt,
                        record_id=record_id,
                        details={
                            "existing_id": duplicate.existing_id,
                            "score": duplicate.score,
                        },
                    )
                )

    def _components_for(self, config: Config | None) -> Tuple[ExtractorAdapter, RecordBuilder]:
        if config is None:
            return self.adapter, self.builder
        adapter = ExtractorAdapter(config=config.extraction)
        builder = RecordBuilder(
            registry=self.store, normalizer=self.normalizer, config=config.extraction
        )
        return adapter, builder

    def _finish(self, result: DocumentResult, start_time: float) -> DocumentResult:
        result.processing_time = time.time() - start_time
        self.stats["documents_processed"] += 1
        if not result.success:
            self.stats["documents_failed"] += 1
        self.stats["records_created"] += result.records_created
        self.stats["records_skipped"] += result.records_skipped
        self.stats["issues_reported"] += len(result.issues)
        self.stats["total_processing_time"] += result.processing_time

        logger.info(
            "Document {} processed: {} created, {} skipped, {} issues, {:.2f}s",
            result.document_id,
            result.records_created,
            result.records_skipped,
            len(result.issues),
            result.processing_time,
        )
        return result
