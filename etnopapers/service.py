"""UI-facing facade over the pipeline and the sync reconciler."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Mapping, Optional

from loguru import logger

from etnopapers.normalization.string_normalizer import StringNormalizer
from etnopapers.pipeline.orchestrator import DocumentInput, DocumentResult, PipelineOrchestrator
from etnopapers.storage.local_store import LocalStoreGateway
from etnopapers.storage.schemas import ArticleRecord, StatusSummary, StoredRecord, SyncStatus
from etnopapers.sync.reconciler import ConflictDecision, SyncReconciler, SyncReport
from etnopapers.sync.status import StatusBroadcaster, StatusCallback
from etnopapers.sync.transport import RemoteTransport, create_transport
from etnopapers.utils.config import Config


class EtnoPapersService:
    """Single entry point for the UI layer.

    Wires the local store, the orchestrator and the reconciler around one
    configuration. ``start`` launches the periodic sync loop when sync is
    enabled; ``stop`` cancels it and closes the transport.
    """

    def __init__(
        self,
        config: Config,
        store: LocalStoreGateway | None = None,
        transport: RemoteTransport | None = None,
        orchestrator: PipelineOrchestrator | None = None,
        broadcaster: StatusBroadcaster | None = None,
    ) -> None:
        self.config = config
        self.normalizer = StringNormalizer(config=config.normalization)
        self.store = store or LocalStoreGateway.from_config(config.storage, self.normalizer)
        self.broadcaster = broadcaster or StatusBroadcaster()
        self.transport = transport or create_transport(config.sync)
        self.reconciler = SyncReconciler(
            self.store, self.transport, config=config.sync, broadcaster=self.broadcaster
        )
        self.orchestrator = orchestrator or PipelineOrchestrator(
            config,
            store=self.store,
            reconciler=self.reconciler,
            normalizer=self.normalizer,
        )
        self._sync_task: Optional[asyncio.Task[None]] = None

    # Documents -------------------------------------------------------------
    async def process(
        self, document_bytes: bytes, document_id: str | None = None
    ) -> DocumentResult:
        return await self.orchestrator.process(document_bytes, document_id)

    async def process_many(self, documents: List[DocumentInput]) -> List[DocumentResult]:
        return await self.orchestrator.process_many(documents)

    # Records ---------------------------------------------------------------
    def list_records(self, status: SyncStatus | None = None) -> List[StoredRecord]:
        return self.store.list_records(status)

    def get_record(self, record_id: str) -> StoredRecord:
        return self.store.require(record_id)

    async def edit_record(self, record_id: str, **changes: Any) -> ArticleRecord:
        async with self.store.lock_for(record_id):
            record = self.store.edit_record(record_id, **changes)
        await self.reconciler.notify_local_changes()
        await self.reconciler.publish_status()
        return record

    async def delete_record(self, record_id: str) -> None:
        async with self.store.lock_for(record_id):
            self.store.delete_record(record_id)
        await self.reconciler.publish_status()

    # Sync ------------------------------------------------------------------
    async def sync_now(self) -> SyncReport:
        return await self.reconciler.sync_now()

    def pending_conflicts(self) -> List[StoredRecord]:
        return self.reconciler.pending_conflicts()

    async def resolve_conflict(
        self,
        record_id: str,
        decision: ConflictDecision | str,
        merged: Optional[Mapping[str, Any]] = None,
    ) -> StoredRecord:
        return await self.reconciler.resolve_conflict(
            record_id, ConflictDecision(decision), merged
        )

    def subscribe_to_status(self, callback: StatusCallback) -> Callable[[], None]:
        return self.broadcaster.subscribe(callback)

    def status_summary(self) -> StatusSummary:
        return self.reconciler.status_summary()

    def stats(self) -> Dict[str, Any]:
        return {**self.orchestrator.stats, **self.status_summary().to_display()}

    # Lifecycle -------------------------------------------------------------
    def start(self) -> None:
        """Launch the periodic sync loop (requires a running event loop)."""
        if not self.config.sync.enabled:
            logger.info("Sync disabled; not starting the sync loop")
            return
        if self._sync_task is not None and not self._sync_task.done():
            return
        self._sync_task = asyncio.create_task(self.reconciler.run(), name="etnopapers-sync")

    async def stop(self) -> None:
        self.reconciler.stop()
        if self._sync_task is not None:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None
        await self.transport.close()

    async def __aenter__(self) -> "EtnoPapersService":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


def create_service(config: Config, transport: RemoteTransport | None = None) -> EtnoPapersService:
    """Build a service from configuration."""
    return EtnoPapersService(config, transport=transport)
