"""Sync reconciler: drives every stored record through the SyncStatus state machine.

One cycle promotes local changes, pulls the remote change feed and pushes
pending records. Revision counters decide conflicts, never wall-clock time,
and conflicts always wait for an explicit user decision.
"""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional

from loguru import logger
from pydantic import BaseModel, Field

from etnopapers.storage.local_store import LocalStoreGateway
from etnopapers.storage.schemas import RemoteSnapshot, StatusSummary, StoredRecord, SyncStatus
from etnopapers.sync.status import StatusBroadcaster
from etnopapers.sync.transport import RemoteChange, RemoteConflict, RemoteTransport
from etnopapers.utils.config import SyncConfig
from etnopapers.utils.errors import InvalidTransition, StaleRemoteWrite, TransportError

# Same-state writes are always accepted and are not listed here.
TRANSITIONS: Mapping[SyncStatus, FrozenSet[SyncStatus]] = {
    SyncStatus.LOCAL: frozenset({SyncStatus.PENDING_PUSH, SyncStatus.CONFLICT}),
    SyncStatus.PENDING_PUSH: frozenset({SyncStatus.SYNCED, SyncStatus.CONFLICT}),
    SyncStatus.SYNCED: frozenset(
        {SyncStatus.PENDING_PUSH, SyncStatus.PENDING_PULL, SyncStatus.CONFLICT}
    ),
    SyncStatus.PENDING_PULL: frozenset({SyncStatus.SYNCED, SyncStatus.CONFLICT}),
    SyncStatus.CONFLICT: frozenset({SyncStatus.PENDING_PUSH, SyncStatus.SYNCED}),
}


def check_transition(record_id: str, current: SyncStatus, target: SyncStatus) -> None:
    """Raise :class:`InvalidTransition` unless ``current -> target`` is allowed."""
    if current == target or target in TRANSITIONS[current]:
        return
    raise InvalidTransition(
        f"Invalid sync transition for {record_id}: {current.value} -> {target.value}",
        {"record_id": record_id, "from": current.value, "to": target.value},
    )


class ConflictDecision(str, Enum):
    """User decision for a record in CONFLICT."""

    KEEP_LOCAL = "keep_local"
    TAKE_REMOTE = "take_remote"
    MERGE = "merge"


class RetryState(BaseModel):
    """Push retry bookkeeping for one record."""

    failures: int = 0
    next_attempt_at: float = 0.0
    last_delay: float = 0.0
    last_error: str = ""


class SyncReport(BaseModel):
    """Outcome of one sync cycle."""

    promoted: int = 0
    pulled: int = 0
    pushed: int = 0
    conflicts: int = 0
    failed: int = 0
    pull_error: Optional[str] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: Optional[datetime] = None


class SyncReconciler:
    """Exclusive writer of :class:`SyncStatus` for every stored record.

    Per-record locks from the store guard check-and-set only; they are never
    held across a transport call, so cancelling an in-flight push or pull
    leaves statuses untouched.
    """

    def __init__(
        self,
        store: LocalStoreGateway,
        transport: RemoteTransport,
        config: SyncConfig | None = None,
        broadcaster: StatusBroadcaster | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.transport = transport
        self.config = config or SyncConfig()
        self.broadcaster = broadcaster or StatusBroadcaster()
        self.clock = clock

        self._local_cursor = 0
        self._remote_cursor: Optional[str] = store.remote_cursor()
        self._retries: Dict[str, RetryState] = {}
        self._cycle_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._stopping = False

        self._is_connected = False
        self._last_sync_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._total_synced = 0

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------
    def backoff_delay(self, failures: int) -> float:
        """Delay before the next push attempt after ``failures`` consecutive failures."""
        if failures <= 0:
            return 0.0
        exponent = min(failures - 1, 62)
        return min(self.config.backoff_cap_seconds, self.config.backoff_base_seconds * 2**exponent)

    def retry_state(self, record_id: str) -> Optional[RetryState]:
        return self._retries.get(record_id)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    async def notify_local_changes(self) -> int:
        """Promote new and edited records, then wake the periodic loop."""
        promoted = await self.promote_local_changes()
        if promoted:
            self._wake.set()
        return promoted

    async def promote_local_changes(self) -> int:
        """LOCAL and locally edited SYNCED records move to PENDING_PUSH."""
        changes = self.store.get_changes_since(self._local_cursor)
        promoted = 0
        for entry in changes.entries:
            async with self.store.lock_for(entry.record_id):
                stored = self.store.get(entry.record_id)
                if stored is None:
                    continue
                if stored.status == SyncStatus.LOCAL or (
                    stored.status == SyncStatus.SYNCED and stored.is_dirty
                ):
                    self._set_status(stored, SyncStatus.PENDING_PUSH)
                    promoted += 1
        self._local_cursor = changes.cursor
        if promoted:
            logger.debug("Promoted {} records to pending_push", promoted)
        return promoted

    async def sync_now(self) -> SyncReport:
        """Run one full cycle: promote, pull, push. Cycles never overlap."""
        async with self._cycle_lock:
            report = SyncReport()
            report.promoted = await self.promote_local_changes()

            try:
                report.pulled = await self.pull()
            except TransportError as exc:
                self._mark_disconnected(exc)
                report.pull_error = exc.message
                logger.warning("Pull failed, continuing with push: {}", exc.message)

            pushed, conflicts, failed = await self.push_pending()
            report.pushed, report.conflicts, report.failed = pushed, conflicts, failed
            report.finished_at = datetime.now(UTC)
            if report.pull_error is None and failed == 0:
                self._last_sync_at = report.finished_at

            logger.info(
                "Sync cycle finished: {} promoted, {} pulled, {} pushed, {} conflicts, {} failed",
                report.promoted,
                report.pulled,
                report.pushed,
                report.conflicts,
                report.failed,
            )

        await self.publish_status()
        return report

    async def run(self) -> None:
        """Periodic loop; returns after :meth:`stop`."""
        self._stopping = False
        logger.info("Sync loop started (interval {}s)", self.config.sync_interval_seconds)
        while not self._stopping:
            try:
                await self.sync_now()
            except Exception as exc:  # noqa: BLE001 - the loop outlives a failed cycle
                logger.exception("Sync cycle failed: {}", exc)
                self._last_error = str(exc)

            if self._stopping:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._next_wakeup())
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
        logger.info("Sync loop stopped")

    def stop(self) -> None:
        self._stopping = True
        self._wake.set()

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------
    async def pull(self) -> int:
        """Apply the remote change feed. Raises :class:`TransportError`."""
        result = await self.transport.pull(self._remote_cursor)
        self._mark_connected()

        applied = 0
        for change in result.changes:
            try:
                if await self._apply_pulled(change):
                    applied += 1
            except StaleRemoteWrite as exc:
                logger.debug("{}", exc.message)
            except Exception as exc:  # noqa: BLE001 - one bad change must not block the feed
                logger.error("Failed to apply remote change for {}: {}", change.record_id, exc)
        self._remote_cursor = result.cursor
        self.store.save_remote_cursor(result.cursor)
        return applied

    async def _apply_pulled(self, change: RemoteChange) -> bool:
        record_id = change.record_id
        async with self.store.lock_for(record_id):
            stored = self.store.get(record_id)
            if stored is None and self.store.is_deleted(record_id):
                logger.debug("Ignoring remote change for deleted record {}", record_id)
                return False
            if stored is None:
                inserted = self.store.apply_remote(record_id, change.record, change.revision)
                self._set_status(inserted, SyncStatus.SYNCED)
                self._total_synced += 1
                return True

            if change.revision <= stored.revision:
                stale = StaleRemoteWrite(record_id, change.revision, stored.revision)
                logger.debug("{}", stale.message)
                return False

            if stored.status == SyncStatus.CONFLICT or stored.is_dirty:
                snapshot = RemoteSnapshot(record=change.record, revision=change.revision)
                self._set_status(stored, SyncStatus.CONFLICT, conflict=snapshot)
                logger.warning(
                    "Conflict on {}: local revision {} vs remote revision {} (common {})",
                    record_id,
                    stored.local_revision,
                    change.revision,
                    stored.common_revision,
                )
                return False

            self._set_status(stored, SyncStatus.PENDING_PULL)
            updated = self.store.apply_remote(record_id, change.record, change.revision)
            self._set_status(updated, SyncStatus.SYNCED)
            self._retries.pop(record_id, None)
            self._total_synced += 1
            return True

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------
    async def push_pending(self) -> tuple[int, int, int]:
        """Push every due PENDING_PUSH record; returns (pushed, conflicts, failed)."""
        pushed = conflicts = failed = 0
        now = self.clock()
        pending = self.store.list_records(SyncStatus.PENDING_PUSH)
        pending_ids = {stored.record_id for stored in pending}
        for record_id in [rid for rid in self._retries if rid not in pending_ids]:
            del self._retries[record_id]

        for stored in pending:
            retry = self._retries.get(stored.record_id)
            if retry is not None and retry.next_attempt_at > now:
                continue
            try:
                outcome = await self._push_one(stored.record_id)
            except TransportError as exc:
                self._record_failure(stored.record_id, exc)
                failed += 1
                continue
            except Exception as exc:  # noqa: BLE001 - isolate per-record failures
                logger.error("Push of {} failed unexpectedly: {}", stored.record_id, exc)
                self._record_failure(stored.record_id, exc)
                failed += 1
                continue
            if outcome == SyncStatus.CONFLICT:
                conflicts += 1
            elif outcome is not None:
                pushed += 1
        return pushed, conflicts, failed

    async def _push_one(self, record_id: str) -> Optional[SyncStatus]:
        async with self.store.lock_for(record_id):
            stored = self.store.get(record_id)
            if stored is None or stored.status != SyncStatus.PENDING_PUSH:
                return None
            record = stored.record.model_copy(deep=True)
            acknowledged = stored.local_revision
            last_known = stored.common_revision

        outcome = await self.transport.push(record, last_known)
        self._mark_connected()

        async with self.store.lock_for(record_id):
            stored = self.store.get(record_id)
            if stored is None or stored.status != SyncStatus.PENDING_PUSH:
                self._retries.pop(record_id, None)
                return None

            self._retries.pop(record_id, None)
            if isinstance(outcome, RemoteConflict):
                snapshot = RemoteSnapshot(record=outcome.record, revision=outcome.revision)
                self._set_status(stored, SyncStatus.CONFLICT, conflict=snapshot)
                logger.warning(
                    "Push of {} rejected: remote is at revision {}, expected {}",
                    record_id,
                    outcome.revision,
                    last_known,
                )
                return SyncStatus.CONFLICT

            check_transition(record_id, stored.status, SyncStatus.SYNCED)
            updated = self.store.mark_synced(record_id, outcome, acknowledged)
            self._total_synced += 1
            logger.debug(
                "Pushed {} at revision {}", record_id, outcome, status=updated.status.value
            )
            return updated.status

    def _record_failure(self, record_id: str, exc: Exception) -> None:
        state = self._retries.get(record_id) or RetryState()
        state.failures += 1
        state.last_delay = self.backoff_delay(state.failures)
        state.next_attempt_at = self.clock() + state.last_delay
        state.last_error = str(exc)
        self._retries[record_id] = state
        if isinstance(exc, TransportError):
            self._mark_disconnected(exc)
        logger.warning(
            "Push of {} failed ({} consecutive), retrying in {:.1f}s: {}",
            record_id,
            state.failures,
            state.last_delay,
            exc,
        )

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------
    def pending_conflicts(self) -> List[StoredRecord]:
        return self.store.list_records(SyncStatus.CONFLICT)

    async def resolve_conflict(
        self,
        record_id: str,
        decision: ConflictDecision,
        merged: Optional[Mapping[str, Any]] = None,
    ) -> StoredRecord:
        """Apply a user decision to a record in CONFLICT.

        Args:
            record_id: Record in CONFLICT
            decision: KEEP_LOCAL, TAKE_REMOTE or MERGE
            merged: Record fields chosen by the user (MERGE only)

        Raises:
            InvalidTransition: If the record is not in CONFLICT
            ValueError: If MERGE is requested without merged fields
        """
        decision = ConflictDecision(decision)
        async with self.store.lock_for(record_id):
            stored = self.store.require(record_id)
            if stored.status != SyncStatus.CONFLICT or stored.conflict is None:
                raise InvalidTransition(
                    f"Record {record_id} is not in conflict", {"status": stored.status.value}
                )
            snapshot = stored.conflict

            if decision == ConflictDecision.KEEP_LOCAL:
                check_transition(record_id, stored.status, SyncStatus.PENDING_PUSH)
                result = self.store.rebase_on_remote(record_id, snapshot.revision)
            elif decision == ConflictDecision.TAKE_REMOTE:
                check_transition(record_id, stored.status, SyncStatus.SYNCED)
                # The remote may have rolled back below the stored revision.
                self.store.apply_remote(
                    record_id, snapshot.record, snapshot.revision, force=True
                )
                result = self.store.set_sync_status(record_id, SyncStatus.SYNCED)
                self._total_synced += 1
            else:
                if not merged:
                    raise ValueError("MERGE requires the merged record fields")
                check_transition(record_id, stored.status, SyncStatus.PENDING_PUSH)
                self.store.edit_record(record_id, **dict(merged))
                result = self.store.rebase_on_remote(record_id, snapshot.revision)

            self._retries.pop(record_id, None)

        logger.info("Resolved conflict on {} with {}", record_id, decision.value)
        if result.status == SyncStatus.PENDING_PUSH:
            self._wake.set()
        await self.publish_status()
        return result

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def status_summary(self) -> StatusSummary:
        conflicts = [stored.record_id for stored in self.pending_conflicts()]
        return StatusSummary(
            total_records=self.store.count(),
            by_status=self.store.status_counts(),
            pending_conflicts=conflicts,
            retrying={rid: state.failures for rid, state in self._retries.items()},
            total_synced=self._total_synced,
            last_sync_at=self._last_sync_at,
            is_connected=self._is_connected,
            error=self._last_error,
        )

    async def publish_status(self) -> StatusSummary:
        """Publish the current summary to subscribers and return it."""
        summary = self.status_summary()
        await self.broadcaster.publish(summary)
        return summary

    def _set_status(
        self, stored: StoredRecord, target: SyncStatus, conflict: RemoteSnapshot | None = None
    ) -> StoredRecord:
        check_transition(stored.record_id, stored.status, target)
        return self.store.set_sync_status(stored.record_id, target, conflict=conflict)

    def _mark_connected(self) -> None:
        self._is_connected = True
        self._last_error = None

    def _mark_disconnected(self, exc: TransportError) -> None:
        self._is_connected = False
        self._last_error = exc.message

    def _next_wakeup(self) -> float:
        interval = self.config.sync_interval_seconds
        if not self._retries:
            return interval
        now = self.clock()
        waits = [
            state.next_attempt_at - now
            for state in self._retries.values()
            if state.next_attempt_at > now
        ]
        return min([interval, *waits])

