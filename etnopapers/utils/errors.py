"""Exception types raised by the extraction and sync core."""

from typing import Any, Optional


class EtnoPapersError(Exception):
    """Base exception for all EtnoPapers errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(EtnoPapersError):
    """Invalid or missing configuration."""


class ExtractionUnavailable(EtnoPapersError):
    """The extraction capability cannot process a document (corrupt, unsupported, empty)."""


class StorageError(EtnoPapersError):
    """The local record store failed to persist or load data."""


class StorageLimitError(StorageError):
    """The local record store reached its configured capacity."""

    def __init__(self, current_count: int, max_count: int) -> None:
        super().__init__(
            f"Storage limit reached: {current_count}/{max_count} records",
            {"current_count": current_count, "max_count": max_count},
        )


class RecordNotFound(EtnoPapersError):
    """No stored record with the requested identifier."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Record not found: {record_id}", {"record_id": record_id})
        self.record_id = record_id


class StaleRemoteWrite(EtnoPapersError):
    """A remote revision was not newer than the stored revision and was ignored."""

    def __init__(self, record_id: str, remote_revision: int, stored_revision: int) -> None:
        super().__init__(
            f"Ignoring stale remote write for {record_id}: "
            f"remote revision {remote_revision} <= stored revision {stored_revision}",
            {
                "record_id": record_id,
                "remote_revision": remote_revision,
                "stored_revision": stored_revision,
            },
        )


class TransportError(EtnoPapersError):
    """The remote transport failed; the operation is retried on a later cycle."""


class InvalidTransition(EtnoPapersError):
    """A sync status transition outside the transition table was requested."""
