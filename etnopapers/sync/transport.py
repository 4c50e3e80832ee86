"""Remote transports used by the sync reconciler.

A transport knows how to push one record and how to pull the remote change
feed; it knows nothing about sync statuses. Failures surface as
:class:`TransportError` and are retried by the reconciler.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Protocol, Tuple

import aiohttp
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from etnopapers.storage.schemas import ArticleRecord
from etnopapers.utils.config import SyncConfig
from etnopapers.utils.errors import TransportError


class RemoteConflict(BaseModel):
    """Push rejected because the remote moved past ``last_known_revision``."""

    record: ArticleRecord
    revision: int


class RemoteChange(BaseModel):
    """One entry of the remote change feed."""

    record: ArticleRecord
    revision: int

    @property
    def record_id(self) -> str:
        return self.record.id


class PullResult(BaseModel):
    """Remote changes after a cursor plus the cursor to resume from."""

    changes: List[RemoteChange] = Field(default_factory=list)
    cursor: Optional[str] = None


class RemoteTransport(Protocol):
    """Push/pull contract of the remote store."""

    async def push(
        self, record: ArticleRecord, last_known_revision: Optional[int]
    ) -> int | RemoteConflict: ...

    async def pull(self, since: Optional[str]) -> PullResult: ...

    async def close(self) -> None: ...


class InMemoryRemoteTransport:
    """Remote store kept in process memory.

    Revisions are per record and start at 1. Failures can be scheduled with
    ``fail_next_pushes`` / ``fail_next_pulls`` or by going offline.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self.online = True
        self.fail_next_pushes = 0
        self.fail_next_pulls = 0
        self.push_calls: List[Tuple[str, Optional[int]]] = []
        self._records: Dict[str, Tuple[ArticleRecord, int]] = {}
        self._feed: List[str] = []

    def put_remote(self, record: ArticleRecord, revision: int) -> None:
        """Write a record directly on the remote side (as another client would)."""
        self._records[record.id] = (record.model_copy(deep=True), revision)
        self._feed.append(record.id)

    def remote_revision(self, record_id: str) -> Optional[int]:
        entry = self._records.get(record_id)
        return entry[1] if entry else None

    def remote_record(self, record_id: str) -> Optional[ArticleRecord]:
        entry = self._records.get(record_id)
        return entry[0] if entry else None

    async def push(
        self, record: ArticleRecord, last_known_revision: Optional[int]
    ) -> int | RemoteConflict:
        self.push_calls.append((record.id, last_known_revision))
        await self._round_trip()
        if self.fail_next_pushes > 0:
            self.fail_next_pushes -= 1
            raise TransportError("Simulated push failure", {"record_id": record.id})

        current = self._records.get(record.id)
        if current is not None and current[1] != last_known_revision:
            return RemoteConflict(record=current[0].model_copy(deep=True), revision=current[1])

        revision = (current[1] if current else 0) + 1
        self.put_remote(record, revision)
        return revision

    async def pull(self, since: Optional[str]) -> PullResult:
        await self._round_trip()
        if self.fail_next_pulls > 0:
            self.fail_next_pulls -= 1
            raise TransportError("Simulated pull failure")

        start = int(since) if since else 0
        latest: Dict[str, None] = {}
        for record_id in self._feed[start:]:
            latest.pop(record_id, None)
            latest[record_id] = None

        changes = [
            RemoteChange(record=record.model_copy(deep=True), revision=revision)
            for record, revision in (self._records[rid] for rid in latest)
        ]
        return PullResult(changes=changes, cursor=str(len(self._feed)))

    async def close(self) -> None:
        return None

    async def _round_trip(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.online:
            raise TransportError("Remote unreachable")


class HttpRemoteTransport:
    """JSON-over-HTTP transport.

    Endpoints:
        POST {endpoint}/records/{id}  body ``{"record": ..., "last_known_revision": n}``
            200 ``{"revision": n}``; 409 ``{"revision": n, "record": {...}}``
        GET {endpoint}/records?since=cursor
            200 ``{"changes": [{"record": {...}, "revision": n}], "cursor": "..."}``
    """

    def __init__(self, config: SyncConfig, session: aiohttp.ClientSession | None = None) -> None:
        if not config.remote_endpoint:
            raise ValueError("remote_endpoint is required for the HTTP transport")
        self.config = config
        self.base_url = config.remote_endpoint.rstrip("/")
        self.session = session
        self._owns_session = session is None
        self.headers = {"Accept": "application/json"}
        if config.api_key:
            self.headers["Authorization"] = f"Bearer {config.api_key}"

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
            )
            self._owns_session = True
        return self.session

    async def close(self) -> None:
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()

    async def push(
        self, record: ArticleRecord, last_known_revision: Optional[int]
    ) -> int | RemoteConflict:
        session = await self._ensure_session()
        url = f"{self.base_url}/records/{record.id}"
        body = {
            "record": record.model_dump(mode="json"),
            "last_known_revision": last_known_revision,
        }
        try:
            async with session.post(url, json=body) as resp:
                payload = await self._read_json(resp)
                if resp.status == 409:
                    return RemoteConflict.model_validate(payload)
                if resp.status != 200:
                    raise TransportError(
                        f"Push rejected with HTTP {resp.status}",
                        {"record_id": record.id, "status": resp.status},
                    )
                return int(payload["revision"])
        except asyncio.TimeoutError as exc:
            raise TransportError("Push timed out", {"record_id": record.id}) from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"Push failed: {exc}", {"record_id": record.id}) from exc
        except (KeyError, TypeError, ValueError, ValidationError) as exc:
            raise TransportError(
                f"Malformed push response: {exc}", {"record_id": record.id}
            ) from exc

    async def pull(self, since: Optional[str]) -> PullResult:
        session = await self._ensure_session()
        params = {"since": since} if since else {}
        try:
            async with session.get(f"{self.base_url}/records", params=params) as resp:
                if resp.status != 200:
                    raise TransportError(
                        f"Pull rejected with HTTP {resp.status}", {"status": resp.status}
                    )
                payload = await self._read_json(resp)
                return PullResult.model_validate(payload)
        except asyncio.TimeoutError as exc:
            raise TransportError("Pull timed out") from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"Pull failed: {exc}") from exc
        except ValidationError as exc:
            raise TransportError(f"Malformed pull response: {exc}") from exc

    @staticmethod
    async def _read_json(resp: aiohttp.ClientResponse) -> Dict[str, Any]:
        try:
            payload = await resp.json(content_type=None)
        except ValueError as exc:
            raise TransportError(f"Remote returned invalid JSON (HTTP {resp.status})") from exc
        if not isinstance(payload, dict):
            raise TransportError("Remote returned a non-object JSON payload")
        return payload


class UnconfiguredRemoteTransport:
    """Stand-in used when no remote endpoint is configured.

    Every push and pull fails with :class:`TransportError`, so records stay
    pending locally until an endpoint is set.
    """

    async def push(
        self, record: ArticleRecord, last_known_revision: Optional[int]
    ) -> int | RemoteConflict:
        raise TransportError("No remote endpoint configured", {"record_id": record.id})

    async def pull(self, since: Optional[str]) -> PullResult:
        raise TransportError("No remote endpoint configured")

    async def close(self) -> None:
        return None


def create_transport(config: SyncConfig) -> RemoteTransport:
    """HTTP transport when an endpoint is configured, an always-offline one otherwise."""
    if config.remote_endpoint:
        logger.info("Using HTTP remote transport at {}", config.remote_endpoint)
        return HttpRemoteTransport(config)
    logger.warning("No remote endpoint configured, records will stay pending locally")
    return UnconfiguredRemoteTransport()
