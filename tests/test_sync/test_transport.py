"""Tests for the in-memory and HTTP remote transports."""

from __future__ import annotations

import aiohttp
import pytest

from etnopapers.storage.schemas import ArticleRecord, PlantSpecies
from etnopapers.sync.transport import (
    HttpRemoteTransport,
    InMemoryRemoteTransport,
    RemoteConflict,
    UnconfiguredRemoteTransport,
    create_transport,
)
from etnopapers.utils.config import SyncConfig
from etnopapers.utils.errors import TransportError


def _record(notes: str = "") -> ArticleRecord:
    return ArticleRecord(
        id="rec-1",
        document_id="doc-1",
        species=[PlantSpecies(scientific_name="Salix alba", key="salix alba")],
        excerpts=["Salix alba was used for baskets."],
        notes=notes,
    )


class _FakeResponse:
    def __init__(self, status: int, payload) -> None:
        self.status = status
        self.payload = payload

    async def json(self, content_type=None):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class _FakeSession:
    def __init__(self, response=None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.closed = False
        self.calls = []

    def post(self, url, json=None):
        self.calls.append(("POST", url, json))
        return self._respond()

    def get(self, url, params=None):
        self.calls.append(("GET", url, params))
        return self._respond()

    def _respond(self):
        if self.error is not None:
            raise self.error
        return self.response

    async def close(self) -> None:
        self.closed = True


# ----------------------------------------------------------------------
# In-memory transport
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_in_memory_push_assigns_revisions() -> None:
    transport = InMemoryRemoteTransport()

    assert await transport.push(_record(), None) == 1
    assert await transport.push(_record("second"), 1) == 2
    assert transport.remote_record("rec-1").notes == "second"


@pytest.mark.asyncio
async def test_in_memory_push_with_stale_revision_conflicts() -> None:
    transport = InMemoryRemoteTransport()
    transport.put_remote(_record("remote"), 3)

    outcome = await transport.push(_record("local"), 2)

    assert isinstance(outcome, RemoteConflict)
    assert outcome.revision == 3
    assert outcome.record.notes == "remote"
    assert transport.remote_revision("rec-1") == 3


@pytest.mark.asyncio
async def test_in_memory_pull_returns_latest_revision_once() -> None:
    transport = InMemoryRemoteTransport()
    transport.put_remote(_record("v1"), 1)
    transport.put_remote(_record("v2"), 2)

    result = await transport.pull(None)

    assert [(c.record_id, c.revision) for c in result.changes] == [("rec-1", 2)]
    assert (await transport.pull(result.cursor)).changes == []


@pytest.mark.asyncio
async def test_in_memory_failures_raise_transport_error() -> None:
    transport = InMemoryRemoteTransport()
    transport.fail_next_pulls = 1

    with pytest.raises(TransportError):
        await transport.pull(None)
    assert (await transport.pull(None)).changes == []

    transport.online = False
    with pytest.raises(TransportError, match="unreachable"):
        await transport.push(_record(), None)


# ----------------------------------------------------------------------
# HTTP transport
# ----------------------------------------------------------------------
def _http(session: _FakeSession, **config) -> HttpRemoteTransport:
    return HttpRemoteTransport(
        SyncConfig(remote_endpoint="http://remote.example/api/", **config), session=session
    )


@pytest.mark.asyncio
async def test_http_push_returns_revision() -> None:
    session = _FakeSession(_FakeResponse(200, {"revision": 7}))
    transport = _http(session)

    assert await transport.push(_record(), 6) == 7

    method, url, body = session.calls[0]
    assert (method, url) == ("POST", "http://remote.example/api/records/rec-1")
    assert body["last_known_revision"] == 6
    assert body["record"]["id"] == "rec-1"


@pytest.mark.asyncio
async def test_http_push_conflict() -> None:
    payload = {"revision": 9, "record": _record("remote").model_dump(mode="json")}
    transport = _http(_FakeSession(_FakeResponse(409, payload)))

    outcome = await transport.push(_record(), 6)

    assert isinstance(outcome, RemoteConflict)
    assert outcome.revision == 9
    assert outcome.record.notes == "remote"


@pytest.mark.parametrize(
    "session",
    [
        _FakeSession(_FakeResponse(500, {"error": "boom"})),
        _FakeSession(_FakeResponse(200, {"unexpected": True})),
        _FakeSession(_FakeResponse(200, ValueError("not json"))),
        _FakeSession(error=aiohttp.ClientConnectionError("refused")),
    ],
)
@pytest.mark.asyncio
async def test_http_push_failures_become_transport_errors(session) -> None:
    with pytest.raises(TransportError):
        await _http(session).push(_record(), None)


@pytest.mark.asyncio
async def test_http_pull_parses_changes() -> None:
    payload = {
        "changes": [{"record": _record("remote").model_dump(mode="json"), "revision": 4}],
        "cursor": "c-42",
    }
    session = _FakeSession(_FakeResponse(200, payload))

    result = await _http(session).pull("c-41")

    assert result.cursor == "c-42"
    assert [(c.record_id, c.revision) for c in result.changes] == [("rec-1", 4)]
    assert session.calls[0] == ("GET", "http://remote.example/api/records", {"since": "c-41"})


@pytest.mark.asyncio
async def test_http_pull_error_status() -> None:
    transport = _http(_FakeSession(_FakeResponse(503, {})))

    with pytest.raises(TransportError, match="HTTP 503"):
        await transport.pull(None)


@pytest.mark.asyncio
async def test_http_does_not_close_injected_session() -> None:
    session = _FakeSession(_FakeResponse(200, {"revision": 1}))
    transport = _http(session)

    await transport.close()

    assert session.closed is False


def test_http_sets_bearer_token() -> None:
    transport = _http(_FakeSession(), api_key="secret")

    assert transport.headers["Authorization"] == "Bearer secret"


def test_http_requires_endpoint() -> None:
    with pytest.raises(ValueError, match="remote_endpoint"):
        HttpRemoteTransport(SyncConfig(remote_endpoint=""))


def test_create_transport_by_configuration() -> None:
    assert isinstance(
        create_transport(SyncConfig(remote_endpoint="")), UnconfiguredRemoteTransport
    )
    assert isinstance(
        create_transport(SyncConfig(remote_endpoint="http://remote.example")),
        HttpRemoteTransport,
    )


@pytest.mark.asyncio
async def test_unconfigured_transport_refuses_push_and_pull() -> None:
    transport = UnconfiguredRemoteTransport()

    with pytest.raises(TransportError, match="No remote endpoint"):
        await transport.push(_record(), None)
    with pytest.raises(TransportError, match="No remote endpoint"):
        await transport.pull(None)
    await transport.close()
