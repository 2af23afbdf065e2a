import asyncio

import pytest

from proposal_sync.core.document_store import DIAGNOSTIC_CHECKLIST, close_document_store, init_document_store
from proposal_sync.core.exceptions import ConnectionExhaustedError


@pytest.mark.asyncio
async def test_connect_memoizes_handle(connector, mongo_server):
    first = await connector.connect()
    second = await connector.connect()

    assert first is second
    assert mongo_server.pings == 1
    assert len(mongo_server.clients) == 1
    assert connector.is_available
    assert connector.status()["bucket_available"] is True


@pytest.mark.asyncio
async def test_concurrent_connects_share_one_handle(connector, mongo_server):
    handles = await asyncio.gather(*(connector.connect() for _ in range(5)))

    assert all(h is handles[0] for h in handles)
    assert len(mongo_server.clients) == 1


@pytest.mark.asyncio
async def test_connect_recovers_after_transient_failures(make_connector, make_server, sleep_recorder):
    server = make_server(ping_failures=2)
    connector = make_connector(server)

    handle = await connector.connect(max_retries=3)

    assert handle is connector.handle
    assert server.pings == 3
    assert sleep_recorder.calls == [2.0, 4.0]
    # Half-open clients from failed attempts are closed
    assert [c.closed for c in server.clients] == [True, True, False]


@pytest.mark.asyncio
async def test_connect_exhaustion_reports_attempts_and_checklist(make_connector, make_server, sleep_recorder):
    server = make_server(ping_failures=100)
    connector = make_connector(server)

    with pytest.raises(ConnectionExhaustedError) as exc_info:
        await connector.connect(max_retries=3)

    error = exc_info.value
    assert error.attempts == 3
    assert error.diagnostics == list(DIAGNOSTIC_CHECKLIST)
    assert error.status_hint == 503
    assert "No servers found yet" in str(error)
    assert server.pings == 3
    assert sleep_recorder.calls == [2.0, 4.0]
    assert not connector.is_available
    assert connector.status()["last_error"]


@pytest.mark.asyncio
async def test_ping_timeout_counts_as_failed_attempt(make_connector, make_server):
    server = make_server(ping_delay=1)
    connector = make_connector(server, ping_timeout=0.01)

    with pytest.raises(ConnectionExhaustedError) as exc_info:
        await connector.connect(max_retries=1)

    assert exc_info.value.attempts == 1
    assert server.clients[0].closed


@pytest.mark.asyncio
async def test_init_document_store_creates_lookup_indexes(connector, mongo_server):
    await init_document_store(connector)

    assert mongo_server.proposals.indexes == [
        ("proposal_id", {"unique": True, "name": "uniq_proposal_id"})
    ]
    assert mongo_server.files.indexes == [
        ("metadata.proposalId", {"name": "idx_files_proposal_id"})
    ]


@pytest.mark.asyncio
async def test_close_resets_connector(connector, mongo_server):
    await connector.connect()

    await connector.close()

    assert not connector.is_available
    assert mongo_server.clients[0].closed

    await connector.connect()
    assert len(mongo_server.clients) == 2


@pytest.mark.asyncio
async def test_close_document_store_uses_given_connector(connector, mongo_server):
    await connector.connect()

    await close_document_store(connector)

    assert connector.status() == {
        "initialized": False,
        "connected": False,
        "bucket_available": False,
        "last_error": None,
    }


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_exhausted_connector_fails_fast_during_cooldown(make_connector, make_server, sleep_recorder):
    clock = FakeClock()
    server = make_server(ping_failures=100)
    connector = make_connector(server, clock=clock, unavailable_cooldown=30)

    with pytest.raises(ConnectionExhaustedError):
        await connector.connect()
    assert connector.in_cooldown

    clock.now += 29
    with pytest.raises(ConnectionExhaustedError) as exc_info:
        await connector.connect()

    assert exc_info.value.attempts == 0
    assert "No servers found yet" in str(exc_info.value)
    assert server.pings == 3
    assert sleep_recorder.calls == [2.0, 4.0]

    server.ping_failures = 0
    clock.now += 2
    await connector.connect()

    assert not connector.in_cooldown
    assert connector.status()["last_error"] is None


@pytest.mark.asyncio
async def test_close_ends_cooldown(make_connector, make_server):
    server = make_server(ping_failures=3)
    connector = make_connector(server)

    with pytest.raises(ConnectionExhaustedError):
        await connector.connect()
    await connector.close()

    await connector.connect()
    assert server.pings == 4


@pytest.mark.asyncio
async def test_explicit_zero_retries_is_not_the_default(make_connector, make_server):
    server = make_server(ping_failures=100)
    connector = make_connector(server)

    with pytest.raises(ConnectionExhaustedError) as exc_info:
        await connector.connect(max_retries=0)

    assert exc_info.value.attempts == 1
    assert server.pings == 1
