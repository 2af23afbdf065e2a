import pytest
from sqlalchemy import text

from proposal_sync.core.database import DatabaseClient
from proposal_sync.database.models import ProposalRecord


@pytest.fixture
def client(engine, session_factory):
    return DatabaseClient(engine, session_factory)


@pytest.mark.asyncio
async def test_connect_and_health_check(client):
    assert await client.connect() is True
    assert client.is_connected

    health = await client.health_check()

    assert health == {"status": "healthy", "connected": True, "latency_test": "passed"}


@pytest.mark.asyncio
async def test_transaction_commits_on_success(client):
    async with client.transaction() as session:
        session.add(ProposalRecord(id="tx-1", event_name="Harvest Fair"))

    async with client.session() as session:
        assert (await session.get(ProposalRecord, "tx-1")).event_name == "Harvest Fair"


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(client):
    with pytest.raises(RuntimeError):
        async with client.transaction() as session:
            session.add(ProposalRecord(id="tx-2"))
            await session.flush()
            raise RuntimeError("abort")

    async with client.session() as session:
        count = await session.scalar(text("SELECT COUNT(*) FROM proposals"))
    assert count == 0


@pytest.mark.asyncio
async def test_disconnect_marks_client_disconnected(client):
    await client.connect()

    await client.disconnect()

    assert not client.is_connected
