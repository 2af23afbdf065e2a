import copy
from datetime import datetime, timezone

import pytest
from pymongo.errors import OperationFailure

from proposal_sync.core.exceptions import SyncError, ValidationError
from proposal_sync.database.models import ProposalStatus
from proposal_sync.repositories.proposal_document_repository import ProposalDocumentRepository
from proposal_sync.schemas.proposal import DataStore
from proposal_sync.services.consistency_checker import (
    RECOMMEND_CREATE_BOTH,
    RECOMMEND_CREATE_DOCUMENT,
    RECOMMEND_CREATE_RELATIONAL,
    RECOMMEND_NONE,
    RECOMMEND_RESOLVE_CONFLICTS,
    ConsistencyChecker,
)
from proposal_sync.services.synchronizer import Synchronizer
from proposal_sync.utils.field_mapping import utc_now


@pytest.fixture
def checker(session, document_repo, cache):
    return ConsistencyChecker(session, document_repo, cache)


@pytest.fixture
def synchronizer(session, document_repo, cache):
    return Synchronizer(session, document_repo, cache)


@pytest.mark.asyncio
async def test_missing_everywhere(checker):
    report = await checker.check("nope")

    assert not report.exists_in_relational
    assert not report.exists_in_document
    assert report.recommendations == [RECOMMEND_CREATE_BOTH]
    assert not report.has_differences


@pytest.mark.asyncio
async def test_relational_only(checker, make_proposal):
    record = await make_proposal()

    report = await checker.check(record.id)

    assert report.exists_in_relational and not report.exists_in_document
    assert report.recommendations == [RECOMMEND_CREATE_DOCUMENT]
    assert not report.is_anomalous


@pytest.mark.asyncio
async def test_document_only_is_anomalous(checker, document_repo):
    await document_repo.insert("orphan", {"event_name": "Gala"}, utc_now())

    report = await checker.check("orphan")

    assert report.exists_in_document and not report.exists_in_relational
    assert report.recommendations == [RECOMMEND_CREATE_RELATIONAL]
    assert report.is_anomalous


@pytest.mark.asyncio
async def test_synced_proposal_is_consistent(checker, synchronizer, make_proposal):
    record = await make_proposal()
    await synchronizer.sync_directional(record.id, DataStore.RELATIONAL, DataStore.DOCUMENT)

    report = await checker.check(record.id)

    assert report.is_consistent
    assert report.field_differences == []
    assert report.recommendations == [RECOMMEND_NONE]


@pytest.mark.asyncio
async def test_status_divergence_is_reported_without_writing(checker, synchronizer, make_proposal, mongo_server):
    record = await make_proposal(proposal_status=ProposalStatus.APPROVED)
    await synchronizer.sync_directional(record.id, DataStore.RELATIONAL, DataStore.DOCUMENT)
    mongo_server.proposals.docs[0]["proposal_status"] = "pending"
    before = copy.deepcopy(mongo_server.proposals.docs)

    report = await checker.check(record.id)

    assert [d.field for d in report.field_differences] == ["proposal_status"]
    assert report.field_differences[0].relational_value == "approved"
    assert report.field_differences[0].document_value == "pending"
    assert report.recommendations == [RECOMMEND_RESOLVE_CONFLICTS]
    assert mongo_server.proposals.docs == before


@pytest.mark.asyncio
async def test_document_store_failure_surfaces_as_sync_error(checker, make_proposal, mongo_server):
    record = await make_proposal()
    await checker.documents.connector.connect()
    mongo_server.proposals.fail_next = [OperationFailure("not authorized")]

    with pytest.raises(SyncError) as exc_info:
        await checker.check(record.id)

    assert exc_info.value.store == DataStore.DOCUMENT.value
    assert exc_info.value.proposal_id == record.id


@pytest.mark.asyncio
async def test_unreachable_document_store_surfaces_as_sync_error(session, unreachable_connector, fast_read_policy, cache):
    checker = ConsistencyChecker(session, ProposalDocumentRepository(unreachable_connector, fast_read_policy), cache)

    with pytest.raises(SyncError) as exc_info:
        await checker.check("p-1")

    assert exc_info.value.store == DataStore.DOCUMENT.value


@pytest.mark.asyncio
async def test_execute_validates_input(checker):
    with pytest.raises(ValidationError):
        await checker.execute("  ")


@pytest.mark.asyncio
async def test_check_cached_serves_repeat_reads(checker, make_proposal, mongo_server):
    record = await make_proposal()

    first = await checker.check_cached(record.id)
    await checker.documents.insert(record.id, {}, utc_now())
    second = await checker.check_cached(record.id)

    assert second is first
    assert not second.exists_in_document


@pytest.mark.asyncio
async def test_audit_summarizes_every_proposal(checker, synchronizer, make_proposal):
    synced = await make_proposal()
    await synchronizer.sync_directional(synced.id, DataStore.RELATIONAL, DataStore.DOCUMENT)
    await make_proposal(event_name="Unsynced Fair")

    summary = await checker.audit()

    assert summary.checked == 2
    assert summary.consistent == 1
    assert summary.inconsistent == 1
    assert summary.failed == 0
    assert summary.finished_at is not None


@pytest.mark.asyncio
async def test_audit_records_failures(checker, make_proposal, mongo_server):
    record = await make_proposal()
    await checker.documents.connector.connect()
    mongo_server.proposals.fail_next = [OperationFailure("boom")]

    summary = await checker.audit([record.id, "  "])

    assert summary.failed == 2
    assert summary.failures[0].store == DataStore.DOCUMENT.value


@pytest.mark.asyncio
async def test_calendar_dates_stored_as_bson_dates_compare_equal(checker, synchronizer, make_proposal, mongo_server):
    record = await make_proposal()
    await synchronizer.sync_directional(record.id, DataStore.RELATIONAL, DataStore.DOCUMENT)
    mongo_server.proposals.docs[0]["event_start_date"] = datetime(2025, 4, 12, tzinfo=timezone.utc)

    report = await checker.check(record.id)

    assert report.is_consistent
    assert (await checker.documents.get(record.id)).event_start_date == "2025-04-12"


@pytest.mark.asyncio
async def test_unreadable_projection_is_reported_not_raised(checker, synchronizer, make_proposal, mongo_server):
    record = await make_proposal()
    await synchronizer.sync_directional(record.id, DataStore.RELATIONAL, DataStore.DOCUMENT)
    mongo_server.proposals.docs[0]["contact_name"] = {"first": "Dana"}

    report = await checker.check(record.id)
    summary = await checker.audit([record.id])

    assert report.exists_in_document
    assert [d.field for d in report.field_differences] == ["contact_name"]
    assert report.recommendations == [RECOMMEND_RESOLVE_CONFLICTS]
    assert (summary.inconsistent, summary.failed) == (1, 0)
