"""Synchronizer: reconciles the relational record and the document projection.

Resolution policy is fixed: the relational record wins on every mirrored
field. Each write path invalidates the proposal's cache entries before it
returns, so no reader is served a value older than the last sync.
"""

from typing import Any, Dict, Iterable, Optional, Union

from pymongo.errors import DuplicateKeyError
from sqlalchemy.ext.asyncio import AsyncSession

from proposal_sync.core.cache import ResultCache, result_cache
from proposal_sync.core.config import settings
from proposal_sync.core.exceptions import (
    AppError,
    ConflictResolutionError,
    ProposalNotFoundError,
    SyncError,
    ValidationError,
)
from proposal_sync.database.models import ProposalStatus
from proposal_sync.repositories.proposal_document_repository import ProposalDocumentRepository
from proposal_sync.repositories.proposal_repository import ProposalRepository
from proposal_sync.schemas.proposal import (
    BatchSyncItemError,
    BatchSyncSummary,
    BidirectionalSyncResult,
    ConflictResolution,
    DataStore,
    ResolutionStrategy,
    ResolvedField,
    StatusUpdateResult,
    SyncOperation,
    SyncResult,
)
from proposal_sync.services.base_service import DOCUMENT_STORE_ERRORS, store_operation
from proposal_sync.services.consistency_checker import ConsistencyChecker
from proposal_sync.utils.field_mapping import (
    diff_fields,
    normalize_proposal_id,
    to_document_value,
    utc_now,
)
from proposal_sync.utils.logging import get_logger, log_sync_operation

LOGGER = get_logger(__name__)


class Synchronizer:
    """Applies directional syncs and relational-wins conflict resolution."""

    def __init__(
        self,
        session: AsyncSession,
        document_repo: ProposalDocumentRepository,
        cache: Optional[ResultCache] = None,
        conflict_history_limit: Optional[int] = None,
    ):
        """Initialize the synchronizer.

        Args:
            session: Relational session; the synchronizer commits on it
            document_repo: Document store repository
            cache: Result cache to invalidate after writes
            conflict_history_limit: Max entries kept in a projection's conflict history
        """
        self.session = session
        self.relational = ProposalRepository(session)
        self.documents = document_repo
        self.cache = cache if cache is not None else result_cache
        self.checker = ConsistencyChecker(session, document_repo, self.cache)
        self.conflict_history_limit = (
            conflict_history_limit
            if conflict_history_limit is not None
            else settings.sync.conflict_history_limit
        )

    async def sync_directional(
        self,
        proposal_id: Any,
        source: Union[DataStore, str],
        target: Union[DataStore, str],
    ) -> SyncResult:
        """Copy the mirrored fields of one proposal from ``source`` to ``target``.

        Updates the target when it already holds the proposal, inserts
        otherwise. Running it twice leaves the target unchanged.

        Args:
            proposal_id: Proposal identifier
            source: Store to read from
            target: Store to write to

        Returns:
            SyncResult: Operation performed and rows/documents affected

        Raises:
            ValidationError: Source and target are the same store
            ProposalNotFoundError: The source has no such proposal
            SyncError: A store read or write failed
        """
        pid = normalize_proposal_id(proposal_id)
        try:
            source, target = DataStore(source), DataStore(target)
        except ValueError as e:
            raise ValidationError(f"Unknown store: {e}", original_error=e) from e
        if source == target:
            raise ValidationError("Source and target store must differ")

        if source == DataStore.RELATIONAL:
            result = await self._relational_to_document(pid)
        else:
            result = await self._document_to_relational(pid)

        await self.cache.invalidate_proposal(pid)
        log_sync_operation(
            LOGGER,
            f"{source.value} -> {target.value}",
            proposal_id=pid,
            operation=result.operation.value,
            affected_count=result.affected_count,
        )
        return result

    async def _relational_to_document(self, pid: str) -> SyncResult:
        with store_operation(pid, DataStore.RELATIONAL, "relational read"):
            fields = await self.relational.get_mirrored_fields(pid)
        if fields is None:
            raise ProposalNotFoundError(pid, DataStore.RELATIONAL.value)

        synced_at = utc_now()
        with store_operation(pid, DataStore.DOCUMENT, "projection write"):
            file_ids = await self.documents.find_file_ids(pid)
            matched = 0
            if await self.documents.get_raw(pid) is not None:
                matched = await self.documents.update_fields(pid, fields, synced_at, file_ids)

            if matched:
                operation = SyncOperation.UPDATE
            else:
                try:
                    await self.documents.insert(pid, fields, synced_at, file_ids)
                    operation, matched = SyncOperation.INSERT, 1
                except DuplicateKeyError:
                    LOGGER.info(
                        "Projection inserted concurrently, updating instead",
                        extra={"proposal_id": pid},
                    )
                    matched = await self.documents.update_fields(pid, fields, synced_at, file_ids)
                    operation = SyncOperation.UPDATE

        return SyncResult(
            operation=operation,
            proposal_id=pid,
            source=DataStore.RELATIONAL,
            target=DataStore.DOCUMENT,
            affected_count=matched,
            synced_at=synced_at,
        )

    async def _document_to_relational(self, pid: str) -> SyncResult:
        with store_operation(pid, DataStore.DOCUMENT, "projection read"):
            document = await self.documents.get(pid)
        if document is None:
            raise ProposalNotFoundError(pid, DataStore.DOCUMENT.value)

        with store_operation(pid, DataStore.RELATIONAL, "relational write"):
            existed = await self.relational.exists(pid)
            await self.relational.apply_fields(pid, document.mirrored_fields())

        return SyncResult(
            operation=SyncOperation.UPDATE if existed else SyncOperation.INSERT,
            proposal_id=pid,
            source=DataStore.DOCUMENT,
            target=DataStore.RELATIONAL,
            affected_count=1,
        )

    async def bidirectional_sync(self, proposal_id: Any) -> BidirectionalSyncResult:
        """Check one proposal and bring both stores back in line.

        Callers that hit a ``SyncError`` retry the whole call; every attempt
        starts from a fresh read of both stores.

        Returns:
            BidirectionalSyncResult: What differed and what was done about it
        """
        pid = normalize_proposal_id(proposal_id)
        report = await self.checker.check(pid)

        result = BidirectionalSyncResult(
            proposal_id=pid,
            exists_in_relational=report.exists_in_relational,
            exists_in_document=report.exists_in_document,
            has_differences=report.has_differences,
            differences=report.field_differences,
        )
        if not report.has_differences:
            return result

        if report.exists_in_relational and not report.exists_in_document:
            result.sync_operations.append(
                await self.sync_directional(pid, DataStore.RELATIONAL, DataStore.DOCUMENT)
            )
        elif report.exists_in_document and not report.exists_in_relational:
            LOGGER.warning(
                "Restoring relational record from document projection",
                extra={"proposal_id": pid},
            )
            result.sync_operations.append(
                await self.sync_directional(pid, DataStore.DOCUMENT, DataStore.RELATIONAL)
            )
        else:
            result.conflict_resolution = await self._resolve_locked(pid)

        result.synced_at = utc_now()
        return result

    async def _resolve_locked(self, pid: str) -> ConflictResolution:
        # Row lock is held from the re-read until the commit below
        try:
            with store_operation(pid, DataStore.RELATIONAL, "locked re-read"):
                relational = await self.relational.get_mirrored_fields(pid, lock=True)
            if relational is None:
                raise ProposalNotFoundError(pid, DataStore.RELATIONAL.value)
            with store_operation(pid, DataStore.DOCUMENT, "projection read"):
                document = await self.documents.get_raw(pid)
            resolution = await self.resolve_conflicts(pid, relational, document or {})
        except Exception:
            await self.session.rollback()
            raise
        await self.session.commit()
        return resolution

    async def resolve_conflicts(
        self,
        proposal_id: Any,
        relational_data: Dict[str, Any],
        document_data: Dict[str, Any],
    ) -> ConflictResolution:
        """Overwrite every differing mirrored field in the projection with the relational value.

        The winning values, the resolution marker and a history entry go
        out in a single document update.

        Args:
            proposal_id: Proposal identifier
            relational_data: Mirrored fields read from the relational store
            document_data: Current projection

        Returns:
            ConflictResolution: Exactly the fields that differed, old and new values

        Raises:
            ConflictResolutionError: The projection could not be updated
        """
        pid = normalize_proposal_id(proposal_id)
        differences = diff_fields(relational_data, document_data)
        resolution = ConflictResolution(
            proposal_id=pid,
            strategy=ResolutionStrategy.RELATIONAL_WINS,
            resolved_fields=[
                ResolvedField(field=d.field, old_value=d.document_value, new_value=d.relational_value)
                for d in differences
            ],
            resolved_at=utc_now(),
        )
        if not differences:
            return resolution

        winning = {d.field: to_document_value(relational_data.get(d.field)) for d in differences}
        marker = {
            "resolved_at": resolution.resolved_at,
            "strategy": resolution.strategy.value,
            "resolved_fields": [d.field for d in differences],
        }
        history_entry = {
            **marker,
            "changes": [f.model_dump() for f in resolution.resolved_fields],
        }

        try:
            matched = await self.documents.apply_conflict_resolution(
                pid, winning, marker, history_entry, self.conflict_history_limit
            )
        except DOCUMENT_STORE_ERRORS as e:
            LOGGER.error(
                "Conflict resolution write failed",
                extra={"proposal_id": pid, "error": str(e)},
            )
            raise ConflictResolutionError(
                f"Failed to resolve conflicts for proposal {pid}: {e}",
                proposal_id=pid,
                store=DataStore.DOCUMENT.value,
                original_error=e,
            ) from e
        if not matched:
            raise ConflictResolutionError(
                f"Projection for proposal {pid} disappeared during resolution",
                proposal_id=pid,
                store=DataStore.DOCUMENT.value,
            )

        await self.cache.invalidate_proposal(pid)
        log_sync_operation(
            LOGGER,
            "conflicts resolved",
            proposal_id=pid,
            strategy=resolution.strategy.value,
            fields=marker["resolved_fields"],
        )
        return resolution

    async def batch_sync_relational_to_document(self, proposal_ids: Iterable[Any]) -> BatchSyncSummary:
        """Push several proposals to the document store, collecting per-id failures."""
        summary = BatchSyncSummary()
        for proposal_id in proposal_ids:
            try:
                summary.results.append(
                    await self.sync_directional(proposal_id, DataStore.RELATIONAL, DataStore.DOCUMENT)
                )
            except AppError as e:
                LOGGER.warning(
                    "Batch sync failed for proposal",
                    extra={"proposal_id": str(proposal_id), "error": str(e)},
                )
                summary.errors.append(BatchSyncItemError(proposal_id=str(proposal_id), error=str(e)))

        log_sync_operation(
            LOGGER,
            "batch relational -> document",
            succeeded=summary.success_count,
            failed=summary.error_count,
        )
        return summary

    async def update_proposal_status(
        self,
        proposal_id: Any,
        status: Union[ProposalStatus, str],
        changed_by: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> StatusUpdateResult:
        """Change a proposal's status, then mirror it into the document store.

        The relational write never waits on the document store: if the
        projection cannot be updated, the result is flagged ``degraded`` and
        the next consistency pass repairs it.

        Raises:
            ValidationError: Unknown status
            ProposalNotFoundError: No such proposal
            SyncError: The relational update failed
        """
        pid = normalize_proposal_id(proposal_id)
        try:
            new_status = ProposalStatus(status)
        except ValueError as e:
            raise ValidationError(f"Invalid proposal status: {status}", original_error=e) from e

        with store_operation(pid, DataStore.RELATIONAL, "status update"):
            record = await self.relational.get_by_id(pid, lock=True)
            if record is None:
                await self.session.rollback()
                raise ProposalNotFoundError(pid, DataStore.RELATIONAL.value)
            previous = record.proposal_status
            await self.relational.update_status(record, new_status, changed_by, comments)

        await self.cache.invalidate_proposal(pid)
        result = StatusUpdateResult(
            proposal_id=pid,
            previous_status=ProposalStatus(previous).value,
            new_status=new_status.value,
            changed_by=changed_by,
        )

        try:
            result.document_sync = await self.sync_directional(
                pid, DataStore.RELATIONAL, DataStore.DOCUMENT
            )
        except SyncError as e:
            if e.store != DataStore.DOCUMENT.value:
                raise
            result.degraded = True
            LOGGER.warning(
                "Status updated in relational store only; projection is stale",
                extra={"proposal_id": pid, "error": str(e)},
            )

        log_sync_operation(
            LOGGER,
            "status updated",
            proposal_id=pid,
            previous_status=result.previous_status,
            new_status=result.new_status,
            degraded=result.degraded,
        )
        return result
