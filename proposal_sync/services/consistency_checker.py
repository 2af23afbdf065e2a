"""Detects divergence of one proposal between the relational and document stores."""

from typing import Any, Dict, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from proposal_sync.core.cache import CacheKeys, ResultCache, result_cache
from proposal_sync.core.exceptions import AppError, InvalidProjectionError, SyncError
from proposal_sync.repositories.proposal_document_repository import ProposalDocumentRepository
from proposal_sync.repositories.proposal_repository import ProposalRepository
from proposal_sync.schemas.proposal import (
    AuditFailure,
    AuditSummary,
    ConsistencyReport,
    DataStore,
    MIRRORED_FIELDS,
)
from proposal_sync.services.base_service import BaseService, store_operation
from proposal_sync.utils.field_mapping import diff_fields, normalize_proposal_id, utc_now
from proposal_sync.utils.logging import get_logger

LOGGER = get_logger(__name__)

RECOMMEND_CREATE_BOTH = "create in both stores"
RECOMMEND_CREATE_DOCUMENT = "create document projection"
RECOMMEND_CREATE_RELATIONAL = "create relational record"
RECOMMEND_RESOLVE_CONFLICTS = "resolve field conflicts (relational wins)"
RECOMMEND_NONE = "consistent"


class ConsistencyChecker(BaseService):
    """Compares the mirrored fields of a proposal across both stores.

    Read-only: a check never writes to either store.
    """

    def __init__(
        self,
        session: AsyncSession,
        document_repo: ProposalDocumentRepository,
        cache: Optional[ResultCache] = None,
    ):
        self.relational = ProposalRepository(session)
        super().__init__(self.relational)
        self.documents = document_repo
        self.cache = cache if cache is not None else result_cache

    def validate(self, proposal_id: Any) -> None:
        normalize_proposal_id(proposal_id)

    async def run(self, proposal_id: Any) -> ConsistencyReport:
        return await self.check(proposal_id)

    async def check(self, proposal_id: Any) -> ConsistencyReport:
        """Compare one proposal across both stores.

        Args:
            proposal_id: Proposal identifier

        Returns:
            ConsistencyReport: Existence flags, differing fields and recommendations

        Raises:
            SyncError: Either store could not be read
        """
        pid = normalize_proposal_id(proposal_id)

        with store_operation(pid, DataStore.RELATIONAL, "consistency check"):
            relational = await self.relational.get_mirrored_fields(pid)
        with store_operation(pid, DataStore.DOCUMENT, "consistency check"):
            document = await self._document_fields(pid)

        report = ConsistencyReport(
            proposal_id=pid,
            exists_in_relational=relational is not None,
            exists_in_document=document is not None,
        )

        if relational is None and document is None:
            report.recommendations.append(RECOMMEND_CREATE_BOTH)
        elif document is None:
            report.recommendations.append(RECOMMEND_CREATE_DOCUMENT)
        elif relational is None:
            report.recommendations.append(RECOMMEND_CREATE_RELATIONAL)
            report.is_anomalous = True
            LOGGER.warning(
                "Proposal exists only in the document store",
                extra={"proposal_id": pid},
            )
        else:
            report.field_differences = diff_fields(relational, document)
            report.recommendations.append(
                RECOMMEND_RESOLVE_CONFLICTS if report.field_differences else RECOMMEND_NONE
            )

        LOGGER.debug(
            "Consistency check completed",
            extra={
                "proposal_id": pid,
                "differences": [d.field for d in report.field_differences],
                "recommendations": report.recommendations,
            },
        )
        return report

    async def _document_fields(self, pid: str) -> Optional[Dict[str, Any]]:
        try:
            document = await self.documents.get(pid)
        except InvalidProjectionError as e:
            # Compare the stored values as they are; relational wins overwrites them
            return {name: e.raw.get(name) for name in MIRRORED_FIELDS}
        return document.mirrored_fields() if document is not None else None

    async def check_cached(self, proposal_id: Any, ttl: Optional[float] = None) -> ConsistencyReport:
        """Like :meth:`check`, but served from the result cache when fresh."""
        pid = normalize_proposal_id(proposal_id)
        return await self.cache.get_or_compute(
            CacheKeys.consistency(pid), ttl, lambda: self.check(pid)
        )

    async def audit(self, proposal_ids: Optional[Iterable[Any]] = None, limit: int = 500) -> AuditSummary:
        """Check many proposals and summarize the outcome.

        Args:
            proposal_ids: Proposals to check; defaults to the first ``limit``
                proposals of the relational store
            limit: Page size when listing proposals

        Returns:
            AuditSummary: Counts plus the per-proposal reports and failures
        """
        if proposal_ids is None:
            proposal_ids = await self.relational.list_ids(limit=limit)

        summary = AuditSummary()
        for proposal_id in proposal_ids:
            summary.checked += 1
            try:
                report = await self.check(proposal_id)
            except SyncError as e:
                summary.failed += 1
                summary.failures.append(
                    AuditFailure(proposal_id=e.proposal_id, store=e.store, error=str(e))
                )
                continue
            except AppError as e:
                summary.failed += 1
                summary.failures.append(AuditFailure(proposal_id=str(proposal_id), error=str(e)))
                continue

            summary.reports.append(report)
            if report.is_consistent:
                summary.consistent += 1
            else:
                summary.inconsistent += 1

        summary.finished_at = utc_now()
        LOGGER.info(
            "Consistency audit finished",
            extra={
                "checked": summary.checked,
                "consistent": summary.consistent,
                "inconsistent": summary.inconsistent,
                "failed": summary.failed,
            },
        )
        return summary
