"""Cache-backed read model of a proposal and its attachments."""

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from proposal_sync.core.cache import CacheKeys, ResultCache, result_cache
from proposal_sync.core.exceptions import ProposalNotFoundError, SyncError
from proposal_sync.repositories.proposal_document_repository import ProposalDocumentRepository
from proposal_sync.repositories.proposal_repository import ProposalRepository
from proposal_sync.schemas.proposal import DataStore, FileDescriptor, ProposalView
from proposal_sync.services.base_service import BaseService, store_operation
from proposal_sync.utils.field_mapping import normalize_proposal_id, normalize_value, record_to_mirror
from proposal_sync.utils.logging import get_logger

LOGGER = get_logger(__name__)


class ProposalViewService(BaseService):
    """Serves proposal views, falling back to relational-only data when the document store is down."""

    def __init__(
        self,
        session: AsyncSession,
        document_repo: ProposalDocumentRepository,
        cache: Optional[ResultCache] = None,
        ttl: Optional[float] = None,
    ):
        self.relational = ProposalRepository(session)
        super().__init__(self.relational)
        self.documents = document_repo
        self.cache = cache if cache is not None else result_cache
        self.ttl = ttl

    def validate(self, proposal_id: Any) -> None:
        normalize_proposal_id(proposal_id)

    async def run(self, proposal_id: Any) -> ProposalView:
        return await self.get_view(proposal_id)

    async def get_view(self, proposal_id: Any) -> ProposalView:
        """Get the proposal with its file descriptors.

        Degraded views are returned but never cached.

        Raises:
            ProposalNotFoundError: No relational record for the proposal
        """
        pid = normalize_proposal_id(proposal_id)
        return await self.cache.get_or_compute(
            CacheKeys.proposal(pid),
            self.ttl,
            lambda: self._build_view(pid),
            cache_if=lambda view: not view.degraded,
        )

    async def _build_view(self, pid: str) -> ProposalView:
        with store_operation(pid, DataStore.RELATIONAL, "proposal read"):
            record = await self.relational.get_by_id(pid)
        if record is None:
            raise ProposalNotFoundError(pid, DataStore.RELATIONAL.value)

        fields = {name: normalize_value(value) for name, value in record_to_mirror(record).items()}
        fields["admin_comments"] = record.admin_comments
        view = ProposalView(proposal_id=pid, fields=fields)

        try:
            with store_operation(pid, DataStore.DOCUMENT, "file listing"):
                stored = await self.documents.find_file_documents(pid)
        except SyncError as e:
            view.degraded = True
            LOGGER.warning(
                "Serving relational-only proposal view",
                extra={"proposal_id": pid, "error": str(e)},
            )
        else:
            view.files = [FileDescriptor.from_stored(doc) for doc in stored]

        return view
