"""Services of the cross-store consistency engine."""

from proposal_sync.services.blob_ingestion_service import BlobIngestionService
from proposal_sync.services.consistency_checker import ConsistencyChecker
from proposal_sync.services.proposal_view_service import ProposalViewService
from proposal_sync.services.synchronizer import Synchronizer

__all__ = [
    "BlobIngestionService",
    "ConsistencyChecker",
    "ProposalViewService",
    "Synchronizer",
]
