"""Database module for SQLAlchemy models."""

from proposal_sync.database.models import REVIEWED_STATUSES, ProposalRecord, ProposalStatus

__all__ = [
    "ProposalRecord",
    "ProposalStatus",
    "REVIEWED_STATUSES",
]
