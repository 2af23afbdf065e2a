"""Repositories for the relational and document stores."""

from proposal_sync.repositories.base_repository import BaseRepository
from proposal_sync.repositories.proposal_document_repository import ProposalDocumentRepository
from proposal_sync.repositories.proposal_repository import ProposalRepository

__all__ = [
    "BaseRepository",
    "ProposalDocumentRepository",
    "ProposalRepository",
]
