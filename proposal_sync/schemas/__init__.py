"""Schemas for proposal projections, descriptors and sync results."""

from proposal_sync.schemas.proposal import (
    DOCUMENT_SCHEMA_VERSION,
    MIRRORED_FIELDS,
    AuditFailure,
    AuditSummary,
    BatchIngestionResult,
    BatchSyncItemError,
    BatchSyncSummary,
    BidirectionalSyncResult,
    ConflictResolution,
    ConflictResolutionMarker,
    ConsistencyReport,
    DataStore,
    FieldDifference,
    FileDescriptor,
    FileMetadata,
    IncomingFile,
    IngestionFailure,
    ProposalDocument,
    ProposalView,
    ResolutionStrategy,
    ResolvedField,
    StatusUpdateResult,
    StoredBlob,
    SyncOperation,
    SyncResult,
)

__all__ = [
    "DOCUMENT_SCHEMA_VERSION",
    "MIRRORED_FIELDS",
    "AuditFailure",
    "AuditSummary",
    "BatchIngestionResult",
    "BatchSyncItemError",
    "BatchSyncSummary",
    "BidirectionalSyncResult",
    "ConflictResolution",
    "ConflictResolutionMarker",
    "ConsistencyReport",
    "DataStore",
    "FieldDifference",
    "FileDescriptor",
    "FileMetadata",
    "IncomingFile",
    "IngestionFailure",
    "ProposalDocument",
    "ProposalView",
    "ResolutionStrategy",
    "ResolvedField",
    "StatusUpdateResult",
    "StoredBlob",
    "SyncOperation",
    "SyncResult",
]
