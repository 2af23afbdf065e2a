"""Pydantic schemas exchanged between the stores and the sync engine."""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from proposal_sync.utils.logging import get_logger

LOGGER = get_logger(__name__)

# Bump when the mirrored field set changes
DOCUMENT_SCHEMA_VERSION = 1

# Fields copied from the relational record into the document projection.
# The relational store is the source of truth for every one of them.
MIRRORED_FIELDS = (
    "organization_name",
    "organization_type",
    "contact_name",
    "contact_email",
    "contact_phone",
    "event_name",
    "event_venue",
    "event_mode",
    "event_start_date",
    "event_end_date",
    "proposal_status",
    "created_at",
    "updated_at",
    "submitted_at",
    "reviewed_at",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DataStore(str, Enum):
    """The two stores kept consistent by the engine."""
    RELATIONAL = "relational"
    DOCUMENT = "document"


class SyncOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"


class ResolutionStrategy(str, Enum):
    RELATIONAL_WINS = "relational_wins"


# --- Document projection ----------------------------------------------------

class ConflictResolutionMarker(BaseModel):
    """Summary of the last conflict resolution, stored on the projection."""
    resolved_at: datetime
    strategy: ResolutionStrategy = ResolutionStrategy.RELATIONAL_WINS
    resolved_fields: List[str] = Field(default_factory=list)


class ProposalDocument(BaseModel):
    """Projection of a proposal held in the document store.

    Mirrored values keep the shape they have on the wire (dates as ISO
    strings, status as its string value). Unknown keys are tolerated but
    logged so they are never silently trusted.
    """

    model_config = ConfigDict(extra="allow")

    proposal_id: str
    schema_version: int = DOCUMENT_SCHEMA_VERSION

    organization_name: Optional[str] = None
    organization_type: Optional[str] = None
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    event_name: Optional[str] = None
    event_venue: Optional[str] = None
    event_mode: Optional[str] = None
    event_start_date: Optional[str] = None
    event_end_date: Optional[str] = None
    proposal_status: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None

    last_synced_from_relational: Optional[datetime] = None
    last_conflict_resolution: Optional[ConflictResolutionMarker] = None
    conflict_history: List[Dict[str, Any]] = Field(default_factory=list)
    file_ids: List[str] = Field(default_factory=list)

    @field_validator("event_start_date", "event_end_date", mode="before")
    @classmethod
    def _date_as_iso_string(cls, value: Any) -> Any:
        # Older writers stored calendar dates as BSON dates (UTC midnight)
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(timezone.utc)
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        return value

    @field_validator(
        "organization_name",
        "organization_type",
        "contact_name",
        "contact_email",
        "contact_phone",
        "event_name",
        "event_venue",
        "event_mode",
        "proposal_status",
        mode="before",
    )
    @classmethod
    def _scalar_as_string(cls, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("file_ids", mode="before")
    @classmethod
    def _file_ids_as_strings(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(item) for item in value]
        return value

    @model_validator(mode="after")
    def _warn_unknown_fields(self) -> "ProposalDocument":
        if self.model_extra:
            LOGGER.warning(
                "Proposal document carries unknown fields",
                extra={"proposal_id": self.proposal_id, "fields": sorted(self.model_extra)},
            )
        if self.schema_version != DOCUMENT_SCHEMA_VERSION:
            LOGGER.warning(
                "Proposal document schema version mismatch",
                extra={
                    "proposal_id": self.proposal_id,
                    "found": self.schema_version,
                    "expected": DOCUMENT_SCHEMA_VERSION,
                },
            )
        return self

    def mirrored_fields(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in MIRRORED_FIELDS}


# --- Blob descriptors -------------------------------------------------------

class IncomingFile(BaseModel):
    """An uploaded file handed to the ingestion pipeline."""
    content: bytes
    original_name: str
    mime_type: str = "application/octet-stream"
    size: Optional[int] = None

    @property
    def byte_size(self) -> int:
        return self.size if self.size is not None else len(self.content)


class FileMetadata(BaseModel):
    proposal_id: Optional[str] = None
    file_type: str
    organization_name: str


class FileDescriptor(BaseModel):
    """Immutable record of one successfully ingested blob."""

    model_config = ConfigDict(frozen=True)

    id: str
    filename: str
    original_name: Optional[str] = None
    content_type: Optional[str] = None
    length: int = 0
    upload_date: Optional[datetime] = None
    metadata: FileMetadata

    @classmethod
    def from_stored(cls, stored: Dict[str, Any], **overrides: Any) -> "FileDescriptor":
        """Build a descriptor from a ``<bucket>.files`` document.

        Args:
            stored: Raw files-collection document
            **overrides: Logical fields supplied by the caller (file_type,
                organization_name, proposal_id, original_name, content_type)

        Returns:
            FileDescriptor
        """
        meta = stored.get("metadata") or {}
        return cls(
            id=str(stored["_id"]),
            filename=stored.get("filename", ""),
            original_name=overrides.get("original_name") or meta.get("originalName"),
            content_type=overrides.get("content_type") or meta.get("contentType") or meta.get("mimeType"),
            length=stored.get("length", 0),
            upload_date=stored.get("uploadDate"),
            metadata=FileMetadata(
                proposal_id=overrides.get("proposal_id") or meta.get("proposalId"),
                file_type=overrides.get("file_type") or meta.get("fileType", "unknown"),
                organization_name=overrides.get("organization_name") or meta.get("organizationName", ""),
            ),
        )


class StoredBlob(BaseModel):
    """A blob read back from the bucket with its descriptor."""
    descriptor: FileDescriptor
    content: bytes


class IngestionFailure(BaseModel):
    original_name: str
    error: str
    error_type: str


class BatchIngestionResult(BaseModel):
    descriptors: List[FileDescriptor] = Field(default_factory=list)
    failures: List[IngestionFailure] = Field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return not self.failures


# --- Consistency and sync results -------------------------------------------

class FieldDifference(BaseModel):
    field: str
    relational_value: Any = None
    document_value: Any = None


class ConsistencyReport(BaseModel):
    """Outcome of comparing one proposal across both stores."""
    proposal_id: str
    exists_in_relational: bool
    exists_in_document: bool
    field_differences: List[FieldDifference] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    is_anomalous: bool = False
    checked_at: datetime = Field(default_factory=_now)

    @property
    def is_consistent(self) -> bool:
        return self.exists_in_relational and self.exists_in_document and not self.field_differences

    @property
    def has_differences(self) -> bool:
        return (self.exists_in_relational != self.exists_in_document) or bool(self.field_differences)


class SyncResult(BaseModel):
    operation: SyncOperation
    proposal_id: str
    source: DataStore
    target: DataStore
    affected_count: int
    synced_at: datetime = Field(default_factory=_now)


class ResolvedField(BaseModel):
    field: str
    old_value: Any = None
    new_value: Any = None


class ConflictResolution(BaseModel):
    proposal_id: str
    strategy: ResolutionStrategy = ResolutionStrategy.RELATIONAL_WINS
    resolved_fields: List[ResolvedField] = Field(default_factory=list)
    resolved_at: datetime = Field(default_factory=_now)


class BidirectionalSyncResult(BaseModel):
    proposal_id: str
    exists_in_relational: bool
    exists_in_document: bool
    has_differences: bool
    differences: List[FieldDifference] = Field(default_factory=list)
    sync_operations: List[SyncResult] = Field(default_factory=list)
    conflict_resolution: Optional[ConflictResolution] = None
    synced_at: datetime = Field(default_factory=_now)


class BatchSyncItemError(BaseModel):
    proposal_id: str
    error: str


class BatchSyncSummary(BaseModel):
    results: List[SyncResult] = Field(default_factory=list)
    errors: List[BatchSyncItemError] = Field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.results)

    @property
    def error_count(self) -> int:
        return len(self.errors)


class AuditFailure(BaseModel):
    proposal_id: str
    store: Optional[str] = None
    error: str


class AuditSummary(BaseModel):
    """Result of a scheduled consistency pass over many proposals."""
    checked: int = 0
    consistent: int = 0
    inconsistent: int = 0
    failed: int = 0
    reports: List[ConsistencyReport] = Field(default_factory=list)
    failures: List[AuditFailure] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None


class StatusUpdateResult(BaseModel):
    proposal_id: str
    previous_status: str
    new_status: str
    changed_by: Optional[str] = None
    document_sync: Optional[SyncResult] = None
    degraded: bool = False


# --- Read model ---------------------------------------------------------------

class ProposalView(BaseModel):
    """Relational proposal plus its attachments, as served to readers."""
    proposal_id: str
    fields: Dict[str, Any]
    files: List[FileDescriptor] = Field(default_factory=list)
    degraded: bool = False
    generated_at: datetime = Field(default_factory=_now)
