"""Custom exception hierarchy."""

from typing import Optional, Sequence


class AppError(Exception):
    """Base exception for application errors."""

    # Suggested HTTP status for the web layer that maps these errors.
    status_hint: int = 500

    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.original_error = original_error


class ValidationError(AppError):
    """Raised when input validation fails."""
    status_hint = 422


class ConnectionExhaustedError(AppError):
    """Document store still unreachable after every connect attempt.

    The engine keeps serving relational-only reads while this is raised.
    """

    status_hint = 503

    def __init__(
        self,
        message: str,
        attempts: int,
        diagnostics: Sequence[str] = (),
        original_error: Exception = None,
    ):
        super().__init__(message, original_error=original_error)
        self.attempts = attempts
        self.diagnostics = list(diagnostics)


class StorageUnavailableError(AppError):
    """Blob bucket is not ready; the ingestion was aborted before writing."""
    status_hint = 503


class IngestionError(AppError):
    """Blob ingestion failed; no descriptor was produced."""

    status_hint = 503

    def __init__(self, message: str, file_id: Optional[str] = None, original_error: Exception = None):
        super().__init__(message, original_error=original_error)
        self.file_id = file_id


class IngestionVerificationFailedError(IngestionError):
    """Stored descriptor could not be read back after the stream completed."""
    pass


class BlobNotFoundError(AppError):
    """No blob with the requested id exists in the bucket."""

    status_hint = 404

    def __init__(self, file_id: str, original_error: Exception = None):
        super().__init__(f"Blob {file_id} not found", original_error=original_error)
        self.file_id = file_id


class IngestionTimeoutError(IngestionError):
    """Ingestion (or one of its steps) exceeded its time budget."""

    status_hint = 408

    def __init__(
        self,
        message: str,
        timeout: float,
        stage: str,
        file_id: Optional[str] = None,
        original_error: Exception = None,
    ):
        super().__init__(message, file_id=file_id, original_error=original_error)
        self.timeout = timeout
        self.stage = stage


class ProposalNotFoundError(AppError):
    """Proposal is missing from a specific store."""

    status_hint = 404

    def __init__(self, proposal_id: str, store: str, original_error: Exception = None):
        super().__init__(f"Proposal {proposal_id} not found in {store} store", original_error=original_error)
        self.proposal_id = proposal_id
        self.store = store


class SyncError(AppError):
    """A store read or write failed during a sync attempt."""

    status_hint = 503

    def __init__(self, message: str, proposal_id: str, store: str, original_error: Exception = None):
        super().__init__(message, original_error=original_error)
        self.proposal_id = proposal_id
        self.store = store


class ConflictResolutionError(SyncError):
    """Writing relational values over the document projection failed.

    The proposal stays inconsistent until the next audit pass.
    """
    pass


class InvalidProjectionError(SyncError):
    """A stored projection does not fit the expected shape.

    ``raw`` carries the document as read, so relational-wins resolution can
    still compare and overwrite it.
    """

    def __init__(self, message: str, proposal_id: str, raw: dict, original_error: Exception = None):
        super().__init__(message, proposal_id=proposal_id, store="document", original_error=original_error)
        self.raw = raw
