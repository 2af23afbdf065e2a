"""Repository for proposal projections and blob descriptors in the document store."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pydantic import ValidationError as SchemaValidationError

from proposal_sync.core.config import settings
from proposal_sync.core.document_store import DocumentStoreConnector, DocumentStoreHandle
from proposal_sync.core.exceptions import InvalidProjectionError
from proposal_sync.core.retry import RetryPolicy, is_transient_error
from proposal_sync.schemas.proposal import DOCUMENT_SCHEMA_VERSION, ProposalDocument
from proposal_sync.utils.logging import get_logger

LOGGER = get_logger(__name__)

# Never return the store's internal key to callers
_PROJECTION = {"_id": 0}


def _file_key(file_id: Any) -> Any:
    if isinstance(file_id, str) and ObjectId.is_valid(file_id):
        return ObjectId(file_id)
    return file_id


class ProposalDocumentRepository:
    """Reads and writes proposal projections.

    Every call obtains the handle through the connector, so the first use
    connects lazily and a ``ConnectionExhaustedError`` surfaces to the caller.
    Reads are retried on transient network errors; writes are not.
    """

    def __init__(self, connector: DocumentStoreConnector, read_policy: Optional[RetryPolicy] = None):
        self.connector = connector
        self.read_policy = read_policy if read_policy is not None else RetryPolicy(
            max_attempts=settings.document_store.max_retries,
            base_delay_s=0.5,
            max_delay_s=settings.document_store.retry_max_delay,
            is_retriable=is_transient_error,
        )

    async def _handle(self) -> DocumentStoreHandle:
        return await self.connector.connect()

    async def get_raw(self, proposal_id: str) -> Optional[Dict[str, Any]]:
        handle = await self._handle()
        return await self.read_policy.run(
            "Read proposal projection",
            lambda: handle.proposals.find_one({"proposal_id": proposal_id}, _PROJECTION),
        )

    async def get(self, proposal_id: str) -> Optional[ProposalDocument]:
        """Get the projection of a proposal, or None if the store has no copy.

        Raises:
            InvalidProjectionError: The stored document cannot be read as a projection
        """
        raw = await self.get_raw(proposal_id)
        if raw is None:
            return None
        try:
            return ProposalDocument.model_validate(raw)
        except SchemaValidationError as e:
            fields = sorted({".".join(str(part) for part in err["loc"]) for err in e.errors()})
            LOGGER.warning(
                "Stored projection does not match the expected shape",
                extra={"proposal_id": proposal_id, "fields": fields},
            )
            raise InvalidProjectionError(
                f"Projection for proposal {proposal_id} has invalid fields: {', '.join(fields)}",
                proposal_id=proposal_id,
                raw=raw,
                original_error=e,
            ) from e

    async def insert(
        self,
        proposal_id: str,
        fields: Dict[str, Any],
        synced_at: datetime,
        file_ids: Optional[List[str]] = None,
    ) -> None:
        """Insert a new projection.

        Raises:
            pymongo.errors.DuplicateKeyError: A concurrent writer inserted first
        """
        handle = await self._handle()
        document = {
            "proposal_id": proposal_id,
            **fields,
            "schema_version": DOCUMENT_SCHEMA_VERSION,
            "last_synced_from_relational": synced_at,
            "conflict_history": [],
            "file_ids": list(file_ids or []),
        }
        await handle.proposals.insert_one(document)

    async def update_fields(
        self,
        proposal_id: str,
        fields: Dict[str, Any],
        synced_at: datetime,
        file_ids: Optional[List[str]] = None,
    ) -> int:
        """Overwrite mirrored fields and stamp the sync marker.

        ``file_ids`` are merged into the existing references, never replacing them.

        Returns:
            Number of matched projections (0 when absent)
        """
        handle = await self._handle()
        update = {
            "$set": {
                **fields,
                "schema_version": DOCUMENT_SCHEMA_VERSION,
                "last_synced_from_relational": synced_at,
            }
        }
        if file_ids:
            update["$addToSet"] = {"file_ids": {"$each": list(file_ids)}}
        result = await handle.proposals.update_one({"proposal_id": proposal_id}, update)
        return result.matched_count

    async def apply_conflict_resolution(
        self,
        proposal_id: str,
        fields: Dict[str, Any],
        marker: Dict[str, Any],
        history_entry: Dict[str, Any],
        history_limit: int,
    ) -> int:
        """Write winning values, the resolution marker and one history entry in one update."""
        handle = await self._handle()
        result = await handle.proposals.update_one(
            {"proposal_id": proposal_id},
            {
                "$set": {**fields, "last_conflict_resolution": marker},
                "$push": {
                    "conflict_history": {"$each": [history_entry], "$slice": -history_limit}
                },
            },
        )
        return result.matched_count

    async def attach_file(self, proposal_id: str, file_id: str) -> int:
        """Reference a blob descriptor from an existing projection.

        Returns:
            Number of matched projections; 0 means the projection does not exist
            yet and will be seeded from the bucket on its first sync.
        """
        handle = await self._handle()
        result = await handle.proposals.update_one(
            {"proposal_id": proposal_id},
            {"$addToSet": {"file_ids": file_id}},
        )
        return result.matched_count

    async def find_file_documents(self, proposal_id: str) -> List[Dict[str, Any]]:
        handle = await self._handle()
        return await self.read_policy.run(
            "List proposal files",
            lambda: handle.files.find({"metadata.proposalId": proposal_id})
            .sort("uploadDate", 1)
            .to_list(length=None),
        )

    async def find_file_ids(self, proposal_id: str) -> List[str]:
        return [str(doc["_id"]) for doc in await self.find_file_documents(proposal_id)]

    async def find_file_document(self, file_id: str) -> Optional[Dict[str, Any]]:
        handle = await self._handle()
        return await self.read_policy.run(
            "Read file descriptor",
            lambda: handle.files.find_one({"_id": _file_key(file_id)}),
        )
