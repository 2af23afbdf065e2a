"""Blob ingestion pipeline.

An upload completes in two explicit steps, each with its own timeout and
typed failure:

1. stream writer: push the whole buffer into the bucket and close the stream;
2. descriptor verifier: read the stored descriptor back by the id the
   stream was assigned.

Only a verified descriptor is returned to the caller. Anything else removes
what was written and raises, so an ingestion either fully succeeds or leaves
no descriptor behind. A retried upload always gets a fresh id.
"""

import asyncio
import os
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from bson import ObjectId
from gridfs.errors import NoFile
from pymongo.errors import PyMongoError

from proposal_sync.core.cache import ResultCache, result_cache
from proposal_sync.core.config import SyncSettings, settings
from proposal_sync.core.document_store import DocumentStoreConnector, DocumentStoreHandle
from proposal_sync.core.exceptions import (
    AppError,
    BlobNotFoundError,
    ConnectionExhaustedError,
    IngestionError,
    IngestionTimeoutError,
    IngestionVerificationFailedError,
    StorageUnavailableError,
)
from proposal_sync.core.retry import RetryExhaustedError
from proposal_sync.repositories.proposal_document_repository import ProposalDocumentRepository
from proposal_sync.schemas.proposal import (
    BatchIngestionResult,
    FileDescriptor,
    IncomingFile,
    IngestionFailure,
    StoredBlob,
)
from proposal_sync.utils.field_mapping import normalize_proposal_id, utc_now
from proposal_sync.utils.logging import get_logger

LOGGER = get_logger(__name__)


def build_object_name(organization_label: str, file_type: str, original_name: str) -> str:
    """Stored object name: ``{label}_{file_type}{ext}``. Not unique."""
    label = re.sub(r"\s+", "_", organization_label.strip())
    extension = os.path.splitext(original_name)[1]
    return f"{label}_{file_type}{extension}"


class _PendingBlob:
    """What the blob steps have written so far, for cleanup after a deadline."""

    def __init__(self):
        self.handle: Optional[DocumentStoreHandle] = None
        self.grid_in: Any = None
        self.file_id: Any = None
        self.closed = False

    @property
    def file_key(self) -> Optional[str]:
        return str(self.file_id) if self.file_id is not None else None


class BlobIngestionService:
    """Writes attachments into the blob bucket and hands back verified descriptors."""

    def __init__(
        self,
        connector: DocumentStoreConnector,
        document_repo: Optional[ProposalDocumentRepository] = None,
        cache: Optional[ResultCache] = None,
        config: Optional[SyncSettings] = None,
    ):
        self.connector = connector
        self.document_repo = document_repo if document_repo is not None else ProposalDocumentRepository(connector)
        self.cache = cache if cache is not None else result_cache
        self.config = config if config is not None else settings.sync

    async def _bucket_handle(self) -> DocumentStoreHandle:
        try:
            handle = await self.connector.connect()
        except ConnectionExhaustedError as e:
            LOGGER.error("Blob bucket unavailable", extra={"attempts": e.attempts})
            raise StorageUnavailableError(
                "Blob storage is not available", original_error=e
            ) from e
        if handle.bucket is None:
            raise StorageUnavailableError("Blob bucket is not initialized")
        return handle

    async def ingest(
        self,
        upload: IncomingFile,
        file_type: str,
        organization_label: str,
        proposal_id: Optional[Any] = None,
    ) -> FileDescriptor:
        """Store one file and return its verified descriptor.

        Args:
            upload: File content and client-supplied attributes
            file_type: Logical attachment type (e.g. ``proposal_document``)
            organization_label: Organization the upload belongs to
            proposal_id: Owning proposal, when already known

        Returns:
            FileDescriptor: Descriptor read back from the bucket

        Raises:
            StorageUnavailableError: The bucket is not reachable
            IngestionTimeoutError: The stream did not complete in time
            IngestionVerificationFailedError: The descriptor could not be read back
            IngestionError: Any other write failure
        """
        return await self._ingest(upload, file_type, organization_label, proposal_id, deadline=None)

    async def ingest_with_timeout(
        self,
        upload: IncomingFile,
        file_type: str,
        organization_label: str,
        proposal_id: Optional[Any] = None,
        timeout: Optional[float] = None,
    ) -> FileDescriptor:
        """Run :meth:`ingest` against an overall deadline.

        The deadline covers connecting, streaming and verification. When it
        fires, whatever was written is aborted or deleted before raising.

        Raises:
            IngestionTimeoutError: The whole ingestion exceeded ``timeout``
        """
        timeout = timeout if timeout is not None else self.config.ingestion_timeout
        return await self._ingest(upload, file_type, organization_label, proposal_id, deadline=timeout)

    async def _ingest(
        self,
        upload: IncomingFile,
        file_type: str,
        organization_label: str,
        proposal_id: Optional[Any],
        deadline: Optional[float],
    ) -> FileDescriptor:
        pid = normalize_proposal_id(proposal_id) if proposal_id is not None else None
        pending = _PendingBlob()

        try:
            stored = await asyncio.wait_for(
                self._store_blob(pending, upload, file_type, organization_label, pid),
                timeout=deadline,
            )
        except asyncio.TimeoutError as e:
            await self._discard_pending(pending)
            LOGGER.error(
                "Blob ingestion timed out",
                extra={"original_name": upload.original_name, "timeout": deadline, "file_id": pending.file_key},
            )
            raise IngestionTimeoutError(
                f"Upload of {upload.original_name} timed out after {deadline}s",
                timeout=deadline,
                stage="ingestion",
                file_id=pending.file_key,
                original_error=e,
            ) from e
        except asyncio.CancelledError:
            await self._discard_pending(pending)
            raise

        descriptor = FileDescriptor.from_stored(
            stored,
            original_name=upload.original_name,
            content_type=upload.mime_type,
            file_type=file_type,
            organization_name=organization_label,
            proposal_id=pid,
        )

        if pid is not None:
            await self._attach(pid, descriptor.id)

        LOGGER.info(
            "Blob ingestion completed",
            extra={"file_id": descriptor.id, "object_name": descriptor.filename, "proposal_id": pid},
        )
        return descriptor

    async def _store_blob(
        self,
        pending: _PendingBlob,
        upload: IncomingFile,
        file_type: str,
        organization_label: str,
        pid: Optional[str],
    ) -> Dict[str, Any]:
        pending.handle = await self._bucket_handle()

        filename = build_object_name(organization_label, file_type, upload.original_name)
        metadata = {
            "originalName": upload.original_name,
            "organizationName": organization_label,
            "fileType": file_type,
            "uploadedAt": utc_now(),
            "fileSize": upload.byte_size,
            "mimeType": upload.mime_type,
            "contentType": upload.mime_type,
        }
        if pid is not None:
            metadata["proposalId"] = pid

        pending.grid_in = pending.handle.bucket.open_upload_stream(filename, metadata=metadata)
        pending.file_id = pending.grid_in._id
        LOGGER.info(
            "Starting blob ingestion",
            extra={"file_id": pending.file_key, "object_name": filename, "size": upload.byte_size},
        )

        await self._write_stream(pending, upload.content)
        return await self._verify_descriptor(pending.handle, pending.file_id)

    async def _write_stream(self, pending: _PendingBlob, content: bytes) -> None:
        timeout = self.config.blob_stream_timeout

        async def write_and_close():
            await pending.grid_in.write(content)
            await pending.grid_in.close()
            pending.closed = True

        try:
            await asyncio.wait_for(write_and_close(), timeout=timeout)
        except asyncio.TimeoutError as e:
            await self._abort(pending.grid_in, pending.file_id)
            raise IngestionTimeoutError(
                f"Blob stream did not complete within {timeout}s",
                timeout=timeout,
                stage="stream",
                file_id=pending.file_key,
                original_error=e,
            ) from e
        except Exception as e:
            await self._abort(pending.grid_in, pending.file_id)
            raise IngestionError(
                f"Blob stream failed: {e}", file_id=pending.file_key, original_error=e
            ) from e

    async def _verify_descriptor(self, handle: DocumentStoreHandle, file_id: Any) -> Dict[str, Any]:
        timeout = self.config.descriptor_verify_timeout
        try:
            stored = await asyncio.wait_for(handle.files.find_one({"_id": file_id}), timeout=timeout)
        except asyncio.TimeoutError as e:
            await self._discard_orphan(handle, file_id)
            raise IngestionVerificationFailedError(
                f"Descriptor lookup for {file_id} timed out after {timeout}s",
                file_id=str(file_id),
                original_error=e,
            ) from e
        except PyMongoError as e:
            await self._discard_orphan(handle, file_id)
            raise IngestionVerificationFailedError(
                f"Descriptor lookup for {file_id} failed: {e}",
                file_id=str(file_id),
                original_error=e,
            ) from e

        if stored is None:
            await self._discard_orphan(handle, file_id)
            raise IngestionVerificationFailedError(
                f"Stored descriptor {file_id} not found after upload", file_id=str(file_id)
            )
        return stored

    async def _abort(self, grid_in: Any, file_id: Any) -> None:
        try:
            await grid_in.abort()
        except Exception as e:
            LOGGER.warning(
                "Failed to abort blob stream; chunks may be orphaned",
                extra={"file_id": str(file_id), "error": str(e)},
            )

    async def _discard_orphan(self, handle: DocumentStoreHandle, file_id: Any) -> None:
        try:
            await handle.bucket.delete(file_id)
        except Exception as e:
            LOGGER.warning(
                "Failed to delete unverified blob",
                extra={"file_id": str(file_id), "error": str(e)},
            )

    async def _discard_pending(self, pending: _PendingBlob) -> None:
        if pending.grid_in is None:
            return
        if pending.closed:
            await self._discard_orphan(pending.handle, pending.file_id)
        else:
            await self._abort(pending.grid_in, pending.file_id)

    async def _attach(self, proposal_id: str, file_id: str) -> None:
        # The blob carries metadata.proposalId, so a projection that misses
        # this reference picks it up on its next sync from the relational store.
        try:
            matched = await self.document_repo.attach_file(proposal_id, file_id)
        except (PyMongoError, ConnectionExhaustedError) as e:
            LOGGER.error(
                "Failed to reference descriptor from projection",
                extra={"proposal_id": proposal_id, "file_id": file_id, "error": str(e)},
            )
        else:
            if not matched:
                LOGGER.debug(
                    "No projection yet; descriptor will be seeded on first sync",
                    extra={"proposal_id": proposal_id, "file_id": file_id},
                )
        await self.cache.invalidate_proposal(proposal_id)

    async def ingest_many(
        self,
        files: Mapping[str, Sequence[IncomingFile]],
        organization_label: str,
        proposal_id: Optional[Any] = None,
    ) -> BatchIngestionResult:
        """Ingest several files, each independently and under the overall deadline.

        Args:
            files: Uploads grouped by file type
            organization_label: Organization the uploads belong to
            proposal_id: Owning proposal, when already known

        Returns:
            BatchIngestionResult: Verified descriptors and per-file failures
        """
        result = BatchIngestionResult()
        for file_type, uploads in files.items():
            for upload in uploads:
                try:
                    descriptor = await self.ingest_with_timeout(
                        upload, file_type, organization_label, proposal_id
                    )
                except AppError as e:
                    LOGGER.warning(
                        "File ingestion failed",
                        extra={"original_name": upload.original_name, "error": str(e)},
                    )
                    result.failures.append(
                        IngestionFailure(
                            original_name=upload.original_name,
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                    )
                else:
                    result.descriptors.append(descriptor)

        LOGGER.info(
            "Batch ingestion finished",
            extra={"succeeded": len(result.descriptors), "failed": len(result.failures)},
        )
        return result

    async def list_descriptors(self, proposal_id: Any) -> List[FileDescriptor]:
        """All descriptors ingested for a proposal, oldest first."""
        pid = normalize_proposal_id(proposal_id)
        await self._bucket_handle()
        try:
            stored = await self.document_repo.find_file_documents(pid)
        except RetryExhaustedError as e:
            raise StorageUnavailableError(
                f"Could not list files for proposal {pid}", original_error=e.last_error
            ) from e
        return [FileDescriptor.from_stored(doc) for doc in stored]

    async def get_descriptor(self, file_id: str) -> Optional[FileDescriptor]:
        await self._bucket_handle()
        try:
            stored = await self.document_repo.find_file_document(file_id)
        except RetryExhaustedError as e:
            raise StorageUnavailableError(
                f"Could not read descriptor {file_id}", original_error=e.last_error
            ) from e
        return FileDescriptor.from_stored(stored) if stored else None

    async def download(self, file_id: str) -> StoredBlob:
        """Read a stored blob back together with its descriptor.

        Args:
            file_id: Descriptor id returned at ingestion

        Returns:
            StoredBlob: Descriptor and the full content

        Raises:
            BlobNotFoundError: The bucket holds no blob with that id
            StorageUnavailableError: The bucket is not reachable or the read failed
        """
        if not ObjectId.is_valid(file_id):
            raise BlobNotFoundError(str(file_id))
        handle = await self._bucket_handle()

        try:
            grid_out = await handle.bucket.open_download_stream(ObjectId(file_id))
            content = await grid_out.read()
        except NoFile as e:
            raise BlobNotFoundError(file_id, original_error=e) from e
        except PyMongoError as e:
            LOGGER.error("Blob download failed", extra={"file_id": file_id, "error": str(e)})
            raise StorageUnavailableError(
                f"Could not read blob {file_id}: {e}", original_error=e
            ) from e

        descriptor = FileDescriptor.from_stored(
            {
                "_id": grid_out._id,
                "filename": grid_out.filename,
                "length": grid_out.length,
                "uploadDate": grid_out.upload_date,
                "metadata": grid_out.metadata,
            }
        )
        LOGGER.info("Blob downloaded", extra={"file_id": file_id, "size": len(content)})
        return StoredBlob(descriptor=descriptor, content=content)
