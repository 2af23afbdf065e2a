"""Document store connection management.

The document store holds the proposal projections and the blob bucket used
for attachments. Connections are established lazily, retried with capped
exponential backoff and memoized on the connector.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from gridfs import AsyncGridFSBucket
from pymongo import AsyncMongoClient, monitoring

from proposal_sync.core.config import DocumentStoreSettings, settings
from proposal_sync.core.exceptions import ConnectionExhaustedError
from proposal_sync.core.retry import RetryExhaustedError, RetryPolicy, SleepFn, retry_any
from proposal_sync.utils.logging import get_logger

LOGGER = get_logger(__name__)

DIAGNOSTIC_CHECKLIST = (
    "Network: confirm the document store host and port are reachable from this host",
    "Credentials: verify the user, password and authSource in MONGODB_URI",
    "Firewall: check firewall rules and the cluster IP allow-list admit this host",
    "URI: confirm the MONGODB_URI scheme and TLS options match the deployment",
)


class PoolHealthListener(monitoring.ConnectionPoolListener):
    """Logs connection pool lifecycle. Observes only."""

    def pool_created(self, event):
        LOGGER.debug("Document store pool created", extra={"address": event.address})

    def pool_ready(self, event):
        LOGGER.debug("Document store pool ready", extra={"address": event.address})

    def pool_cleared(self, event):
        LOGGER.warning("Document store pool cleared", extra={"address": event.address})

    def pool_closed(self, event):
        LOGGER.info("Document store pool closed", extra={"address": event.address})

    def connection_created(self, event):
        LOGGER.debug("Document store connection created", extra={"address": event.address})

    def connection_ready(self, event):
        pass

    def connection_closed(self, event):
        LOGGER.debug(
            "Document store connection closed",
            extra={"address": event.address, "reason": event.reason},
        )

    def connection_check_out_started(self, event):
        pass

    def connection_check_out_failed(self, event):
        LOGGER.warning(
            "Document store connection check-out failed",
            extra={"address": event.address, "reason": event.reason},
        )

    def connection_checked_out(self, event):
        pass

    def connection_checked_in(self, event):
        pass


class HeartbeatHealthListener(monitoring.ServerHeartbeatListener):
    """Logs failed server heartbeats. Observes only."""

    def started(self, event):
        pass

    def succeeded(self, event):
        pass

    def failed(self, event):
        LOGGER.warning(
            "Document store heartbeat failed",
            extra={"connection_id": event.connection_id, "error": str(event.reply)},
        )


@dataclass(frozen=True)
class DocumentStoreHandle:
    """Connected client plus the collections and bucket the engine uses."""

    client: Any
    database: Any
    bucket: Any
    proposals: Any
    files: Any


class DocumentStoreConnector:
    """Owns the single document store handle for the process.

    ``connect`` is guarded by an ``asyncio.Lock``: the first successful
    connect wins and every later caller gets the same handle. Once every
    attempt has failed, connects fail fast for ``unavailable_cooldown``
    seconds so degraded callers fall back without waiting on the backoff.
    """

    def __init__(
        self,
        config: Optional[DocumentStoreSettings] = None,
        client_factory: Optional[Callable[[], Any]] = None,
        bucket_factory: Optional[Callable[[Any, str], Any]] = None,
        sleep: Optional[SleepFn] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config if config is not None else settings.document_store
        self._client_factory = client_factory or self._create_client
        self._bucket_factory = bucket_factory or (
            lambda database, name: AsyncGridFSBucket(database, bucket_name=name)
        )
        self._sleep = sleep or asyncio.sleep
        self._clock = clock
        self._handle: Optional[DocumentStoreHandle] = None
        self._lock = asyncio.Lock()
        self._exhausted_at: Optional[float] = None
        self.last_error: Optional[str] = None

    def _create_client(self) -> AsyncMongoClient:
        return AsyncMongoClient(
            self.config.uri,
            maxPoolSize=self.config.max_pool_size,
            minPoolSize=self.config.min_pool_size,
            serverSelectionTimeoutMS=self.config.server_selection_timeout_ms,
            connectTimeoutMS=self.config.connect_timeout_ms,
            socketTimeoutMS=self.config.socket_timeout_ms,
            tz_aware=True,
            event_listeners=[PoolHealthListener(), HeartbeatHealthListener()],
        )

    @property
    def handle(self) -> Optional[DocumentStoreHandle]:
        """Current handle, or None when not connected yet."""
        return self._handle

    @property
    def is_available(self) -> bool:
        return self._handle is not None

    @property
    def in_cooldown(self) -> bool:
        """True while connects fail fast after an exhausted attempt."""
        if self._exhausted_at is None:
            return False
        return self._clock() - self._exhausted_at < self.config.unavailable_cooldown

    def retry_policy(self, max_retries: Optional[int] = None) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max_retries if max_retries is not None else self.config.max_retries,
            base_delay_s=self.config.retry_base_delay,
            max_delay_s=self.config.retry_max_delay,
            is_retriable=retry_any,
        )

    async def connect(self, max_retries: Optional[int] = None) -> DocumentStoreHandle:
        """Get the memoized handle, connecting with retry/backoff if needed.

        Args:
            max_retries: Attempts before giving up (defaults to configuration)

        Returns:
            DocumentStoreHandle: Connected handle

        Raises:
            ConnectionExhaustedError: Every attempt failed, now or within the cooldown
        """
        if self._handle is not None:
            return self._handle
        self._raise_if_cooling_down()

        async with self._lock:
            if self._handle is not None:
                return self._handle
            self._raise_if_cooling_down()

            policy = self.retry_policy(max_retries)
            try:
                handle = await policy.run(
                    "Document store connect", self._attempt_connect, sleep=self._sleep
                )
            except RetryExhaustedError as e:
                self._exhausted_at = self._clock()
                self.last_error = str(e.last_error)
                LOGGER.error(
                    f"Document store unreachable after {e.attempts} attempts: {e.last_error}",
                    extra={"attempts": e.attempts, "checklist": list(DIAGNOSTIC_CHECKLIST)},
                )
                for item in DIAGNOSTIC_CHECKLIST:
                    LOGGER.error(f"  - {item}")
                raise ConnectionExhaustedError(
                    f"Document store connection failed after {e.attempts} attempts: {e.last_error}",
                    attempts=e.attempts,
                    diagnostics=DIAGNOSTIC_CHECKLIST,
                    original_error=e.last_error,
                ) from e

            self._handle = handle
            self._exhausted_at = None
            self.last_error = None
            LOGGER.info(
                "Document store connected",
                extra={"database": self.config.database, "bucket": self.config.bucket_name},
            )
            return handle

    def _raise_if_cooling_down(self) -> None:
        if self.in_cooldown:
            raise ConnectionExhaustedError(
                f"Document store unavailable (last error: {self.last_error}); "
                f"not retrying for {self.config.unavailable_cooldown}s",
                attempts=0,
                diagnostics=DIAGNOSTIC_CHECKLIST,
            )

    async def _attempt_connect(self) -> DocumentStoreHandle:
        client = self._client_factory()
        try:
            await asyncio.wait_for(client.admin.command("ping"), timeout=self.config.ping_timeout)
        except Exception:
            await self._close_client(client)
            raise
        return self._build_handle(client)

    def _build_handle(self, client: Any) -> DocumentStoreHandle:
        database = client[self.config.database]
        return DocumentStoreHandle(
            client=client,
            database=database,
            bucket=self._bucket_factory(database, self.config.bucket_name),
            proposals=database[self.config.proposals_collection],
            files=database[f"{self.config.bucket_name}.files"],
        )

    async def _close_client(self, client: Any) -> None:
        try:
            await client.close()
        except Exception as e:
            LOGGER.warning("Error closing half-open document store client", extra={"error": str(e)})

    async def close(self) -> None:
        """Close the handle; the next ``connect`` starts from scratch."""
        async with self._lock:
            if self._handle is not None:
                await self._close_client(self._handle.client)
                self._handle = None
                LOGGER.info("Document store connection closed")
            self._exhausted_at = None

    def status(self) -> dict:
        return {
            "initialized": self._handle is not None,
            "connected": self._handle is not None,
            "bucket_available": self._handle is not None and self._handle.bucket is not None,
            "last_error": self.last_error,
        }


# Default connector for the process
document_store = DocumentStoreConnector()


async def init_document_store(
    connector: Optional[DocumentStoreConnector] = None, ensure_indexes: bool = True
) -> DocumentStoreHandle:
    """Connect and make sure the lookup indexes exist."""
    connector = connector if connector is not None else document_store
    handle = await connector.connect()

    if ensure_indexes:
        try:
            await handle.proposals.create_index("proposal_id", unique=True, name="uniq_proposal_id")
            await handle.files.create_index("metadata.proposalId", name="idx_files_proposal_id")
            LOGGER.info("Ensured document store indexes")
        except Exception as e:
            LOGGER.error(f"Failed to create document store indexes: {e}")

    return handle


async def close_document_store(connector: Optional[DocumentStoreConnector] = None) -> None:
    await (connector if connector is not None else document_store).close()
