"""Pytest configuration and shared fixtures.

The relational store runs on SQLite through aiosqlite. The document store is
replaced by in-memory fakes of the collection, cursor and GridFS bucket
interfaces the engine uses, wired through the real connector.
"""

import asyncio
import copy
import os
import time
from datetime import date, datetime, timezone
from types import SimpleNamespace

import pytest
import pytest_asyncio

# Set required environment variables for testing BEFORE importing the package
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017/proposals_test")
os.environ.setdefault("ENVIRONMENT", "test")

from bson import ObjectId
from gridfs.errors import NoFile
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from proposal_sync.core.cache import ResultCache
from proposal_sync.core.config import settings
from proposal_sync.core.database import Base
from proposal_sync.core.document_store import DocumentStoreConnector
from proposal_sync.core.retry import RetryPolicy
from proposal_sync.database.models import ProposalStatus
from proposal_sync.repositories.proposal_document_repository import ProposalDocumentRepository
from proposal_sync.repositories.proposal_repository import ProposalRepository


# --- Document store fakes -----------------------------------------------------

def _get_path(document, path):
    value = document
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def _matches(document, query):
    return all(_get_path(document, key) == value for key, value in (query or {}).items())


class FakeCursor:
    def __init__(self, documents):
        self._documents = documents

    def sort(self, key, direction=1):
        self._documents.sort(key=lambda d: str(_get_path(d, key)), reverse=direction < 0)
        return self

    async def to_list(self, length=None):
        return self._documents if length is None else self._documents[:length]


class FakeCollection:
    """In-memory stand-in for an async pymongo collection."""

    def __init__(self, name, unique_key=None):
        self.name = name
        self.unique_key = unique_key
        self.docs = []
        self.indexes = []
        # Exceptions raised, one per call, before any operation runs
        self.fail_next = []
        self.find_one_delay = None

    def _maybe_fail(self):
        if self.fail_next:
            raise self.fail_next.pop(0)

    async def find_one(self, query, projection=None):
        self._maybe_fail()
        if self.find_one_delay:
            await asyncio.sleep(self.find_one_delay)
        for document in self.docs:
            if _matches(document, query):
                found = copy.deepcopy(document)
                if projection and projection.get("_id") == 0:
                    found.pop("_id", None)
                return found
        return None

    def find(self, query=None, projection=None):
        self._maybe_fail()
        return FakeCursor([copy.deepcopy(d) for d in self.docs if _matches(d, query)])

    async def insert_one(self, document):
        self._maybe_fail()
        if self.unique_key and any(
            d.get(self.unique_key) == document.get(self.unique_key) for d in self.docs
        ):
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name}")
        stored = copy.deepcopy(document)
        stored.setdefault("_id", ObjectId())
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=stored["_id"])

    async def update_one(self, query, update, upsert=False):
        self._maybe_fail()
        for document in self.docs:
            if _matches(document, query):
                self._apply(document, update)
                return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    @staticmethod
    def _apply(document, update):
        for key, value in update.get("$set", {}).items():
            document[key] = copy.deepcopy(value)
        for key, value in update.get("$addToSet", {}).items():
            values = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
            current = document.setdefault(key, [])
            for item in values:
                if item not in current:
                    current.append(item)
        for key, value in update.get("$push", {}).items():
            current = document.setdefault(key, [])
            if isinstance(value, dict) and "$each" in value:
                current.extend(copy.deepcopy(value["$each"]))
                if "$slice" in value:
                    document[key] = current[value["$slice"]:] if value["$slice"] < 0 else current[: value["$slice"]]
            else:
                current.append(copy.deepcopy(value))

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return kwargs.get("name", str(keys))


class FakeGridIn:
    def __init__(self, bucket, filename, metadata):
        self._id = ObjectId()
        self.bucket = bucket
        self.filename = filename
        self.metadata = metadata or {}
        self.buffer = bytearray()
        self.closed = False
        self.aborted = False

    async def write(self, data):
        if self.filename in self.bucket.fail_filenames:
            raise OSError(f"write failed for {self.filename}")
        if self.bucket.write_error is not None:
            error, self.bucket.write_error = self.bucket.write_error, None
            raise error
        if self.bucket.write_delay:
            await asyncio.sleep(self.bucket.write_delay)
        self.buffer.extend(data)

    async def close(self):
        self.closed = True
        self.bucket.chunks[self._id] = bytes(self.buffer)
        if self.bucket.drop_descriptor:
            return
        self.bucket.files.docs.append(
            {
                "_id": self._id,
                "filename": self.filename,
                "length": len(self.buffer),
                "chunkSize": 261120,
                "uploadDate": datetime.now(timezone.utc),
                "metadata": copy.deepcopy(self.metadata),
            }
        )

    async def abort(self):
        self.aborted = True
        self.bucket.chunks.pop(self._id, None)


class FakeGridOut:
    def __init__(self, stored, content):
        self._id = stored["_id"]
        self.filename = stored["filename"]
        self.length = stored["length"]
        self.upload_date = stored["uploadDate"]
        self.metadata = copy.deepcopy(stored.get("metadata"))
        self._content = content

    async def read(self, size=-1):
        return self._content if size < 0 else self._content[:size]


class FakeBucket:
    """In-memory stand-in for gridfs.AsyncGridFSBucket."""

    def __init__(self, files):
        self.files = files
        self.chunks = {}
        self.streams = []
        self.deleted = []
        self.write_error = None
        self.write_delay = None
        self.drop_descriptor = False
        self.fail_filenames = set()
        self.read_error = None

    def open_upload_stream(self, filename, metadata=None, chunk_size_bytes=None):
        stream = FakeGridIn(self, filename, metadata)
        self.streams.append(stream)
        return stream

    async def open_download_stream(self, file_id):
        if self.read_error is not None:
            error, self.read_error = self.read_error, None
            raise error
        for stored in self.files.docs:
            if stored["_id"] == file_id:
                return FakeGridOut(stored, self.chunks.get(file_id, b""))
        raise NoFile(f"no file in gridfs collection with _id {file_id!r}")

    async def delete(self, file_id):
        self.deleted.append(file_id)
        self.chunks.pop(file_id, None)
        self.files.docs = [d for d in self.files.docs if d["_id"] != file_id]


class FakeDatabase:
    def __init__(self):
        self.collections = {}

    def __getitem__(self, name):
        if name not in self.collections:
            unique_key = "proposal_id" if name == settings.document_store.proposals_collection else None
            self.collections[name] = FakeCollection(name, unique_key=unique_key)
        return self.collections[name]


class FakeClient:
    def __init__(self, server):
        self.server = server
        self.closed = False
        self.admin = SimpleNamespace(command=self._command)

    async def _command(self, name):
        self.server.pings += 1
        if self.server.ping_delay:
            await asyncio.sleep(self.server.ping_delay)
        if self.server.ping_failures > 0:
            self.server.ping_failures -= 1
            raise ServerSelectionTimeoutError("No servers found yet")
        return {"ok": 1.0}

    def __getitem__(self, name):
        return self.server.database

    async def close(self):
        self.closed = True


class FakeMongoServer:
    """Single in-memory deployment shared by every client the connector creates."""

    def __init__(self, ping_failures=0, ping_delay=None):
        self.database = FakeDatabase()
        self.ping_failures = ping_failures
        self.ping_delay = ping_delay
        self.pings = 0
        self.clients = []
        self.bucket = None

    def client_factory(self):
        client = FakeClient(self)
        self.clients.append(client)
        return client

    def bucket_factory(self, database, name):
        self.bucket = FakeBucket(database[f"{name}.files"])
        return self.bucket

    @property
    def proposals(self):
        return self.database[settings.document_store.proposals_collection]

    @property
    def files(self):
        return self.database[f"{settings.document_store.bucket_name}.files"]


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, delay):
        self.calls.append(delay)


# --- Document store fixtures ------------------------------------------------------

@pytest.fixture
def make_server():
    return FakeMongoServer


@pytest.fixture
def mongo_server() -> FakeMongoServer:
    return FakeMongoServer()


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def make_connector(sleep_recorder):
    """Build a connector over a given fake server (healthy or failing)."""

    def _make(server, clock=time.monotonic, **config_overrides):
        config = settings.document_store.model_copy(update=config_overrides)
        return DocumentStoreConnector(
            config=config,
            client_factory=server.client_factory,
            bucket_factory=server.bucket_factory,
            sleep=sleep_recorder,
            clock=clock,
        )

    return _make


@pytest.fixture
def connector(make_connector, mongo_server) -> DocumentStoreConnector:
    return make_connector(mongo_server)


@pytest.fixture
def unreachable_connector(make_connector) -> DocumentStoreConnector:
    return make_connector(FakeMongoServer(ping_failures=1000))


@pytest.fixture
def fast_read_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=2, base_delay_s=0, max_delay_s=0)


@pytest.fixture
def document_repo(connector, fast_read_policy) -> ProposalDocumentRepository:
    return ProposalDocumentRepository(connector, read_policy=fast_read_policy)


@pytest.fixture
def cache() -> ResultCache:
    return ResultCache(maxsize=128, default_ttl=60)


# --- Relational store fixtures ----------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'proposals.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_proposal(session):
    """Create a relational proposal with realistic defaults."""

    async def _make(**overrides):
        values = dict(
            organization_name="Riverside Arts Collective",
            organization_type="non_profit",
            contact_name="Dana Okafor",
            contact_email="dana@riverside.example",
            contact_phone="+1-555-0142",
            event_name="Spring Showcase",
            event_venue="Hall B",
            event_mode="offline",
            event_start_date=date(2025, 4, 12),
            event_end_date=date(2025, 4, 13),
            proposal_status=ProposalStatus.PENDING,
        )
        values.update(overrides)
        return await ProposalRepository(session).create(**values)

    return _make
