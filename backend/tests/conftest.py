"""Shared test fixtures for the MarkView sync tests."""

from datetime import UTC, datetime

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from markview.client.errors import SyncApiError, SyncConflictError, SyncErrorKind
from markview.client.realtime import ConnectionState
from markview.client.store import LocalStore
from markview.db.models import Base
from markview.middleware.rate_limiter import limiter
from markview.models.sync import (
    DocumentListResponse,
    FolderListResponse,
    SessionStateResponse,
    SettingsDeleteResponse,
    SettingsResponse,
    SyncDocument,
    SyncFolder,
)


# Use an in-memory SQLite database for tests.
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(TEST_DATABASE_URL, echo=False)
TestSessionFactory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

TEST_USER_ID = "user-1"


@event.listens_for(engine.sync_engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# Monkey-patch JSONB columns to render as JSON for SQLite tests.
from sqlalchemy.dialects.postgresql import JSONB as _JSONB  # noqa: E402


def _register_jsonb_for_sqlite():
    """Register a compilation rule so JSONB compiles to JSON on SQLite."""
    from sqlalchemy.ext.compiler import compiles

    @compiles(_JSONB, "sqlite")
    def _compile_jsonb_sqlite(element, compiler, **kw):
        return "JSON"


_register_jsonb_for_sqlite()


@pytest.fixture(autouse=True)
def _disable_rate_limits():
    """Route tests share one client IP; keep slowapi out of the way."""
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest_asyncio.fixture
async def db() -> AsyncSession:
    """Create tables and yield a fresh async session for each test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionFactory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db_session(db: AsyncSession) -> AsyncSession:
    """Alias for the ``db`` fixture used by some test modules."""
    return db


@pytest.fixture
def connections():
    """A fresh connection manager injected into the app."""
    from markview.sse.connection_manager import ConnectionManager

    return ConnectionManager(queue_size=16)


@pytest_asyncio.fixture
async def client(db: AsyncSession, connections):
    """HTTP client for the app with the test DB and connection manager injected.

    Requests run as ``TEST_USER_ID`` unless a test overrides the user.
    """
    from markview.api.dependencies import get_current_user_id, get_db
    from markview.main import app
    from markview.sse.connection_manager import get_connection_manager

    async def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_current_user_id] = lambda: TEST_USER_ID
    app.dependency_overrides[get_connection_manager] = lambda: connections
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Sync client fakes
# ---------------------------------------------------------------------------


def _not_found(what: str) -> Exception:
    return SyncApiError(SyncErrorKind.NOT_FOUND, f"{what} not found", status=404)


class FakeDocumentsApi:
    """In-memory stand-in for ``DocumentsApi`` with the server's version rules."""

    def __init__(self):
        self.server: dict = {}
        self.fetch_calls: list = []
        self.get_calls: list[str] = []
        self.put_calls: list = []
        self.delete_calls: list[str] = []
        self.get_errors: list[Exception] = []
        self.put_errors: list[Exception] = []
        self.delete_errors: list[Exception] = []
        self.get_gate = None  # asyncio.Event holding every get() until set

    def seed(self, doc_id: str, version: int = 1, content: str = "# Server", **extra):
        doc = SyncDocument(id=doc_id, name="Server", content=content, sync_version=version, **extra)
        self.server[doc_id] = doc
        return doc

    async def fetch(self, since=None):
        self.fetch_calls.append(since)
        documents = [d for d in self.server.values() if since is not None or d.deleted_at is None]
        return DocumentListResponse(documents=documents, synced_at=datetime.now(UTC))

    async def get(self, doc_id: str):
        self.get_calls.append(doc_id)
        if self.get_gate is not None:
            await self.get_gate.wait()
        if self.get_errors:
            raise self.get_errors.pop(0)
        doc = self.server.get(doc_id)
        if doc is None or doc.deleted_at is not None:
            raise _not_found("Document")
        return doc

    async def put(self, doc_id: str, payload):
        self.put_calls.append(payload)
        if self.put_errors:
            raise self.put_errors.pop(0)
        existing = self.server.get(doc_id)
        if existing is not None and payload.sync_version and existing.sync_version > payload.sync_version:
            raise SyncConflictError("Document has been modified on server", existing.sync_version, existing)
        doc = SyncDocument(
            id=doc_id,
            name=payload.name,
            content=payload.content,
            folder_id=payload.folder_id,
            is_manually_named=bool(payload.is_manually_named),
            sync_version=existing.sync_version + 1 if existing is not None else 1,
            synced_at=datetime.now(UTC),
        )
        self.server[doc_id] = doc
        return doc

    async def delete(self, doc_id: str):
        self.delete_calls.append(doc_id)
        if self.delete_errors:
            raise self.delete_errors.pop(0)
        existing = self.server.get(doc_id)
        if existing is None or existing.deleted_at is not None:
            raise _not_found("Document")
        deleted = existing.model_copy(update={"deleted_at": datetime.now(UTC)})
        self.server[doc_id] = deleted
        return deleted


class FakeFoldersApi:
    def __init__(self):
        self.server: dict = {}
        self.fetch_calls: list = []
        self.put_calls: list = []
        self.delete_calls: list[str] = []
        self.fetch_errors: list[Exception] = []

    def seed(self, folder_id: str, name: str = "Folder", **extra):
        folder = SyncFolder(id=folder_id, name=name, **extra)
        self.server[folder_id] = folder
        return folder

    async def fetch(self, since=None):
        self.fetch_calls.append(since)
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        folders = [f for f in self.server.values() if since is not None or f.deleted_at is None]
        return FolderListResponse(folders=folders, synced_at=datetime.now(UTC))

    async def put(self, folder_id: str, payload):
        self.put_calls.append(payload)
        folder = SyncFolder(**payload.model_dump())
        self.server[folder_id] = folder
        return folder

    async def delete(self, folder_id: str):
        self.delete_calls.append(folder_id)
        existing = self.server.get(folder_id)
        if existing is None:
            raise _not_found("Folder")
        deleted = existing.model_copy(update={"deleted_at": datetime.now(UTC)})
        self.server[folder_id] = deleted
        return deleted


class FakeSessionApi:
    def __init__(self):
        self.open_document_ids: list[str] = []
        self.active_document_id = None
        self.update_calls: list[tuple[list[str], str | None]] = []
        self.update_errors: list[Exception] = []

    async def fetch(self):
        return SessionStateResponse(
            open_document_ids=list(self.open_document_ids),
            active_document_id=self.active_document_id,
        )

    async def update(self, open_document_ids, active_document_id):
        self.update_calls.append((list(open_document_ids), active_document_id))
        if self.update_errors:
            raise self.update_errors.pop(0)
        self.open_document_ids = list(open_document_ids)
        self.active_document_id = active_document_id
        return SessionStateResponse(
            open_document_ids=self.open_document_ids,
            active_document_id=active_document_id,
        )


class FakeSettingsApi:
    def __init__(self):
        self.server: dict = {}
        self.fetch_calls = 0
        self.update_calls: list[dict] = []
        self.update_errors: list[Exception] = []

    async def fetch(self):
        self.fetch_calls += 1
        return SettingsResponse(settings=dict(self.server))

    async def update(self, values):
        self.update_calls.append(dict(values))
        if self.update_errors:
            raise self.update_errors.pop(0)
        self.server = {**self.server, **values}
        return SettingsResponse(settings=dict(self.server))

    async def reset(self):
        self.server = {}
        return SettingsDeleteResponse()


class FakeSyncApi:
    """Same surface as ``SyncApiClient`` backed by in-memory server state."""

    def __init__(self):
        self.documents = FakeDocumentsApi()
        self.folders = FakeFoldersApi()
        self.session = FakeSessionApi()
        self.settings = FakeSettingsApi()
        self.token = "tok"

    def set_token(self, token):
        self.token = token


class FakeChannel:
    """Same surface as ``RealtimeChannel``; tests push events with ``emit``."""

    def __init__(self, device_id: str = "device-a"):
        self.device_id = device_id
        self.state = ConnectionState.DISCONNECTED
        self.connection_id = None
        self.token = "tok"
        self.handlers: dict[str, dict[int, object]] = {}
        self.connect_calls = 0
        self.disconnect_calls = 0
        self._next = 0

    def get_device_id(self):
        return self.device_id

    def get_state(self):
        return self.state

    def get_connection_id(self):
        return self.connection_id

    def get_last_heartbeat(self):
        return None

    def is_stale(self, threshold_seconds=None):
        return False

    def is_connected(self):
        return self.state == ConnectionState.CONNECTED

    def set_token(self, token):
        self.token = token

    def on_event(self, event_type, handler):
        self._next += 1
        handle = self._next
        self.handlers.setdefault(event_type, {})[handle] = handler

        def unsubscribe():
            self.handlers.get(event_type, {}).pop(handle, None)

        return unsubscribe

    def listener_count(self) -> int:
        return sum(len(h) for h in self.handlers.values())

    def connect(self):
        self.connect_calls += 1
        self.state = ConnectionState.CONNECTED

    def disconnect(self):
        self.disconnect_calls += 1
        self.state = ConnectionState.DISCONNECTED
        self.connection_id = None

    async def wait_closed(self):
        return None

    def emit(self, event):
        for handler in list(self.handlers.get(event.event_type, {}).values()):
            handler(event)


@pytest.fixture
def fake_api():
    return FakeSyncApi()


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def store():
    s = LocalStore()
    s.init()
    return s
