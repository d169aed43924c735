"""
Pytest configuration and fixtures for the offline sync test suite
"""
import io
import itertools
import os

# Settings are read at import time
os.environ["ENVIRONMENT"] = "test"
os.environ["OFFLINE_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["REMOTE_API_URL"] = "http://127.0.0.1:9"
os.environ["APP_ORIGIN"] = "http://app.test"
os.environ["SENTRY_DSN"] = ""

import asyncio
import pytest
from datetime import datetime, timezone
from typing import Any, Generator, Optional
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient
from PIL import Image

from custody_sync.db.models import Base
from custody_sync.core.deps import (
    get_asset_cache,
    get_connectivity_watcher,
    get_offline_queue,
    get_status_monitor,
    get_sync_engine,
)
from custody_sync.core.errors import RemoteWriteError
from custody_sync.schemas.drafts import (
    CustodyLogDraft,
    EvidenceBagDraft,
    PendingRecord,
    PhotoDraft,
    RecordKind,
)
from custody_sync.schemas.sync import DeadLetterEntry, SyncStatus
from custody_sync.services.asset_cache import CacheStorage, OfflineAssetCache
from custody_sync.services.connectivity import ConnectivityWatcher
from custody_sync.services.integrity import compute_file_hash
from custody_sync.services.offline_queue import (
    OfflineQueue,
    SqlOfflineQueue,
    generate_record_id,
    now_millis,
    save_offline_custody_log,
    save_offline_evidence_bag,
    save_offline_photo,
)
from custody_sync.services.remote import RemoteEvidenceApi
from custody_sync.services.status_monitor import StatusMonitor
from custody_sync.services.sync_engine import SyncEngine
from custody_sync.main import app


# ============================================================================
# DATABASE FIXTURES
# ============================================================================

@pytest.fixture(scope="function")
def session_factory() -> Generator[sessionmaker, None, None]:
    """
    In-memory SQLite store shared by every session of one test

    Each test gets a fresh database with all tables created.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    try:
        yield TestingSessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def test_db(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Session for direct inspection of stored rows"""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    """Deterministic epoch-millis clock: every call advances by one second"""
    ticks = itertools.count(1_700_000_000_000, 1000)
    return lambda: next(ticks)


@pytest.fixture
def queue(session_factory: sessionmaker, clock) -> SqlOfflineQueue:
    return SqlOfflineQueue(session_factory=session_factory, clock=clock)


# ============================================================================
# IN-MEMORY QUEUE
# ============================================================================

class InMemoryOfflineQueue(OfflineQueue):
    """
    Dict-backed OfflineQueue for exercising the engine against the interface

    No quota and no storage failures; ordering, dead-letter cascade and
    status bookkeeping follow SqlOfflineQueue.
    """

    def __init__(self, clock=now_millis):
        self.clock = clock
        self.partitions: dict[RecordKind, dict[str, PendingRecord]] = {kind: {} for kind in RecordKind}
        self.parked: dict[str, tuple[PendingRecord, DeadLetterEntry]] = {}
        self.last_activity = 0
        self.last_sync = 0

    def _status(self) -> SyncStatus:
        return SyncStatus(
            pending_count=sum(
                1 for records in self.partitions.values() for r in records.values() if not r.synced
            ),
            stuck_count=len(self.parked),
            last_activity=self.last_activity,
            last_sync=self.last_sync,
        )

    def _touch(self) -> None:
        self.last_activity = self.clock()

    def _park(self, record: PendingRecord, reason: str) -> None:
        del self.partitions[record.kind][record.id]
        entry = DeadLetterEntry(
            id=record.id,
            kind=record.kind,
            bag_id=record.bag_id,
            attempts=record.attempts,
            reason=reason,
            timestamp=record.timestamp,
            dead_lettered_at=datetime.now(timezone.utc),
        )
        self.parked[record.id] = (record, entry)

    async def enqueue(self, kind, payload, *, bag_id=None, content=None, content_type=None) -> str:
        timestamp = self.clock()
        record_id = generate_record_id(kind, timestamp)
        self.partitions[kind][record_id] = PendingRecord(
            id=record_id,
            kind=kind,
            payload=dict(payload),
            bag_id=bag_id,
            content=content,
            content_type=content_type,
            file_hash=compute_file_hash(content) if content else None,
            timestamp=timestamp,
        )
        self._touch()
        return record_id

    async def list_unsynced(self, kind):
        records = [r for r in self.partitions[kind].values() if not r.synced]
        return [r.model_copy(deep=True) for r in sorted(records, key=lambda r: r.timestamp)]

    async def mark_synced(self, kind, record_id) -> None:
        record = self.partitions[kind].get(record_id)
        if record is None or record.synced:
            return
        record.synced = True
        record.last_error = None
        self._touch()

    async def remove(self, kind, record_id) -> bool:
        removed = self.partitions[kind].pop(record_id, None) is not None
        self._touch()
        return removed

    async def clear_synced(self) -> int:
        removed = 0
        for records in self.partitions.values():
            for record_id in [r.id for r in records.values() if r.synced]:
                del records[record_id]
                removed += 1
        self._touch()
        return removed

    async def rewrite_bag_reference(self, local_bag_id, remote_bag_id) -> int:
        dependents = [
            *self.partitions[RecordKind.CUSTODY_LOG].values(),
            *self.partitions[RecordKind.PHOTO].values(),
            *(record for record, _ in self.parked.values()),
        ]
        rewritten = 0
        for record in dependents:
            if record.bag_id == local_bag_id:
                record.bag_id = remote_bag_id
                rewritten += 1
        return rewritten

    async def record_failure(self, kind, record_id, error) -> int:
        record = self.partitions[kind].get(record_id)
        if record is None:
            return 0
        record.attempts += 1
        record.last_error = error[:2000]
        return record.attempts

    async def dead_letter(self, kind, record_id, reason) -> int:
        record = self.partitions[kind].get(record_id)
        if record is None or record.synced:
            return 0
        self._park(record, reason)
        moved = 1
        if kind is RecordKind.EVIDENCE_BAG:
            for dep_kind in (RecordKind.CUSTODY_LOG, RecordKind.PHOTO):
                for dependent in list(self.partitions[dep_kind].values()):
                    if dependent.bag_id == record_id and not dependent.synced:
                        self._park(dependent, f"Evidence bag {record_id} was dead-lettered")
                        moved += 1
        self._touch()
        return moved

    async def list_dead_letters(self):
        entries = [entry for _, entry in self.parked.values()]
        return sorted(entries, key=lambda e: (e.dead_lettered_at, e.timestamp))

    async def requeue_dead_letter(self, record_id):
        if record_id not in self.parked:
            return None
        record, _ = self.parked.pop(record_id)
        record.attempts = 0
        record.last_error = None
        self.partitions[record.kind][record.id] = record
        self._touch()
        return record.kind

    async def recompute_status(self) -> SyncStatus:
        self._touch()
        return self._status()

    async def get_status(self) -> SyncStatus:
        return self._status()

    async def mark_sync_completed(self, summary=None) -> SyncStatus:
        self._touch()
        self.last_sync = self.last_activity
        return self._status()


@pytest.fixture
def memory_queue(clock) -> InMemoryOfflineQueue:
    return InMemoryOfflineQueue(clock=clock)


# ============================================================================
# REMOTE PLATFORM FAKE
# ============================================================================

class FakeRemoteApi(RemoteEvidenceApi):
    """
    Scripted stand-in for the remote platform

    - fail_keys: idempotency keys whose writes fail
    - delay: seconds each call sleeps before answering
    - gate: optional asyncio.Event every call waits on
    """

    def __init__(self):
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_keys: set[str] = set()
        self.delay: float = 0
        self.gate: Optional[asyncio.Event] = None
        self.started: Optional[asyncio.Event] = None
        self.bags: dict[str, dict[str, Any]] = {}  # idempotency key -> stored bag
        self._ids = itertools.count(1)

    async def _answer(self, method: str, idempotency_key: Optional[str], record: dict[str, Any]):
        self.calls.append((method, {**record, "idempotency_key": idempotency_key}))
        if self.started is not None:
            self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if idempotency_key in self.fail_keys:
            raise RemoteWriteError(f"{method} rejected", status_code=500)

    async def create_evidence_bag(self, payload, idempotency_key=None):
        await self._answer("create_evidence_bag", idempotency_key, payload)
        if idempotency_key in self.bags:
            return self.bags[idempotency_key]
        bag = {**payload, "id": f"srv-{next(self._ids)}"}
        self.bags[idempotency_key] = bag
        return bag

    async def add_custody_entry(self, payload, idempotency_key=None):
        await self._answer("add_custody_entry", idempotency_key, payload)
        return {**payload, "id": f"log-{next(self._ids)}"}

    async def upload_photo(
        self,
        bag_id,
        content,
        content_type,
        notes=None,
        file_hash=None,
        idempotency_key=None,
    ):
        await self._answer(
            "upload_photo",
            idempotency_key,
            {"bag_id": bag_id, "content_type": content_type, "file_hash": file_hash, "size": len(content)},
        )
        return {"id": f"photo-{next(self._ids)}", "bag_id": bag_id}

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [record for name, record in self.calls if name == method]


class RecordingNotifier:
    """Collects user-visible notifications"""

    def __init__(self):
        self.messages: list[tuple[str, str]] = []

    def info(self, message: str) -> None:
        self.messages.append(("info", message))

    def success(self, message: str) -> None:
        self.messages.append(("success", message))

    def error(self, message: str) -> None:
        self.messages.append(("error", message))


@pytest.fixture
def remote() -> FakeRemoteApi:
    return FakeRemoteApi()


@pytest.fixture
def engine(queue: SqlOfflineQueue, remote: FakeRemoteApi) -> SyncEngine:
    return SyncEngine(queue, remote, call_timeout=1.0, max_attempts=3)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def watcher(engine: SyncEngine, notifier: RecordingNotifier) -> ConnectivityWatcher:
    return ConnectivityWatcher(engine, notifier=notifier)


# ============================================================================
# TEST DATA GENERATORS
# ============================================================================

@pytest.fixture
def sample_image() -> bytes:
    """
    Generate a valid JPEG image for testing

    Returns 1x1 pixel RGB JPEG (minimal valid image)
    """
    img = Image.new("RGB", (1, 1), color="red")
    buf = io.BytesIO()
    img.save(buf, format="JPEG")
    return buf.getvalue()


@pytest.fixture
def bag_data() -> dict[str, Any]:
    """Valid evidence bag draft fields"""
    return {
        "type": "clothing",
        "description": "Blue backpack recovered near the north entrance",
        "initial_collector": "Officer Rivera",
        "date_collected": "2025-03-14T09:30:00Z",
        "location": "North entrance, Lot B",
        "latitude": 40.7128,
        "longitude": -74.006,
    }


@pytest.fixture
def custody_data() -> dict[str, Any]:
    """Valid custody entry fields, without the bag reference"""
    return {
        "action": "transferred",
        "performed_by": "Officer Rivera",
        "timestamp": "2025-03-14T10:05:00Z",
        "location": "Precinct 4 evidence room",
        "notes": "Handed to intake clerk",
    }


@pytest.fixture
def create_bag(queue: SqlOfflineQueue, bag_data: dict[str, Any]):
    """
    Factory fixture for queued evidence bags

    Usage:
        bag_id = create_bag(description="...")
    """
    def _create_bag(**kwargs) -> str:
        draft = EvidenceBagDraft(**{**bag_data, **kwargs})
        return asyncio.run(save_offline_evidence_bag(queue, draft))

    return _create_bag


@pytest.fixture
def create_custody_log(queue: SqlOfflineQueue, custody_data: dict[str, Any]):
    """Factory fixture for queued custody entries"""
    def _create_custody_log(bag_id: str, **kwargs) -> str:
        draft = CustodyLogDraft(**{**custody_data, "bag_id": bag_id, **kwargs})
        return asyncio.run(save_offline_custody_log(queue, draft))

    return _create_custody_log


@pytest.fixture
def create_photo(queue: SqlOfflineQueue, sample_image: bytes):
    """Factory fixture for queued photos"""
    def _create_photo(bag_id: str, content: Optional[bytes] = None, **kwargs) -> str:
        draft = PhotoDraft(bag_id=bag_id, **kwargs)
        return asyncio.run(save_offline_photo(queue, draft, content or sample_image, "image/jpeg"))

    return _create_photo


# ============================================================================
# APPLICATION FIXTURES
# ============================================================================

@pytest.fixture
def asset_network():
    """
    Scripted network for the asset cache

    Maps path -> (status, content-type, body). Set `offline` to make every
    request fail at the transport level.
    """
    import httpx

    class Network:
        def __init__(self):
            self.routes: dict[str, tuple[int, str, bytes]] = {
                "/": (200, "text/html", b"<html>root</html>"),
                "/index.html": (200, "text/html", b"<html>shell</html>"),
                "/manifest.json": (200, "application/json", b'{"name": "SFEP"}'),
            }
            self.offline = False
            self.requests: list[str] = []

        def handler(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(str(request.url))
            if self.offline:
                raise httpx.ConnectError("network down", request=request)
            status, content_type, body = self.routes.get(
                request.url.path, (404, "text/plain", b"not found")
            )
            return httpx.Response(status, headers={"content-type": content_type}, content=body)

        @property
        def transport(self) -> httpx.MockTransport:
            return httpx.MockTransport(self.handler)

    return Network()


@pytest.fixture
def asset_cache(session_factory: sessionmaker, asset_network) -> OfflineAssetCache:
    return OfflineAssetCache(
        storage=CacheStorage(session_factory),
        origin="http://app.test",
        cache_name="sfep-v2",
        shell_urls=["/", "/index.html", "/manifest.json"],
        shell_document="/index.html",
        transport=asset_network.transport,
    )


@pytest.fixture(scope="function")
def client(
    queue: SqlOfflineQueue,
    engine: SyncEngine,
    watcher: ConnectivityWatcher,
    asset_cache: OfflineAssetCache,
) -> Generator[TestClient, None, None]:
    """
    Create FastAPI test client with dependency overrides

    Overrides:
    - Offline queue (in-memory store)
    - Sync engine and connectivity watcher (fake remote)
    - Asset cache (mock transport)

    The lifespan is not run; the watcher starts in an unknown (offline) state.
    """
    monitor = StatusMonitor(queue, interval=60)

    app.dependency_overrides[get_offline_queue] = lambda: queue
    app.dependency_overrides[get_sync_engine] = lambda: engine
    app.dependency_overrides[get_connectivity_watcher] = lambda: watcher
    app.dependency_overrides[get_status_monitor] = lambda: monitor
    app.dependency_overrides[get_asset_cache] = lambda: asset_cache

    yield TestClient(app)

    app.dependency_overrides.clear()


# ============================================================================
# CONFIGURATION
# ============================================================================

def pytest_configure(config):
    """
    Pytest configuration hook

    Registers test markers
    """
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
