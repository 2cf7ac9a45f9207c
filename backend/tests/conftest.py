"""Pytest fixtures: file-based sqlite DB per test, fake clock, fake accounts and collaborators, client."""
import os
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import random
import threading
import time
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from mailsync.database import create_sync_engine, get_db
from mailsync.errors import PermanentSyncError, TransientSyncError
from mailsync.jobs import Account
from mailsync.models import Base
from mailsync.services.backoff import BackoffPolicy
from mailsync.services.collaborators import SyncResult
from mailsync.services.job_store import JobStore


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, 0)):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self.now = self.now + timedelta(**kwargs)
            return self.now


class FakeAccounts:
    def __init__(self, *account_ids: str):
        self.accounts = {a: Account(id=a, provider="imap", display_name=a) for a in account_ids}

    def resolve(self, account_id):
        return self.accounts.get(account_id)

    def list_ids(self):
        return list(self.accounts)


class ScriptedCollaborator:
    """
    Plays back a script of results per call: an int (items synced), or an exception
    instance to raise. The last entry repeats. Tracks concurrent calls.
    """

    def __init__(self, *script, delay_s: float = 0.0):
        self.script = list(script) or [0]
        self.delay_s = delay_s
        self.calls: list[tuple[str, dict]] = []
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def sync(self, account, payload):
        with self._lock:
            idx = min(len(self.calls), len(self.script) - 1)
            step = self.script[idx]
            self.calls.append((account.id, payload))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay_s:
                time.sleep(self.delay_s)
            if isinstance(step, BaseException):
                raise step
            return SyncResult(items_synced=step)
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def db_urls(tmp_path):
    """
    Use a file-based sqlite DB so the store's per-operation sessions, worker threads
    and async API sessions all see the same data.
    """
    db_path = tmp_path / "test.db"
    sync_url = f"sqlite:///{db_path}"
    async_url = f"sqlite+aiosqlite:///{db_path}"
    return sync_url, async_url


@pytest.fixture
def db_engine(db_urls):
    sync_url, _ = db_urls
    engine = create_sync_engine(sync_url)
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backoff():
    return BackoffPolicy(base_delay_s=30.0, max_delay_s=7680.0, jitter_ratio=0.2, rng=random.Random(1234))


@pytest.fixture
def store(session_factory, backoff, clock):
    return JobStore(session_factory, default_max_attempts=5, backoff=backoff, clock=clock)


@pytest.fixture
def transient():
    return TransientSyncError("503 from provider")


@pytest.fixture
def permanent():
    return PermanentSyncError("invalid credentials")


@pytest.fixture
def client(db_urls, db_engine):
    _, async_url = db_urls
    async_engine = create_async_engine(
        async_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)

    async def override_get_db():
        async with AsyncSessionLocal() as session:
            yield session

    from mailsync.main import app

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
