"""Test configuration."""
import json
import os
from datetime import UTC, datetime
from typing import Any, Dict, Generator, List, Optional

import pytest
from faker import Faker

# Set test environment before any imports
os.environ["ENV"] = "test"
os.environ["LOCAL_STORE_URL"] = "sqlite://"
os.environ["REMOTE_STORE_URL"] = ""
os.environ.setdefault("RECALL_GRACE_DELAY", "0")

# Import after environment setup
from sqlalchemy.orm import Session

from flashdrill.config import ensure_directories
from flashdrill.exceptions import RemoteStoreError
from flashdrill.models.base import SessionLocal, init_db
from flashdrill.models.models import LocalEntry
from flashdrill.models.study_models import WordSet
from flashdrill.services.catalog_service import CatalogService, load_seed_sets
from flashdrill.services.local_store import LocalStore
from flashdrill.services.remote_store import RemoteStore
from flashdrill.services.sync_service import SyncService

fake = Faker()

# Fixed clock used by the scheduling tests
NOW = datetime(2026, 3, 10, 9, 30, tzinfo=UTC)


class FakeRemoteStore(RemoteStore):
    """In-memory shared store that can be switched offline."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.fail = False
        self.writes: List[str] = []

    async def get(self, key: str) -> Optional[str]:
        if self.fail:
            raise RemoteStoreError("offline")
        return self.data.get(key)

    async def set(self, key: str, raw: str) -> None:
        if self.fail:
            raise RemoteStoreError("offline")
        self.writes.append(key)
        self.data[key] = raw

    def put_json(self, key: str, value: Any) -> None:
        self.data[key] = json.dumps(value)

    def get_json(self, key: str) -> Any:
        return json.loads(self.data[key])


@pytest.fixture(autouse=True)
def setup_test_environment():
    """Set up test environment before each test."""
    ensure_directories()
    yield


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create a fresh local store session for each test."""
    init_db()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.query(LocalEntry).delete()
        db.commit()
        db.close()


@pytest.fixture
def local(db: Session) -> LocalStore:
    return LocalStore(db)


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def sync(local: LocalStore, remote: FakeRemoteStore) -> SyncService:
    """Sync service for the child account."""
    return SyncService(local, remote, "child", settle_delay=0.05)


@pytest.fixture
def parent_sync(local: LocalStore, remote: FakeRemoteStore) -> SyncService:
    return SyncService(local, remote, "parent", settle_delay=0.05)


@pytest.fixture
def seed_sets() -> List[WordSet]:
    return load_seed_sets("words")


@pytest.fixture
def catalog(sync: SyncService, seed_sets: List[WordSet]) -> CatalogService:
    return CatalogService(sync, seed_sets)


@pytest.fixture
def parent_catalog(parent_sync: SyncService, seed_sets: List[WordSet]) -> CatalogService:
    return CatalogService(parent_sync, seed_sets)


def make_set(
    set_id: Optional[str] = None,
    priority: int = 3,
    mode: str = "chunk",
    owner: str = "child",
    size: int = 4,
) -> WordSet:
    """Build a word set with random items."""
    return WordSet(
        id=set_id or f"set_{fake.unique.random_int(min=1000, max=999999)}",
        mode=mode,
        owner=owner,
        label=fake.sentence(nb_words=3),
        priority=priority,
        items=tuple(f"{fake.word()} {i}" for i in range(size)),
    )
