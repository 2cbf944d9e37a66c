"""Pytest configuration and fixtures."""

import os

# Settings are cached on first import, so configure the environment first
TEST_SIGNING_KEY_ID = "test-key-1"
TEST_SIGNING_KEY_HEX = "5e" * 32
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("MANIFEST_SIGNING_KEY_ID", TEST_SIGNING_KEY_ID)
os.environ.setdefault("MANIFEST_SIGNING_KEY", TEST_SIGNING_KEY_HEX)
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import io
import json
import zipfile

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from inspectseal_api.db.base import Base
from inspectseal_api.models import SealedExport, TenantChainHead  # noqa: F401
from inspectseal_api.sealing.archive import BundleFile
from inspectseal_api.sealing.manifest import GeneratedBy
from inspectseal_api.sealing.service import SealingService
from inspectseal_api.sealing.signer import KeyRing, SigningKey
from inspectseal_api.storage.service import StorageError


# Use test database URL from environment or default to SQLite in-memory
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")


class InMemoryStorage:
    """Storage double with the StorageService interface."""

    def __init__(self):
        self.objects = {}
        self.metadata = {}
        self.put_calls = 0
        self.fail_puts = 0

    def put_object(self, object_key, data, content_type="application/octet-stream", metadata=None):
        self.put_calls += 1
        if self.fail_puts:
            self.fail_puts -= 1
            raise StorageError(f"Simulated outage uploading {object_key}")
        self.objects[object_key] = bytes(data)
        self.metadata[object_key] = {"content_type": content_type, **(metadata or {})}
        return object_key

    def get_object(self, object_key):
        if object_key not in self.objects:
            raise FileNotFoundError(f"Object not found: {object_key}")
        return self.objects[object_key]

    def object_exists(self, object_key):
        return object_key in self.objects


@pytest.fixture(scope="function")
def db():
    """Create a test database session."""
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(TEST_DATABASE_URL)

    Base.metadata.create_all(engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def signing_key() -> SigningKey:
    return SigningKey.from_hex(TEST_SIGNING_KEY_ID, TEST_SIGNING_KEY_HEX)


@pytest.fixture
def key_ring(signing_key: SigningKey) -> KeyRing:
    return KeyRing(signing_key)


@pytest.fixture
def sealing_service(db: Session, storage: InMemoryStorage, key_ring: KeyRing) -> SealingService:
    """Sealing service wired to the test database and in-memory storage."""
    return SealingService(db, storage=storage, key_ring=key_ring, sleep=lambda seconds: None)


@pytest.fixture
def inspector() -> GeneratedBy:
    return GeneratedBy(user_id="user-42", display_name="Sam Inspector")


@pytest.fixture
def report_file() -> BundleFile:
    """A 12-byte PDF report."""
    return BundleFile(path="report.pdf", data=b"%PDF-1.7\n%EO", content_type="application/pdf")


@pytest.fixture
def archive_contents(storage: InMemoryStorage):
    """Read a stored archive back into {name: bytes}."""

    def _read(row) -> dict:
        with zipfile.ZipFile(io.BytesIO(storage.objects[row.storage_key])) as zf:
            return {name: zf.read(name) for name in zf.namelist()}

    return _read


@pytest.fixture
def stored_manifest(archive_contents):
    """Decode the manifest of a stored bundle."""

    def _manifest(row) -> dict:
        return json.loads(archive_contents(row)["manifest.json"])

    return _manifest


@pytest.fixture
def client(db: Session, storage: InMemoryStorage):
    """API client using the test database and in-memory storage."""
    from inspectseal_api.db.session import get_db
    from inspectseal_api.main import app
    from inspectseal_api.routes.sealed_exports import get_storage

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_storage] = lambda: storage
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def repack(archive_bytes: bytes, replace: dict = None, drop: tuple = (), add: dict = None) -> bytes:
    """Rebuild an archive with some entries replaced, dropped or added."""
    replace = replace or {}
    buf = io.BytesIO()
    with zipfile.ZipFile(io.BytesIO(archive_bytes)) as src, zipfile.ZipFile(buf, "w") as dst:
        for name in src.namelist():
            if name in drop:
                continue
            dst.writestr(name, replace.get(name, src.read(name)))
        for name, data in (add or {}).items():
            dst.writestr(name, data)
    return buf.getvalue()


@pytest.fixture
def repack_archive():
    return repack
