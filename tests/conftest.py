"""
Pytest fixtures for transcoder tests.

Provides in-memory and SQLite-backed job stores, an in-memory work queue,
and temporary storage/work/upload directories. Fake prober and encoder
implementations live in tests/fixtures/fakes.py.
"""

import os
import tempfile
from pathlib import Path

import pytest
import sqlalchemy as sa
from databases import Database

# Set up test mode BEFORE importing config
_test_temp_dir = tempfile.mkdtemp()
os.environ["STRELITZIA_TEST_MODE"] = "1"
os.environ.setdefault("STRELITZIA_STORAGE_ROOT", str(Path(_test_temp_dir) / "videos"))
os.environ.setdefault("STRELITZIA_WORK_DIR", str(Path(_test_temp_dir) / "work"))

from core.database import episodes, metadata, uploads  # noqa: E402
from core.enums import UploadStatus  # noqa: E402
from core.job_queue import InMemoryWorkQueue  # noqa: E402
from core.job_store import DatabaseJobStore, Episode, InMemoryJobStore, Upload  # noqa: E402
from worker.finalizer import OutputFinalizer  # noqa: E402


@pytest.fixture
def memory_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def memory_queue() -> InMemoryWorkQueue:
    return InMemoryWorkQueue()


@pytest.fixture
def storage_root(tmp_path) -> Path:
    path = tmp_path / "videos"
    path.mkdir()
    return path


@pytest.fixture
def work_root(tmp_path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def uploads_root(tmp_path) -> Path:
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def source_file(uploads_root) -> Path:
    path = uploads_root / "upload-1.mp4"
    path.write_bytes(b"fake video data")
    return path


@pytest.fixture
def seeded_store(memory_store, source_file) -> InMemoryJobStore:
    """In-memory store with episode ep-1 and completed upload upload-1."""
    memory_store.add_episode(Episode(id="ep-1", title="Pilot"))
    memory_store.add_upload(Upload(id="upload-1", stored_path=source_file.name, status=UploadStatus.COMPLETED))
    return memory_store


@pytest.fixture
def finalizer(seeded_store, storage_root) -> OutputFinalizer:
    return OutputFinalizer(seeded_store, storage_root=storage_root)


@pytest.fixture
async def sqlite_db(tmp_path):
    """A connected SQLite database with all tables created."""
    db_path = tmp_path / "test.db"
    url = f"sqlite:///{db_path}"
    engine = sa.create_engine(url)
    metadata.create_all(engine)
    engine.dispose()

    db = Database(url)
    await db.connect()
    yield db
    await db.disconnect()


@pytest.fixture
async def sqlite_store(sqlite_db) -> DatabaseJobStore:
    """Database-backed store with episode ep-1 and completed upload upload-1."""
    await sqlite_db.execute(episodes.insert().values(id="ep-1", title="Pilot"))
    await sqlite_db.execute(
        uploads.insert().values(id="upload-1", stored_path="upload-1.mp4", status=UploadStatus.COMPLETED.value)
    )
    return DatabaseJobStore(sqlite_db)
