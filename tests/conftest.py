"""Shared test fixtures for evidencekeeper."""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from evidencekeeper import hashing
from evidencekeeper.backends import MemoryBackend, SqliteBackend
from evidencekeeper.models import Attachment, EventLogEntry, Record, Snapshot
from evidencekeeper.schema import SNAPSHOT_VERSION
from evidencekeeper.store import RecordStore


def make_record(record_id: str = "r1", created_at: str = "2024-03-01T09:00:00Z", **fields) -> Record:
    """Build a sealed record with sensible defaults."""
    fields.setdefault("description", "Incident at pickup")
    fields.setdefault("tags", ["Harassment"])
    fields.setdefault("severity", 4)
    fields.setdefault("event_log", [EventLogEntry(timestamp=created_at, action="created")])
    return hashing.seal(Record(id=record_id, created_at=created_at, **fields))


def make_snapshot(*records: Record, settings=None) -> Snapshot:
    return Snapshot(
        version=SNAPSHOT_VERSION,
        export_date="2024-03-02T10:00:00Z",
        records=list(records),
        settings=dict(settings or {}),
    )


@pytest.fixture
def attachment() -> Attachment:
    return Attachment(
        id="a1",
        name="photo.jpg",
        url="blob:evidence/a1",
        type="image",
        source="camera",
        file_hash=hashing.hash_bytes(b"jpeg bytes"),
    )


@pytest.fixture
def full_record(attachment: Attachment) -> Record:
    """A record with every optional field populated."""
    return make_record(
        "full",
        people=["Sam", "Alex"],
        location="School gate",
        files=[attachment],
        date_time="2024-02-29T15:30:00Z",
        edited_at="2024-03-01T10:00:00Z",
    )


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "store.sqlite3"


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, db_path: Path):
    """An initialized RecordStore over each backend."""
    backend = MemoryBackend() if request.param == "memory" else SqliteBackend(str(db_path))
    s = RecordStore(backend)
    await s.init()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def sqlite_store(db_path: Path):
    s = RecordStore(SqliteBackend(str(db_path)))
    await s.init()
    yield s
    await s.close()
