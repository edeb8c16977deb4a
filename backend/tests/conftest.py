from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _isolated_backend(tmp_path, monkeypatch) -> None:
    from sqlmodel import create_engine

    from batchgrader import db
    from batchgrader.record_store import reset_record_store
    from batchgrader.settings import settings
    from batchgrader.storage_provider import reset_storage_provider

    monkeypatch.setattr(settings, "data_dir", str(tmp_path / "data"))
    monkeypatch.setattr(settings, "sqlite_path", str(tmp_path / "test.db"))
    monkeypatch.setattr(settings, "record_store_backend", "sql")
    monkeypatch.setattr(settings, "storage_backend", "local")
    engine = create_engine(settings.sqlite_url, connect_args={"check_same_thread": False, "timeout": 30})
    monkeypatch.setattr(db, "engine", engine)
    db.create_db_and_tables()

    reset_record_store()
    reset_storage_provider()
    yield
    reset_record_store()
    reset_storage_provider()
    engine.dispose()


@pytest.fixture
def store():
    from batchgrader import db
    from batchgrader.record_store import SqlRecordStore

    return SqlRecordStore(db.engine)


@pytest.fixture
def storage(tmp_path):
    from batchgrader.storage_provider import LocalDiskProvider

    return LocalDiskProvider(tmp_path / "objects")


@pytest.fixture
def repository(store, storage):
    from batchgrader.repository import BatchRepository, RepositoryConfig

    return BatchRepository(store, storage, RepositoryConfig(fold_backoff_seconds=0.0, batch_read_attempts=2))
