"""Shared test fixtures."""
import os
import tempfile
from io import BytesIO
from pathlib import Path

# Must be set before app modules read settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["UPLOADS_DIR"] = tempfile.mkdtemp(prefix="sheet-importer-uploads-")
os.environ["IMPORT_BATCH_SIZE"] = "100"
os.environ["IMPORT_BATCH_INTERVAL_SECONDS"] = "0"

from unittest.mock import MagicMock, patch  # noqa: E402

import pandas as pd  # noqa: E402
import pytest  # noqa: E402

from app.db import models  # noqa: E402,F401
from app.db.base import Base  # noqa: E402
from app.db.models.import_run import STATUS_RUNNING, ImportRun  # noqa: E402
from app.db.session import SessionLocal, engine  # noqa: E402

OWNER = "user-1"
OTHER_OWNER = "user-2"


@pytest.fixture
def db_engine():
    """In-memory SQLite engine (one shared connection) with schema created."""
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture
def db_session(db_engine):
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(autouse=True)
def mock_redis():
    """Progress snapshots go to a MagicMock instead of a Redis server."""
    mock = MagicMock()
    mock.get.return_value = None
    with patch("app.services.progress_tracker.redis_client", mock):
        yield mock


@pytest.fixture(autouse=True)
def mock_enqueue():
    """Capture Celery dispatches; tests run execute_run themselves."""
    with patch("app.services.ingestion_runs.enqueue_run") as mock:
        yield mock


@pytest.fixture
def uploads_dir():
    return Path(os.environ["UPLOADS_DIR"]).resolve()


@pytest.fixture
def make_xlsx():
    """Build .xlsx bytes from a list of row dicts (first sheet)."""
    def _make(rows, columns=None):
        frame = pd.DataFrame(rows, columns=columns)
        buffer = BytesIO()
        frame.to_excel(buffer, index=False)
        return buffer.getvalue()
    return _make


@pytest.fixture
def stage_source(uploads_dir):
    """Write bytes into the uploads directory and return the locator."""
    created = []

    def _stage(content: bytes, name: str = "source.xlsx") -> str:
        path = uploads_dir / f"{len(created)}-{name}"
        path.write_bytes(content)
        created.append(path)
        return str(path)

    yield _stage
    for path in created:
        path.unlink(missing_ok=True)


@pytest.fixture
def make_run(db_session):
    """Insert an ImportRun row with sensible defaults."""
    def _make(**overrides):
        defaults = dict(
            owner_id=OWNER,
            file_name="products.xlsx",
            source_locator="https://files.example.com/products.xlsx",
            status=STATUS_RUNNING,
            processed_rows=0,
        )
        defaults.update(overrides)
        run = ImportRun(**defaults)
        db_session.add(run)
        db_session.commit()
        db_session.refresh(run)
        return run
    return _make


@pytest.fixture
def reload_run(db_session):
    """Re-read a run from the database, bypassing the identity map."""
    def _reload(run_id):
        db_session.expire_all()
        return db_session.get(ImportRun, run_id)
    return _reload


@pytest.fixture
def client(db_engine):
    from fastapi.testclient import TestClient

    from app.main import app

    with TestClient(app) as c:
        yield c
