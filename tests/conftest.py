"""Shared fixtures: a throwaway SQLite database per test and an inline batch engine."""

import os

# The package builds its default engine at import time; keep it off Postgres.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from catalog_importer.core.config import get_settings  # noqa: E402
from catalog_importer.db.session import build_engine, init_db  # noqa: E402
from catalog_importer.services import progress_tracker  # noqa: E402
from catalog_importer.services.batch_engine import BatchEngine  # noqa: E402
from tests.factories import csv_upload  # noqa: E402


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'catalog.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, autocommit=False)


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def settings():
    return get_settings().model_copy(update={"progress_publish_every": 1})


@pytest.fixture
def uploads(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def batch_engine(session_factory, settings, uploads):
    """Engine that runs batches inline instead of dispatching to Celery."""
    return BatchEngine(session_factory, settings=settings, uploads_dir=uploads)


@pytest.fixture
def make_batch(batch_engine):
    """Create a pending batch with ``rows`` attached and return its id."""

    def _make(rows, name="Spring catalog", headers=None, **kwargs):
        created = batch_engine.create_batch(name, **kwargs)
        assert created.success, created.error
        attached = batch_engine.attach_file(created.data.id, csv_upload(rows, headers), "products.csv")
        assert attached.success, attached.error
        return created.data.id

    return _make


@pytest.fixture(autouse=True)
def published_progress(monkeypatch):
    """Keep Redis out of the tests; collect what would have been published."""
    published = []

    def _publish(batch_id, processed, total, *, status=None, message=None, meta=None):
        published.append(
            {"batch_id": batch_id, "processed": processed, "total": total, "status": status}
        )

    monkeypatch.setattr(progress_tracker, "publish_progress", _publish)
    monkeypatch.setattr(progress_tracker, "fetch_progress", lambda batch_id: {})
    monkeypatch.setattr(progress_tracker, "clear_progress", lambda batch_id: None)
    return published
