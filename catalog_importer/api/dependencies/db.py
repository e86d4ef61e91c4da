"""Batch engine dependency."""

from catalog_importer.db.session import SessionLocal
from catalog_importer.services.batch_engine import BatchEngine


def get_batch_engine() -> BatchEngine:
    """Engine whose long-running work is handed to the Celery worker."""
    from catalog_importer.workers.tasks.process_batch import enqueue_batch

    return BatchEngine(session_factory=SessionLocal, dispatcher=enqueue_batch)
