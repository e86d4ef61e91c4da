"""Celery task driving one run of a batch through the engine."""

from __future__ import annotations

import logging

from catalog_importer.db.session import get_fresh_session
from catalog_importer.services.batch_engine import BatchEngine
from catalog_importer.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="catalog_importer.workers.tasks.process_batch")
def process_batch_task(self, batch_id: str, run_token: str) -> dict:
    """Process a batch from its cursor; stops early if the run is paused or superseded."""
    logger.info(f"Task {self.request.id} picked up batch {batch_id}")
    result = BatchEngine(session_factory=get_fresh_session).run(batch_id, run_token)
    if result.success:
        logger.info(f"Batch {batch_id} completed")
    else:
        logger.warning(f"Batch {batch_id} ended with {result.code}: {result.message}")
    return {
        "batch_id": batch_id,
        "success": result.success,
        "code": result.code,
        "message": result.message,
    }


def enqueue_batch(batch_id: str, run_token: str) -> None:
    """Dispatcher handed to the engine by the API layer."""
    async_result = process_batch_task.apply_async(args=[batch_id, run_token])
    logger.info(f"Queued batch {batch_id} as task {async_result.id}")
