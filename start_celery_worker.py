#!/usr/bin/env python3
"""Start the batch worker with suppressed security warnings for containerized environments."""

import sys
import warnings

from celery.bin import worker

warnings.filterwarnings("ignore", category=UserWarning, message=".*superuser privileges.*")
warnings.filterwarnings("ignore", category=RuntimeWarning, message=".*superuser privileges.*")

from catalog_importer.core.logging import configure_logging  # noqa: E402
from catalog_importer.workers.celery_app import BATCH_QUEUE, celery_app  # noqa: E402

if __name__ == "__main__":
    configure_logging()
    worker_app = worker.worker(app=celery_app)

    # Rows must be processed in file order, one batch at a time per worker
    sys.argv = [
        "celery",
        "-A",
        "catalog_importer.workers.celery_app.celery_app",
        "worker",
        "--loglevel=info",
        f"--queues={BATCH_QUEUE}",
        "--pool=solo",
        "--without-mingle",
        "--without-gossip",
    ] + sys.argv[1:]

    worker_app.run()
