"""Celery application for background batch processing."""

import ssl

from celery import Celery

from catalog_importer.core.config import get_settings
from catalog_importer.utils.redis_client import normalize_redis_url, uses_tls

settings = get_settings()

BATCH_QUEUE = "batches"


def _with_ssl_param(url: str) -> str:
    # The Redis result backend reads ssl_cert_reqs from the URL at init time
    if "ssl_cert_reqs" in url:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}ssl_cert_reqs=none"


broker_url = normalize_redis_url(settings.celery_broker_url or settings.redis_url)
backend_url = normalize_redis_url(settings.celery_result_url or settings.redis_url)
is_ssl = uses_tls(broker_url) or uses_tls(backend_url)
if is_ssl:
    broker_url = _with_ssl_param(broker_url)
    backend_url = _with_ssl_param(backend_url)

celery_app = Celery(
    "catalog_importer",
    broker=broker_url,
    backend=backend_url,
)

celery_config = {
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "enable_utc": True,
    "task_acks_late": True,
    "task_reject_on_worker_lost": True,
    # One batch per worker at a time; rows are processed strictly in order
    "worker_prefetch_multiplier": 1,
    "task_time_limit": 6 * 3600,
    "task_soft_time_limit": 6 * 3600 - 300,
    "result_expires": 3600,
    "broker_connection_retry_on_startup": True,
    "worker_hijack_root_logger": False,
    "result_backend_always_retry": True,
    "result_backend_max_retries": 3,
    "task_default_queue": BATCH_QUEUE,
    "task_routes": {"catalog_importer.workers.tasks.process_batch": {"queue": BATCH_QUEUE}},
}

if is_ssl:
    ssl_dict = {"ssl_cert_reqs": ssl.CERT_NONE}
    celery_config["broker_use_ssl"] = ssl_dict
    celery_config["redis_backend_use_ssl"] = ssl_dict
    celery_config["broker_transport_options"] = ssl_dict.copy()
    celery_config["result_backend_transport_options"] = ssl_dict.copy()

celery_app.conf.update(celery_config)

# Tasks use @celery_app.task, importing registers them
from catalog_importer.workers.tasks import process_batch  # noqa: E402,F401
