"""Publish batch progress snapshots to Redis for dashboards."""

from __future__ import annotations

import json
from datetime import timedelta
from typing import Any

from redis.exceptions import RedisError

from catalog_importer.core.config import get_settings
from catalog_importer.utils.redis_client import create_redis_client

settings = get_settings()
redis_client = create_redis_client(settings.redis_url, decode_responses=True)
PROGRESS_PREFIX = "batches:progress:"
PROGRESS_TTL = timedelta(hours=24)


def _key(batch_id: str) -> str:
    return f"{PROGRESS_PREFIX}{batch_id}"


def publish_progress(
    batch_id: str,
    processed: int,
    total: int,
    *,
    status: str | None = None,
    message: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """Persist a progress snapshot; the database row stays the source of truth."""
    fraction = processed / total if total else 0.0
    payload = {
        "batch_id": batch_id,
        "progress": max(0.0, min(fraction, 1.0)),
        "processed": processed,
        "total": total,
        "status": status,
        "message": message or f"Processed {processed}/{total} rows",
        "meta": meta or {},
    }
    try:
        redis_client.set(
            _key(batch_id),
            json.dumps(payload),
            ex=int(PROGRESS_TTL.total_seconds()),
        )
    except RedisError:
        # Redis availability should not break ingestion.
        pass


def fetch_progress(batch_id: str) -> dict[str, Any]:
    """Return the latest snapshot, or an empty dict when none is cached."""
    try:
        raw = redis_client.get(_key(batch_id))
    except RedisError:
        return {}
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}


def clear_progress(batch_id: str) -> None:
    try:
        redis_client.delete(_key(batch_id))
    except RedisError:
        pass
