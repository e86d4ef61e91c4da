"""Redis client construction shared by progress tracking and health checks."""

from __future__ import annotations

import ssl
from typing import Any

from redis import Redis


def normalize_redis_url(url: str) -> str:
    """Hosted Redis providers (Upstash) only accept TLS connections."""
    if ".upstash.io" in url and url.startswith("redis://"):
        return url.replace("redis://", "rediss://", 1)
    return url


def uses_tls(url: str) -> bool:
    return normalize_redis_url(url).startswith("rediss://")


def create_redis_client(url: str, **kwargs: Any) -> Redis:
    """Build a lazily-connecting client; TLS connections skip certificate checks."""
    url = normalize_redis_url(url)
    client = Redis.from_url(url, **kwargs)
    if uses_tls(url):
        client.connection_pool.connection_kwargs["ssl_cert_reqs"] = ssl.CERT_NONE
    return client
