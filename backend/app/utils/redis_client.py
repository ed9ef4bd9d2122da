"""Redis client construction with TLS handling for hosted providers."""

from __future__ import annotations

import ssl
from typing import Any

from redis import Redis

HOSTED_TLS_DOMAINS = (".upstash.io",)


def normalize_redis_url(url: str) -> str:
    """Upgrade redis:// to rediss:// for providers that only accept TLS."""
    if url.startswith("redis://") and any(domain in url for domain in HOSTED_TLS_DOMAINS):
        return url.replace("redis://", "rediss://", 1)
    return url


def uses_tls(url: str) -> bool:
    return normalize_redis_url(url).startswith("rediss://")


def create_redis_client(url: str, **kwargs: Any) -> Redis:
    """Create a Redis client; TLS connections skip certificate verification.

    Args:
        url: Redis connection URL (redis:// or rediss://)
        **kwargs: Passed to ``Redis.from_url`` (decode_responses, timeouts, ...)
    """
    url = normalize_redis_url(url)
    if url.startswith("rediss://"):
        kwargs.setdefault("ssl_cert_reqs", ssl.CERT_NONE)
    return Redis.from_url(url, **kwargs)
