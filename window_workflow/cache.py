"""
Redis caching utilities for the workflow service.

Dashboard statistics are cached briefly and dropped whenever an order or job
status changes. Any Redis failure is treated as a cache miss.
"""
import json
import logging
from typing import Optional, Any
import redis

from .config import CACHE_ENABLED, REDIS_URL

logger = logging.getLogger(__name__)

# The client connects lazily, on first command
redis_client = redis.from_url(REDIS_URL, decode_responses=True, socket_connect_timeout=1) if CACHE_ENABLED else None

# Cache TTLs (in seconds)
STATS_CACHE_TTL = 60

STATS_PREFIX = "stats"


def get_cache(key: str) -> Optional[Any]:
    """
    Read a cached statistic.

    Args:
        key: Key built with ``stats_key``

    Returns:
        The decoded value, or None on a miss, when caching is off, or when Redis is unreachable
    """
    if redis_client is None:
        return None
    try:
        value = redis_client.get(key)
    except redis.RedisError as e:
        logger.warning(f"Cache get error for {key}: {e}")
        return None
    return json.loads(value) if value else None


def set_cache(key: str, value: Any, ttl: int = STATS_CACHE_TTL) -> bool:
    """
    Store a statistic for ``ttl`` seconds.

    Decimals and dates are stored as strings.

    Returns:
        True if Redis accepted the value
    """
    if redis_client is None:
        return False
    try:
        redis_client.setex(key, ttl, json.dumps(value, default=str))
    except redis.RedisError as e:
        logger.warning(f"Cache set error for {key}: {e}")
        return False
    return True


def delete_pattern(pattern: str) -> bool:
    """Remove every key matching a glob ``pattern`` such as ``stats:*``."""
    if redis_client is None:
        return False
    try:
        keys = list(redis_client.scan_iter(match=pattern))
        if keys:
            redis_client.delete(*keys)
    except redis.RedisError as e:
        logger.warning(f"Cache delete error for {pattern}: {e}")
        return False
    return True


def stats_key(*parts: Any) -> str:
    return ":".join([STATS_PREFIX] + [str(p) if p is not None else "-" for p in parts])


def invalidate_stats() -> None:
    """Drop every cached dashboard statistic."""
    delete_pattern(f"{STATS_PREFIX}:*")
