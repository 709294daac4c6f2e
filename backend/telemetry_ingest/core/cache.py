"""
Redis client for the input registry cache and pub/sub side channel
"""
from typing import Optional
import logging

import redis

from telemetry_ingest.core.config import settings

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Shared client, created lazily (no connection is made until first use)"""
    global _client
    
    if _client is None:
        _client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def get_cache() -> Optional[redis.Redis]:
    """FastAPI dependency: the registry cache, or None when caching is disabled"""
    if not settings.CACHE_ENABLED:
        return None
    return get_redis()


def check_cache_connection() -> bool:
    if not settings.CACHE_ENABLED:
        return False
    try:
        return bool(get_redis().ping())
    except redis.RedisError as e:
        logger.error(f"Redis connection check failed: {e}")
        return False
