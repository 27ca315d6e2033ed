"""Async Redis helpers used for rate limiting and courier response caching."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, TYPE_CHECKING

try:  # pragma: no cover - optional dependency handling
    from redis.asyncio import Redis as _Redis
except ModuleNotFoundError:  # pragma: no cover - executed only when redis is unavailable
    _Redis = None  # type: ignore[assignment]

if TYPE_CHECKING:  # pragma: no cover - typing only
    from redis.asyncio import Redis as RedisType
else:  # pragma: no cover - used when dependency absent
    RedisType = Any

from .config import ServiceSettings

_LOGGER = logging.getLogger(__name__)
_CACHE: Dict[str, RedisType] = {}


def get_redis_client(redis_url: str) -> RedisType:
    """Return a cached Redis client for the given URL."""

    if _Redis is None:
        raise RuntimeError(
            "redis dependency is not installed. Install 'redis' to enable cache support."
        )

    if redis_url not in _CACHE:
        _CACHE[redis_url] = _Redis.from_url(redis_url, decode_responses=True)
    return _CACHE[redis_url]


def resolve_redis(settings: ServiceSettings) -> RedisType | None:
    """Return a Redis client or None if not configured."""

    if not settings.redis_url:
        return None
    return get_redis_client(settings.redis_url)


async def cache_get_json(redis: RedisType | None, key: str) -> Any | None:
    """Read a JSON document from Redis; any cache failure reads as a miss."""

    if redis is None:
        return None
    try:
        raw = await redis.get(key)
    except Exception as exc:
        _LOGGER.warning("Cache read failed for %s: %s", key, exc)
        return None
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        _LOGGER.warning("Discarding undecodable cache entry %s", key)
        return None


async def cache_set_json(redis: RedisType | None, key: str, value: Any, *, ttl_seconds: int) -> bool:
    """Store a JSON document with a TTL. Returns False when the write did not happen."""

    if redis is None or ttl_seconds <= 0:
        return False
    try:
        await redis.set(key, json.dumps(value, default=str), ex=ttl_seconds)
    except Exception as exc:
        _LOGGER.warning("Cache write failed for %s: %s", key, exc)
        return False
    return True


async def close_redis_connections() -> None:
    """Close all cached Redis connections (used for shutdown/tests)."""

    if _Redis is None:
        _CACHE.clear()
        return

    for redis in _CACHE.values():
        await redis.aclose()
    _CACHE.clear()
