"""Per-admin rate limiting for courier edit requests."""

from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass

from storefront.common.cache import RedisType

from .metrics import SHIPMENT_EDIT_RATE_LIMITED_TOTAL, SHIPMENT_RATE_LIMIT_ERRORS_TOTAL

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: int = 0


class EditRateLimiter:
    """Fixed window counter in Redis, or a sliding window in memory when Redis is absent.

    Redis failures fail open: the request is allowed and the error is counted.
    """

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: int,
        redis: RedisType | None = None,
        key_prefix: str = "shipment:edit-rate",
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._redis = redis
        self._key_prefix = key_prefix
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    def reset(self) -> None:
        self._hits.clear()

    async def hit(self, client_key: str) -> RateLimitDecision:
        if self._redis is not None:
            decision = await self._hit_redis(client_key)
        else:
            decision = self._hit_memory(client_key)
        if not decision.allowed:
            SHIPMENT_EDIT_RATE_LIMITED_TOTAL.inc()
            _LOGGER.warning("Edit rate limit reached for client %s", client_key)
        return decision

    async def _hit_redis(self, client_key: str) -> RateLimitDecision:
        window = int(time.time() // self.window_seconds)
        key = f"{self._key_prefix}:{client_key}:{window}"
        try:
            count = int(await self._redis.incrby(key, 1))
            if count == 1:
                await self._redis.expire(key, self.window_seconds)
        except Exception as exc:
            SHIPMENT_RATE_LIMIT_ERRORS_TOTAL.labels(operation="incr").inc()
            _LOGGER.warning("Rate limiter unavailable, allowing request: %s", exc)
            return RateLimitDecision(allowed=True, remaining=self.limit)
        if count > self.limit:
            retry_after = self.window_seconds - int(time.time()) % self.window_seconds
            return RateLimitDecision(allowed=False, remaining=0, retry_after_seconds=max(retry_after, 1))
        return RateLimitDecision(allowed=True, remaining=self.limit - count)

    def _hit_memory(self, client_key: str) -> RateLimitDecision:
        now = time.monotonic()
        hits = self._hits[client_key]
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()
        if len(hits) >= self.limit:
            retry_after = int(self.window_seconds - (now - hits[0])) + 1
            return RateLimitDecision(allowed=False, remaining=0, retry_after_seconds=retry_after)
        hits.append(now)
        return RateLimitDecision(allowed=True, remaining=self.limit - len(hits))
