from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Final, Optional

import redis

from config import APP_ENV, REDIS_DISABLED, REDIS_URL
from observability import get_logger, log_event

from .exceptions import RateLimitedError

RATE_LIMIT_REDIS_KEY_PREFIX: Final[str] = "payledger:attempts:"
# Token bucket: KEYS[1]=bucket, ARGV = now, capacity, refill/sec, cost.
TOKEN_BUCKET_LUA: Final[str] = """
local bucket = KEYS[1]
local now = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local refill = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local state = redis.call("HMGET", bucket, "tokens", "ts")
local tokens = tonumber(state[1]) or capacity
local updated = tonumber(state[2]) or now

if now > updated then
  tokens = math.min(capacity, tokens + (now - updated) * refill)
end

local granted = 0
local wait = 0
if tokens >= cost then
  tokens = tokens - cost
  granted = 1
else
  wait = math.ceil((cost - tokens) / refill)
end

redis.call("HSET", bucket, "tokens", tokens, "ts", now)
redis.call("EXPIRE", bucket, math.max(120, math.ceil(capacity / refill * 2)))
return {granted, tokens, wait}
"""

_LOGGER = get_logger("payledger.ratelimit")
# In-process buckets are swept once the table grows past this many subjects.
MEMORY_BUCKET_SWEEP_AT: Final[int] = 1024


def _is_production_env() -> bool:
    return str(APP_ENV or "").strip().lower() in {"prod", "production"}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit_per_minute: int
    remaining: int
    retry_after_seconds: int


class AttemptRateLimiter:
    """
    Per-subject token bucket for brute-forceable actions (redemption codes).

    Buckets live in redis so every instance shares them; when redis is
    unreachable the limiter degrades to an in-process bucket.
    """

    def __init__(self, *, scope: str, limit_per_minute: int, client: Optional[redis.Redis] = None) -> None:
        self.scope = scope
        self.limit_per_minute = max(1, int(limit_per_minute))
        self._client = client if client is not None else self._build_redis_client()
        self._memory_lock = threading.Lock()
        self._memory_buckets: dict[str, tuple[float, float]] = {}

    @staticmethod
    def _build_redis_client() -> Optional[redis.Redis]:
        if REDIS_DISABLED or str(REDIS_URL).startswith("memory://"):
            return None
        try:
            client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
            client.ping()
            return client
        except redis.RedisError as exc:
            log_event(
                _LOGGER,
                logging.ERROR if _is_production_env() else logging.WARNING,
                "ratelimit.redis_unavailable_fallback_memory",
                redis_url=REDIS_URL,
                error=str(exc),
            )
            return None

    def allow(self, subject: str, *, cost: int = 1) -> RateLimitResult:
        capacity = self.limit_per_minute
        spend = max(1, int(cost))
        key = f"{RATE_LIMIT_REDIS_KEY_PREFIX}{self.scope}:{subject}"
        if self._client is not None:
            try:
                return self._allow_redis(key=key, capacity=capacity, cost=spend)
            except redis.RedisError as exc:
                log_event(
                    _LOGGER,
                    logging.ERROR,
                    "ratelimit.redis_call_failed_fallback_memory",
                    key=key,
                    error=str(exc),
                )
                self._client = None
        return self._allow_memory(key=key, capacity=capacity, cost=spend)

    def check(self, subject: str) -> RateLimitResult:
        result = self.allow(subject)
        if not result.allowed:
            log_event(
                _LOGGER,
                logging.WARNING,
                "ratelimit.rejected",
                scope=self.scope,
                subject=subject,
                retry_after_seconds=result.retry_after_seconds,
            )
            raise RateLimitedError(retry_after_seconds=result.retry_after_seconds)
        return result

    def _allow_redis(self, *, key: str, capacity: int, cost: int) -> RateLimitResult:
        raw = self._client.eval(TOKEN_BUCKET_LUA, 1, key, str(time.time()), str(capacity), str(capacity / 60.0), str(cost))
        if not isinstance(raw, list) or len(raw) < 3:
            raise redis.RedisError("invalid token bucket response")
        return RateLimitResult(
            allowed=int(raw[0]) == 1,
            limit_per_minute=capacity,
            remaining=max(0, int(math.floor(float(raw[1])))),
            retry_after_seconds=max(0, int(raw[2])),
        )

    def _allow_memory(self, *, key: str, capacity: int, cost: int) -> RateLimitResult:
        refill_per_second = capacity / 60.0
        now = time.time()
        with self._memory_lock:
            tokens, last_seen = self._memory_buckets.get(key, (float(capacity), now))
            tokens = min(float(capacity), tokens + max(0.0, now - last_seen) * refill_per_second)
            allowed = tokens >= cost
            retry_after = 0
            if allowed:
                tokens -= cost
            else:
                retry_after = max(1, int(math.ceil((cost - tokens) / refill_per_second)))
            self._memory_buckets[key] = (tokens, now)
            if len(self._memory_buckets) > MEMORY_BUCKET_SWEEP_AT:
                self._drop_full_buckets(now=now, capacity=capacity, refill_per_second=refill_per_second)
        return RateLimitResult(
            allowed=allowed,
            limit_per_minute=capacity,
            remaining=max(0, int(math.floor(tokens))),
            retry_after_seconds=retry_after,
        )

    def _drop_full_buckets(self, *, now: float, capacity: int, refill_per_second: float) -> None:
        # A bucket that has refilled is indistinguishable from a missing one.
        full = [
            key
            for key, (tokens, last_seen) in self._memory_buckets.items()
            if tokens + (now - last_seen) * refill_per_second >= capacity
        ]
        for key in full:
            del self._memory_buckets[key]
