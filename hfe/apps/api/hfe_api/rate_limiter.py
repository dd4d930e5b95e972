"""Fixed-window rate limiting shared across API instances.

Counters live in Redis (INCR + EXPIRE in one pipeline), keyed by a hash of the
caller identity and the window index, so every instance sees the same count.
Results drive the IETF RateLimit-Policy / RateLimit headers.
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import redis

logger = logging.getLogger(__name__)

DEFAULT_POLICY_ID = "default"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    policy_id: str
    quota: int
    window: int
    remaining: int
    reset: int  # seconds until the window resets

    def headers(self) -> dict[str, str]:
        """IETF structured-field headers; blocked results add Retry-After."""
        headers = {
            "RateLimit-Policy": f'"{self.policy_id}"; q={self.quota}; w={self.window}',
            "RateLimit": f'"{self.policy_id}"; r={self.remaining}; t={self.reset}',
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.reset)
        return headers


class RateLimiter:
    """Interface: check_rate_limit(key, path) -> RateLimitResult."""

    policy_id = DEFAULT_POLICY_ID

    def __init__(self, quota: int = 60, window: int = 60):
        self.quota = quota
        self.window = window

    def check_rate_limit(self, key: str, path: str) -> RateLimitResult:
        raise NotImplementedError


class NoOpRateLimiter(RateLimiter):
    """Always allows; reports a full quota. Used when Redis is not configured."""

    def check_rate_limit(self, key: str, path: str) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            policy_id=self.policy_id,
            quota=self.quota,
            window=self.window,
            remaining=self.quota,
            reset=self.window,
        )


class RedisRateLimiter(RateLimiter):
    """Redis fixed-window counter."""

    def __init__(
        self,
        redis_client: redis.Redis,
        quota: int = 60,
        window: int = 60,
        clock: Callable[[], float] = time.time,
        key_prefix: str = "hfe:ratelimit",
    ):
        super().__init__(quota=quota, window=window)
        self.redis = redis_client
        self.clock = clock
        self.key_prefix = key_prefix

    def _counter_key(self, key: str, window_index: int) -> str:
        # Callers are identified by bearer token; never store it in Redis
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
        return f"{self.key_prefix}:{self.policy_id}:{digest}:{window_index}"

    def check_rate_limit(self, key: str, path: str) -> RateLimitResult:
        now = self.clock()
        window_index = int(now // self.window)
        reset = max(1, int(self.window - (now % self.window)))
        counter_key = self._counter_key(key, window_index)

        try:
            pipe = self.redis.pipeline()
            pipe.incr(counter_key)
            pipe.expire(counter_key, self.window)
            count, _ = pipe.execute()
        except redis.RedisError as e:
            # Fail open: a Redis outage must not take the API down
            logger.warning(
                "RATE_LIMIT_BACKEND_UNAVAILABLE",
                extra={"error_type": type(e).__name__, "path": path},
            )
            return NoOpRateLimiter(self.quota, self.window).check_rate_limit(key, path)

        count = int(count)
        return RateLimitResult(
            allowed=count <= self.quota,
            policy_id=self.policy_id,
            quota=self.quota,
            window=self.window,
            remaining=max(0, self.quota - count),
            reset=reset,
        )


def build_rate_limiter(
    redis_client: Optional[redis.Redis], quota: int, window: int
) -> RateLimiter:
    if redis_client is None:
        return NoOpRateLimiter(quota=quota, window=window)
    return RedisRateLimiter(redis_client, quota=quota, window=window)
