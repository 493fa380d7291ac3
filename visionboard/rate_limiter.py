"""
Rate limiting for Vision Board.

Sliding-window request limits per identity, operation class and tier.
Windows live in Redis sorted sets when a client is configured, so every
worker process shares them; otherwise they are kept in process memory.
"""

import time
import uuid
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional, Union

import redis

from visionboard.config import DEFAULT_RATE_LIMITS, RATE_LIMIT_PREFIX
from visionboard.errors import VisionBoardError


@dataclass
class RateLimitConfig:
    """Rate limit configuration for one operation class and tier."""
    requests: int = 20
    window_seconds: float = 60.0


@dataclass
class RateLimitResult:
    """Outcome of a rate limit check."""
    success: bool
    remaining: int
    reset: float  # unix time when the oldest request leaves the window


class RateLimitError(VisionBoardError):
    """Raised when rate limit is exceeded."""
    status_code = 429

    def __init__(self, operation_class: str, remaining: int = 0, reset: Optional[float] = None):
        self.operation_class = operation_class
        self.remaining = remaining
        self.reset = reset
        super().__init__("Rate limit exceeded. Please try again later.")

    def to_dict(self) -> dict:
        return {"error": str(self), "remaining": self.remaining}


class SlidingWindowLimiter:
    """
    Sliding-window log limiter.

    Keeps request timestamps per key and admits a request only while fewer
    than `requests` fall inside the trailing window.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        prefix: str = RATE_LIMIT_PREFIX,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.prefix = prefix
        self._clock = clock
        self._lock = Lock()
        self._requests: dict[str, deque] = {}

    def _key(self, identifier: str) -> str:
        return f"{self.prefix}:{identifier}"

    def _clean_old_entries(self, key: str, now: float) -> None:
        window = self._requests.get(key)
        if window is None:
            return
        while window and now - window[0] >= self.config.window_seconds:
            window.popleft()
        if not window:
            del self._requests[key]

    def limit(self, identifier: str) -> RateLimitResult:
        """Check the window for `identifier` and record the request if admitted."""
        key = self._key(identifier)
        with self._lock:
            now = self._clock()
            self._clean_old_entries(key, now)
            window = self._requests.get(key, ())

            if len(window) >= self.config.requests:
                return RateLimitResult(
                    success=False,
                    remaining=0,
                    reset=window[0] + self.config.window_seconds,
                )

            window = self._requests.setdefault(key, deque())
            window.append(now)
            return RateLimitResult(
                success=True,
                remaining=self.config.requests - len(window),
                reset=window[0] + self.config.window_seconds,
            )

    def get_stats(self, identifier: str) -> dict:
        key = self._key(identifier)
        with self._lock:
            self._clean_old_entries(key, self._clock())
            used = len(self._requests.get(key, ()))
            return {
                "key": key,
                "requests_in_window": used,
                "limit": self.config.requests,
                "window_seconds": self.config.window_seconds,
                "remaining": self.config.requests - used,
            }

    def reset(self, identifier: Optional[str] = None) -> None:
        """
        Reset rate limits for an identifier or all identifiers.

        Args:
            identifier: Identifier to reset, or None for all
        """
        with self._lock:
            if identifier:
                self._requests.pop(self._key(identifier), None)
            else:
                self._requests.clear()


class RedisSlidingWindowLimiter:
    """
    Sliding-window log limiter backed by one Redis sorted set per key.

    Each admitted request is a member scored by its timestamp. Trim, add and
    count run in one MULTI/EXEC pipeline; a request that pushes the count
    over the limit removes its own member again.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        client: redis.Redis,
        prefix: str = RATE_LIMIT_PREFIX,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.client = client
        self.prefix = prefix
        self._clock = clock

    def _key(self, identifier: str) -> str:
        return f"{self.prefix}:{identifier}"

    def limit(self, identifier: str) -> RateLimitResult:
        """Check the window for `identifier` and record the request if admitted."""
        key = self._key(identifier)
        now = self._clock()
        window = self.config.window_seconds
        member = f"{now}-{uuid.uuid4().hex}"

        pipe = self.client.pipeline(transaction=True)
        pipe.zremrangebyscore(key, "-inf", now - window)
        pipe.zadd(key, {member: now})
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        pipe.pexpire(key, int(window * 1000))
        _, _, count, oldest, _ = pipe.execute()

        reset = (oldest[0][1] if oldest else now) + window
        if count > self.config.requests:
            self.client.zrem(key, member)
            return RateLimitResult(success=False, remaining=0, reset=reset)

        return RateLimitResult(
            success=True,
            remaining=self.config.requests - count,
            reset=reset,
        )

    def get_stats(self, identifier: str) -> dict:
        key = self._key(identifier)
        self.client.zremrangebyscore(key, "-inf", self._clock() - self.config.window_seconds)
        used = int(self.client.zcard(key))
        return {
            "key": key,
            "requests_in_window": used,
            "limit": self.config.requests,
            "window_seconds": self.config.window_seconds,
            "remaining": max(self.config.requests - used, 0),
        }

    def reset(self, identifier: Optional[str] = None) -> None:
        if identifier:
            self.client.delete(self._key(identifier))
            return
        keys = list(self.client.scan_iter(match=f"{self.prefix}:*"))
        if keys:
            self.client.delete(*keys)


Limiter = Union[SlidingWindowLimiter, RedisSlidingWindowLimiter]


def tier_for(is_paid: bool) -> str:
    return "paid" if is_paid else "free"


class RateLimiterRegistry:
    """
    Holds one limiter per (operation class, tier).

    Built once at startup from the rate limit table and passed to whatever
    needs to check limits. Given a Redis client, the limiters share their
    windows across processes.
    """

    def __init__(
        self,
        limits: Optional[dict] = None,
        clock: Callable[[], float] = time.time,
        redis_client: Optional[redis.Redis] = None,
    ):
        self._limits = limits or DEFAULT_RATE_LIMITS
        self._clock = clock
        self._redis = redis_client
        self._lock = Lock()
        self._limiters: dict[tuple[str, str], Limiter] = {}

    @property
    def operation_classes(self) -> list[str]:
        return list(self._limits)

    def get(self, operation_class: str, tier: str) -> Limiter:
        """Return the cached limiter for (class, tier), creating it on first use."""
        if operation_class not in self._limits:
            raise KeyError(f"Unknown rate limit class: {operation_class}")
        with self._lock:
            limiter = self._limiters.get((operation_class, tier))
            if limiter is None:
                entry = self._limits[operation_class][tier]
                config = RateLimitConfig(
                    requests=int(entry["requests"]),
                    window_seconds=float(entry["window"]),
                )
                prefix = f"{RATE_LIMIT_PREFIX}:{operation_class}:{tier}"
                if self._redis is not None:
                    limiter = RedisSlidingWindowLimiter(config, self._redis, prefix=prefix, clock=self._clock)
                else:
                    limiter = SlidingWindowLimiter(config, prefix=prefix, clock=self._clock)
                self._limiters[(operation_class, tier)] = limiter
            return limiter

    def check_rate_limit(self, identity_key: str, operation_class: str, is_paid: bool) -> RateLimitResult:
        """Check and record one request for `identity_key`."""
        return self.get(operation_class, tier_for(is_paid)).limit(identity_key)

    def reset(self) -> None:
        with self._lock:
            limiters = list(self._limiters.values())
        for limiter in limiters:
            limiter.reset()
