"""
core/ratelimit.py -- Tiered fixed-window rate limiter with an injectable store.

Four independent limit classes guard the API. Each is a (window, max) pair
written in `limits` notation ("5/hour", "100/15 minutes") and parsed with the
`limits` library so settings stay human-readable.

Pattern: Strategy for storage. RateLimiter owns the policy (which class, how
many, when to reject); a BucketStore owns the counters. Two stores ship:

  MemoryBucketStore -- dict + threading.Lock, process-local. Default. Buckets
                       of closed windows are swept from inside hit().
  RedisBucketStore  -- INCR + PEXPIRE, shared across workers.

The limiter reads time through an injected clock, so tests drive windows with
core.clock.FakeClock instead of sleeping.

Counting is per (class, client key). Exhausting room_creation never touches
general. Rejected hits still count; the window does not slide forward.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Protocol

import redis
from limits import parse

from core.clock import Clock, utcnow
from core.errors import RateLimited

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("zorem.ratelimit")

_KEY_PREFIX = "zorem:rl"


class LimitClass(str, Enum):
    general = "general"
    sensitive = "sensitive"
    room_creation = "room_creation"
    magic_link = "magic_link"


_MESSAGES = {
    LimitClass.general: "Too many requests from this IP, please try again later.",
    LimitClass.sensitive: "Too many requests from this IP, please try again later.",
    LimitClass.room_creation: "Too many room creations. Please try again later.",
    LimitClass.magic_link: "Too many magic link requests. Please try again later.",
}


@dataclass(frozen=True)
class WindowLimit:
    amount: int
    window_seconds: int

    @classmethod
    def parse(cls, spec: str) -> "WindowLimit":
        item = parse(spec)
        return cls(amount=item.amount, window_seconds=item.get_expiry())


@dataclass(frozen=True)
class RateLimitStatus:
    limit: int
    remaining: int
    reset_at: float


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class BucketStore(Protocol):
    def hit(self, key: str, window_seconds: int, now: float) -> tuple[int, float]:
        """Count one request against key. Return (count, window reset epoch)."""
        ...

    def clear(self) -> None: ...


@dataclass
class _Bucket:
    count: int
    reset_at: float


class MemoryBucketStore:
    """Process-local counters. Closed windows are swept at most once per sweep_interval."""

    def __init__(self, sweep_interval: float = 60.0) -> None:
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval
        self._next_sweep: float | None = None

    def __len__(self) -> int:
        return len(self._buckets)

    def hit(self, key: str, window_seconds: int, now: float) -> tuple[int, float]:
        with self._lock:
            if self._next_sweep is None or now >= self._next_sweep:
                self._drop_stale(now)
                self._next_sweep = now + self._sweep_interval
            bucket = self._buckets.get(key)
            if bucket is None or now >= bucket.reset_at:
                bucket = _Bucket(count=0, reset_at=now + window_seconds)
                self._buckets[key] = bucket
            bucket.count += 1
            return bucket.count, bucket.reset_at

    def purge(self, now: float) -> int:
        """Drop buckets whose window has closed. Returns number removed."""
        with self._lock:
            return self._drop_stale(now)

    def _drop_stale(self, now: float) -> int:
        stale = [k for k, b in self._buckets.items() if now >= b.reset_at]
        for k in stale:
            del self._buckets[k]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


class RedisBucketStore:
    """Shared counters. Redis TTLs run on Redis' own clock, not the injected one."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    def hit(self, key: str, window_seconds: int, now: float) -> tuple[int, float]:
        pipe = self._client.pipeline()
        pipe.incr(key)
        pipe.pttl(key)
        count, ttl_ms = pipe.execute()
        if ttl_ms is None or ttl_ms < 0:
            # First hit of a new window (or a key that lost its TTL).
            ttl_ms = window_seconds * 1000
            self._client.pexpire(key, ttl_ms)
        return int(count), now + ttl_ms / 1000

    def clear(self) -> None:
        for key in self._client.scan_iter(match=f"{_KEY_PREFIX}:*"):
            self._client.delete(key)


def build_bucket_store(storage_url: str) -> BucketStore:
    if storage_url.startswith("memory://"):
        return MemoryBucketStore()
    if storage_url.startswith(("redis://", "rediss://")):
        return RedisBucketStore(redis.Redis.from_url(storage_url))
    raise ValueError(f"Unsupported RATE_LIMIT_STORAGE_URL scheme: {storage_url!r}")


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """Apply one of the four limit classes to a client key.

    Usage:
        limiter = RateLimiter.from_settings(settings)
        limiter.hit(LimitClass.magic_link, "203.0.113.7")   # raises RateLimited
    """

    def __init__(
        self,
        limits: Mapping[LimitClass, WindowLimit],
        store: BucketStore | None = None,
        clock: Clock = utcnow,
    ) -> None:
        missing = set(LimitClass) - set(limits)
        if missing:
            raise ValueError(f"No limit configured for: {sorted(c.value for c in missing)}")
        self._limits = dict(limits)
        self._store = store if store is not None else MemoryBucketStore()
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: BucketStore | None = None,
        clock: Clock = utcnow,
    ) -> "RateLimiter":
        limits = {
            LimitClass.general: WindowLimit.parse(settings.rate_limit_general),
            LimitClass.sensitive: WindowLimit.parse(settings.rate_limit_sensitive),
            LimitClass.room_creation: WindowLimit.parse(settings.rate_limit_room_creation),
            LimitClass.magic_link: WindowLimit.parse(settings.rate_limit_magic_link),
        }
        if store is None:
            store = build_bucket_store(settings.rate_limit_storage_url)
        return cls(limits, store=store, clock=clock)

    def limit_for(self, limit_class: LimitClass) -> WindowLimit:
        return self._limits[limit_class]

    def hit(self, limit_class: LimitClass, client_key: str) -> RateLimitStatus:
        """Count a request. Raises RateLimited once the class ceiling is passed."""
        limit = self._limits[limit_class]
        now = self._clock().timestamp()
        key = f"{_KEY_PREFIX}:{limit_class.value}:{client_key}"
        count, reset_at = self._store.hit(key, limit.window_seconds, now)
        if count > limit.amount:
            retry_after = max(1, math.ceil(reset_at - now))
            logger.info("Rate limit hit: class=%s client=%s retry_after=%ds", limit_class.value, client_key, retry_after)
            raise RateLimited(retry_after, _MESSAGES[limit_class], limit_class=limit_class.value)
        return RateLimitStatus(limit=limit.amount, remaining=limit.amount - count, reset_at=reset_at)

    def reset(self) -> None:
        self._store.clear()
