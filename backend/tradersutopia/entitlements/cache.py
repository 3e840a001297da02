"""
Access decision cache - time-boxed per-account cache with explicit invalidation.

Provides:
- AccessDecisionCache: get_or_compute / invalidate / invalidate_all / stats
- InMemoryCacheBackend: thread-safe, bounded, default
- RedisCacheBackend: shared cache across workers (SETEX)

CRITICAL: Billing state changes MUST invalidate cached decisions immediately.
A computation that started before an invalidation never writes its result
back (per-account generation counter).

The generation guard is per-process. With the Redis backend, a worker that
started computing before another worker invalidated can still write its
result; the TTL bounds how long that decision survives.
"""

import json
import logging
import math
import os
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis

from tradersutopia.config.billing_config import BillingConfig, get_billing_config
from tradersutopia.entitlements.access_evaluator import AccessDecision
from tradersutopia.models.base import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class CacheBackend(Protocol):
    """Minimal key/value store with per-key TTL."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    def delete(self, key: str) -> bool:
        ...

    def delete_prefix(self, prefix: str) -> int:
        ...


class InMemoryCacheBackend:
    """
    In-process cache backend.

    Thread-safe with TTL support. Evicts the entry closest to expiry when full.
    """

    def __init__(self, max_size: int = 10000, clock: Callable[[], datetime] = utcnow):
        self._cache: Dict[str, Tuple[str, datetime]] = {}
        self._lock = Lock()
        self._max_size = max_size
        self._clock = clock

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._cache[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            if key not in self._cache and len(self._cache) >= self._max_size:
                oldest_key = min(self._cache.keys(), key=lambda k: self._cache[k][1])
                del self._cache[oldest_key]
            self._cache[key] = (value, self._clock() + timedelta(seconds=ttl_seconds))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._cache if k.startswith(prefix)]
            for key in keys:
                del self._cache[key]
            return len(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


class RedisCacheBackend:
    """
    Redis-backed cache backend.

    Degrades gracefully: Redis errors are logged and treated as cache misses.
    """

    def __init__(self, client: "redis.Redis"):
        self._redis = client

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisCacheBackend":
        client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
        )
        client.ping()
        return cls(client)

    def get(self, key: str) -> Optional[str]:
        try:
            return self._redis.get(key)
        except redis.RedisError as e:
            logger.warning(f"Redis GET failed: {e}")
            return None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self._redis.setex(key, ttl_seconds, value)
        except redis.RedisError as e:
            logger.warning(f"Redis SET failed: {e}")

    def delete(self, key: str) -> bool:
        try:
            return self._redis.delete(key) > 0
        except redis.RedisError as e:
            logger.error(f"Redis DELETE failed: {e}", extra={"key": key})
            return False

    def delete_prefix(self, prefix: str) -> int:
        try:
            keys = list(self._redis.scan_iter(match=f"{prefix}*"))
            if keys:
                return self._redis.delete(*keys)
            return 0
        except redis.RedisError as e:
            logger.error(f"Redis DELETE pattern failed: {e}", extra={"prefix": prefix})
            return 0


class AccessDecisionCache:
    """
    Caching layer for account access decisions.

    Usage:
        cache = get_access_cache()
        decision = cache.get_or_compute(account_id, lambda: evaluate(...))

        # After any committed billing change for the account
        cache.invalidate(account_id, reason="customer.subscription.deleted")
    """

    CACHE_KEY_PREFIX = "access_decision:"

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        config: Optional[BillingConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        config = config or get_billing_config()
        self._clock = clock
        self._backend = backend if backend is not None else InMemoryCacheBackend(clock=clock)
        self._ttl_seconds = config.access_cache_ttl_seconds
        self._negative_ttl_seconds = config.negative_cache_ttl_seconds

        self._lock = Lock()
        # Only accounts with a computation in flight keep a generation entry
        self._generations: Dict[str, int] = {}
        self._inflight: Dict[str, int] = {}
        self._epoch = 0
        self._stats = {
            "hits": 0,
            "misses": 0,
            "writes": 0,
            "skipped_writes": 0,
            "invalidations": 0,
        }

    def _cache_key(self, account_id: str) -> str:
        return f"{self.CACHE_KEY_PREFIX}{account_id}"

    def _generation(self, account_id: str) -> Tuple[int, int]:
        return self._epoch, self._generations.get(account_id, 0)

    def _expiry_for(self, decision: AccessDecision) -> datetime:
        """Negative decisions expire quickly; positive ones never outlive the paid window."""
        if not decision.has_access:
            return decision.evaluated_at + timedelta(seconds=self._negative_ttl_seconds)
        expires_at = decision.evaluated_at + timedelta(seconds=self._ttl_seconds)
        period_end = ensure_utc(decision.current_period_end)
        if period_end is not None and period_end < expires_at:
            expires_at = period_end
        return expires_at

    def get(self, account_id: str) -> Optional[AccessDecision]:
        """Cached decision, or None if absent/expired."""
        key = self._cache_key(account_id)
        data = self._backend.get(key)
        if not data:
            return None
        try:
            decision = AccessDecision.from_dict(json.loads(data))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to deserialize cached access decision: {e}")
            self._backend.delete(key)
            return None
        if decision.expires_at is None or self._clock() >= decision.expires_at:
            return None
        return decision

    def get_or_compute(
        self,
        account_id: str,
        compute_fn: Callable[[], AccessDecision],
    ) -> AccessDecision:
        """
        Return the cached decision or compute, cache and return a fresh one.

        Exceptions from compute_fn propagate and nothing is cached.
        """
        cached = self.get(account_id)
        if cached is not None:
            with self._lock:
                self._stats["hits"] += 1
            logger.debug(f"Access cache hit for account {account_id}")
            return cached

        with self._lock:
            self._stats["misses"] += 1
            generation = self._generation(account_id)
            self._inflight[account_id] = self._inflight.get(account_id, 0) + 1

        try:
            decision = compute_fn()
            decision = decision.with_expiry(self._expiry_for(decision))

            ttl = math.ceil((decision.expires_at - self._clock()).total_seconds())
            if ttl > 0:
                self._store(account_id, decision, ttl, generation)
        finally:
            with self._lock:
                self._release(account_id)

        return decision

    def _store(
        self,
        account_id: str,
        decision: AccessDecision,
        ttl: int,
        generation: Tuple[int, int],
    ) -> None:
        with self._lock:
            if self._generation(account_id) != generation:
                # Invalidated while computing; the result may predate the change
                self._stats["skipped_writes"] += 1
                return
            self._backend.set(
                self._cache_key(account_id),
                json.dumps(decision.to_dict()),
                ttl,
            )
            self._stats["writes"] += 1

    def _release(self, account_id: str) -> None:
        """End one computation. Caller holds the lock."""
        remaining = self._inflight.get(account_id, 0) - 1
        if remaining > 0:
            self._inflight[account_id] = remaining
            return
        # Nothing left to compare against this account's generation
        self._inflight.pop(account_id, None)
        self._generations.pop(account_id, None)

    def invalidate(self, account_id: str, reason: Optional[str] = None) -> bool:
        """
        Drop the cached decision for an account.

        CRITICAL: Must be called after every committed billing change.
        """
        with self._lock:
            if account_id in self._inflight:
                self._generations[account_id] = self._generations.get(account_id, 0) + 1
            self._stats["invalidations"] += 1
            deleted = self._backend.delete(self._cache_key(account_id))

        logger.info(
            f"Invalidated access cache for account {account_id}",
            extra={"reason": reason, "deleted": deleted}
        )
        return deleted

    def invalidate_all(self, reason: Optional[str] = None) -> int:
        """
        Drop every cached decision.

        Runs at startup, since decisions cached by an earlier deploy may
        predate the loaded product allow-list.
        """
        with self._lock:
            self._epoch += 1
            self._generations.clear()
            self._stats["invalidations"] += 1
            count = self._backend.delete_prefix(self.CACHE_KEY_PREFIX)

        logger.warning(
            f"Mass invalidation of access cache ({count} entries)",
            extra={"reason": reason}
        )
        return count

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats)


# Module-level singleton
_cache_instance: Optional[AccessDecisionCache] = None
_cache_lock = Lock()


def _build_backend() -> CacheBackend:
    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        logger.info("REDIS_URL not configured - using in-memory access cache")
        return InMemoryCacheBackend()
    try:
        backend = RedisCacheBackend.from_url(redis_url)
        logger.info("Redis connection established for access cache")
        return backend
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e} - using in-memory access cache")
        return InMemoryCacheBackend()


def get_access_cache() -> AccessDecisionCache:
    """Get the singleton AccessDecisionCache instance."""
    global _cache_instance
    if _cache_instance is None:
        with _cache_lock:
            if _cache_instance is None:
                _cache_instance = AccessDecisionCache(backend=_build_backend())
    return _cache_instance


def reset_access_cache() -> None:
    """Drop the singleton (tests)."""
    global _cache_instance
    with _cache_lock:
        _cache_instance = None
