"""
Entitlement Cache - TTL-bounded cache of computed entitlements per tenant.

Provides:
- EntitlementCache: get / put / invalidate / invalidate_all
- Redis backend when REDIS_URL is configured and reachable
- Thread-safe in-process backend otherwise

Exactly one backend is used per process. With Redis every worker shares the
same entries, so an invalidation in one worker is visible to all of them.

CRITICAL: Subscription changes MUST invalidate cached entitlements immediately.
"""

import logging
import os
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, Optional, Tuple

import redis

from evofit.entitlements.errors import EntitlementCacheError
from evofit.entitlements.models import Entitlements, utcnow

logger = logging.getLogger(__name__)

REDIS_SOCKET_TIMEOUT_SECONDS = 2.0
DEFAULT_MAX_ENTRIES = 10000

# put() default: write regardless of intervening invalidations
ANY_GENERATION = object()


def connect_redis(redis_url: Optional[str] = None) -> Optional["redis.Redis"]:
    """
    Connect to Redis if configured.

    Returns None (in-process caching) when REDIS_URL is unset or unreachable.
    """
    redis_url = redis_url or os.getenv("REDIS_URL")
    if not redis_url:
        logger.info("REDIS_URL not configured - using in-process entitlement cache")
        return None

    client = redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
    )
    try:
        client.ping()
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e} - using in-process entitlement cache")
        return None

    logger.info("Redis connection established for entitlement cache")
    return client


class InMemoryEntitlementStore:
    """
    In-process store used when Redis is not available.

    Every operation is a short critical section under one lock. Each key
    carries a generation that delete() bumps; clear() bumps the epoch.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        self._entries: Dict[str, Entitlements] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._lock = Lock()
        self._max_entries = max_entries

    def _generation(self, key: str) -> Tuple[int, int]:
        return (self._epoch, self._generations.get(key, 0))

    def generation(self, key: str) -> Tuple[int, int]:
        with self._lock:
            return self._generation(key)

    def get(self, key: str, now: datetime) -> Optional[Entitlements]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[key]
                return None
            return entry

    def set(self, key: str, entitlements: Entitlements, generation: Any = ANY_GENERATION) -> bool:
        with self._lock:
            if generation is not ANY_GENERATION and generation != self._generation(key):
                return False
            # Evict oldest if at capacity
            if key not in self._entries and len(self._entries) >= self._max_entries:
                oldest_key = min(self._entries, key=lambda k: self._entries[k].cached_at)
                del self._entries[oldest_key]
            self._entries[key] = entitlements
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            self._generations[key] = self._generations.get(key, 0) + 1
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            # The new epoch outdates every per-key generation
            self._generations.clear()
            self._epoch += 1
            return count


class EntitlementCache:
    """
    Caching layer for tenant entitlements.

    Usage:
        cache = EntitlementCache()

        cached = cache.get(tenant_id)
        if cached is not None:
            return cached

        generation = cache.generation(tenant_id)
        entitlements = computer.compute(tier, usage, tenant_id=tenant_id)
        cache.put(tenant_id, entitlements, generation=generation)

        # On subscription change
        cache.invalidate(tenant_id)

    Read failures degrade to a miss. An entry older than its ttl_seconds is
    never returned, whatever the backend still holds.

    A computation that started before an invalidation must not repopulate
    the cache afterwards. Take generation() before fetching and pass it to
    put(); the write is skipped if the tenant was invalidated in between.
    """

    CACHE_KEY_PREFIX = "evofit:entitlements:"
    GENERATION_KEY_PREFIX = "evofit:entitlements-generation:"
    EPOCH_KEY = "evofit:entitlements-epoch"

    def __init__(
        self,
        redis_client: Optional["redis.Redis"] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        """
        Initialize cache with Redis or the in-process store.

        Args:
            redis_client: Redis client to use (defaults to connecting via REDIS_URL)
            clock: Returns the current UTC time (injectable for tests)
            max_entries: Capacity of the in-process store
        """
        self._clock = clock or utcnow
        self._redis = redis_client if redis_client is not None else connect_redis()
        self._memory = InMemoryEntitlementStore(max_entries) if self._redis is None else None

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    def _cache_key(self, tenant_id: str) -> str:
        return f"{self.CACHE_KEY_PREFIX}{tenant_id}"

    def _generation_key(self, tenant_id: str) -> str:
        return f"{self.GENERATION_KEY_PREFIX}{tenant_id}"

    def generation(self, tenant_id: str) -> Optional[tuple]:
        """
        Current invalidation generation for a tenant.

        Returns:
            Opaque token for put(), or None if it could not be read
        """
        if self._memory is not None:
            return self._memory.generation(self._cache_key(tenant_id))
        try:
            return tuple(self._redis.mget(self.EPOCH_KEY, self._generation_key(tenant_id)))
        except redis.RedisError as e:
            logger.warning(f"Redis MGET of cache generation failed: {e}")
            return None

    def get(self, tenant_id: str) -> Optional[Entitlements]:
        """
        Get cached entitlements for a tenant.

        Returns:
            Entitlements, or None if absent, expired or unreadable
        """
        key = self._cache_key(tenant_id)
        now = self._clock()

        if self._memory is not None:
            entry = self._memory.get(key, now)
        else:
            entry = self._redis_get(key)
            if entry is not None and entry.is_expired(now):
                entry = None

        if entry is None:
            logger.debug(f"Cache miss for tenant {tenant_id}")
            return None

        logger.debug(f"Cache hit ({self.backend}) for tenant {tenant_id}")
        return entry

    def _redis_get(self, key: str) -> Optional[Entitlements]:
        try:
            data = self._redis.get(key)
        except redis.RedisError as e:
            logger.warning(f"Redis GET failed: {e}")
            return None
        if not data:
            return None
        try:
            return Entitlements.from_json(data)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to deserialize cached entitlements: {e}")
            return None

    def put(
        self,
        tenant_id: str,
        entitlements: Entitlements,
        generation: Any = ANY_GENERATION,
    ) -> bool:
        """
        Cache entitlements for a tenant, replacing any prior entry.

        Args:
            generation: Token from generation() taken before the inputs were
                fetched. When given, the write is skipped if the tenant has
                been invalidated since. None (unreadable) skips the write.

        Returns:
            True if cached successfully
        """
        key = self._cache_key(tenant_id)

        if generation is None:
            logger.debug(f"Cache generation unknown for tenant {tenant_id} - not caching")
            return False

        if self._memory is not None:
            written = self._memory.set(key, entitlements, generation)
            if not written:
                logger.debug(f"Skipped stale cache write for tenant {tenant_id}")
            return written

        ttl = max(1, entitlements.ttl_remaining(self._clock()))
        try:
            if generation is ANY_GENERATION:
                self._redis.setex(key, ttl, entitlements.to_json())
            elif not self._redis_put_if_current(tenant_id, key, ttl, entitlements, generation):
                logger.debug(f"Skipped stale cache write for tenant {tenant_id}")
                return False
        except redis.WatchError:
            logger.debug(f"Tenant {tenant_id} invalidated during cache write - not caching")
            return False
        except redis.RedisError as e:
            logger.warning(f"Redis SET failed: {e}")
            return False

        logger.debug(f"Cached entitlements for tenant {tenant_id} (TTL: {ttl}s)")
        return True

    def _redis_put_if_current(
        self,
        tenant_id: str,
        key: str,
        ttl: int,
        entitlements: Entitlements,
        generation: tuple,
    ) -> bool:
        generation_key = self._generation_key(tenant_id)
        with self._redis.pipeline() as pipe:
            # WATCH makes EXEC fail if an invalidation lands after the check
            pipe.watch(self.EPOCH_KEY, generation_key)
            if tuple(pipe.mget(self.EPOCH_KEY, generation_key)) != generation:
                return False
            pipe.multi()
            pipe.setex(key, ttl, entitlements.to_json())
            pipe.execute()
        return True

    def invalidate(self, tenant_id: str, reason: Optional[str] = None) -> bool:
        """
        Invalidate cached entitlements for a tenant.

        Atomic: once this returns, no later get() returns the removed entry.

        Returns:
            True if an entry was removed

        Raises:
            EntitlementCacheError: the shared backend could not apply the delete
        """
        key = self._cache_key(tenant_id)

        if self._memory is not None:
            deleted = self._memory.delete(key)
        else:
            try:
                # Bump first so an in-flight put() sees the change
                self._redis.incr(self._generation_key(tenant_id))
                deleted = self._redis.delete(key) > 0
            except redis.RedisError as e:
                logger.error(
                    f"Failed to invalidate entitlements for tenant {tenant_id}: {e}",
                    extra={"tenant_id": tenant_id, "reason": reason},
                )
                raise EntitlementCacheError(f"Invalidation failed for {tenant_id}") from e

        logger.info(
            f"Invalidated entitlement cache for tenant {tenant_id}",
            extra={"tenant_id": tenant_id, "reason": reason, "deleted": deleted},
        )
        return deleted

    def invalidate_all(self, reason: Optional[str] = None) -> int:
        """
        Invalidate all cached entitlements.

        Use with caution - only for tier catalog changes or emergencies.

        Returns:
            Number of entries invalidated
        """
        if self._memory is not None:
            count = self._memory.clear()
        else:
            try:
                self._redis.incr(self.EPOCH_KEY)
                keys = list(self._redis.scan_iter(f"{self.CACHE_KEY_PREFIX}*"))
                count = self._redis.delete(*keys) if keys else 0
            except redis.RedisError as e:
                logger.error(f"Mass invalidation failed: {e}", extra={"reason": reason})
                raise EntitlementCacheError("Mass invalidation failed") from e

        logger.warning(
            f"Mass invalidation of entitlement cache ({count} entries)",
            extra={"reason": reason},
        )
        return count


# Module-level singleton
_cache_instance: Optional[EntitlementCache] = None
_cache_lock = Lock()


def get_entitlement_cache() -> EntitlementCache:
    """Get the singleton EntitlementCache instance."""
    global _cache_instance
    if _cache_instance is None:
        with _cache_lock:
            if _cache_instance is None:
                _cache_instance = EntitlementCache()
    return _cache_instance


def reset_entitlement_cache() -> None:
    """
    Reset the singleton instance (for testing).

    WARNING: Only use in tests!
    """
    global _cache_instance
    with _cache_lock:
        _cache_instance = None
