"""
PhiloGraph - Derived Read Caches

Caches hold DERIVED projections (graph projections, enriched categories,
reasoning responses). They are disposable: dropping them never loses data.

Key layout:
- "graph:{concept_id}"                          graph projection
- "concept:{concept_id}"                        concept projection
- "theses:{concept_id}"                         thesis list projection
- "enriched-category:{concept_id}:{category}"   enriched category projection
- "reasoning:{kind}:{sha256}"                   reasoning responses (gateway)

Invalidation contract:
- CacheInvalidator.invalidate(concept_id) removes every concept-derived key
- Called synchronously after each committed store mutation, never before
- Called again after each compensation (a compensating write is a mutation)
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from enum import Enum
import json
import logging
import threading
import time

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600


class CacheNamespace(str, Enum):
    """Namespaces of concept-derived projections."""
    GRAPH = "graph"
    CONCEPT = "concept"
    THESES = "theses"
    ENRICHED_CATEGORY = "enriched-category"


# Namespaces removed as whole keys vs. by prefix
EXACT_NAMESPACES = (CacheNamespace.GRAPH, CacheNamespace.CONCEPT, CacheNamespace.THESES)
PREFIX_NAMESPACES = (CacheNamespace.ENRICHED_CATEGORY,)


def make_cache_key(namespace: CacheNamespace, concept_id: str, *parts: str) -> str:
    """
    Make cache key from namespace, concept id and optional parts.

    Returns:
        Cache key (e.g., 'enriched-category:c-1:cat-7')
    """
    return ":".join([namespace.value, concept_id, *parts])


class Cache(ABC):
    """Key/value cache with per-entry TTL."""

    @abstractmethod
    def get(self, cache_key: str) -> Optional[Any]:
        """Return cached value, or None if missing/expired."""

    @abstractmethod
    def set(self, cache_key: str, value: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        """Store value under key with TTL."""

    @abstractmethod
    def delete(self, cache_key: str) -> bool:
        """Delete one entry. Returns True if it existed."""

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Delete every entry whose key starts with prefix. Returns count."""


class InMemoryCache(Cache):
    """
    Process-local cache guarded by a lock.

    Expired entries are dropped lazily on read.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, cache_key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(cache_key)
            if entry is None:
                logger.debug(f"Cache MISS: {cache_key}")
                return None

            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[cache_key]
                logger.debug(f"Cache EXPIRED: {cache_key}")
                return None

            logger.debug(f"Cache HIT: {cache_key}")
            return value

    def set(self, cache_key: str, value: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        with self._lock:
            self._entries[cache_key] = (value, self._clock() + ttl_seconds)
        logger.debug(f"Cache SET: {cache_key} (TTL: {ttl_seconds}s)")

    def delete(self, cache_key: str) -> bool:
        with self._lock:
            deleted = self._entries.pop(cache_key, None) is not None
        if deleted:
            logger.debug(f"Cache DELETE: {cache_key}")
        return deleted

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug(f"Cache DELETE PREFIX: {prefix} ({len(doomed)} entries)")
        return len(doomed)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PostgresCache(Cache):
    """
    Cache backed by the lookup_cache table.

    Schema (db/migrations/001_core_schema.sql):
    - cache_key TEXT PRIMARY KEY
    - value_json JSONB
    - expires_at TIMESTAMPTZ
    - hit_count INTEGER

    Cache failures are logged and swallowed on reads and writes: the cache is
    not truth. Deletions propagate errors, since a failed invalidation could
    leave a stale projection visible.
    """

    def __init__(self, pool: Any):
        """
        Args:
            pool: psycopg_pool.ConnectionPool
        """
        self.pool = pool

    def get(self, cache_key: str) -> Optional[Any]:
        try:
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        UPDATE lookup_cache
                        SET hit_count = hit_count + 1, last_hit_at = NOW()
                        WHERE cache_key = %s
                        AND expires_at > NOW()
                        RETURNING value_json
                    """, (cache_key,))
                    row = cur.fetchone()

            if row and row[0] is not None:
                logger.debug(f"Cache HIT: {cache_key}")
                return row[0]  # JSONB is returned as dict

            logger.debug(f"Cache MISS: {cache_key}")
            return None

        except Exception as e:
            logger.warning(f"Cache get error for {cache_key}: {e}")
            return None

    def set(self, cache_key: str, value: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        try:
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        INSERT INTO lookup_cache (cache_key, value_json, expires_at)
                        VALUES (%s, %s::jsonb, NOW() + make_interval(secs => %s))
                        ON CONFLICT (cache_key) DO UPDATE
                        SET value_json = EXCLUDED.value_json,
                            expires_at = EXCLUDED.expires_at,
                            hit_count = 0
                    """, (cache_key, json.dumps(value, default=str), ttl_seconds))
            logger.debug(f"Cache SET: {cache_key} (TTL: {ttl_seconds}s)")

        except Exception as e:
            logger.warning(f"Cache set error for {cache_key}: {e}")

    def delete(self, cache_key: str) -> bool:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM lookup_cache WHERE cache_key = %s", (cache_key,))
                deleted = cur.rowcount > 0

        if deleted:
            logger.debug(f"Cache DELETE: {cache_key}")
        return deleted

    def delete_prefix(self, prefix: str) -> int:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM lookup_cache WHERE cache_key LIKE %s",
                    (escaped + "%",)
                )
                count = cur.rowcount

        logger.debug(f"Cache DELETE PREFIX: {prefix} ({count} entries)")
        return count

    def cleanup_expired(self) -> int:
        """
        Clean up expired cache entries.

        Should be run periodically (e.g., daily cron job).
        """
        try:
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM lookup_cache WHERE expires_at <= NOW()")
                    count = cur.rowcount

            logger.info(f"Cache CLEANUP: {count} expired entries deleted")
            return count

        except Exception as e:
            logger.warning(f"Cache cleanup error: {e}")
            return 0


class CacheInvalidator:
    """
    Removes every cache entry derived from a concept id.

    Usage:
        invalidator = CacheInvalidator(cache)
        invalidator.invalidate('c-1')
    """

    def __init__(self, cache: Cache):
        self.cache = cache

    def invalidate(self, concept_id: str) -> int:
        """
        Invalidate all projections of one concept.

        Returns:
            Number of entries removed
        """
        removed = 0
        for namespace in EXACT_NAMESPACES:
            if self.cache.delete(make_cache_key(namespace, concept_id)):
                removed += 1

        for namespace in PREFIX_NAMESPACES:
            removed += self.cache.delete_prefix(make_cache_key(namespace, concept_id) + ":")

        logger.debug(f"Invalidated {removed} cache entries for concept {concept_id}")
        return removed

    def invalidate_many(self, concept_ids: Iterable[str]) -> int:
        return sum(self.invalidate(concept_id) for concept_id in dict.fromkeys(concept_ids))


def cached_resolve(
    cache: Cache,
    cache_key: str,
    resolver_fn: Callable[[], Optional[Any]],
    ttl_seconds: int = DEFAULT_TTL_SECONDS
) -> Optional[Any]:
    """
    Resolve a projection with caching.

    Pattern:
    1. Check cache
    2. If hit: return cached value
    3. If miss: call resolver_fn, cache non-empty result, return

    Resolver errors propagate: a projection read must not silently hide a
    store outage.
    """
    cached = cache.get(cache_key)
    if cached is not None:
        return cached

    logger.debug(f"Live resolve: {cache_key}")
    resolved = resolver_fn()

    if resolved is not None:
        cache.set(cache_key, resolved, ttl_seconds)

    return resolved
