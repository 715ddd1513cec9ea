"""Tenant-scoped in-memory TTL cache.

Entries are keyed by tenant (org) id + cache key, each with its own TTL.
A background sweep evicts expired entries every few minutes, and reads
evict lazily. Nothing survives a process restart.

Usage:
    cache = TenantCache()
    await cache.init()

    summary = await cache.get_or_fetch(org_id, "context:core", CacheTTL.CONTEXT, load_summary)
    cache.invalidate_by_scope(org_id, CacheScope.RATINGS)

    await cache.dispose()
"""

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from levi_agent.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_MISSING = object()


class CacheTTL:
    """Predefined TTL tiers (seconds)."""

    # Org config: roles, positions, rubrics, features
    ORG_CONFIG = 10 * 60
    # Team data: employee list, team overview
    TEAM = 5 * 60
    # Individual profiles
    PROFILE = 5 * 60
    # Dynamic data: ratings, infractions
    DYNAMIC = 2 * 60
    # Core domain context for the retriever
    CONTEXT = 30 * 60


class CacheScope(str, Enum):
    """Invalidation scopes exposed to code that mutates tenant data."""

    TEAM = "team"
    RATINGS = "ratings"
    INFRACTIONS = "infractions"
    ORG_CONFIG = "org_config"
    ALL = "all"


# ALL is handled separately: it drops the whole tenant bucket
SCOPE_PREFIXES: dict[CacheScope, tuple[str, ...]] = {
    CacheScope.TEAM: ("employees:", "team:", "profile:"),
    CacheScope.RATINGS: ("ratings:", "rankings:", "profile:"),
    CacheScope.INFRACTIONS: ("infractions:", "discipline:", "profile:"),
    CacheScope.ORG_CONFIG: ("org_context:",),
    CacheScope.ALL: (),
}


@dataclass(frozen=True)
class CacheEntry:
    """A cached value with its creation and expiry times (cache clock seconds)."""

    value: Any
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class _TenantBucket:
    entries: dict[str, CacheEntry] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)


class TenantCache:
    """
    Org-scoped TTL cache with scoped invalidation and a periodic sweep.

    Each tenant bucket has its own lock. The store-level lock is only held
    long enough to find (or create) a bucket and take its lock, so readers
    and writers for different tenants don't contend.
    """

    def __init__(
        self,
        cleanup_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        single_flight: bool = True,
    ):
        """
        Initialize the cache.

        Args:
            cleanup_interval: Seconds between expired-entry sweeps once init() is called
            clock: Monotonic time source in seconds (injectable for tests)
            single_flight: De-duplicate concurrent get_or_fetch misses on the same key
        """
        self.cleanup_interval = cleanup_interval
        self.single_flight = single_flight
        self._clock = clock

        self._store: dict[str, _TenantBucket] = {}
        self._store_lock = threading.Lock()

        self._stats = {"hits": 0, "misses": 0, "sets": 0, "evictions": 0}
        self._stats_lock = threading.Lock()

        # (tenant_id, key) -> future resolved by the caller running the fetcher
        self._inflight: dict[tuple[str, str], asyncio.Future] = {}
        self._cleanup_task: asyncio.Task | None = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def init(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())
        logger.info(f"Tenant cache started (sweep every {self.cleanup_interval:.0f}s)")

    async def dispose(self) -> None:
        """Stop the sweep and drop every entry."""
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        with self._store_lock:
            self._store.clear()
        logger.info("Tenant cache disposed")

    async def __aenter__(self) -> "TenantCache":
        await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.dispose()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup()
            except Exception:
                logger.exception("Tenant cache sweep failed")

    # =========================================================================
    # READ / WRITE
    # =========================================================================

    def get(self, tenant_id: str, key: str, default: Any = None) -> Any:
        """
        Get a cached value.

        Expired entries are deleted on read and reported as absent.

        Args:
            tenant_id: Tenant (org) id
            key: Cache key
            default: Returned when the key is absent or expired

        Returns:
            Cached value or default
        """
        value = self._lookup(tenant_id, key)
        return default if value is _MISSING else value

    def set(self, tenant_id: str, key: str, value: Any, ttl: float) -> None:
        """
        Store a value for ttl seconds, replacing any existing entry.

        A non-positive ttl stores nothing and clears the key, since the
        entry would already be expired.
        """
        if ttl <= 0:
            logger.debug(f"Ignoring cache set with ttl={ttl} for {tenant_id}/{key}")
            self.invalidate(tenant_id, key)
            return

        now = self._clock()
        entry = CacheEntry(value=value, created_at=now, expires_at=now + ttl)

        with self._locked_bucket(tenant_id, create=True) as bucket:
            bucket.entries[key] = entry
        self._bump("sets")

    async def get_or_fetch(
        self,
        tenant_id: str,
        key: str,
        ttl: float,
        fetcher: Callable[[], Awaitable[T]],
    ) -> T:
        """
        Return the cached value, or await fetcher(), cache its result and return it.

        Fetcher errors propagate unchanged and nothing is cached. With
        single_flight enabled, concurrent misses for the same key share one
        fetcher call (and its result or error).

        Args:
            tenant_id: Tenant (org) id
            key: Cache key
            ttl: Seconds to keep a fetched value
            fetcher: Zero-argument coroutine function producing the value

        Returns:
            Cached or freshly fetched value
        """
        cached = self._lookup(tenant_id, key)
        if cached is not _MISSING:
            return cached

        if not self.single_flight:
            value = await fetcher()
            self.set(tenant_id, key, value, ttl)
            return value

        flight_key = (tenant_id, key)
        pending = self._inflight.get(flight_key)
        if pending is not None:
            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
                # The caller running the fetcher was cancelled; start over
                return await self.get_or_fetch(tenant_id, key, ttl, fetcher)

        future = asyncio.get_running_loop().create_future()
        self._inflight[flight_key] = future
        try:
            value = await fetcher()
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unawaited future doesn't log a warning
            future.exception()
            raise
        except BaseException:
            # Cancellation or interpreter exit: waiters retry instead of hanging
            future.cancel()
            raise
        else:
            self.set(tenant_id, key, value, ttl)
            future.set_result(value)
            return value
        finally:
            if self._inflight.get(flight_key) is future:
                del self._inflight[flight_key]

    # =========================================================================
    # INVALIDATION
    # =========================================================================

    def invalidate(self, tenant_id: str, key: str | None = None) -> int:
        """
        Invalidate cache entries.

        Without a key the whole tenant bucket is dropped; with a key only
        that entry is removed.

        Returns:
            Number of entries removed
        """
        if key is None:
            with self._store_lock:
                bucket = self._store.pop(tenant_id, None)
                if bucket is None:
                    return 0
                with bucket.lock:
                    return len(bucket.entries)

        with self._locked_bucket(tenant_id) as bucket:
            removed = bucket is not None and bucket.entries.pop(key, None) is not None
        if removed:
            self._drop_if_empty(tenant_id)
        return int(removed)

    def invalidate_by_scope(self, tenant_id: str, scope: CacheScope | str) -> int:
        """
        Remove every key whose prefix belongs to the scope.

        Args:
            tenant_id: Tenant (org) id
            scope: One of team, ratings, infractions, org_config, all

        Returns:
            Number of entries removed
        """
        try:
            scope = CacheScope(scope)
        except ValueError:
            logger.warning(f"Unknown cache scope '{scope}' for tenant {tenant_id}; nothing invalidated")
            return 0

        if scope is CacheScope.ALL:
            removed = self.invalidate(tenant_id)
            logger.debug(f"Invalidated all {removed} cache entries for tenant {tenant_id}")
            return removed

        prefixes = SCOPE_PREFIXES[scope]
        with self._locked_bucket(tenant_id) as bucket:
            if bucket is None:
                return 0
            doomed = [k for k in bucket.entries if k.startswith(prefixes)]
            for k in doomed:
                del bucket.entries[k]

        if doomed:
            self._drop_if_empty(tenant_id)
        logger.debug(f"Invalidated {len(doomed)} '{scope.value}' cache entries for tenant {tenant_id}")
        return len(doomed)

    def cleanup(self) -> int:
        """
        Remove all expired entries across all tenants.

        Returns:
            Number of entries evicted
        """
        now = self._clock()
        evicted = 0

        with self._store_lock:
            tenant_ids = list(self._store)

        for tenant_id in tenant_ids:
            with self._locked_bucket(tenant_id) as bucket:
                if bucket is None:
                    continue
                expired = [k for k, entry in bucket.entries.items() if entry.is_expired(now)]
                for k in expired:
                    del bucket.entries[k]
                evicted += len(expired)
            self._drop_if_empty(tenant_id)

        if evicted:
            self._bump("evictions", evicted)
            logger.debug(f"Tenant cache sweep evicted {evicted} entries")
        return evicted

    # =========================================================================
    # STATS
    # =========================================================================

    def get_stats(self) -> dict[str, int]:
        """Get cache statistics for monitoring."""
        with self._store_lock:
            buckets = list(self._store.values())
        total_entries = sum(len(bucket.entries) for bucket in buckets)

        with self._stats_lock:
            stats = dict(self._stats)

        lookups = stats["hits"] + stats["misses"]
        stats["total_tenants"] = len(buckets)
        stats["total_entries"] = total_entries
        stats["hit_rate"] = round(stats["hits"] / lookups * 100) if lookups else 0
        return stats

    # =========================================================================
    # INTERNALS
    # =========================================================================

    @contextmanager
    def _locked_bucket(self, tenant_id: str, create: bool = False) -> Iterator[_TenantBucket | None]:
        """Yield the tenant's bucket with its lock held (None if absent).

        The bucket lock is acquired before the store lock is released, so a
        concurrent sweep can't drop the bucket between lookup and use.
        """
        with self._store_lock:
            bucket = self._store.get(tenant_id)
            if bucket is None and create:
                bucket = self._store[tenant_id] = _TenantBucket()
            if bucket is not None:
                bucket.lock.acquire()

        if bucket is None:
            yield None
            return

        try:
            yield bucket
        finally:
            bucket.lock.release()

    def _drop_if_empty(self, tenant_id: str) -> None:
        with self._store_lock:
            bucket = self._store.get(tenant_id)
            if bucket is None:
                return
            with bucket.lock:
                if not bucket.entries:
                    del self._store[tenant_id]

    def _lookup(self, tenant_id: str, key: str) -> Any:
        expired = False
        with self._locked_bucket(tenant_id) as bucket:
            entry = bucket.entries.get(key) if bucket is not None else None
            if entry is not None and entry.is_expired(self._clock()):
                del bucket.entries[key]
                entry = None
                expired = True

        if expired:
            self._bump("evictions")
            self._drop_if_empty(tenant_id)

        if entry is None:
            self._bump("misses")
            return _MISSING

        self._bump("hits")
        return entry.value

    def _bump(self, counter: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[counter] += amount
