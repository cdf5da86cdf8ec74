"""
In-process cache with TTL, tag invalidation and LRU bound.

Entries are ephemeral: losing them never loses correctness, only freshness.
An entry is never returned after its expiry, and a loader failure always
reaches the caller.
"""

import asyncio
import hashlib
import inspect
import time
from collections import OrderedDict, defaultdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from shared.cache.redis_cache import CacheTier, NullCacheTier
from shared.schemas.dto import CacheEntry, CacheResult
from shared.utils.configs import cache_configs
from shared.utils.helpers import parse_datetime, to_json, utcnow
from shared.utils.logger import logger
from shared.utils.metrics import Metrics

Loader = Callable[[], Union[Any, Awaitable[Any]]]

# Serve stale and refresh in the background once less than this share of the
# TTL remains.
SWR_REFRESH_FRACTION = 0.2


class CacheKeys:
    """Well-known cache keys."""

    ANALYTICS_SUMMARY = "analytics:summary"
    MATERIALS_CATEGORIES = "materials:categories"
    MATERIALS_LOW_STOCK = "materials:lowStock"


class CacheTags:
    ANALYTICS = "analytics"
    MATERIALS = "materials"


class Cache:
    """
    Key/value cache with per-entry TTL, tag-based bulk invalidation and a
    least-recently-used size bound.

    Reads go local first, then to the remote tier (when one is configured);
    concurrent misses for the same key share one loader call.

    Attributes:
        max_entries (int): LRU bound on local entries.
        remote (CacheTier): Second-level store, a no-op by default.
        metrics (Metrics): Optional metrics sink.
    """

    def __init__(
        self,
        max_entries: Optional[int] = None,
        metrics: Optional[Metrics] = None,
        remote: Optional[CacheTier] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries or cache_configs["max_entries"]
        self.metrics = metrics
        self.remote = remote or NullCacheTier()
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._tag_index: Dict[str, Set[str]] = defaultdict(set)
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._in_flight_tags: Dict[str, Set[str]] = {}
        # Bumped on delete/invalidation; a load only stores if it still matches
        self._generation: Dict[str, int] = defaultdict(int)
        # Keys whose remote copy is being deleted; remote reads skip them
        self._tombstones: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._version = 0

    # ------------------------------------------------------------------
    # Local store
    # ------------------------------------------------------------------

    def _now(self) -> float:
        return self._clock()

    def _etag(self, key: str, value: Any) -> str:
        self._version += 1
        try:
            body = to_json(value, sort_keys=True)
        except TypeError:
            body = repr(value)
        digest = hashlib.sha1(f"{key}:{self._version}:{body}".encode("utf-8"))
        return f'W/"{digest.hexdigest()[:20]}"'

    def _unlink(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is None:
            return None
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tag_index[tag]
        return entry

    def _get_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._now():
            self._unlink(key)
            self._update_size()
            return None
        self._entries.move_to_end(key)
        return entry

    def _build_entry(
        self,
        key: str,
        value: Any,
        ttl_seconds: float,
        tags: Iterable[str] = (),
        cached_at: Optional[datetime] = None,
    ) -> CacheEntry:
        now = self._now()
        return CacheEntry(
            key=key,
            value=value,
            expires_at=now + ttl_seconds,
            stored_at=now,
            ttl=ttl_seconds,
            cached_at=cached_at or utcnow(),
            tags=set(tags or ()),
            etag=self._etag(key, value),
        )

    def _store(
        self,
        key: str,
        value: Any,
        ttl_seconds: float,
        tags: Iterable[str] = (),
        cached_at: Optional[datetime] = None,
    ) -> CacheEntry:
        self._unlink(key)
        entry = self._build_entry(key, value, ttl_seconds, tags, cached_at)
        self._entries[key] = entry
        for tag in entry.tags:
            self._tag_index[tag].add(key)

        while len(self._entries) > self.max_entries:
            evicted_key = next(iter(self._entries))
            self._unlink(evicted_key)
            logger.debug(f"Evicted least recently used cache key {evicted_key}")

        self._update_size()
        if self.metrics is not None:
            self.metrics.cache_sets_total.labels(key=key).inc()
        return entry

    def _update_size(self) -> None:
        if self.metrics is not None:
            self.metrics.cache_entries.set(len(self._entries))

    def _record(self, hit: bool, key: str) -> None:
        if self.metrics is None:
            return
        if hit:
            self.metrics.cache_hits_total.labels(key=key).inc()
        else:
            self.metrics.cache_misses_total.labels(key=key).inc()

    def _spawn(self, coro) -> Optional[asyncio.Task]:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop - background cache task skipped")
            return None
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Remote tier
    # ------------------------------------------------------------------

    async def _get_remote(self, key: str, tags: Iterable[str] = ()) -> Optional[CacheEntry]:
        if not self.remote.enabled or key in self._tombstones:
            return None
        envelope = await self.remote.get(key)
        if not envelope:
            return None
        cached_at = parse_datetime(envelope.get("cachedAt")) or utcnow()
        remaining = float(envelope.get("ttl", 0)) - (utcnow() - cached_at).total_seconds()
        if remaining <= 0:
            return None
        # Hydrated entries must stay reachable by tag in this process
        entry_tags = set(envelope.get("tags") or ()) | set(tags or ())
        return self._store(
            key, envelope.get("value"), remaining, entry_tags, cached_at=cached_at
        )

    async def _set_remote(self, entry: CacheEntry) -> None:
        if not self.remote.enabled:
            return
        self._tombstones.discard(entry.key)
        await self.remote.set(
            entry.key,
            {
                "value": entry.value,
                "cachedAt": entry.cached_at,
                "ttl": entry.ttl,
                "tags": sorted(entry.tags),
            },
            entry.ttl,
        )

    async def _delete_remote(self, keys: List[str]) -> None:
        try:
            await self.remote.delete(*keys)
        except Exception as e:
            # No caller to report to; the remote copies expire on their own TTL
            logger.error(f"Failed to delete {len(keys)} keys from remote cache: {e}")
        finally:
            self._tombstones.difference_update(keys)

    def _forget_remote(self, keys: List[str]) -> None:
        if not self.remote.enabled or not keys:
            return
        self._tombstones.update(keys)
        self._spawn(self._delete_remote(list(keys)))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[Any]:
        """Return the unexpired value for key, or None."""
        entry = self._get_entry(key) or await self._get_remote(key)
        self._record(entry is not None, key)
        return entry.value if entry is not None else None

    async def set(
        self, key: str, value: Any, ttl_ms: int, tags: Iterable[str] = ()
    ) -> CacheEntry:
        """Unconditional write, used for write-through repopulation."""
        entry = self._store(key, value, ttl_ms / 1000.0, tags)
        await self._set_remote(entry)
        return entry

    def _supersede(self, key: str) -> None:
        """Detach any running load of key so it can no longer store its value."""
        self._generation[key] += 1
        self._in_flight.pop(key, None)
        self._in_flight_tags.pop(key, None)

    def delete(self, key: str) -> bool:
        """Remove one entry. Returns True when a local entry existed."""
        self._supersede(key)
        entry = self._unlink(key)
        self._update_size()
        self._forget_remote([key])
        if self.metrics is not None:
            self.metrics.cache_invalidations_total.labels(target=key).inc()
        return entry is not None

    def invalidate_tag(self, tag: str) -> int:
        """
        Remove every entry carrying tag.

        Synchronous so event listeners can call it inline; the remote copies
        are deleted in a tracked background task. Loads of tagged keys that
        are still running are detached, so the next read calls its loader.

        Returns:
            Number of local entries removed
        """
        keys = list(self._tag_index.get(tag, ()))
        loading = [k for k, k_tags in self._in_flight_tags.items() if tag in k_tags]
        for key in loading:
            self._supersede(key)
        for key in keys:
            self._supersede(key)
            self._unlink(key)
        self._tag_index.pop(tag, None)
        self._update_size()
        self._forget_remote(keys)
        if self.metrics is not None:
            self.metrics.cache_invalidations_total.labels(target=f"tag:{tag}").inc()
        logger.info(f"Invalidated cache tag {tag} ({len(keys)} keys)")
        return len(keys)

    async def _load(self, key: str, ttl_ms: int, loader: Loader, tags) -> CacheEntry:
        pending = self._in_flight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        generation = self._generation[key]
        self._in_flight[key] = future
        self._in_flight_tags[key] = set(tags or ())
        try:
            value = loader()
            if inspect.isawaitable(value):
                value = await value
            if self._generation[key] == generation:
                entry = await self.set(key, value, ttl_ms, tags)
            else:
                # Invalidated mid-load: answer this load's callers, store nothing
                logger.debug(f"Discarding superseded load of cache key {key}")
                entry = self._build_entry(key, value, ttl_ms / 1000.0, tags)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an un-awaited shared future doesn't warn
            future.exception()
            raise
        else:
            future.set_result(entry)
            return entry
        finally:
            if self._in_flight.get(key) is future:
                del self._in_flight[key]
                self._in_flight_tags.pop(key, None)

    async def _lookup(self, key: str, tags: Iterable[str] = ()) -> Optional[CacheEntry]:
        entry = self._get_entry(key)
        if entry is None:
            entry = await self._get_remote(key, tags)
        return entry

    async def with_cache(
        self, key: str, ttl_ms: int, loader: Loader, tags: Iterable[str] = ()
    ) -> Any:
        """
        Read-through cache.

        Args:
            key: Cache key
            ttl_ms: Time-to-live in milliseconds for a freshly loaded value
            loader: Sync or async callable producing the value on a miss
            tags: Tags to associate with the stored entry

        Returns:
            The cached or freshly loaded value

        Raises:
            Exception: Whatever the loader raises, unchanged
            RedisError: If the remote tier is configured and unavailable
        """
        result = await self.with_cache_meta(key, ttl_ms, loader, tags)
        return result.value

    async def with_cache_meta(
        self, key: str, ttl_ms: int, loader: Loader, tags: Iterable[str] = ()
    ) -> CacheResult:
        """Like with_cache, but returns the freshness markers as well."""
        entry = await self._lookup(key, tags)
        if entry is not None:
            self._record(True, key)
            return CacheResult(
                value=entry.value, hit=True, etag=entry.etag, cached_at=entry.cached_at
            )

        self._record(False, key)
        entry = await self._load(key, ttl_ms, loader, tags)
        return CacheResult(
            value=entry.value, hit=False, etag=entry.etag, cached_at=entry.cached_at
        )

    async def with_cache_swr(
        self, key: str, ttl_ms: int, loader: Loader, tags: Iterable[str] = ()
    ) -> CacheResult:
        """
        Stale-while-revalidate read.

        An entry in the last 20% of its TTL is served immediately and
        refreshed in the background. Expired entries are never served.
        """
        entry = await self._lookup(key, tags)
        if entry is None:
            return await self.with_cache_meta(key, ttl_ms, loader, tags)

        self._record(True, key)
        remaining = entry.expires_at - self._now()
        stale = remaining < entry.ttl * SWR_REFRESH_FRACTION
        if stale and key not in self._in_flight:
            logger.debug(f"Refreshing stale cache key {key} in background")
            self._spawn(self._refresh(key, ttl_ms, loader, tags))
        return CacheResult(
            value=entry.value,
            hit=True,
            etag=entry.etag,
            cached_at=entry.cached_at,
            stale=stale,
        )

    async def _refresh(self, key: str, ttl_ms: int, loader: Loader, tags) -> None:
        try:
            await self._load(key, ttl_ms, loader, tags)
        except Exception as e:
            logger.error(f"Background refresh of cache key {key} failed: {e}")

    def snapshot(self) -> Dict[str, Any]:
        """Introspection view for diagnostics."""
        now = self._now()
        return {
            "size": len(self._entries),
            "maxEntries": self.max_entries,
            "remote": self.remote.enabled,
            "tags": {tag: len(keys) for tag, keys in self._tag_index.items()},
            "inFlight": sorted(self._in_flight),
            "entries": [
                {
                    "key": entry.key,
                    "expiresInMs": max(0, int((entry.expires_at - now) * 1000)),
                    "tags": sorted(entry.tags),
                    "etag": entry.etag,
                }
                for entry in self._entries.values()
            ],
        }

    def clear(self) -> None:
        self._entries.clear()
        self._tag_index.clear()
        self._update_size()

    async def drain(self) -> None:
        """Wait for background refreshes and remote deletes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self.remote.close()
