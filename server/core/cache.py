"""In-process TTL cache with stale-while-revalidate and background sweep.

Entries live in a plain dict owned by the event loop. A read inside the
stale window is served as-is; a read past the stale window but before
expiry is served immediately while one background refresh replaces the
entry. Misses and expired entries block on the fetcher, falling back to the
last known value for the same version if the fetch fails.

An optional mirror (Redis when enabled) receives writes, deletes and clears
best-effort so other processes can inspect what this one has cached.

Invalidation wins over fetches already in flight: a fetch that started before
an invalidate, pattern invalidate or clear touching its key still returns its
result to the caller, but that result is not stored.
"""

import asyncio
import hashlib
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Pattern, Protocol, Set, Tuple, TypeVar, Union

import redis.asyncio as redis

from core.logging import get_logger, log_cache_operation

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_TTL = 300          # 5 minutes
DEFAULT_STALE_WINDOW = 120  # 2 minutes
DEFAULT_SWEEP_INTERVAL = 60


@dataclass
class CacheEntry(Generic[T]):
    """A cached value with its freshness bookkeeping (times in seconds)."""

    data: T
    timestamp: float
    expires_at: float
    version: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def age(self, now: float) -> float:
        return now - self.timestamp


class CacheMirror(Protocol):
    """Secondary store that shadows the in-process cache."""

    async def startup(self) -> None:
        ...

    async def shutdown(self) -> None:
        ...

    async def ping(self) -> bool:
        ...

    async def store(self, key: str, entry: CacheEntry, ttl: float) -> None:
        ...

    async def remove(self, keys: List[str]) -> None:
        ...

    async def clear(self) -> None:
        ...


class RedisCacheMirror:
    """Mirror cache entries into Redis under a key prefix."""

    def __init__(self, url: str, prefix: str = "drivertasks:cache:"):
        self.url = url
        self.prefix = prefix
        self.redis: Optional[redis.Redis] = None

    async def startup(self) -> None:
        self.redis = redis.from_url(
            self.url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True
        )
        await self.redis.ping()
        logger.info("Redis cache mirror initialized", url=self.url)

    async def ping(self) -> bool:
        if not self.redis:
            return False
        return bool(await self.redis.ping())

    async def shutdown(self) -> None:
        if self.redis:
            await self.redis.close()
            self.redis = None
            logger.info("Redis cache mirror closed")

    async def store(self, key: str, entry: CacheEntry, ttl: float) -> None:
        if not self.redis:
            return
        payload = json.dumps({
            "data": entry.data,
            "timestamp": entry.timestamp,
            "expires_at": entry.expires_at,
            "version": entry.version,
        }, default=str)
        await self.redis.setex(self.prefix + key, max(1, int(ttl)), payload)

    async def remove(self, keys: List[str]) -> None:
        if self.redis and keys:
            await self.redis.delete(*[self.prefix + k for k in keys])

    async def clear(self) -> None:
        if not self.redis:
            return
        keys = [k async for k in self.redis.scan_iter(match=self.prefix + "*")]
        if keys:
            await self.redis.delete(*keys)


class CacheManager:
    """Async cache-aside helper with stale-while-revalidate semantics."""

    def __init__(self,
                 default_ttl: float = DEFAULT_TTL,
                 stale_window: float = DEFAULT_STALE_WINDOW,
                 sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
                 mirror: Optional[CacheMirror] = None,
                 clock: Callable[[], float] = time.time):
        self.default_ttl = default_ttl
        self.stale_window = stale_window
        self.sweep_interval = sweep_interval
        self.mirror = mirror
        self.clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._refreshing: Dict[str, asyncio.Task] = {}
        # Fetch generations, tracked only for keys with a fetch in flight
        self._inflight: Dict[str, int] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._pending_mirror: Set[asyncio.Task] = set()
        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

        self.hits = 0
        self.misses = 0
        self.stale_hits = 0
        self.fallbacks = 0
        self.background_refreshes = 0

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def make_key(url: str, params: Optional[Dict[str, Any]] = None,
                 version: Optional[str] = None) -> str:
        """Build a cache key from a URL, its query params and a version.

        The URL stays readable at the front so pattern invalidation by path
        keeps working; params and version are folded into a digest.
        """
        canonical = json.dumps(
            {"params": params or {}, "version": version},
            sort_keys=True, separators=(",", ":"), default=str
        )
        digest = hashlib.sha256(f"{url}|{canonical}".encode("utf-8")).hexdigest()[:16]
        return f"{url}:{digest}"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, key: str, fetcher: Callable[[], Awaitable[T]],
                  ttl: Optional[float] = None, version: Optional[str] = None,
                  stale_while_revalidate: bool = True) -> T:
        """Return the cached value for key, fetching it when needed."""
        ttl = self.default_ttl if ttl is None else ttl
        now = self.clock()
        entry = self._entries.get(key)

        if entry is not None and entry.version == version and not entry.is_expired(now):
            if entry.age(now) >= self.stale_window:
                self.stale_hits += 1
                if stale_while_revalidate:
                    self._schedule_refresh(key, fetcher, ttl, version)
                log_cache_operation(logger, "get", key, hit=True, stale=True)
            else:
                log_cache_operation(logger, "get", key, hit=True)
            self.hits += 1
            return entry.data

        self.misses += 1
        log_cache_operation(logger, "get", key, hit=False,
                            expired=entry is not None and entry.is_expired(now))

        token = self._begin_fetch(key)
        try:
            data = await fetcher()
        except Exception as e:
            # The entry may have been refreshed while we were waiting
            fallback = self._entries.get(key)
            if fallback is not None and fallback.version == version:
                self.fallbacks += 1
                logger.warning("Cache fetch failed, serving last known value",
                               key=key, error=str(e))
                return fallback.data
            logger.error("Cache fetch failed", key=key, error=str(e))
            raise
        else:
            self._store_if_current(key, token, data, ttl, version)
        finally:
            self._end_fetch(key)
        return data

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Return the raw entry for key without touching statistics."""
        return self._entries.get(key)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(self, key: str, data: Any, ttl: Optional[float] = None,
            version: Optional[str] = None) -> CacheEntry:
        """Store data under key, replacing any previous entry."""
        ttl = self.default_ttl if ttl is None else ttl
        now = self.clock()
        entry = CacheEntry(data=data, timestamp=now, expires_at=now + ttl, version=version)
        self._entries[key] = entry
        log_cache_operation(logger, "set", key, ttl=ttl, version=version)
        if self.mirror is not None:
            self._mirror_call(self.mirror.store(key, entry, ttl))
        return entry

    def invalidate(self, key: str) -> bool:
        """Remove a single entry. Returns True if it existed."""
        existed = self._entries.pop(key, None) is not None
        self._bump([key])
        log_cache_operation(logger, "invalidate", key, deleted=existed)
        if existed and self.mirror is not None:
            self._mirror_call(self.mirror.remove([key]))
        return existed

    def invalidate_pattern(self, pattern: Union[str, Pattern[str]]) -> int:
        """Remove every entry whose key matches the regular expression."""
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        keys = [k for k in self._entries if regex.search(k)]
        for k in keys:
            del self._entries[k]
        self._bump([k for k in self._inflight if regex.search(k)])
        log_cache_operation(logger, "invalidate_pattern", regex.pattern, deleted=len(keys))
        if keys and self.mirror is not None:
            self._mirror_call(self.mirror.remove(keys))
        return len(keys)

    def clear(self) -> int:
        """Empty the cache (and the mirror). Returns the number of entries removed."""
        count = len(self._entries)
        self._entries.clear()
        self._epoch += 1
        logger.info("Cache cleared", entries=count)
        if self.mirror is not None:
            self._mirror_call(self.mirror.clear())
        return count

    # ------------------------------------------------------------------
    # In-flight fetches
    # ------------------------------------------------------------------

    def _token(self, key: str) -> Tuple[int, int]:
        return self._epoch, self._generations.get(key, 0)

    def _begin_fetch(self, key: str) -> Tuple[int, int]:
        self._inflight[key] = self._inflight.get(key, 0) + 1
        return self._token(key)

    def _end_fetch(self, key: str) -> None:
        remaining = self._inflight.get(key, 1) - 1
        if remaining > 0:
            self._inflight[key] = remaining
        else:
            self._inflight.pop(key, None)
            self._generations.pop(key, None)

    def _bump(self, keys: List[str]) -> None:
        for k in keys:
            if k in self._inflight:
                self._generations[k] = self._generations.get(k, 0) + 1

    def _store_if_current(self, key: str, token: Tuple[int, int], data: Any,
                          ttl: float, version: Optional[str]) -> bool:
        if self._token(key) != token:
            log_cache_operation(logger, "discard", key, reason="invalidated during fetch")
            return False
        self.set(key, data, ttl=ttl, version=version)
        return True

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _schedule_refresh(self, key: str, fetcher: Callable[[], Awaitable[Any]],
                          ttl: float, version: Optional[str]) -> None:
        if key in self._refreshing:
            return
        self.background_refreshes += 1
        task = asyncio.create_task(self._refresh(key, fetcher, ttl, version))
        self._refreshing[key] = task
        task.add_done_callback(lambda _t, k=key: self._refreshing.pop(k, None))

    async def _refresh(self, key: str, fetcher: Callable[[], Awaitable[Any]],
                       ttl: float, version: Optional[str]) -> None:
        token = self._begin_fetch(key)
        try:
            data = await fetcher()
        except Exception as e:
            logger.warning("Background refresh failed", key=key, error=str(e))
            return
        else:
            if self._store_if_current(key, token, data, ttl, version):
                log_cache_operation(logger, "refresh", key)
        finally:
            self._end_fetch(key)

    async def wait_for_refreshes(self) -> None:
        """Wait until every in-flight background refresh has finished."""
        while self._refreshing:
            await asyncio.gather(*list(self._refreshing.values()), return_exceptions=True)

    def _mirror_call(self, coro: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return
        task = loop.create_task(self._guard_mirror(coro))
        self._pending_mirror.add(task)
        task.add_done_callback(self._pending_mirror.discard)

    async def _guard_mirror(self, coro: Awaitable[None]) -> None:
        try:
            await coro
        except Exception as e:
            logger.warning("Cache mirror operation failed", error=str(e))

    def sweep(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self.clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for k in expired:
            del self._entries[k]
        if expired:
            logger.debug("Cache sweep removed expired entries", count=len(expired))
        return len(expired)

    async def connect_mirror(self) -> bool:
        """Connect the mirror, dropping it when the backend is unreachable.

        The in-process cache is authoritative, so startup continues without
        the mirror rather than failing.
        """
        if self.mirror is None:
            return False
        try:
            await self.mirror.startup()
            return True
        except Exception as e:
            logger.warning("Cache mirror unavailable, continuing without it",
                           mirror=type(self.mirror).__name__, error=str(e))
            self.mirror = None
            return False

    async def start(self) -> None:
        """Start the periodic sweep task."""
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Cache sweeper started", interval=self.sweep_interval)

    async def stop(self) -> None:
        """Stop the sweep task and wait for pending background work."""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        for task in list(self._refreshing.values()) + list(self._pending_mirror):
            task.cancel()
        logger.info("Cache sweeper stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error("Cache sweep failed", error=str(e))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def keys(self) -> List[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def stats(self) -> Dict[str, Any]:
        """Hit/miss counters and per-namespace entry counts."""
        now = self.clock()
        namespaces: Dict[str, int] = {}
        for key in self._entries:
            ns = key.split(":", 1)[0] if ":" in key else "default"
            namespaces[ns] = namespaces.get(ns, 0) + 1
        total = self.hits + self.misses
        newest = max((e.timestamp for e in self._entries.values()), default=None)
        return {
            "size": len(self._entries),
            "expired": sum(1 for e in self._entries.values() if e.is_expired(now)),
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "fallbacks": self.fallbacks,
            "background_refreshes": self.background_refreshes,
            "hit_ratio": round(self.hits / total, 4) if total else 0.0,
            "namespaces": namespaces,
            "last_update": newest,
            "mirror": type(self.mirror).__name__ if self.mirror is not None else None,
        }
