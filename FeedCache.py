"""
FeedCache — short-lived page cache for HttpContentRepository.

Two jobs:
  1. Identical page requests (same filters, query, offset, limit) inside the
     TTL are served from memory instead of hitting the content store again.
  2. Identical requests that arrive while the first is still in flight share
     that one request instead of issuing a duplicate.

Failures are never cached: if the fetch raises, every waiter sees the same
exception and the next call goes to the network again.

Usage:
    cache = FeedCache(ttl=30)
    page  = await cache.get_or_fetch(key, lambda: client.get(...))
    cache.clear()     # e.g. after a reset
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

log = logging.getLogger("feedpager.cache")

_MISSING = object()


def make_key(*parts: Any) -> tuple:
    """Turn request parts (dicts, lists, scalars) into a hashable key."""
    return tuple(_make_hashable(p) for p in parts)


def _make_hashable(value: Any) -> Any:
    if isinstance(value, dict):
        return tuple(sorted((k, _make_hashable(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(_make_hashable(v) for v in value)
    return value


class FeedCache:
    """
    Args:
        ttl:     Seconds a page stays fresh (default 30). 0 disables storage
                 but keeps in-flight de-duplication.
        maxsize: Entries kept before the soonest-to-expire one is evicted.
        clock:   Monotonic clock; injectable for tests.
    """

    def __init__(self, ttl: int = 30, maxsize: int = 256, clock: Callable[[], float] = time.monotonic):
        self._ttl      = ttl
        self._maxsize  = maxsize
        self._clock    = clock
        self._store: dict[tuple, tuple[Any, float]] = {}
        self._inflight: dict[tuple, asyncio.Future] = {}
        self._hits     = 0
        self._misses   = 0
        self._shared   = 0

    def get(self, key: tuple, default: Any = None) -> Any:
        entry = self._store.get(key, _MISSING)
        if entry is _MISSING:
            return default
        value, expire_at = entry
        if self._clock() > expire_at:
            del self._store[key]
            return default
        return value

    def set(self, key: tuple, value: Any) -> None:
        if self._ttl <= 0:
            return
        if self._maxsize and len(self._store) >= self._maxsize and key not in self._store:
            oldest = min(self._store, key=lambda k: self._store[k][1])
            del self._store[oldest]
        self._store[key] = (value, self._clock() + self._ttl)

    def clear(self) -> int:
        count = len(self._store)
        self._store.clear()
        return count

    async def get_or_fetch(self, key: tuple, fetch_fn: Callable[[], Awaitable[Any]]) -> Any:
        cached = self.get(key, _MISSING)
        if cached is not _MISSING:
            self._hits += 1
            return cached

        pending = self._inflight.get(key)
        if pending is not None:
            self._shared += 1
            log.debug(f"FeedCache: joining in-flight request {key!r}")
            return await asyncio.shield(pending)

        self._misses += 1
        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await fetch_fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
                # Mark retrieved so an unjoined failure is not logged as "never retrieved".
                future.exception()
            raise
        else:
            self.set(key, value)
            future.set_result(value)
            return value
        finally:
            self._inflight.pop(key, None)

    # ── Stats ──────────────────────────────────────────────────────────────────

    @property
    def size(self) -> int:
        return len(self._store)

    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "entries":  self.size,
            "hits":     self._hits,
            "misses":   self._misses,
            "shared":   self._shared,
            "hit_rate": round(self._hits / total, 3) if total else 0.0,
            "ttl":      self._ttl,
        }

    def __repr__(self) -> str:
        return f"FeedCache(entries={self.size}, ttl={self._ttl}s)"
