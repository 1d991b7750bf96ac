"""Process-wide TTL cache and in-flight request registry.

``ResolverCache`` is built once at startup and handed to the catalog client
and the resolver. It owns:

- ``catalog``: raw catalog payloads, 5 minute TTL.
- ``catalog_inflight``: one pending catalog call per key, released on settle.
- ``search_inflight``: one pending text search per normalized query, kept for
  a short grace window after settling so near-simultaneous duplicates join
  the finished call instead of issuing a new one.

All bookkeeping runs on the event loop thread, so insert-if-absent on the
registry is atomic (there is no await between the lookup and the insert).
"""
from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from ecobites.config import CATALOG_CACHE_TTL, CACHE_MAX_ENTRIES, SEARCH_DEDUP_GRACE_SEC

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    data: Any
    timestamp: float


class TTLCache:
    """Key/value cache where an entry is valid iff ``now - timestamp < ttl``.

    ``max_entries`` of 0 leaves the cache unbounded. Otherwise the oldest
    entries are evicted first.
    """

    def __init__(self, ttl: float, max_entries: int = 0, clock: Clock = time.monotonic):
        self.ttl = float(ttl)
        self.max_entries = int(max_entries)
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def is_valid(self, entry: Optional[CacheEntry]) -> bool:
        return entry is not None and self._clock() - entry.timestamp < self.ttl

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if not self.is_valid(entry):
            if entry is not None:
                self._entries.pop(key, None)
            return None
        return entry.data

    def set(self, key: str, data: Any) -> None:
        self._entries[key] = CacheEntry(data=data, timestamp=self._clock())
        self._entries.move_to_end(key)
        if self.max_entries > 0:
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> int:
        prior = len(self._entries)
        self._entries.clear()
        return prior

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        alive = [k for k, e in self._entries.items() if now - e.timestamp < self.ttl]
        return {
            "size": len(self._entries),
            "alive_entries": len(alive),
            "ttl_seconds": self.ttl,
            "max_entries": self.max_entries,
            "keys": alive[:25],
        }


class InFlightRegistry:
    """Single-flight coalescing of identical concurrent requests.

    Every caller of ``get_or_create`` with the same key while a request is
    pending observes the same outcome, success or failure. A caller that is
    cancelled stops waiting but does not cancel the shared request.
    """

    def __init__(self, grace: float = 0.0, clock: Clock = time.monotonic):
        self.grace = float(grace)
        self._clock = clock
        self._pending: Dict[str, asyncio.Future] = {}
        self._settled_at: Dict[str, float] = {}

    def _lookup(self, key: str) -> Optional[asyncio.Future]:
        fut = self._pending.get(key)
        if fut is None:
            return None
        if fut.done():
            settled = self._settled_at.get(key)
            # Timer-based release can be missed if the loop that scheduled it
            # has gone away; expire lazily as well.
            if settled is None or self._clock() - settled >= self.grace:
                self._release(key, fut)
                return None
        return fut

    async def get_or_create(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        fut = self._lookup(key)
        if fut is not None:
            logger.debug(f"joining in-flight request key='{key}'")
        else:
            fut = asyncio.ensure_future(factory())
            self._pending[key] = fut
            fut.add_done_callback(lambda f, k=key: self._on_settled(k, f))
        return await asyncio.shield(fut)

    def _on_settled(self, key: str, fut: asyncio.Future) -> None:
        if not fut.cancelled():
            fut.exception()  # mark retrieved; waiters re-raise it themselves
        if self.grace <= 0:
            self._release(key, fut)
            return
        self._settled_at[key] = self._clock()
        try:
            asyncio.get_running_loop().call_later(self.grace, self._release, key, fut)
        except RuntimeError:  # pragma: no cover - no running loop
            self._release(key, fut)

    def _release(self, key: str, fut: asyncio.Future) -> None:
        if self._pending.get(key) is fut:
            del self._pending[key]
            self._settled_at.pop(key, None)

    def pending_keys(self) -> List[str]:
        return list(self._pending)

    def __contains__(self, key: str) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)


class ResolverCache:
    """Shared cache state, constructed once per process and injected."""

    def __init__(
        self,
        catalog_ttl: float = CATALOG_CACHE_TTL,
        search_grace: float = SEARCH_DEDUP_GRACE_SEC,
        max_entries: int = CACHE_MAX_ENTRIES,
        clock: Clock = time.monotonic,
    ):
        self.catalog = TTLCache(catalog_ttl, max_entries=max_entries, clock=clock)
        self.catalog_inflight = InFlightRegistry(grace=0.0, clock=clock)
        self.search_inflight = InFlightRegistry(grace=search_grace, clock=clock)

    def stats(self) -> Dict[str, Any]:
        return {
            "catalog": self.catalog.stats(),
            "catalog_inflight": len(self.catalog_inflight),
            "search_inflight": len(self.search_inflight),
            "search_inflight_keys": self.search_inflight.pending_keys(),
        }

    def clear(self) -> Dict[str, Any]:
        return {"cleared": self.catalog.clear()}


__all__ = ["CacheEntry", "TTLCache", "InFlightRegistry", "ResolverCache"]
