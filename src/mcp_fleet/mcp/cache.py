"""
TTL cache used by connection managers to avoid redundant remote calls.
"""

import json
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from mcp_fleet.core.scheduler import Scheduler, TimerHandle
from mcp_fleet.utils.logging import get_logger

logger = get_logger(__name__)


class _Miss:
    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()
"""Returned by ``TTLCache.get`` for absent or expired keys."""


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    ttl: float
    handle: Optional[TimerHandle] = field(default=None, repr=False)

    def expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


class TTLCache:
    """
    Key/value store whose entries expire ``ttl`` seconds after insertion.

    Expiry happens two ways: a one-shot timer scheduled by ``set`` and a lazy
    check in ``get``. Either path alone is enough to guarantee that an expired
    value is never returned.

    Args:
        scheduler: Timer service providing the clock and eviction timers.
        max_entries: Optional upper bound; the oldest entry is evicted when
            an insert would exceed it. ``None`` leaves the cache unbounded.
    """

    def __init__(self, scheduler: Scheduler, max_entries: Optional[int] = None):
        self._scheduler = scheduler
        self._max_entries = max_entries
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._discard(key)

        entry = CacheEntry(key=key, value=value, created_at=self._scheduler.now(), ttl=ttl)
        entry.handle = self._scheduler.call_later(ttl, lambda: self._evict(key, entry))
        self._entries[key] = entry

        if self._max_entries is not None:
            while len(self._entries) > self._max_entries:
                oldest = next(iter(self._entries))
                logger.debug(f"Cache full, evicting oldest key: {oldest}")
                self._discard(oldest)

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return MISS

        if entry.expired(self._scheduler.now()):
            self._discard(key)
            return MISS

        return entry.value

    def clear(self, pattern: Optional[str] = None) -> int:
        """
        Remove every entry, or only those whose key contains ``pattern``.

        Returns:
            Number of entries removed.
        """
        keys = [k for k in self._entries if pattern is None or pattern in k]
        for key in keys:
            self._discard(key)
        return len(keys)

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "keys": list(self._entries.keys()),
            "memory_usage": len(
                json.dumps([e.value for e in self._entries.values()], default=str)
            ),
        }

    def _evict(self, key: str, entry: CacheEntry) -> None:
        # Only remove the entry this timer was created for
        if self._entries.get(key) is entry:
            del self._entries[key]

    def _discard(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None and entry.handle is not None:
            entry.handle.cancel()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not MISS

    def __len__(self) -> int:
        return len(self._entries)
