"""
Memory Tier

Bounded in-process LRU cache. Fastest path for repeated reads.

- O(1) lookup and LRU touch (OrderedDict)
- Bounded by max entry count and optionally a byte budget
- Eviction, expiry and deletion keep the shared TagIndex exact
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, FrozenSet, Iterable, List, Optional

from replivity.cache.tags import TagIndex


logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A cached value owned by exactly one tier."""
    key: str
    value: bytes
    tags: FrozenSet[str]
    created_at: float
    expires_at: float
    size_bytes: int = field(init=False)

    def __post_init__(self):
        self.size_bytes = len(self.key) + len(self.value)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class MemoryTier:
    """
    LRU memory tier.

    All structural changes happen under a single lock, which is never
    held across I/O. The tag index is updated inside the same critical
    section, so a purge and a concurrent insert cannot interleave.
    """

    def __init__(
        self,
        tag_index: TagIndex,
        max_entries: int = 10000,
        max_bytes: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self._tags = tag_index
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._bytes = 0
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for key and mark it most recently used."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                self._drop(key)
                return None
            self._entries.move_to_end(key)
            return entry

    def set(
        self,
        key: str,
        value: bytes,
        tags: Iterable[str],
        ttl: timedelta,
    ) -> List[str]:
        """
        Insert or replace an entry.

        Returns the keys evicted to make room. An entry that alone exceeds
        the byte budget is not stored and evicts nothing.
        """
        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=value,
            tags=frozenset(tags),
            created_at=now,
            expires_at=now + ttl.total_seconds(),
        )

        with self._lock:
            self._drop(key)

            if self.max_bytes is not None and entry.size_bytes > self.max_bytes:
                logger.warning(
                    f"Entry {key} ({entry.size_bytes} bytes) exceeds memory budget, not cached"
                )
                return []

            self._entries[key] = entry
            self._bytes += entry.size_bytes
            self._tags.add(key, entry.tags)

            return self._evict_over_capacity()

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._drop(key)

    def purge_tag(self, tag: str) -> List[str]:
        """Atomically remove every entry registered under tag."""
        with self._lock:
            keys = self._tags.pop_tag(tag)
            for key in keys:
                entry = self._entries.pop(key, None)
                if entry is not None:
                    self._bytes -= entry.size_bytes
            return keys

    def sweep_expired(self) -> int:
        """Remove all expired entries. Returns count removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                self._drop(key)
        if expired:
            logger.debug(f"Swept {len(expired)} expired memory entries")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._bytes = 0
            self._tags.clear()

    def _drop(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._bytes -= entry.size_bytes
        self._tags.remove(key)
        return True

    def _evict_over_capacity(self) -> List[str]:
        evicted = []
        while self._entries and (
            len(self._entries) > self.max_entries
            or (self.max_bytes is not None and self._bytes > self.max_bytes)
        ):
            key, entry = self._entries.popitem(last=False)
            self._bytes -= entry.size_bytes
            self._tags.remove(key)
            evicted.append(key)
        return evicted

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    @property
    def size_bytes(self) -> int:
        with self._lock:
            return self._bytes
