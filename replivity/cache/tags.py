"""
Tag Index

Maps each tag to the set of memory-tier keys that depend on it, plus the
reverse mapping so eviction and expiry can unregister a key from every tag
it was created with. Tags whose key set drops to zero are removed, so the
index is bounded by the number of live entries.

Also records a monotonically increasing invalidation sequence so callers
can tell whether any of a set of tags was invalidated while they were
computing a value.
"""

import logging
import threading
from collections import OrderedDict
from typing import Dict, FrozenSet, Iterable, List, Set


logger = logging.getLogger(__name__)


class TagIndex:
    """
    Thread-safe tag -> keys index.

    Invariant: key k is under tag t iff add(k, tags) was called with t in
    tags and k has not since been removed or purged.
    """

    def __init__(self, max_tracked_invalidations: int = 10000):
        self._tags: Dict[str, Set[str]] = {}
        self._key_tags: Dict[str, FrozenSet[str]] = {}
        self._lock = threading.RLock()

        # Invalidation sequence tracking (bounded)
        self._sequence = 0
        self._invalidated_at: "OrderedDict[str, int]" = OrderedDict()
        self._max_tracked = max_tracked_invalidations
        self._floor = 0

        # Tags whose remote purge has not finished yet
        self._in_flight: Dict[str, int] = {}

    def add(self, key: str, tags: Iterable[str]) -> None:
        """Register key under tags, replacing any previous registration."""
        tag_set = frozenset(tags)
        with self._lock:
            self._unregister(key)
            if not tag_set:
                return
            self._key_tags[key] = tag_set
            for tag in tag_set:
                self._tags.setdefault(tag, set()).add(key)

    def remove(self, key: str) -> bool:
        """Unregister key from every tag. Returns True if it was registered."""
        with self._lock:
            return self._unregister(key)

    def pop_tag(self, tag: str) -> List[str]:
        """
        Remove every key under tag from the index.

        Each key is fully unregistered (from its other tags too), since
        the entries themselves are about to be purged.
        """
        with self._lock:
            self._record_invalidation(tag)
            keys = self._tags.pop(tag, set())
            for key in keys:
                self._unregister(key)
            return sorted(keys)

    def keys_for(self, tag: str) -> Set[str]:
        with self._lock:
            return set(self._tags.get(tag, ()))

    def tags_for(self, key: str) -> FrozenSet[str]:
        with self._lock:
            return self._key_tags.get(key, frozenset())

    def clear(self) -> None:
        with self._lock:
            self._tags.clear()
            self._key_tags.clear()
            self._sequence += 1
            # Everything tracked so far counts as invalidated
            self._floor = self._sequence
            self._invalidated_at.clear()

    # =========================================================================
    # Invalidation sequence
    # =========================================================================

    @property
    def sequence(self) -> int:
        """Current invalidation sequence number."""
        with self._lock:
            return self._sequence

    def invalidated_since(self, tags: Iterable[str], sequence: int) -> bool:
        """
        True if any of tags was invalidated after sequence was read.

        Conservative: once a tag's record has been dropped from the bounded
        history, any sequence older than the dropped record reports True.
        """
        with self._lock:
            if sequence < self._floor:
                return True
            return any(self._invalidated_at.get(tag, 0) > sequence for tag in tags)

    def begin_invalidation(self, tag: str) -> None:
        with self._lock:
            self._in_flight[tag] = self._in_flight.get(tag, 0) + 1

    def end_invalidation(self, tag: str) -> None:
        """
        Close an invalidation window opened by begin_invalidation.

        Bumps the sequence again, so a read that overlapped the remote
        purge cannot write back what it saw.
        """
        with self._lock:
            remaining = self._in_flight.get(tag, 0) - 1
            if remaining > 0:
                self._in_flight[tag] = remaining
            else:
                self._in_flight.pop(tag, None)
            self._record_invalidation(tag)

    def invalidating(self, tags: Iterable[str]) -> bool:
        """True while any of tags has an invalidation in flight."""
        with self._lock:
            return any(tag in self._in_flight for tag in tags)

    def _record_invalidation(self, tag: str) -> None:
        self._sequence += 1
        self._invalidated_at[tag] = self._sequence
        self._invalidated_at.move_to_end(tag)
        while len(self._invalidated_at) > self._max_tracked:
            _, dropped = self._invalidated_at.popitem(last=False)
            self._floor = max(self._floor, dropped)

    def _unregister(self, key: str) -> bool:
        tags = self._key_tags.pop(key, None)
        if tags is None:
            return False
        for tag in tags:
            keys = self._tags.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tags[tag]
        return True

    # =========================================================================
    # Introspection
    # =========================================================================

    def __len__(self) -> int:
        with self._lock:
            return len(self._tags)

    def __contains__(self, tag: str) -> bool:
        with self._lock:
            return tag in self._tags

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "tags": len(self._tags),
                "tagged_keys": len(self._key_tags),
                "invalidation_sequence": self._sequence,
            }
