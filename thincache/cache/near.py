"""
Near Cache Module

Client-side LRU copy of recently seen entries, keyed by encoded key bytes
and holding encoded value bytes. It is the only state ``local_peek`` looks
at, so peeking never touches the network.

LRU Concept:
- Most recently used entries are at the END of the OrderedDict
- Least recently used entries are at the BEGINNING
- On update, move the entry to the end
- On eviction, remove from the beginning

Unlike the server store this structure is shared by every thread calling a
cache handle, so all access goes through a lock.
"""

import threading
from collections import OrderedDict
from typing import Any, Dict, Optional


class NearCache:
    """
    Thread-safe LRU map of encoded key -> encoded value.

    A capacity of 0 disables the near cache: updates are ignored and every
    lookup misses.

    Attributes:
        max_size: Maximum number of entries before eviction
    """

    def __init__(self, max_size: int):
        """
        Initialize the near cache.

        Args:
            max_size: Maximum number of entries (0 disables caching)

        Raises:
            ValueError: If max_size is negative
        """
        if max_size < 0:
            raise ValueError("max_size must not be negative")
        self.max_size = max_size
        self._entries: "OrderedDict[bytes, bytes]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._generation = 0

    @property
    def enabled(self) -> bool:
        return self.max_size > 0

    @property
    def generation(self) -> int:
        """
        Invalidation counter, bumped by every invalidate() and clear().

        Read it before sending a request whose response will be cached and
        pass it to update(); a value fetched across an invalidation is then
        dropped instead of resurrecting a removed entry.
        """
        with self._lock:
            return self._generation

    def update(self, key: bytes, value: bytes, generation: Optional[int] = None) -> bool:
        """
        Store the latest known value for a key, evicting the LRU entry if full.

        Args:
            key: Encoded key
            value: Encoded value
            generation: Generation read before the value was fetched; the
                update is skipped if an invalidation happened since

        Returns:
            True if the value was stored

        Time Complexity: O(1)
        """
        if not self.enabled:
            return False
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            if key in self._entries:
                self._entries[key] = value
                self._entries.move_to_end(key)
                return True
            if len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
            self._entries[key] = value
            return True

    def peek(self, key: bytes) -> Optional[bytes]:
        """
        Get the cached value without changing LRU order.

        Returns:
            Encoded value bytes, or None on a miss
        """
        with self._lock:
            value = self._entries.get(key)
            if value is None:
                self._misses += 1
            else:
                self._hits += 1
            return value

    def invalidate(self, key: bytes) -> bool:
        """Drop one entry. Returns True if it was cached."""
        with self._lock:
            self._generation += 1
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            self._generation += 1
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get near cache statistics."""
        with self._lock:
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "utilization": len(self._entries) / self.max_size if self.max_size > 0 else 0,
            }
