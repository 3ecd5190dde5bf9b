"""
Partitioned Store Module

Server-side storage of one cache on one node.

Entries are grouped by partition so a node can count, clear or drop exactly
the partitions it owns. Keys and values are kept in their encoded form; the
node never deserializes them.

Listeners model the cache's write-through/notification hooks:
- put, remove and remove_all notify listeners (a listener failure fails the
  operation)
- clear and clear_key bypass listeners and only drop memory
"""

from typing import Callable, Dict, Iterable, List, Optional

# Listener signature: (event, key, value) with event "put" or "remove"
CacheListener = Callable[[str, bytes, Optional[bytes]], None]


class PartitionedStore:
    """
    In-memory entries of one cache, grouped by partition.

    All operations are O(1) average except the cache-wide ones, which are
    linear in the number of partitions touched.

    Not thread-safe: a node serves every request from its event loop.

    Internal Storage:
        partition -> {encoded key -> encoded value}
    """

    def __init__(self):
        self._partitions: Dict[int, Dict[bytes, bytes]] = {}
        self._listeners: List[CacheListener] = []

    def add_listener(self, listener: CacheListener) -> None:
        self._listeners.append(listener)

    def _notify(self, event: str, key: bytes, value: Optional[bytes]) -> None:
        for listener in self._listeners:
            listener(event, key, value)

    def put(self, partition: int, key: bytes, value: bytes) -> None:
        """
        Insert or update an entry.

        Listeners are notified first; if one raises, nothing is stored.
        """
        self._notify("put", key, value)
        self._partitions.setdefault(partition, {})[key] = value

    def get(self, partition: int, key: bytes) -> Optional[bytes]:
        """Return the encoded value, or None if absent."""
        entries = self._partitions.get(partition)
        if entries is None:
            return None
        return entries.get(key)

    def contains(self, partition: int, key: bytes) -> bool:
        entries = self._partitions.get(partition)
        return entries is not None and key in entries

    def remove(self, partition: int, key: bytes) -> bool:
        """
        Remove an entry, notifying listeners.

        Returns:
            True if the key was present, False otherwise
        """
        entries = self._partitions.get(partition)
        if entries is None or key not in entries:
            return False
        self._notify("remove", key, entries[key])
        del entries[key]
        return True

    def clear_key(self, partition: int, key: bytes) -> None:
        """Drop an entry from memory without notifying listeners."""
        entries = self._partitions.get(partition)
        if entries is not None:
            entries.pop(key, None)

    def remove_all(self, partitions: Iterable[int]) -> int:
        """
        Remove every entry of the given partitions, notifying listeners.

        Returns:
            Number of entries removed
        """
        removed = 0
        for partition in partitions:
            entries = self._partitions.get(partition)
            if not entries:
                continue
            for key in list(entries):
                self._notify("remove", key, entries[key])
                del entries[key]
                removed += 1
        return removed

    def clear(self, partitions: Iterable[int]) -> None:
        """Drop every entry of the given partitions without notifying listeners."""
        for partition in partitions:
            self._partitions.pop(partition, None)

    def size(self, partitions: Iterable[int]) -> int:
        """Number of entries in the given partitions."""
        return sum(len(self._partitions.get(p, ())) for p in partitions)

    def total_size(self) -> int:
        """Number of entries in every partition, owned or not."""
        return sum(len(entries) for entries in self._partitions.values())
