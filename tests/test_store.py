"""
Tests for the server side partitioned store

These tests verify the PartitionedStore operations:
- put() / get() / contains(): per-partition entries
- remove() / remove_all(): listener-notifying removal
- clear_key() / clear(): memory-only removal
- size() / total_size(): counting by partition

Run with: python -m pytest tests/test_store.py -v
"""

import pytest

from thincache.cache.store import PartitionedStore


class RecordingListener:
    """Listener that records events and can be told to fail."""

    def __init__(self):
        self.events = []
        self.fail = False

    def __call__(self, event, key, value):
        if self.fail:
            raise RuntimeError("store unavailable")
        self.events.append((event, key, value))


@pytest.fixture
def listener(store: PartitionedStore) -> RecordingListener:
    recorder = RecordingListener()
    store.add_listener(recorder)
    return recorder


class TestPartitionedStoreBasics:
    """Test put(), get() and contains()."""

    def test_put_and_get(self, store: PartitionedStore):
        store.put(3, b"k", b"v")
        assert store.get(3, b"k") == b"v"
        assert store.contains(3, b"k")

    def test_get_missing(self, store: PartitionedStore):
        assert store.get(0, b"missing") is None
        assert not store.contains(0, b"missing")

    def test_partition_is_part_of_identity(self, store: PartitionedStore):
        """An entry is only found in the partition it was stored in."""
        store.put(1, b"k", b"v")
        assert store.get(2, b"k") is None

    def test_put_overwrites(self, store: PartitionedStore):
        store.put(0, b"k", b"v1")
        store.put(0, b"k", b"v2")
        assert store.get(0, b"k") == b"v2"
        assert store.total_size() == 1


class TestPartitionedStoreRemoval:
    """Test remove(), remove_all(), clear_key() and clear()."""

    def test_remove_present(self, store: PartitionedStore):
        store.put(0, b"k", b"v")
        assert store.remove(0, b"k") is True
        assert store.get(0, b"k") is None

    def test_remove_absent(self, store: PartitionedStore):
        """Removing an absent key reports False, not an error."""
        assert store.remove(0, b"k") is False

    def test_clear_key(self, store: PartitionedStore):
        store.put(0, b"k", b"v")
        store.clear_key(0, b"k")
        store.clear_key(5, b"never-stored")
        assert store.total_size() == 0

    def test_remove_all_only_touches_given_partitions(self, store: PartitionedStore):
        for partition in range(4):
            store.put(partition, b"k%d" % partition, b"v")

        assert store.remove_all([0, 1]) == 2
        assert store.size([0, 1]) == 0
        assert store.size([2, 3]) == 2

    def test_clear_only_touches_given_partitions(self, store: PartitionedStore):
        for partition in range(4):
            store.put(partition, b"k", b"v")

        store.clear([2, 3])
        assert store.size(range(4)) == 2
        assert store.total_size() == 2


class TestPartitionedStoreListeners:
    """Test listener notification rules."""

    def test_put_notifies(self, store: PartitionedStore, listener: RecordingListener):
        store.put(0, b"k", b"v")
        assert listener.events == [("put", b"k", b"v")]

    def test_failing_listener_prevents_put(self, store: PartitionedStore, listener: RecordingListener):
        listener.fail = True
        with pytest.raises(RuntimeError):
            store.put(0, b"k", b"v")
        assert store.get(0, b"k") is None

    def test_remove_notifies_with_old_value(self, store: PartitionedStore, listener: RecordingListener):
        store.put(0, b"k", b"v")
        store.remove(0, b"k")
        assert listener.events[-1] == ("remove", b"k", b"v")

    def test_remove_absent_does_not_notify(self, store: PartitionedStore, listener: RecordingListener):
        store.remove(0, b"k")
        assert listener.events == []

    def test_remove_all_notifies_each_entry(self, store: PartitionedStore, listener: RecordingListener):
        store.put(0, b"a", b"1")
        store.put(1, b"b", b"2")
        store.remove_all([0, 1])

        removed = sorted(e for e in listener.events if e[0] == "remove")
        assert removed == [("remove", b"a", b"1"), ("remove", b"b", b"2")]

    def test_clear_bypasses_listeners(self, store: PartitionedStore, listener: RecordingListener):
        store.put(0, b"a", b"1")
        store.put(0, b"b", b"2")
        listener.fail = True

        store.clear([0])
        store.clear_key(0, b"a")
        assert store.total_size() == 0
