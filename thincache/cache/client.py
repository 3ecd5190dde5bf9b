"""
Cache Client Module

The public operation set of one remote cache.

Each operation builds the request variant for its opcode and dispatches it
through the shared DataRouter:

    put, get, contains_key, remove, clear_key   routed to the key's primary node
    get_size, remove_all, clear                 sent to any node, which fans out
    refresh_affinity_mapping                    fetches a new partition table
    local_peek                                  near cache only, no network

Errors from the router (RoutingUnavailableError, TransportError,
ServerApplicationError, DecodingError) propagate unchanged. Nothing here
retries.
"""

import logging
import threading
from typing import Any, Callable

from ..config.settings import settings
from ..exceptions import CacheClientError
from ..protocol.binary import (
    BinaryHolder,
    BinaryReader,
    Readable,
    TypeCode,
    ValueHolder,
    WritableKey,
    as_key,
    as_value,
    encode,
    routing_bytes,
)
from ..protocol.commands import (
    FLAG_KEEP_BINARY,
    CacheHeader,
    ClearKeyRequest,
    ClearRequest,
    ContainsKeyRequest,
    GetRequest,
    GetSizeRequest,
    KeyRequest,
    PeekMode,
    PutRequest,
    RemoveAllRequest,
    RemoveKeyRequest,
    Request,
    Response,
)
from .near import NearCache

logger = logging.getLogger(__name__)

_NULL_OBJECT = bytes([TypeCode.NULL])


def cache_id_for(name: str) -> int:
    """
    Derive the numeric cache id from a cache name.

    Uses the Java ``String.hashCode`` algorithm over UTF-16 code units, so
    the id matches what JVM based nodes compute for the same name.

    >>> cache_id_for("default")
    1544803905
    """
    h = 0
    data = name.encode("utf-16-le")
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = (31 * h + unit) & 0xFFFFFFFF
    return h - (1 << 32) if h >= (1 << 31) else h


class CacheClient:
    """
    Handle to a named cache on the cluster.

    The handle is read-mostly and safe to use from many threads at once.
    Keys and values may be plain Python objects (None, bool, int, float,
    str, bytes) or implementations of WritableKey / Writable / Readable.

    In binary mode values are returned as BinaryObject instances holding
    their raw encoding instead of being deserialized.

    Usage:
        with client.get_cache("orders") as cache:
            cache.put("order-1", "pending")
            cache.get("order-1")        # -> "pending"
            cache.remove("order-1")     # -> True

    Attributes:
        name: Cache name
    """

    def __init__(
            self,
            router,
            name: str,
            binary: bool = False,
            near_cache_size: int = None,
    ):
        """
        Initialize the handle. Performs no network I/O.

        Args:
            router: Shared DataRouter; the handle takes its own reference
            name: Cache name
            binary: Return values as BinaryObject instead of Python objects
            near_cache_size: Near cache capacity (default from settings, 0 disables)
        """
        self.name = name
        self._id = cache_id_for(name)
        self._binary = binary
        self._header = CacheHeader(cache_id=self._id, flags=FLAG_KEEP_BINARY if binary else 0)
        self._near = NearCache(near_cache_size if near_cache_size is not None else settings.NEAR_CACHE_SIZE)

        self._router = router.acquire()
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def id(self) -> int:
        """Numeric cache id sent with every request."""
        return self._id

    @property
    def binary(self) -> bool:
        return self._binary

    @property
    def near_cache(self) -> NearCache:
        return self._near

    def with_keep_binary(self) -> "CacheClient":
        """Return a binary mode handle to the same cache, sharing the router."""
        return CacheClient(self._router, self.name, binary=True, near_cache_size=self._near.max_size)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise CacheClientError(f"Cache '{self.name}' is closed")

    def _sync_key_message(self, key: WritableKey, build: Callable[[int], KeyRequest]) -> Response:
        """
        Send a request routed by ``key`` and wait for its response.

        Args:
            key: Routing key; its affinity key decides the partition if present
            build: Creates the request for the resolved partition
        """
        self._check_open()
        node, partition = self._router.resolve_node(self._id, routing_bytes(key))
        return self._router.send_and_await(node, build(partition))

    def _sync_message(self, request: Request) -> Response:
        """Send a request without a key to any live node."""
        self._check_open()
        return self._router.send_and_await(None, request)

    @staticmethod
    def _read_value(data: bytes, value: Readable) -> None:
        reader = BinaryReader(data)
        value.read(reader)
        reader.expect_end()

    def _holder(self) -> Readable:
        return BinaryHolder() if self._binary else ValueHolder()

    # ------------------------------------------------------------------
    # Key operations
    # ------------------------------------------------------------------

    def put(self, key: Any, value: Any) -> None:
        """
        Associate ``value`` with ``key``, replacing any previous value.

        Raises:
            ValueError: If key or value is None
        """
        key = as_key(key)
        key_bytes = encode(key)
        value_bytes = encode(as_value(value))
        generation = self._near.generation

        self._sync_key_message(
            key, lambda partition: PutRequest(self._header, partition, key_bytes, value_bytes)
        )
        self._near.update(key_bytes, value_bytes, generation)

    def get_into(self, key: Any, value: Readable) -> Readable:
        """
        Read the value of ``key`` into ``value``.

        On a miss ``value`` reads a NULL object and is left in its no-value
        state.

        Returns:
            ``value`` itself
        """
        key = as_key(key)
        key_bytes = encode(key)
        generation = self._near.generation

        response = self._sync_key_message(
            key, lambda partition: GetRequest(self._header, partition, key_bytes)
        )
        self._read_value(response.value, value)

        if response.value == _NULL_OBJECT:
            self._near.invalidate(key_bytes)
        else:
            self._near.update(key_bytes, response.value, generation)
        return value

    def get(self, key: Any) -> Any:
        """
        Get the value of ``key``.

        Returns:
            The value, a BinaryObject in binary mode, or None if absent
        """
        return self.get_into(key, self._holder()).value

    def contains_key(self, key: Any) -> bool:
        """True iff the cache currently holds a mapping for ``key``."""
        key = as_key(key)
        key_bytes = encode(key)
        response = self._sync_key_message(
            key, lambda partition: ContainsKeyRequest(self._header, partition, key_bytes)
        )
        return response.value

    def remove(self, key: Any) -> bool:
        """
        Remove the mapping for ``key``.

        Returns:
            False if there was no mapping, True otherwise
        """
        key = as_key(key)
        key_bytes = encode(key)
        try:
            response = self._sync_key_message(
                key, lambda partition: RemoveKeyRequest(self._header, partition, key_bytes)
            )
        finally:
            self._near.invalidate(key_bytes)
        return response.value

    def clear_key(self, key: Any) -> None:
        """
        Clear the entry for ``key`` from memory.

        Unlike remove() this does not notify cache listeners or stores.
        """
        key = as_key(key)
        key_bytes = encode(key)
        try:
            self._sync_key_message(
                key, lambda partition: ClearKeyRequest(self._header, partition, key_bytes)
            )
        finally:
            self._near.invalidate(key_bytes)

    # ------------------------------------------------------------------
    # Cache-wide operations
    # ------------------------------------------------------------------

    def get_size(self, *peek_modes: PeekMode) -> int:
        """
        Count entries across all nodes.

        Args:
            peek_modes: Memory tiers to count; none means the server default

        Returns:
            Sum of the per-node counts
        """
        mask = 0
        for mode in peek_modes:
            mask |= int(mode)
        response = self._sync_message(GetSizeRequest(self._header, mask))
        return response.count

    def remove_all(self) -> None:
        """Remove every mapping, notifying listeners."""
        try:
            self._sync_message(RemoveAllRequest(self._header))
        finally:
            self._near.clear()

    def clear(self) -> None:
        """Clear every entry from memory without notifying listeners."""
        try:
            self._sync_message(ClearRequest(self._header))
        finally:
            self._near.clear()

    # ------------------------------------------------------------------
    # Local operations
    # ------------------------------------------------------------------

    def local_peek_into(self, key: Any, value: Readable) -> Readable:
        """
        Read the locally cached value of ``key`` into ``value``.

        Only the in-process near cache is consulted; nothing is loaded from
        a remote node or store. Intended for tests and diagnostics.

        Raises:
            DecodingError: If the locally cached bytes are corrupt
        """
        data = self._near.peek(encode(as_key(key)))
        self._read_value(data if data is not None else _NULL_OBJECT, value)
        return value

    def local_peek(self, key: Any) -> Any:
        """Locally cached value of ``key``, or None."""
        return self.local_peek_into(key, self._holder()).value

    def refresh_affinity_mapping(self) -> None:
        """Fetch the current partition table and use it for routing."""
        self._check_open()
        snapshot = self._router.refresh_partition_table(self._id)
        logger.debug(f"Cache '{self.name}' routing with topology version {snapshot.version}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Release the router reference. No server-side resource is freed."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._near.clear()
        self._router.release()

    def __enter__(self) -> "CacheClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        return f"CacheClient(name={self.name!r}, id={self._id}, binary={self._binary})"
