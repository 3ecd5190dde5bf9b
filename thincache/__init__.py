"""
Thin Cache: client for a partitioned key-value cache

Cache operations are encoded as binary requests and sent straight to the
node owning the key's partition, using a partition table fetched from the
cluster. Cache nodes are asyncio TCP servers.
"""

from .cache.client import CacheClient, cache_id_for
from .client import ThinClient
from .exceptions import (
    CacheClientError,
    CacheTimeoutError,
    DecodingError,
    HandshakeError,
    NotPrimaryError,
    RoutingUnavailableError,
    ServerApplicationError,
    TransportError,
)
from .protocol.binary import (
    BinaryHolder,
    BinaryObject,
    CacheKey,
    CacheValue,
    Readable,
    ValueHolder,
    Writable,
    WritableKey,
)
from .protocol.commands import PeekMode

__version__ = "1.0.0"

__all__ = [
    "BinaryHolder",
    "BinaryObject",
    "CacheClient",
    "CacheClientError",
    "CacheKey",
    "CacheTimeoutError",
    "CacheValue",
    "DecodingError",
    "HandshakeError",
    "NotPrimaryError",
    "PeekMode",
    "Readable",
    "RoutingUnavailableError",
    "ServerApplicationError",
    "ThinClient",
    "TransportError",
    "ValueHolder",
    "Writable",
    "WritableKey",
    "cache_id_for",
]
