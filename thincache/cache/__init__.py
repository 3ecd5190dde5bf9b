"""Cache module for thin cache."""

from .client import CacheClient, cache_id_for
from .near import NearCache
from .store import PartitionedStore

__all__ = ["CacheClient", "NearCache", "PartitionedStore", "cache_id_for"]
