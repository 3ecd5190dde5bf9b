"""
Cluster module for thin cache.

This module provides:
- Partition calculation and affinity snapshots (client side)
- Cluster topology and partition ownership (node side)
- The data router: node resolution and synchronous request dispatch
"""

from .affinity import AffinitySnapshot, NodeAddress, partition_for_key
from .config import ClusterConfig, ClusterTopology
from .router import DataRouter

__all__ = [
    'AffinitySnapshot',
    'ClusterConfig',
    'ClusterTopology',
    'DataRouter',
    'NodeAddress',
    'partition_for_key',
]
