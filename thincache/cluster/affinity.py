"""
Affinity Module

Maps routing bytes to partitions and partitions to nodes.

The client keeps one AffinitySnapshot per cache. A snapshot is immutable;
refreshing the partition table builds a new snapshot and swaps it in, so a
reader always sees a complete table.
"""

import hashlib
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from ..exceptions import RoutingUnavailableError
from ..protocol.commands import PartitionsResponse


def partition_for_key(routing: bytes, partitions: int) -> int:
    """
    Calculate which partition owns the given routing bytes.

    Uses SHA-256 so every client and node agrees on the mapping.

    Args:
        routing: Encoded key, or encoded affinity key when the key has one
        partitions: Total partition count (must be positive)

    Returns:
        Partition number in ``range(partitions)``
    """
    if partitions <= 0:
        raise ValueError(f"Invalid partition count: {partitions}")
    hash_digest = hashlib.sha256(routing).digest()
    hash_int = int.from_bytes(hash_digest[:8], byteorder='big')
    return hash_int % partitions


@dataclass(frozen=True)
class NodeAddress:
    """Address of a server node. ``node_id`` is None for configured endpoints."""
    host: str
    port: int
    node_id: Optional[int] = None

    def __str__(self) -> str:
        if self.node_id is None:
            return f"{self.host}:{self.port}"
        return f"node {self.node_id} ({self.host}:{self.port})"


@dataclass(frozen=True)
class AffinitySnapshot:
    """
    Partition table of one cache at one topology version.

    Attributes:
        version: Topology version reported by the server
        partition_count: Number of partitions
        owners: Owning node id per partition (None if unassigned)
        nodes: node_id -> NodeAddress
    """
    version: int
    partition_count: int
    owners: Tuple[Optional[int], ...]
    nodes: Mapping[int, NodeAddress] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_response(cls, response: PartitionsResponse) -> "AffinitySnapshot":
        owners = [None] * response.partition_count
        nodes = {}
        for node in response.nodes:
            nodes[node.node_id] = NodeAddress(host=node.host, port=node.port, node_id=node.node_id)
            for partition in node.partitions:
                if 0 <= partition < response.partition_count:
                    owners[partition] = node.node_id
        return cls(
            version=response.version,
            partition_count=response.partition_count,
            owners=tuple(owners),
            nodes=MappingProxyType(nodes),
        )

    @property
    def is_empty(self) -> bool:
        return self.partition_count == 0 or not self.nodes

    def partition_for(self, routing: bytes) -> int:
        if self.partition_count <= 0:
            raise RoutingUnavailableError("Partition table is empty")
        return partition_for_key(routing, self.partition_count)

    def node_for_partition(self, partition: int) -> NodeAddress:
        """
        Return the owner of ``partition``.

        Raises:
            RoutingUnavailableError: If no node owns it or its address is unknown
        """
        owner = self.owners[partition] if 0 <= partition < len(self.owners) else None
        if owner is None or owner not in self.nodes:
            raise RoutingUnavailableError(
                f"No known node owns partition {partition} (topology version {self.version})"
            )
        return self.nodes[owner]
