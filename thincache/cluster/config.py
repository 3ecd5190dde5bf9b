"""
Cluster Configuration Module

Defines the cluster topology as seen by a cache node.

Partitions are assigned round robin over the sorted node ids:

    partition p -> sorted(node_ids)[p % len(node_ids)]

Every node knows the whole topology but only serves key requests for the
partitions it owns. Key requests for other partitions are answered with
NOT_PRIMARY so the client can refresh its affinity mapping.

The topology is configured statically (``--cluster "1=localhost:10800,..."``)
and can be replaced at runtime with ``ClusterConfig.update_topology``; each
replacement bumps the topology version. Entries are not moved when
ownership changes.
"""

from typing import Dict, List, Tuple

from ..config.settings import parse_endpoints, settings
from ..protocol.commands import NodePartitions, PartitionsResponse


class ClusterTopology:
    """
    Immutable cluster topology.

    Attributes:
        nodes: node_id -> (host, port)
        num_partitions: Total partition count
        version: Topology version, increases on every change
    """

    def __init__(self, nodes: Dict[int, Tuple[str, int]], num_partitions: int = None, version: int = 1):
        if not nodes:
            raise ValueError("Cluster topology needs at least one node")
        self.nodes = dict(nodes)
        self.num_partitions = num_partitions if num_partitions is not None else settings.PARTITIONS
        if self.num_partitions <= 0:
            raise ValueError(f"Invalid partition count: {self.num_partitions}")
        self.version = version

        node_ids = sorted(self.nodes)
        self._owners: List[int] = [node_ids[p % len(node_ids)] for p in range(self.num_partitions)]

    @classmethod
    def from_string(cls, spec: str, num_partitions: int = None, version: int = 1) -> "ClusterTopology":
        """
        Build a topology from ``"1=host:port,2=host:port"``.

        Raises:
            ValueError: On a malformed entry
        """
        nodes = {}
        for entry in spec.split(","):
            entry = entry.strip()
            if not entry:
                continue
            node_id, sep, address = entry.partition("=")
            if not sep:
                raise ValueError(f"Invalid cluster entry {entry!r}, expected id=host:port")
            (host, port), = parse_endpoints(address)
            nodes[int(node_id)] = (host, port)
        return cls(nodes, num_partitions=num_partitions, version=version)

    def owner_of(self, partition: int) -> int:
        """Get the node id owning a partition."""
        return self._owners[partition]

    def partitions_of(self, node_id: int) -> Tuple[int, ...]:
        """Get every partition owned by a node."""
        return tuple(p for p, owner in enumerate(self._owners) if owner == node_id)

    def get_node_address(self, node_id: int) -> Tuple[str, int]:
        if node_id not in self.nodes:
            raise ValueError(f"Unknown node_id: {node_id}")
        return self.nodes[node_id]

    def with_nodes(self, nodes: Dict[int, Tuple[str, int]]) -> "ClusterTopology":
        """Return the next topology version with a different node set."""
        return ClusterTopology(nodes, num_partitions=self.num_partitions, version=self.version + 1)

    def to_response(self) -> PartitionsResponse:
        """Describe this topology as a CACHE_PARTITIONS response."""
        return PartitionsResponse(
            version=self.version,
            partition_count=self.num_partitions,
            nodes=tuple(
                NodePartitions(
                    node_id=node_id,
                    host=host,
                    port=port,
                    partitions=self.partitions_of(node_id),
                )
                for node_id, (host, port) in sorted(self.nodes.items())
            ),
        )

    def __repr__(self) -> str:
        return (f"ClusterTopology(version={self.version}, "
                f"nodes={sorted(self.nodes)}, partitions={self.num_partitions})")


class ClusterConfig:
    """
    Cluster configuration for a specific node.

    This class answers:
    - Which partitions this node owns
    - Whether a key request for a partition should be served here
    - Where the other nodes are, for cache-wide fan-out
    """

    def __init__(self, node_id: int, topology: ClusterTopology):
        """
        Initialize cluster config for a specific node.

        Args:
            node_id: The ID of this node, must be part of the topology
            topology: The current cluster topology
        """
        self.node_id = node_id
        self.topology = topology
        self._check_membership(topology)

    def _check_membership(self, topology: ClusterTopology) -> None:
        if self.node_id not in topology.nodes:
            raise ValueError(f"Invalid node_id: {self.node_id}. Known nodes: {sorted(topology.nodes)}")

    @property
    def num_partitions(self) -> int:
        return self.topology.num_partitions

    @property
    def owned_partitions(self) -> Tuple[int, ...]:
        return self.topology.partitions_of(self.node_id)

    def is_primary_for_partition(self, partition: int) -> bool:
        """Check if this node owns the given partition."""
        if not 0 <= partition < self.topology.num_partitions:
            return False
        return self.topology.owner_of(partition) == self.node_id

    def peer_addresses(self) -> List[Tuple[int, Tuple[str, int]]]:
        """(node_id, address) of every other node."""
        return [(node_id, address) for node_id, address in sorted(self.topology.nodes.items())
                if node_id != self.node_id]

    def update_topology(self, topology: ClusterTopology) -> None:
        """Install a new topology; the node must still be a member."""
        self._check_membership(topology)
        self.topology = topology

    def __repr__(self) -> str:
        return (f"ClusterConfig(node_id={self.node_id}, "
                f"topology_version={self.topology.version}, "
                f"owned_partitions={len(self.owned_partitions)})")
