"""
Pytest Configuration and Fixtures

This module provides shared fixtures and configuration for all tests.
"""

import asyncio
import socket
import threading
from contextlib import closing
from types import MappingProxyType
from typing import AsyncGenerator, Dict, Iterator, List

import pytest
import pytest_asyncio

from thincache.cache.near import NearCache
from thincache.cache.store import PartitionedStore
from thincache.client import ThinClient
from thincache.cluster.affinity import AffinitySnapshot, NodeAddress
from thincache.cluster.config import ClusterConfig, ClusterTopology
from thincache.network.tcp_server import CacheNodeServer
from thincache.protocol.binary import TypeCode
from thincache.protocol.codec import MessageCodec
from thincache.protocol.commands import (
    AckResponse,
    BoolResponse,
    ClearKeyRequest,
    ClearRequest,
    ContainsKeyRequest,
    GetRequest,
    GetSizeRequest,
    PutRequest,
    RemoveAllRequest,
    RemoveKeyRequest,
    SizeResponse,
    ValueResponse,
)

NULL_OBJECT = bytes([TypeCode.NULL])

# Small partition count keeps topology responses short in tests
TEST_PARTITIONS = 16


def find_free_port() -> int:
    """Find an available port for testing."""
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(('', 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


# ============================================================================
# Unit Fixtures
# ============================================================================

@pytest.fixture
def codec() -> MessageCodec:
    """Create a MessageCodec instance."""
    return MessageCodec()


@pytest.fixture
def store() -> PartitionedStore:
    """Create an empty PartitionedStore."""
    return PartitionedStore()


@pytest.fixture
def near_cache() -> NearCache:
    """Create a near cache for testing (5 entries max)."""
    return NearCache(max_size=5)


# ============================================================================
# Fake Router
# ============================================================================

class FakeRouter:
    """
    In-memory stand-in for DataRouter.

    Applies requests to a dict, records every request it is asked to send
    and counts references, so cache handle behaviour can be tested without
    sockets.
    """

    def __init__(self, partitions: int = 8, nodes: int = 2):
        owners = tuple((p % nodes) + 1 for p in range(partitions))
        addresses = {n: NodeAddress("127.0.0.1", 10800 + n, node_id=n) for n in range(1, nodes + 1)}
        self.snapshot = AffinitySnapshot(
            version=1,
            partition_count=partitions,
            owners=owners,
            nodes=MappingProxyType(addresses),
        )
        self.entries: Dict[tuple, bytes] = {}
        self.sent: List[tuple] = []
        self.refs = 0
        self.refreshes = 0
        self.fail_with = None

    def acquire(self) -> "FakeRouter":
        self.refs += 1
        return self

    def release(self) -> None:
        self.refs -= 1

    def resolve_node(self, cache_id, routing):
        partition = self.snapshot.partition_for(routing)
        return self.snapshot.node_for_partition(partition), partition

    def refresh_partition_table(self, cache_id):
        self.refreshes += 1
        return self.snapshot

    def send_and_await(self, node, request):
        self.sent.append((node, request))
        if self.fail_with is not None:
            raise self.fail_with

        cache_id = request.header.cache_id
        if isinstance(request, PutRequest):
            self.entries[(cache_id, request.key)] = request.value
            return AckResponse()
        if isinstance(request, GetRequest):
            return ValueResponse(self.entries.get((cache_id, request.key), NULL_OBJECT))
        if isinstance(request, ContainsKeyRequest):
            return BoolResponse((cache_id, request.key) in self.entries)
        if isinstance(request, RemoveKeyRequest):
            return BoolResponse(self.entries.pop((cache_id, request.key), None) is not None)
        if isinstance(request, ClearKeyRequest):
            self.entries.pop((cache_id, request.key), None)
            return AckResponse()
        if isinstance(request, (ClearRequest, RemoveAllRequest)):
            for key in [k for k in self.entries if k[0] == cache_id]:
                del self.entries[key]
            return AckResponse()
        if isinstance(request, GetSizeRequest):
            return SizeResponse(sum(1 for k in self.entries if k[0] == cache_id))
        raise AssertionError(f"Unexpected request {request!r}")


@pytest.fixture
def fake_router() -> FakeRouter:
    """Create a FakeRouter with 8 partitions over 2 nodes."""
    return FakeRouter()


# ============================================================================
# Node Cluster (background event loop)
# ============================================================================

class NodeCluster:
    """
    Runs cache node servers on an event loop in a background thread.

    The thin client is synchronous and runs its own I/O thread, so the
    servers cannot share the test's thread.
    """

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, daemon=True)
        self.thread.start()
        self.servers: Dict[int, CacheNodeServer] = {}

    def call(self, coro, timeout: float = 10.0):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def start_node(self, node_id: int, topology: ClusterTopology, peer_timeout: float = 5.0) -> CacheNodeServer:
        """Start a node that knows the given topology."""
        server = CacheNodeServer(
            ClusterConfig(node_id, topology),
            host='127.0.0.1',
            peer_timeout=peer_timeout,
        )
        self.call(server.listen())
        self.servers[node_id] = server
        return server

    def stop_node(self, node_id: int) -> None:
        server = self.servers.pop(node_id)
        self.call(server.stop())

    def update_topology(self, topology: ClusterTopology) -> None:
        """Install a topology on every running node that belongs to it."""
        async def apply():
            for node_id, server in self.servers.items():
                if node_id in topology.nodes:
                    server.update_topology(topology)
        self.call(apply())

    @property
    def endpoints(self) -> List[tuple]:
        return [('127.0.0.1', server.port) for server in self.servers.values()]

    def total_entries(self) -> int:
        return sum(sum(store.total_size() for store in s.caches.values()) for s in self.servers.values())

    def shutdown(self) -> None:
        for node_id in list(self.servers):
            self.stop_node(node_id)
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=5)
        self.loop.close()


def make_topology(node_ids, partitions: int = TEST_PARTITIONS, version: int = 1) -> ClusterTopology:
    return ClusterTopology(
        {node_id: ('127.0.0.1', find_free_port()) for node_id in node_ids},
        num_partitions=partitions,
        version=version,
    )


@pytest.fixture
def node_cluster() -> Iterator[NodeCluster]:
    """An empty NodeCluster, shut down after the test."""
    cluster = NodeCluster()
    yield cluster
    cluster.shutdown()


@pytest.fixture
def cluster(node_cluster: NodeCluster) -> NodeCluster:
    """Two running nodes sharing TEST_PARTITIONS partitions."""
    topology = make_topology([1, 2])
    for node_id in topology.nodes:
        node_cluster.start_node(node_id, topology)
    return node_cluster


@pytest.fixture
def client(cluster: NodeCluster) -> Iterator[ThinClient]:
    """ThinClient connected to the two node cluster."""
    thin_client = ThinClient(cluster.endpoints, connect_timeout=2.0, request_timeout=5.0)
    yield thin_client
    thin_client.close()


@pytest.fixture
def cache(client: ThinClient):
    """Handle to the 'test' cache."""
    handle = client.get_cache("test")
    yield handle
    handle.close()


# ============================================================================
# Async Server Fixtures
# ============================================================================

@pytest.fixture
def server_port() -> int:
    """Get a free port for server testing."""
    return find_free_port()


@pytest_asyncio.fixture
async def server(server_port: int) -> AsyncGenerator[CacheNodeServer, None]:
    """
    Create and start a single node server for testing.

    This fixture:
    1. Creates a CacheNodeServer owning every partition on a free port
    2. Starts it in a background task
    3. Yields the server for testing
    4. Cleans up after the test
    """
    topology = ClusterTopology({1: ('127.0.0.1', server_port)}, num_partitions=TEST_PARTITIONS)
    srv = CacheNodeServer(ClusterConfig(1, topology), host='127.0.0.1')

    # Start server in background task
    server_task = asyncio.create_task(srv.start())

    # Wait for server to be ready
    await asyncio.sleep(0.1)

    yield srv

    # Cleanup
    await srv.stop()
    server_task.cancel()
    try:
        await server_task
    except asyncio.CancelledError:
        pass


class FrameClient:
    """
    Helper class for raw protocol testing.

    Sends frame bodies and reads frame bodies back, one at a time.

    Usage:
        async with FrameClient('127.0.0.1', port) as client:
            body = await client.exchange(codec.format_request(1, request))
    """

    def __init__(self, host: str, port: int, handshake: bool = True):
        self.host = host
        self.port = port
        self.handshake = handshake
        self.codec = MessageCodec()
        self.reader = None
        self.writer = None

    async def connect(self) -> None:
        """Establish connection and perform the handshake."""
        self.reader, self.writer = await asyncio.open_connection(self.host, self.port)
        if self.handshake:
            body = await self.exchange(self.codec.format_handshake((1, 0, 0)))
            success, _, message = self.codec.parse_handshake_response(body)
            assert success, message

    async def disconnect(self) -> None:
        """Close connection to server."""
        if self.writer:
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except OSError:
                pass

    async def send(self, body: bytes) -> None:
        self.writer.write(self.codec.frame(body))
        await self.writer.drain()

    async def receive(self) -> bytes:
        prefix = await self.reader.readexactly(4)
        return await self.reader.readexactly(self.codec.parse_frame_length(prefix))

    async def exchange(self, body: bytes) -> bytes:
        await self.send(body)
        return await asyncio.wait_for(self.receive(), timeout=5)

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()


@pytest.fixture
def client_factory(server_port: int):
    """
    Factory fixture to create raw frame clients.

    Usage:
        async def test_something(server, client_factory):
            async with client_factory() as client:
                body = await client.exchange(...)
    """
    def factory(handshake: bool = True) -> FrameClient:
        return FrameClient('127.0.0.1', server_port, handshake=handshake)
    return factory


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


# Configure asyncio mode for pytest-asyncio
pytest_plugins = ['pytest_asyncio']
