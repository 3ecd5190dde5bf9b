"""
Cache Node Server Module

Asyncio TCP server for one cache node of the cluster.

Each connection starts with a handshake frame, then carries any number of
request frames. Requests on a connection are served concurrently; every
response carries the request id it answers, so clients may pipeline.

Key requests are only served for partitions this node owns; others are
answered with NOT_PRIMARY. Cache-wide requests (GET_SIZE, CLEAR,
REMOVE_ALL) are executed on the owned partitions and fanned out to every
peer with the internal flag set; GET_SIZE sums the counts.
"""

import asyncio
import dataclasses
import logging
from asyncio import StreamReader, StreamWriter
from typing import Dict, Optional

from ..cache.store import PartitionedStore
from ..cluster.affinity import partition_for_key
from ..cluster.config import ClusterConfig, ClusterTopology
from ..config.settings import settings
from ..exceptions import DecodingError, NotPrimaryError, TransportError
from ..network.channel import NodeChannel
from ..protocol.binary import TypeCode
from ..protocol.codec import MessageCodec
from ..protocol.commands import (
    ANY_PARTITION,
    CACHE_WIDE_REQUESTS,
    FLAG_INTERNAL,
    AckResponse,
    BoolResponse,
    CacheHeader,
    ClearKeyRequest,
    ClearRequest,
    ContainsKeyRequest,
    GetRequest,
    GetSizeRequest,
    KEY_REQUESTS,
    PartitionsRequest,
    PeekMode,
    PutRequest,
    RemoveAllRequest,
    RemoveKeyRequest,
    Request,
    Response,
    ResponseStatus,
    SizeResponse,
    ValueResponse,
)

logger = logging.getLogger(__name__)

_NULL_OBJECT = bytes([TypeCode.NULL])

# Peek modes served from the primary copies a node holds
_PRIMARY_MODES = PeekMode.ALL | PeekMode.PRIMARY | PeekMode.ONHEAP | PeekMode.OFFHEAP


class CacheNodeServer:
    """
    Asynchronous TCP server for one cache node.

    Usage:
        topology = ClusterTopology({1: ("127.0.0.1", 10800)})
        server = CacheNodeServer(ClusterConfig(1, topology))
        await server.start()  # Runs forever

    Attributes:
        cluster_config: This node's view of the cluster
        host: Server bind address
        port: Server port number
        codec: The MessageCodec for frames
    """

    def __init__(
            self,
            cluster_config: ClusterConfig,
            host: str = None,
            port: int = None,
            codec: MessageCodec = None,
            peer_timeout: float = None,
    ):
        """
        Initialize the server.

        Args:
            cluster_config: ClusterConfig of this node
            host: Bind address (default from settings)
            port: Port number (default: this node's port in the topology)
            codec: MessageCodec instance (creates new one if not provided)
            peer_timeout: Seconds to wait for a peer during fan-out
        """
        self.cluster_config = cluster_config
        own_host, own_port = cluster_config.topology.get_node_address(cluster_config.node_id)
        self.host = host if host is not None else settings.HOST
        self.port = port if port is not None else own_port
        self.codec = codec if codec is not None else MessageCodec()
        self.peer_timeout = peer_timeout if peer_timeout is not None else settings.REQUEST_TIMEOUT

        self.caches: Dict[int, PartitionedStore] = {}

        # Server state
        self._server: Optional[asyncio.Server] = None
        self._running = False
        self._writers = set()
        self._connection_count = 0
        self._total_requests = 0

    @property
    def node_id(self) -> int:
        return self.cluster_config.node_id

    def get_store(self, cache_id: int) -> PartitionedStore:
        """Store of a cache on this node, created on first use."""
        store = self.caches.get(cache_id)
        if store is None:
            store = self.caches[cache_id] = PartitionedStore()
        return store

    def update_topology(self, topology: ClusterTopology) -> None:
        """Switch to a new topology. Entries are not moved."""
        self.cluster_config.update_topology(topology)
        logger.info(
            f"Node {self.node_id}: topology version {topology.version}, "
            f"owns {len(self.cluster_config.owned_partitions)} of {topology.num_partitions} partitions"
        )

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def _read_frame(self, reader: StreamReader) -> bytes:
        prefix = await reader.readexactly(4)
        return await reader.readexactly(self.codec.parse_frame_length(prefix))

    async def _handshake(self, reader: StreamReader, writer: StreamWriter) -> bool:
        version = self.codec.parse_handshake(await self._read_frame(reader))
        server_version = settings.PROTOCOL_VERSION
        if version[0] != server_version[0]:
            logger.warning(f"Rejecting client protocol version {version}")
            reply = self.codec.format_handshake_response(
                False, server_version, f"Unsupported protocol version {'.'.join(map(str, version))}"
            )
            writer.write(self.codec.frame(reply))
            await writer.drain()
            return False

        writer.write(self.codec.frame(self.codec.format_handshake_response(True)))
        await writer.drain()
        return True

    async def handle_client(self, reader: StreamReader, writer: StreamWriter) -> None:
        """
        Handle a single client connection.

        Reads the handshake, then request frames until the client
        disconnects. Each request is served in its own task.
        """
        addr = writer.get_extra_info('peername')
        self._connection_count += 1
        self._writers.add(writer)
        logger.debug(f"Client connected: {addr}")
        tasks = set()

        try:
            if not await self._handshake(reader, writer):
                return

            while True:
                try:
                    body = await self._read_frame(reader)
                except asyncio.IncompleteReadError:
                    logger.debug(f"Client disconnected: {addr}")
                    break

                task = asyncio.create_task(self._serve(body, writer))
                tasks.add(task)
                task.add_done_callback(tasks.discard)

        except asyncio.IncompleteReadError:
            logger.debug(f"Client disconnected during handshake: {addr}")
        except ConnectionResetError:
            logger.debug(f"Connection reset by client: {addr}")
        except DecodingError as e:
            logger.warning(f"Closing connection from {addr}: {e}")
        except Exception as exc:  # Log unexpected errors but keep server alive
            logger.exception(f"Error handling client {addr}: {exc}")
        finally:
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            self._writers.discard(writer)
            try:
                writer.close()
                await writer.wait_closed()
            except OSError:
                pass

    async def _serve(self, body: bytes, writer: StreamWriter) -> None:
        reply = await self.dispatch(body)
        if reply is None:
            writer.close()
            return
        try:
            writer.write(self.codec.frame(reply))
            await writer.drain()
        except ConnectionError:
            logger.debug("Client went away before its response was sent")

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def dispatch(self, body: bytes) -> Optional[bytes]:
        """
        Serve one request frame body.

        Returns:
            The response body, or None if the request was too malformed to
            answer (no request id)
        """
        try:
            request_id, request = self.codec.parse_request(body)
        except DecodingError as e:
            request_id = getattr(e, 'request_id', None)
            if request_id is None:
                logger.warning(f"Unreadable request: {e}")
                return None
            return self.codec.format_error(request_id, ResponseStatus.FAILED, f"Malformed request: {e}")
        except ValueError as e:
            return self.codec.format_error(getattr(e, 'request_id', 0), ResponseStatus.INVALID_OP_CODE, str(e))

        self._total_requests += 1
        try:
            response = await self._execute(request)
        except NotPrimaryError as e:
            return self.codec.format_error(request_id, ResponseStatus.NOT_PRIMARY, str(e))
        except Exception as e:
            logger.warning(f"Node {self.node_id}: {request.opcode.name} failed: {e}")
            return self.codec.format_error(request_id, ResponseStatus.FAILED, str(e))
        return self.codec.format_response(request_id, response)

    async def _execute(self, request: Request) -> Response:
        if isinstance(request, PartitionsRequest):
            return self.cluster_config.topology.to_response()

        if isinstance(request, KEY_REQUESTS):
            return self._execute_key(request)

        if isinstance(request, CACHE_WIDE_REQUESTS):
            return await self._execute_cache_wide(request)

        raise ValueError(f"Unsupported request {request.opcode.name}")

    async def _execute_cache_wide(self, request) -> Response:
        """Execute a cache-wide request on the owned partitions and every peer."""
        store = self.get_store(request.header.cache_id)
        owned = self.cluster_config.owned_partitions

        if isinstance(request, GetSizeRequest):
            mask = request.peek_modes
            count = store.size(owned) if mask == 0 or mask & _PRIMARY_MODES else 0
            for response in await self._fan_out(request):
                count += response.count
            return SizeResponse(count)

        if isinstance(request, ClearRequest):
            store.clear(owned)
        elif isinstance(request, RemoveAllRequest):
            store.remove_all(owned)
        await self._fan_out(request)
        return AckResponse()

    def _execute_key(self, request) -> Response:
        """Execute a key request on this node's partition."""
        if request.key == _NULL_OBJECT:
            raise ValueError("Null keys are not allowed")

        partition = request.partition
        if partition == ANY_PARTITION:
            partition = partition_for_key(request.key, self.cluster_config.num_partitions)
        if not self.cluster_config.is_primary_for_partition(partition):
            raise NotPrimaryError(
                f"Node {self.node_id} is not primary for partition {partition} "
                f"(topology version {self.cluster_config.topology.version})"
            )

        store = self.get_store(request.header.cache_id)

        if isinstance(request, PutRequest):
            if request.value == _NULL_OBJECT:
                raise ValueError("Null values are not allowed")
            store.put(partition, request.key, request.value)
            return AckResponse()

        if isinstance(request, GetRequest):
            value = store.get(partition, request.key)
            return ValueResponse(value if value is not None else _NULL_OBJECT)

        if isinstance(request, ContainsKeyRequest):
            return BoolResponse(store.contains(partition, request.key))

        if isinstance(request, RemoveKeyRequest):
            return BoolResponse(store.remove(partition, request.key))

        if isinstance(request, ClearKeyRequest):
            store.clear_key(partition, request.key)
            return AckResponse()

        raise ValueError(f"Unsupported request {request.opcode.name}")

    async def _fan_out(self, request) -> list:
        """
        Send a cache-wide request to every peer, once.

        Requests that already carry the internal flag came from a peer and
        are not forwarded again.

        Raises:
            TransportError: If any peer fails
        """
        if request.header.internal:
            return []

        header = CacheHeader(cache_id=request.header.cache_id, flags=request.header.flags | FLAG_INTERNAL)
        internal = dataclasses.replace(request, header=header)
        peers = self.cluster_config.peer_addresses()
        if not peers:
            return []

        logger.debug(f"Node {self.node_id}: fanning {request.opcode.name} out to {len(peers)} peers")
        return list(await asyncio.gather(*(
            self._send_to_peer(node_id, host, port, internal) for node_id, (host, port) in peers
        )))

    async def _send_to_peer(self, node_id: int, host: str, port: int, request: Request) -> Response:
        channel = NodeChannel(host, port, codec=self.codec, connect_timeout=self.peer_timeout)
        try:
            await channel.connect()
            body = await asyncio.wait_for(channel.request(1, request), timeout=self.peer_timeout)
            return self.codec.parse_response(body, request.opcode)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Peer node {node_id} timed out") from e
        except TransportError as e:
            logger.error(f"Failed to reach peer node {node_id}: {e}")
            raise TransportError(f"Peer node {node_id} unavailable: {e}") from e
        finally:
            await channel.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def listen(self) -> None:
        """Bind the listening socket without blocking."""
        if self._server is not None:
            return
        self._server = await asyncio.start_server(self.handle_client, self.host, self.port)
        self._running = True

        addrs = ', '.join(str(sock.getsockname()) for sock in self._server.sockets or [])
        logger.info(f"Node {self.node_id} serving on {addrs}")

    async def start(self) -> None:
        """
        Start the server and serve until cancelled or stopped.

        Example:
            server = CacheNodeServer(ClusterConfig(1, topology))
            asyncio.run(server.start())
        """
        await self.listen()
        try:
            async with self._server:
                await self._server.serve_forever()
        except asyncio.CancelledError:
            # Expected during shutdown/fixture cleanup
            logger.debug("Server start cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """
        Stop the server gracefully.

        Closes the server and waits for it to fully shut down.
        """
        if self._server is None:
            return

        self._server.close()
        for writer in list(self._writers):
            writer.close()
        try:
            await self._server.wait_closed()
        finally:
            self._server = None
            self._running = False

    def is_running(self) -> bool:
        """Check if the server is currently running."""
        return self._running

    def get_stats(self) -> dict:
        """
        Get server statistics.

        Returns:
            Dictionary with connection and request counts, topology version
            and the number of entries held per cache.
        """
        return {
            "running": self._running,
            "node_id": self.node_id,
            "host": self.host,
            "port": self.port,
            "topology_version": self.cluster_config.topology.version,
            "total_connections": self._connection_count,
            "total_requests": self._total_requests,
            "entries": {cache_id: store.total_size() for cache_id, store in self.caches.items()},
        }
