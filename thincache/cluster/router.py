"""
Data Router Module

Routes cache requests to the node owning their key and performs the
synchronous exchange.

Responsibilities:
- Resolve a routing key to a partition and its owning node using the
  cached affinity snapshot of the cache
- Pick any live node for requests that have no key
- Send a request and block the calling thread until its correlated
  response arrives, the request fails, or the request timeout expires
- Fetch partition tables and install them as new snapshots

The network side runs on a private asyncio event loop in a daemon thread.
Callers stay synchronous: each exchange is submitted to the loop with
``run_coroutine_threadsafe`` and the caller waits on the returned future.

The router is shared by every cache handle of a client and reference
counted; the last ``release()`` closes all connections.
"""

import asyncio
import concurrent.futures
import itertools
import logging
import threading
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from ..config.settings import settings
from ..exceptions import (
    CacheTimeoutError,
    DecodingError,
    NotPrimaryError,
    RoutingUnavailableError,
    TransportError,
)
from ..network.channel import NodeChannel
from ..protocol.codec import MessageCodec
from ..protocol.commands import PartitionsRequest, Request, Response
from .affinity import AffinitySnapshot, NodeAddress

logger = logging.getLogger(__name__)


class DataRouter:
    """
    Shared transport and routing state of a thin client.

    Usage:
        router = DataRouter([("127.0.0.1", 10800)]).start()
        node, partition = router.resolve_node(cache_id, routing)
        response = router.send_and_await(node, request)
        router.release()
    """

    def __init__(
            self,
            endpoints: Sequence[Tuple[str, int]] = None,
            connect_timeout: float = None,
            request_timeout: float = None,
            codec: MessageCodec = None,
    ):
        """
        Initialize the router.

        Args:
            endpoints: Initial (host, port) list (default from settings)
            connect_timeout: Seconds to open a connection and handshake
            request_timeout: Seconds a caller waits for a response
            codec: MessageCodec instance (creates new one if not provided)
        """
        endpoints = endpoints if endpoints is not None else settings.ENDPOINTS
        if not endpoints:
            raise ValueError("At least one endpoint is required")
        self.endpoints = [NodeAddress(host=host, port=port) for host, port in endpoints]
        self.connect_timeout = connect_timeout if connect_timeout is not None else settings.CONNECT_TIMEOUT
        self.request_timeout = request_timeout if request_timeout is not None else settings.REQUEST_TIMEOUT
        self.codec = codec if codec is not None else MessageCodec()

        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="thincache-io", daemon=True)

        # Event loop state, only touched from the loop thread
        self._channels: Dict[Tuple[str, int], NodeChannel] = {}
        self._connect_locks: Dict[Tuple[str, int], asyncio.Lock] = {}

        # Affinity snapshots: replaced as a whole, never mutated
        self._affinity: Mapping[int, AffinitySnapshot] = MappingProxyType({})
        self._affinity_lock = threading.Lock()

        self._request_ids = itertools.count(1)
        self._refs = 0
        self._refs_lock = threading.Lock()
        self._started = False
        self._closed = False

        self._stats_lock = threading.Lock()
        self._total_requests = 0
        self._total_refreshes = 0

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "DataRouter":
        """Start the I/O thread. The caller holds the first reference."""
        with self._refs_lock:
            if self._started:
                raise RuntimeError("Router already started")
            self._started = True
            self._refs = 1
        self._thread.start()
        return self

    def acquire(self) -> "DataRouter":
        """Take an additional reference to a running router."""
        with self._refs_lock:
            if self._closed or not self._started:
                raise TransportError("Router is not running")
            self._refs += 1
        return self

    def release(self) -> None:
        """Drop a reference; the last one shuts the router down."""
        with self._refs_lock:
            if self._refs <= 0:
                return
            self._refs -= 1
            if self._refs > 0:
                return
            self._closed = True
        self._shutdown()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def references(self) -> int:
        return self._refs

    def _shutdown(self) -> None:
        logger.debug("Shutting down data router")
        try:
            asyncio.run_coroutine_threadsafe(self._close_channels(), self._loop).result(self.connect_timeout)
        except concurrent.futures.TimeoutError:
            logger.warning("Timed out closing node channels")
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout=self.connect_timeout)
            if not self._loop.is_running():
                self._loop.close()

    async def _close_channels(self) -> None:
        channels = list(self._channels.values())
        self._channels.clear()
        for channel in channels:
            await channel.close()

    # ------------------------------------------------------------------
    # Affinity
    # ------------------------------------------------------------------

    def affinity(self, cache_id: int) -> Optional[AffinitySnapshot]:
        """Current snapshot for a cache, or None if never fetched."""
        return self._affinity.get(cache_id)

    def resolve_node(self, cache_id: int, routing: bytes) -> Tuple[NodeAddress, int]:
        """
        Map routing bytes to (owning node, partition).

        The snapshot for the cache is fetched first if there is none yet.

        Raises:
            RoutingUnavailableError: Empty table or unknown owner
        """
        snapshot = self._affinity.get(cache_id)
        if snapshot is None:
            snapshot = self.refresh_partition_table(cache_id)
        if snapshot.is_empty:
            raise RoutingUnavailableError(f"Partition table of cache {cache_id} is empty")

        partition = snapshot.partition_for(routing)
        node = snapshot.node_for_partition(partition)
        logger.debug(f"Cache {cache_id}: partition {partition} -> {node}")
        return node, partition

    def refresh_partition_table(self, cache_id: int) -> AffinitySnapshot:
        """
        Fetch the partition table of a cache from any live node.

        The new snapshot replaces the old one atomically; requests already
        routed with the old snapshot are not affected.
        """
        response = self.send_and_await(None, PartitionsRequest(cache_id=cache_id))
        snapshot = AffinitySnapshot.from_response(response)

        with self._affinity_lock:
            updated = dict(self._affinity)
            updated[cache_id] = snapshot
            self._affinity = MappingProxyType(updated)
        with self._stats_lock:
            self._total_refreshes += 1

        logger.info(
            f"Cache {cache_id}: installed partition table version {snapshot.version} "
            f"({snapshot.partition_count} partitions, {len(snapshot.nodes)} nodes)"
        )
        return snapshot

    # ------------------------------------------------------------------
    # Exchange
    # ------------------------------------------------------------------

    def send_and_await(self, node: Optional[NodeAddress], request: Request, timeout: float = None) -> Response:
        """
        Send a request and block until its response is decoded.

        Args:
            node: Target node, or None for any live node
            request: Request variant to send
            timeout: Seconds to wait (default: router request timeout)

        Returns:
            The response variant for the request's opcode

        Raises:
            CacheTimeoutError: No response within the timeout
            TransportError: Connection or send failure
            RoutingUnavailableError: No live node for an unrouted request
            NotPrimaryError: Target node does not own the key's partition
            ServerApplicationError: Server reported a failure
            DecodingError: Malformed response
        """
        if self._closed or not self._started:
            raise TransportError("Router is not running")

        timeout = timeout if timeout is not None else self.request_timeout
        request_id = next(self._request_ids)
        with self._stats_lock:
            self._total_requests += 1

        future = asyncio.run_coroutine_threadsafe(self._exchange(node, request_id, request), self._loop)
        try:
            body = future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            target = node if node is not None else "any node"
            raise CacheTimeoutError(f"{request.opcode.name} to {target} timed out after {timeout}s") from None
        except concurrent.futures.CancelledError:
            raise TransportError(f"{request.opcode.name} was cancelled") from None

        if self.codec.parse_request_id(body) != request_id:
            raise DecodingError(f"Response does not belong to request {request_id}")

        try:
            return self.codec.parse_response(body, request.opcode)
        except NotPrimaryError as e:
            if node is not None:
                e.node_id = node.node_id
            partition = getattr(request, "partition", None)
            e.partition = partition
            logger.debug(f"{request.opcode.name}: {node} is not primary for partition {partition}")
            raise

    async def _exchange(self, node: Optional[NodeAddress], request_id: int, request: Request) -> bytes:
        if node is None:
            channel = await self._any_channel()
        else:
            channel = await self._channel(node.host, node.port)
        return await channel.request(request_id, request)

    async def _channel(self, host: str, port: int) -> NodeChannel:
        key = (host, port)
        channel = self._channels.get(key)
        if channel is not None and not channel.closed:
            return channel

        lock = self._connect_locks.setdefault(key, asyncio.Lock())
        async with lock:
            channel = self._channels.get(key)
            if channel is None or channel.closed:
                channel = NodeChannel(host, port, codec=self.codec, connect_timeout=self.connect_timeout)
                await channel.connect()
                self._channels[key] = channel
        return channel

    def _candidates(self) -> List[NodeAddress]:
        """Every known address: snapshot nodes first, then configured endpoints."""
        seen = set()
        candidates = []
        for snapshot in self._affinity.values():
            for node in snapshot.nodes.values():
                if (node.host, node.port) not in seen:
                    seen.add((node.host, node.port))
                    candidates.append(node)
        for node in self.endpoints:
            if (node.host, node.port) not in seen:
                seen.add((node.host, node.port))
                candidates.append(node)
        return candidates

    async def _any_channel(self) -> NodeChannel:
        candidates = self._candidates()
        for node in candidates:
            channel = self._channels.get((node.host, node.port))
            if channel is not None and not channel.closed:
                return channel

        errors = []
        for node in candidates:
            try:
                return await self._channel(node.host, node.port)
            except TransportError as e:
                logger.warning(f"Node {node} unavailable: {e}")
                errors.append(str(e))
        raise RoutingUnavailableError(f"No live node among {len(candidates)} known: {'; '.join(errors)}")

    def get_stats(self) -> dict:
        """
        Get router statistics.

        Returns:
            Dictionary with request and refresh counters, reference count
            and the topology version of every known cache.
        """
        with self._stats_lock:
            total_requests = self._total_requests
            total_refreshes = self._total_refreshes
        return {
            "total_requests": total_requests,
            "total_refreshes": total_refreshes,
            "references": self._refs,
            "closed": self._closed,
            "open_channels": sum(1 for c in list(self._channels.values()) if not c.closed),
            "affinity_versions": {cache_id: s.version for cache_id, s in self._affinity.items()},
        }
