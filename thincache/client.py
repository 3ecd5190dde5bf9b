"""
Thin Client Module

Entry point for applications: owns the shared DataRouter and hands out
cache handles.

Usage:
    with ThinClient([("127.0.0.1", 10800)]) as client:
        cache = client.get_cache("orders")
        cache.put(1, "pending")
"""

import logging
import threading
from typing import Sequence, Tuple

from .cache.client import CacheClient
from .cluster.router import DataRouter
from .config.settings import settings

logger = logging.getLogger(__name__)


class ThinClient:
    """
    Connection to a thin cache cluster.

    Every cache handle created here shares one router (and so one set of
    node connections). The router stays alive until the client and every
    handle are closed.
    """

    def __init__(
            self,
            endpoints: Sequence[Tuple[str, int]] = None,
            connect_timeout: float = None,
            request_timeout: float = None,
            near_cache_size: int = None,
    ):
        """
        Initialize the client. Connections are opened lazily.

        Args:
            endpoints: Initial (host, port) list (default from settings)
            connect_timeout: Seconds to connect and handshake with a node
            request_timeout: Seconds a cache operation waits for its response
            near_cache_size: Near cache capacity of each handle
        """
        self.near_cache_size = near_cache_size if near_cache_size is not None else settings.NEAR_CACHE_SIZE
        self._router = DataRouter(
            endpoints=endpoints,
            connect_timeout=connect_timeout,
            request_timeout=request_timeout,
        ).start()
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def router(self) -> DataRouter:
        return self._router

    def get_cache(self, name: str, binary: bool = False) -> CacheClient:
        """
        Get a handle to a named cache and fetch its partition table.

        Caches are created by the nodes on first use.

        Raises:
            RoutingUnavailableError: If no node is reachable
        """
        cache = CacheClient(self._router, name, binary=binary, near_cache_size=self.near_cache_size)
        try:
            cache.refresh_affinity_mapping()
        except Exception:
            cache.close()
            raise
        logger.debug(f"Opened {cache!r}")
        return cache

    def close(self) -> None:
        """Release the client's router reference."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._router.release()

    def __enter__(self) -> "ThinClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
