"""
Node Channel Module

One multiplexed asyncio connection to a cache node.

Many requests may be outstanding on a channel at once. Each request registers
a future under its request id; a single reader task reads response frames and
completes the matching future. Losing the connection fails every pending
future with TransportError.

All methods must run on the router's event loop.
"""

import asyncio
import logging
from typing import Dict, Optional, Tuple

from ..config.settings import settings
from ..exceptions import DecodingError, HandshakeError, TransportError
from ..protocol.codec import MessageCodec
from ..protocol.commands import Request

logger = logging.getLogger(__name__)


class NodeChannel:
    """
    Connection to a single node.

    Attributes:
        host: Node host
        port: Node port
    """

    def __init__(
            self,
            host: str,
            port: int,
            codec: MessageCodec = None,
            connect_timeout: float = None,
            protocol_version: Tuple[int, int, int] = None,
    ):
        self.host = host
        self.port = port
        self.codec = codec if codec is not None else MessageCodec()
        self.connect_timeout = connect_timeout if connect_timeout is not None else settings.CONNECT_TIMEOUT
        self.protocol_version = protocol_version if protocol_version is not None else settings.PROTOCOL_VERSION

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def _read_frame(self) -> bytes:
        prefix = await self._reader.readexactly(4)
        length = self.codec.parse_frame_length(prefix)
        return await self._reader.readexactly(length)

    async def connect(self) -> None:
        """
        Open the connection and perform the handshake.

        Raises:
            TransportError: If the node is unreachable or the connection drops
            HandshakeError: If the node rejects the protocol version
        """
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timeout connecting to {self.host}:{self.port}") from e
        except OSError as e:
            raise TransportError(f"Failed to connect to {self.host}:{self.port}: {e}") from e

        try:
            self._writer.write(self.codec.frame(self.codec.format_handshake(self.protocol_version)))
            await self._writer.drain()
            body = await asyncio.wait_for(self._read_frame(), timeout=self.connect_timeout)
            success, server_version, message = self.codec.parse_handshake_response(body)
        except (asyncio.TimeoutError, asyncio.IncompleteReadError, OSError, DecodingError) as e:
            await self._close_writer()
            raise TransportError(f"Handshake with {self.host}:{self.port} failed: {e!r}") from e

        if not success:
            await self._close_writer()
            raise HandshakeError(
                f"Handshake rejected by {self.host}:{self.port}: {message}",
                server_version=server_version,
            )

        self._closed = False
        self._read_task = asyncio.get_running_loop().create_task(self._read_loop())
        logger.debug(f"Connected to {self.host}:{self.port}")

    async def request(self, request_id: int, request: Request) -> bytes:
        """
        Send a request and wait for the body of its response.

        Cancelling the awaiting task forgets the request; a late response for
        it is dropped by the reader.
        """
        if self._closed:
            raise TransportError(f"Channel to {self.host}:{self.port} is closed")

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            self._writer.write(self.codec.frame(self.codec.format_request(request_id, request)))
            await self._writer.drain()
            return await future
        except OSError as e:
            raise TransportError(f"Failed to send to {self.host}:{self.port}: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        error: Optional[Exception] = None
        try:
            while True:
                body = await self._read_frame()
                request_id = self.codec.parse_request_id(body)
                future = self._pending.get(request_id)
                if future is None or future.done():
                    logger.debug(f"Dropping response for unknown request {request_id} from {self.host}:{self.port}")
                    continue
                future.set_result(body)
        except asyncio.IncompleteReadError:
            error = TransportError(f"Connection to {self.host}:{self.port} closed by node")
        except OSError as e:
            error = TransportError(f"Connection to {self.host}:{self.port} failed: {e}")
        except DecodingError as e:
            error = DecodingError(f"Corrupt frame from {self.host}:{self.port}: {e}")
        except asyncio.CancelledError:
            error = TransportError(f"Channel to {self.host}:{self.port} closed")
            raise
        finally:
            self._closed = True
            if error is not None and self._pending:
                logger.warning(f"{error}; failing {len(self._pending)} pending requests")
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(type(error)(str(error)) if error else TransportError("Channel closed"))
            await self._close_writer()

    async def _close_writer(self) -> None:
        if self._writer is None:
            return
        try:
            self._writer.close()
            await self._writer.wait_closed()
        except OSError:
            pass
        finally:
            self._writer = None

    async def close(self) -> None:
        """Close the connection, failing any pending requests."""
        self._closed = True
        if self._read_task is not None:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
            self._read_task = None
        await self._close_writer()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"NodeChannel({self.host}:{self.port}, {state}, pending={len(self._pending)})"
