"""
Exception hierarchy for the thin cache client.

Every failure of a cache operation surfaces as one of these. Boolean results
of ``remove`` and ``contains_key`` only ever describe whether a key was
present; they are never used to report errors.
"""

from typing import Optional


class CacheClientError(Exception):
    """Base class for all thin cache client errors."""


class RoutingUnavailableError(CacheClientError):
    """
    No known node can serve the request.

    Raised when the partition table is empty, names no address for the
    owner of a partition, or no endpoint is reachable for an unrouted call.
    The caller may retry after ``refresh_affinity_mapping()``.
    """


class NotPrimaryError(RoutingUnavailableError):
    """The node that received a key-routed request does not own its partition."""

    def __init__(self, message: str, node_id: Optional[int] = None, partition: Optional[int] = None):
        self.node_id = node_id
        self.partition = partition
        super().__init__(message)


class TransportError(CacheClientError):
    """Sending a request or receiving its response failed."""


class CacheTimeoutError(TransportError):
    """A request did not complete within the request timeout."""


class HandshakeError(TransportError):
    """The server rejected the protocol handshake."""

    def __init__(self, message: str, server_version: Optional[tuple] = None):
        self.server_version = server_version
        super().__init__(message)


class ServerApplicationError(CacheClientError):
    """
    The server executed the request and reported a failure.

    Attributes:
        status: Status code from the response header
        message: Error message exactly as sent by the server
    """

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"[status {status}] {message}")


class DecodingError(CacheClientError):
    """A payload did not match the shape expected for its opcode or type tag."""
