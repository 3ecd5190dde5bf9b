"""
Protocol Request and Response Definitions

One frozen dataclass per operation, tagged with its OpCode. A request
carries exactly the fields its operation needs; the response variant is
chosen by the opcode when the reply is decoded.
"""

from dataclasses import dataclass
from enum import IntEnum, IntFlag
from typing import ClassVar, Dict, Tuple, Union


class OpCode(IntEnum):
    """Wire operation codes."""
    CACHE_GET = 1000
    CACHE_PUT = 1001
    CACHE_CONTAINS_KEY = 1011
    CACHE_CLEAR = 1013
    CACHE_CLEAR_KEY = 1014
    CACHE_REMOVE_KEY = 1016
    CACHE_REMOVE_ALL = 1019
    CACHE_GET_SIZE = 1020
    CACHE_PARTITIONS = 1101


class ResponseStatus(IntEnum):
    """Status codes of a response header."""
    SUCCESS = 0
    FAILED = 1
    INVALID_OP_CODE = 2
    NOT_PRIMARY = 1100


class PeekMode(IntFlag):
    """Memory tiers counted by GetSize."""
    ALL = 1
    NEAR = 2
    PRIMARY = 4
    BACKUP = 8
    ONHEAP = 16
    OFFHEAP = 32


# Cache header flags
FLAG_KEEP_BINARY = 0x01
FLAG_INTERNAL = 0x02

# Partition value asking the server to hash the key bytes itself
ANY_PARTITION = -1


@dataclass(frozen=True)
class CacheHeader:
    """
    Fields every cache request starts with.

    Attributes:
        cache_id: Numeric cache selector
        flags: FLAG_KEEP_BINARY and/or FLAG_INTERNAL
    """
    cache_id: int
    flags: int = 0

    @property
    def keep_binary(self) -> bool:
        return bool(self.flags & FLAG_KEEP_BINARY)

    @property
    def internal(self) -> bool:
        return bool(self.flags & FLAG_INTERNAL)


# ============================================================================
# Requests
# ============================================================================

@dataclass(frozen=True)
class GetRequest:
    opcode: ClassVar[OpCode] = OpCode.CACHE_GET
    header: CacheHeader
    partition: int
    key: bytes


@dataclass(frozen=True)
class PutRequest:
    opcode: ClassVar[OpCode] = OpCode.CACHE_PUT
    header: CacheHeader
    partition: int
    key: bytes
    value: bytes


@dataclass(frozen=True)
class ContainsKeyRequest:
    opcode: ClassVar[OpCode] = OpCode.CACHE_CONTAINS_KEY
    header: CacheHeader
    partition: int
    key: bytes


@dataclass(frozen=True)
class ClearKeyRequest:
    opcode: ClassVar[OpCode] = OpCode.CACHE_CLEAR_KEY
    header: CacheHeader
    partition: int
    key: bytes


@dataclass(frozen=True)
class RemoveKeyRequest:
    opcode: ClassVar[OpCode] = OpCode.CACHE_REMOVE_KEY
    header: CacheHeader
    partition: int
    key: bytes


@dataclass(frozen=True)
class ClearRequest:
    opcode: ClassVar[OpCode] = OpCode.CACHE_CLEAR
    header: CacheHeader


@dataclass(frozen=True)
class RemoveAllRequest:
    opcode: ClassVar[OpCode] = OpCode.CACHE_REMOVE_ALL
    header: CacheHeader


@dataclass(frozen=True)
class GetSizeRequest:
    opcode: ClassVar[OpCode] = OpCode.CACHE_GET_SIZE
    header: CacheHeader
    peek_modes: int = 0


@dataclass(frozen=True)
class PartitionsRequest:
    opcode: ClassVar[OpCode] = OpCode.CACHE_PARTITIONS
    cache_id: int


KeyRequest = Union[GetRequest, PutRequest, ContainsKeyRequest, ClearKeyRequest, RemoveKeyRequest]
CacheWideRequest = Union[ClearRequest, RemoveAllRequest, GetSizeRequest]
Request = Union[KeyRequest, CacheWideRequest, PartitionsRequest]

KEY_REQUESTS: Tuple[type, ...] = (GetRequest, PutRequest, ContainsKeyRequest, ClearKeyRequest, RemoveKeyRequest)
CACHE_WIDE_REQUESTS: Tuple[type, ...] = (ClearRequest, RemoveAllRequest, GetSizeRequest)


# ============================================================================
# Responses
# ============================================================================

@dataclass(frozen=True)
class AckResponse:
    """Empty acknowledgement (PUT, CLEAR, CLEAR_KEY, REMOVE_ALL)."""


@dataclass(frozen=True)
class BoolResponse:
    """Boolean flag (CONTAINS_KEY, REMOVE_KEY)."""
    value: bool


@dataclass(frozen=True)
class SizeResponse:
    """Entry count (GET_SIZE)."""
    count: int


@dataclass(frozen=True)
class ValueResponse:
    """
    Raw value object (GET).

    ``value`` is the encoded object including its type code; a NULL object
    means the key was absent.
    """
    value: bytes


@dataclass(frozen=True)
class NodePartitions:
    node_id: int
    host: str
    port: int
    partitions: Tuple[int, ...]


@dataclass(frozen=True)
class PartitionsResponse:
    """Partition table for one cache (CACHE_PARTITIONS)."""
    version: int
    partition_count: int
    nodes: Tuple[NodePartitions, ...]


Response = Union[AckResponse, BoolResponse, SizeResponse, ValueResponse, PartitionsResponse]

# Response variant produced by each opcode
RESPONSE_TYPES: Dict[OpCode, type] = {
    OpCode.CACHE_GET: ValueResponse,
    OpCode.CACHE_PUT: AckResponse,
    OpCode.CACHE_CONTAINS_KEY: BoolResponse,
    OpCode.CACHE_CLEAR: AckResponse,
    OpCode.CACHE_CLEAR_KEY: AckResponse,
    OpCode.CACHE_REMOVE_KEY: BoolResponse,
    OpCode.CACHE_REMOVE_ALL: AckResponse,
    OpCode.CACHE_GET_SIZE: SizeResponse,
    OpCode.CACHE_PARTITIONS: PartitionsResponse,
}
