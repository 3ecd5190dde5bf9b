"""Protocol module for thin cache."""

from .binary import (
    BinaryHolder,
    BinaryObject,
    BinaryReader,
    BinaryWriter,
    CacheKey,
    CacheValue,
    Readable,
    TypeCode,
    ValueHolder,
    Writable,
    WritableKey,
)
from .codec import MessageCodec
from .commands import OpCode, PeekMode, ResponseStatus

__all__ = [
    "BinaryHolder",
    "BinaryObject",
    "BinaryReader",
    "BinaryWriter",
    "CacheKey",
    "CacheValue",
    "MessageCodec",
    "OpCode",
    "PeekMode",
    "Readable",
    "ResponseStatus",
    "TypeCode",
    "ValueHolder",
    "Writable",
    "WritableKey",
]
