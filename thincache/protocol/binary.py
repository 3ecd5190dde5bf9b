"""
Binary Object Codec

Keys and values travel as type-tagged binary objects (little endian):

    BYTE=1 SHORT=2 INT=3 LONG=4 FLOAT=5 DOUBLE=6 CHAR=7 BOOL=8
    STRING=9 (int32 length + UTF-8) BYTE_ARR=12 (int32 length + bytes)
    NULL=101 (no body)

This module also defines the capability contract every key and value type
must satisfy to be sent or received by a cache handle:

- Writable.write(writer): serialize into an append-only BinaryWriter
- WritableKey.affinity_key(): optional alternate value used only for routing
- Readable.read(reader): rebuild a value from a BinaryReader
"""

import abc
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional, Union

from ..exceptions import DecodingError


class TypeCode(IntEnum):
    """Type tags of binary objects."""
    BYTE = 1
    SHORT = 2
    INT = 3
    LONG = 4
    FLOAT = 5
    DOUBLE = 6
    CHAR = 7
    BOOL = 8
    STRING = 9
    BYTE_ARR = 12
    NULL = 101


# Fixed body sizes, variable length types are handled separately
_FIXED_SIZES = {
    TypeCode.BYTE: 1,
    TypeCode.SHORT: 2,
    TypeCode.INT: 4,
    TypeCode.LONG: 8,
    TypeCode.FLOAT: 4,
    TypeCode.DOUBLE: 8,
    TypeCode.CHAR: 2,
    TypeCode.BOOL: 1,
    TypeCode.NULL: 0,
}

_BYTE = struct.Struct("<b")
_UBYTE = struct.Struct("<B")
_SHORT = struct.Struct("<h")
_USHORT = struct.Struct("<H")
_INT = struct.Struct("<i")
_LONG = struct.Struct("<q")
_FLOAT = struct.Struct("<f")
_DOUBLE = struct.Struct("<d")

_LONG_MIN = -(1 << 63)
_LONG_MAX = (1 << 63) - 1


class BinaryWriter:
    """Append-only little endian output buffer."""

    def __init__(self):
        self._buffer = bytearray()

    def __len__(self) -> int:
        return len(self._buffer)

    def getvalue(self) -> bytes:
        """Return the bytes written so far."""
        return bytes(self._buffer)

    def write_raw(self, data: bytes) -> None:
        self._buffer += data

    def write_byte(self, value: int) -> None:
        self._buffer += _BYTE.pack(value)

    def write_ubyte(self, value: int) -> None:
        self._buffer += _UBYTE.pack(value)

    def write_bool(self, value: bool) -> None:
        self._buffer += _UBYTE.pack(1 if value else 0)

    def write_short(self, value: int) -> None:
        self._buffer += _SHORT.pack(value)

    def write_int(self, value: int) -> None:
        self._buffer += _INT.pack(value)

    def write_long(self, value: int) -> None:
        self._buffer += _LONG.pack(value)

    def write_double(self, value: float) -> None:
        self._buffer += _DOUBLE.pack(value)

    def write_str(self, value: str) -> None:
        """Write an untagged string: int32 length followed by UTF-8 bytes."""
        data = value.encode("utf-8")
        self.write_int(len(data))
        self._buffer += data

    def write_string(self, value: Optional[str]) -> None:
        """Write a tagged STRING object, or NULL for None."""
        if value is None:
            self.write_ubyte(TypeCode.NULL)
            return
        self.write_ubyte(TypeCode.STRING)
        self.write_str(value)

    def write_object(self, value: Any) -> None:
        """
        Write a Python value as a tagged binary object.

        Args:
            value: None, bool, int, float, str, bytes or a Writable

        Raises:
            TypeError: If the value has no binary representation
            OverflowError: If an int does not fit in 64 bits
        """
        if isinstance(value, Writable):
            value.write(self)
        elif value is None:
            self.write_ubyte(TypeCode.NULL)
        elif isinstance(value, bool):
            self.write_ubyte(TypeCode.BOOL)
            self.write_bool(value)
        elif isinstance(value, int):
            if not _LONG_MIN <= value <= _LONG_MAX:
                raise OverflowError(f"int {value} does not fit in a LONG")
            self.write_ubyte(TypeCode.LONG)
            self.write_long(value)
        elif isinstance(value, float):
            self.write_ubyte(TypeCode.DOUBLE)
            self.write_double(value)
        elif isinstance(value, str):
            self.write_string(value)
        elif isinstance(value, (bytes, bytearray)):
            self.write_ubyte(TypeCode.BYTE_ARR)
            self.write_int(len(value))
            self._buffer += value
        else:
            raise TypeError(f"Cannot encode {type(value).__name__} as a binary object")


class BinaryReader:
    """
    Cursor over a received payload.

    Every read checks the remaining length first; a short buffer raises
    DecodingError instead of returning a default.
    """

    def __init__(self, data: bytes, position: int = 0):
        self._data = bytes(data)
        self._pos = position

    @property
    def position(self) -> int:
        return self._pos

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def _take(self, size: int) -> bytes:
        if size < 0 or self._pos + size > len(self._data):
            raise DecodingError(
                f"Buffer too short: need {size} bytes at offset {self._pos}, "
                f"have {len(self._data) - self._pos}"
            )
        chunk = self._data[self._pos:self._pos + size]
        self._pos += size
        return chunk

    def read_byte(self) -> int:
        return _BYTE.unpack(self._take(1))[0]

    def read_ubyte(self) -> int:
        return _UBYTE.unpack(self._take(1))[0]

    def read_bool(self) -> bool:
        return self.read_ubyte() != 0

    def read_short(self) -> int:
        return _SHORT.unpack(self._take(2))[0]

    def read_int(self) -> int:
        return _INT.unpack(self._take(4))[0]

    def read_long(self) -> int:
        return _LONG.unpack(self._take(8))[0]

    def read_double(self) -> float:
        return _DOUBLE.unpack(self._take(8))[0]

    def read_str(self) -> str:
        length = self.read_int()
        try:
            return self._take(length).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodingError(f"Invalid UTF-8 string: {e}") from e

    def read_string(self) -> Optional[str]:
        """Read a tagged STRING object (or NULL)."""
        tag = self.read_ubyte()
        if tag == TypeCode.NULL:
            return None
        if tag != TypeCode.STRING:
            raise DecodingError(f"Expected STRING object, got type code {tag}")
        return self.read_str()

    def read_object(self) -> Any:
        """Read a tagged binary object and return it as a Python value."""
        tag = self.read_ubyte()
        if tag == TypeCode.NULL:
            return None
        if tag == TypeCode.BYTE:
            return self.read_byte()
        if tag == TypeCode.SHORT:
            return self.read_short()
        if tag == TypeCode.INT:
            return self.read_int()
        if tag == TypeCode.LONG:
            return self.read_long()
        if tag == TypeCode.FLOAT:
            return _FLOAT.unpack(self._take(4))[0]
        if tag == TypeCode.DOUBLE:
            return self.read_double()
        if tag == TypeCode.CHAR:
            return chr(_USHORT.unpack(self._take(2))[0])
        if tag == TypeCode.BOOL:
            return self.read_bool()
        if tag == TypeCode.STRING:
            return self.read_str()
        if tag == TypeCode.BYTE_ARR:
            return self._take(self.read_int())
        raise DecodingError(f"Unknown type code {tag}")

    def read_object_bytes(self) -> bytes:
        """
        Return the raw encoding of the next object without deserializing it.

        Used where objects are passed through untouched (binary mode, server
        side storage).
        """
        start = self._pos
        tag = self.read_ubyte()
        if tag in (TypeCode.STRING, TypeCode.BYTE_ARR):
            self._take(self.read_int())
        elif tag in _FIXED_SIZES:
            self._take(_FIXED_SIZES[tag])
        else:
            raise DecodingError(f"Unknown type code {tag}")
        return self._data[start:self._pos]

    def expect_end(self) -> None:
        """Fail if anything is left after the expected payload."""
        if self.remaining:
            raise DecodingError(f"{self.remaining} unexpected trailing bytes")


# ============================================================================
# Key/value capability contract
# ============================================================================

class Writable(abc.ABC):
    """Anything that can serialize itself as a binary object."""

    @abc.abstractmethod
    def write(self, writer: BinaryWriter) -> None:
        """Write this value into ``writer``. Must be deterministic."""


class WritableKey(Writable):
    """A Writable usable as a cache key."""

    def affinity_key(self) -> Optional[Writable]:
        """
        Return the value whose encoding decides the partition of this key.

        The default ``None`` routes by the key's own encoding. Overriding it
        never changes what is transmitted as the key payload.
        """
        return None


class Readable(abc.ABC):
    """Anything that can rebuild itself from a binary object."""

    @abc.abstractmethod
    def read(self, reader: BinaryReader) -> None:
        """
        Populate this value from ``reader``.

        A NULL object means "no value" and must leave this instance in an
        observable no-value state.
        """


def encode(value: Writable) -> bytes:
    """Serialize a single Writable to bytes."""
    writer = BinaryWriter()
    value.write(writer)
    return writer.getvalue()


def routing_bytes(key: WritableKey) -> bytes:
    """Bytes used for partition computation of ``key``."""
    affinity = key.affinity_key()
    return encode(affinity if affinity is not None else key)


@dataclass(frozen=True)
class CacheValue(Writable):
    """Plain Python value (None, bool, int, float, str, bytes)."""
    obj: Any

    def write(self, writer: BinaryWriter) -> None:
        writer.write_object(self.obj)


@dataclass(frozen=True)
class CacheKey(WritableKey):
    """
    Plain Python key with an optional affinity value.

    Keys sharing an affinity value are stored in the same partition:

        >>> CacheKey("order-17", affinity="customer-3")
    """
    obj: Any
    affinity: Any = None

    def write(self, writer: BinaryWriter) -> None:
        writer.write_object(self.obj)

    def affinity_key(self) -> Optional[Writable]:
        if self.affinity is None:
            return None
        if isinstance(self.affinity, Writable):
            return self.affinity
        return CacheValue(self.affinity)


@dataclass(frozen=True)
class BinaryObject(WritableKey):
    """An already encoded binary object, written verbatim."""
    data: bytes

    def write(self, writer: BinaryWriter) -> None:
        writer.write_raw(self.data)

    @property
    def type_code(self) -> int:
        return self.data[0] if self.data else TypeCode.NULL

    def deserialize(self) -> Any:
        """Decode the object into a Python value."""
        reader = BinaryReader(self.data)
        value = reader.read_object()
        reader.expect_end()
        return value


class ValueHolder(Readable):
    """Readable that decodes the object into a Python value."""

    def __init__(self):
        self.value: Any = None
        self.is_null = True

    def read(self, reader: BinaryReader) -> None:
        self.value = reader.read_object()
        self.is_null = self.value is None

    def __repr__(self) -> str:
        return "ValueHolder(<null>)" if self.is_null else f"ValueHolder({self.value!r})"


class BinaryHolder(Readable):
    """Readable that keeps the raw object bytes as a BinaryObject."""

    def __init__(self):
        self.value: Optional[BinaryObject] = None

    @property
    def is_null(self) -> bool:
        return self.value is None

    def read(self, reader: BinaryReader) -> None:
        raw = reader.read_object_bytes()
        self.value = None if raw[0] == TypeCode.NULL else BinaryObject(raw)


def as_key(key: Union[WritableKey, Any]) -> WritableKey:
    """Wrap a plain Python object as a key, leaving WritableKeys untouched."""
    if isinstance(key, WritableKey):
        return key
    if key is None:
        raise ValueError("Cache keys cannot be None")
    return CacheKey(key)


def as_value(value: Union[Writable, Any]) -> Writable:
    """Wrap a plain Python object as a value, leaving Writables untouched."""
    if isinstance(value, Writable):
        return value
    if value is None:
        raise ValueError("Cache values cannot be None")
    return CacheValue(value)
