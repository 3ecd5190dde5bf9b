"""
Tests for the binary object codec and the key/value capability contract.

Run with: python -m pytest tests/test_binary.py -v
"""

import pytest

from thincache.exceptions import DecodingError
from thincache.protocol.binary import (
    BinaryHolder,
    BinaryObject,
    BinaryReader,
    BinaryWriter,
    CacheKey,
    CacheValue,
    TypeCode,
    ValueHolder,
    Writable,
    as_key,
    as_value,
    encode,
    routing_bytes,
)


def decode(data: bytes):
    reader = BinaryReader(data)
    value = reader.read_object()
    reader.expect_end()
    return value


class TestWriteObject:
    """Test BinaryWriter.write_object() encodings."""

    def test_string_layout(self):
        """STRING is tag, int32 length, UTF-8 bytes."""
        assert encode(CacheValue("hé")) == bytes([9, 3, 0, 0, 0]) + "hé".encode("utf-8")

    def test_long_layout(self):
        """Python ints are written as little endian LONG."""
        assert encode(CacheValue(1)) == bytes([4, 1, 0, 0, 0, 0, 0, 0, 0])

    def test_bool_is_not_long(self):
        """bool is checked before int."""
        assert encode(CacheValue(True)) == bytes([TypeCode.BOOL, 1])

    def test_null(self):
        assert encode(CacheValue(None)) == bytes([TypeCode.NULL])

    def test_bytes(self):
        assert encode(CacheValue(b"\x00\xff")) == bytes([12, 2, 0, 0, 0, 0, 255])

    def test_python_values_decode_back(self):
        """Each supported Python type comes back equal."""
        for value in ["text", "", -42, 2 ** 62, 1.5, True, False, b"raw", None]:
            assert decode(encode(CacheValue(value))) == value

    def test_unsupported_type(self):
        """Objects without a binary form are a caller error."""
        with pytest.raises(TypeError):
            encode(CacheValue(object()))

    def test_int_overflow(self):
        with pytest.raises(OverflowError):
            encode(CacheValue(2 ** 64))

    def test_writer_is_append_only(self):
        writer = BinaryWriter()
        writer.write_int(1)
        writer.write_object("a")
        assert len(writer) == 4 + 1 + 4 + 1
        assert writer.getvalue()[:4] == b"\x01\x00\x00\x00"


class TestReadObject:
    """Test BinaryReader failure modes."""

    def test_short_buffer(self):
        """A LONG with only 3 body bytes is rejected."""
        with pytest.raises(DecodingError):
            BinaryReader(bytes([TypeCode.LONG, 1, 2, 3])).read_object()

    def test_short_string(self):
        """A STRING shorter than its declared length is rejected."""
        with pytest.raises(DecodingError):
            BinaryReader(bytes([TypeCode.STRING, 10, 0, 0, 0]) + b"abc").read_object()

    def test_unknown_type_code(self):
        with pytest.raises(DecodingError):
            BinaryReader(bytes([77, 0])).read_object()

    def test_unknown_type_code_cannot_be_skipped(self):
        with pytest.raises(DecodingError):
            BinaryReader(bytes([77, 0])).read_object_bytes()

    def test_empty_buffer(self):
        with pytest.raises(DecodingError):
            BinaryReader(b"").read_object()

    def test_trailing_bytes(self):
        reader = BinaryReader(encode(CacheValue(1)) + b"\x00")
        reader.read_object()
        with pytest.raises(DecodingError):
            reader.expect_end()

    def test_read_object_bytes_returns_exact_slice(self):
        first = encode(CacheValue("key"))
        second = encode(CacheValue(7))
        reader = BinaryReader(first + second)
        assert reader.read_object_bytes() == first
        assert reader.read_object_bytes() == second
        assert reader.remaining == 0

    def test_fixed_width_types(self):
        """INT, SHORT, BYTE, DOUBLE and CHAR written by other clients decode."""
        writer = BinaryWriter()
        writer.write_ubyte(TypeCode.INT)
        writer.write_int(-5)
        writer.write_ubyte(TypeCode.SHORT)
        writer.write_short(300)
        writer.write_ubyte(TypeCode.BYTE)
        writer.write_byte(-1)
        writer.write_ubyte(TypeCode.CHAR)
        writer.write_short(ord("z"))
        reader = BinaryReader(writer.getvalue())
        assert [reader.read_object() for _ in range(4)] == [-5, 300, -1, "z"]


class TestCapabilityContract:
    """Test keys, values and readables."""

    def test_key_without_affinity_routes_by_own_bytes(self):
        key = CacheKey("order-1")
        assert key.affinity_key() is None
        assert routing_bytes(key) == encode(key)

    def test_affinity_key_changes_routing_not_payload(self):
        """Affinity only affects routing bytes."""
        plain = CacheKey("order-1")
        colocated = CacheKey("order-1", affinity="customer-9")

        assert encode(colocated) == encode(plain)
        assert routing_bytes(colocated) == encode(CacheValue("customer-9"))

    def test_keys_with_same_affinity_route_together(self):
        first = CacheKey("order-1", affinity=42)
        second = CacheKey("order-2", affinity=42)
        assert routing_bytes(first) == routing_bytes(second)
        assert encode(first) != encode(second)

    def test_writable_affinity(self):
        """A Writable affinity value is used as is."""
        affinity = BinaryObject(encode(CacheValue("x")))
        assert CacheKey(1, affinity=affinity).affinity_key() is affinity

    def test_value_holder_distinguishes_miss_from_zero(self):
        miss = ValueHolder()
        miss.read(BinaryReader(bytes([TypeCode.NULL])))
        zero = ValueHolder()
        zero.read(BinaryReader(encode(CacheValue(0))))

        assert miss.is_null and miss.value is None
        assert not zero.is_null and zero.value == 0

    def test_binary_holder_keeps_raw_bytes(self):
        raw = encode(CacheValue("payload"))
        holder = BinaryHolder()
        holder.read(BinaryReader(raw))

        assert holder.value == BinaryObject(raw)
        assert holder.value.type_code == TypeCode.STRING
        assert holder.value.deserialize() == "payload"

    def test_binary_holder_null(self):
        holder = BinaryHolder()
        holder.read(BinaryReader(bytes([TypeCode.NULL])))
        assert holder.is_null

    def test_binary_object_written_verbatim(self):
        raw = encode(CacheValue(12345))
        assert encode(BinaryObject(raw)) == raw

    def test_custom_writable(self):
        """User types only need to implement write()."""
        class Point(Writable):
            def __init__(self, x, y):
                self.x, self.y = x, y

            def write(self, writer):
                writer.write_object(f"{self.x},{self.y}")

        assert decode(encode(Point(1, 2))) == "1,2"

    def test_as_key_and_as_value_reject_none(self):
        with pytest.raises(ValueError):
            as_key(None)
        with pytest.raises(ValueError):
            as_value(None)

    def test_as_key_keeps_writable_keys(self):
        key = CacheKey("k", affinity="a")
        assert as_key(key) is key
        assert as_key("k") == CacheKey("k")
        assert as_value(5) == CacheValue(5)
