"""
Message Codec Module

Encodes and decodes protocol frames for both sides of a connection.

Protocol Format (little endian):
    Frame:     int32 length | body
    Request:   int16 opcode | int64 request id | payload
    Response:  int64 request id | int32 status | payload or STRING error

    Handshake request:   byte 1 | int16 major | int16 minor | int16 patch | byte client code
    Handshake response:  byte success [| int16 x3 server version | STRING message]

Cache payloads start with a header of int32 cache id and a flags byte.
Key-routed payloads follow with an int32 partition and the key object.
"""

import struct
from typing import Optional, Tuple

from ..config.settings import settings
from ..exceptions import DecodingError, NotPrimaryError, ServerApplicationError
from .binary import BinaryReader, BinaryWriter
from .commands import (
    RESPONSE_TYPES,
    AckResponse,
    BoolResponse,
    CacheHeader,
    ClearKeyRequest,
    ClearRequest,
    ContainsKeyRequest,
    GetRequest,
    GetSizeRequest,
    NodePartitions,
    OpCode,
    PartitionsRequest,
    PartitionsResponse,
    PutRequest,
    RemoveAllRequest,
    RemoveKeyRequest,
    Request,
    Response,
    ResponseStatus,
    SizeResponse,
    ValueResponse,
)

HANDSHAKE_CODE = 1
CLIENT_CODE = 2

_LENGTH = struct.Struct("<i")
_REQUEST_ID = struct.Struct("<q")

# Request variants that carry (partition, key) after the header
_KEY_REQUESTS = {
    OpCode.CACHE_GET: GetRequest,
    OpCode.CACHE_CONTAINS_KEY: ContainsKeyRequest,
    OpCode.CACHE_CLEAR_KEY: ClearKeyRequest,
    OpCode.CACHE_REMOVE_KEY: RemoveKeyRequest,
}


class MessageCodec:
    """
    Codec for the thin cache binary protocol.

    The same instance serves the client (format_request / parse_response)
    and the node server (parse_request / format_response / format_error).
    """

    def __init__(self, max_frame_size: Optional[int] = None):
        self.max_frame_size = max_frame_size if max_frame_size is not None else settings.MAX_FRAME_SIZE

    # ------------------------------------------------------------------
    # Framing
    # ------------------------------------------------------------------

    @staticmethod
    def frame(body: bytes) -> bytes:
        """Prefix a body with its int32 length."""
        return _LENGTH.pack(len(body)) + body

    def parse_frame_length(self, prefix: bytes) -> int:
        """
        Decode a 4 byte frame prefix.

        Raises:
            DecodingError: If the length is negative or above max_frame_size
        """
        (length,) = _LENGTH.unpack(prefix)
        if length < 0 or length > self.max_frame_size:
            raise DecodingError(f"Invalid frame length {length}")
        return length

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    def format_handshake(self, version: Tuple[int, int, int]) -> bytes:
        writer = BinaryWriter()
        writer.write_ubyte(HANDSHAKE_CODE)
        for part in version:
            writer.write_short(part)
        writer.write_ubyte(CLIENT_CODE)
        return writer.getvalue()

    def parse_handshake(self, body: bytes) -> Tuple[int, int, int]:
        """Return the client's protocol version from a handshake request."""
        reader = BinaryReader(body)
        if reader.read_ubyte() != HANDSHAKE_CODE:
            raise DecodingError("Expected handshake request")
        version = (reader.read_short(), reader.read_short(), reader.read_short())
        if reader.read_ubyte() != CLIENT_CODE:
            raise DecodingError("Unsupported client code")
        reader.expect_end()
        return version

    def format_handshake_response(
            self,
            success: bool,
            server_version: Tuple[int, int, int] = (0, 0, 0),
            message: str = "",
    ) -> bytes:
        writer = BinaryWriter()
        writer.write_bool(success)
        if not success:
            for part in server_version:
                writer.write_short(part)
            writer.write_string(message)
        return writer.getvalue()

    def parse_handshake_response(self, body: bytes) -> Tuple[bool, Optional[Tuple[int, int, int]], str]:
        """Return (success, server version, message) from a handshake reply."""
        reader = BinaryReader(body)
        if reader.read_bool():
            reader.expect_end()
            return True, None, ""
        version = (reader.read_short(), reader.read_short(), reader.read_short())
        message = reader.read_string() or ""
        return False, version, message

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def format_request(self, request_id: int, request: Request) -> bytes:
        """
        Encode a request variant into a frame body.

        Args:
            request_id: Correlation id echoed by the server
            request: One of the request dataclasses

        Returns:
            Body bytes (without the length prefix)
        """
        writer = BinaryWriter()
        writer.write_short(request.opcode)
        writer.write_long(request_id)

        if isinstance(request, PartitionsRequest):
            writer.write_int(request.cache_id)
            return writer.getvalue()

        writer.write_int(request.header.cache_id)
        writer.write_ubyte(request.header.flags)

        if isinstance(request, GetSizeRequest):
            writer.write_int(int(request.peek_modes))
        elif isinstance(request, (ClearRequest, RemoveAllRequest)):
            pass
        else:
            writer.write_int(request.partition)
            writer.write_raw(request.key)
            if isinstance(request, PutRequest):
                writer.write_raw(request.value)
        return writer.getvalue()

    def parse_request(self, body: bytes) -> Tuple[int, Request]:
        """
        Decode a frame body into (request id, request variant).

        Raises:
            DecodingError: On malformed payloads. If the request id could be
                read it is attached as ``request_id`` so the server can reply.
            ValueError: On an unknown opcode, with ``request_id`` attached
        """
        reader = BinaryReader(body)
        raw_opcode = reader.read_short()
        request_id = reader.read_long()
        try:
            opcode = OpCode(raw_opcode)
        except ValueError:
            error = ValueError(f"Unknown opcode {raw_opcode}")
            error.request_id = request_id
            raise error

        try:
            request = self._parse_payload(opcode, reader)
            reader.expect_end()
        except DecodingError as e:
            e.request_id = request_id
            raise
        return request_id, request

    def _parse_payload(self, opcode: OpCode, reader: BinaryReader) -> Request:
        if opcode == OpCode.CACHE_PARTITIONS:
            return PartitionsRequest(cache_id=reader.read_int())

        header = CacheHeader(cache_id=reader.read_int(), flags=reader.read_ubyte())

        if opcode == OpCode.CACHE_GET_SIZE:
            return GetSizeRequest(header=header, peek_modes=reader.read_int())
        if opcode == OpCode.CACHE_CLEAR:
            return ClearRequest(header=header)
        if opcode == OpCode.CACHE_REMOVE_ALL:
            return RemoveAllRequest(header=header)

        partition = reader.read_int()
        key = reader.read_object_bytes()
        if opcode == OpCode.CACHE_PUT:
            value = reader.read_object_bytes()
            return PutRequest(header=header, partition=partition, key=key, value=value)
        return _KEY_REQUESTS[opcode](header=header, partition=partition, key=key)

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def format_response(self, request_id: int, response: Response) -> bytes:
        """Encode a successful response into a frame body."""
        writer = BinaryWriter()
        writer.write_long(request_id)
        writer.write_int(ResponseStatus.SUCCESS)

        if isinstance(response, BoolResponse):
            writer.write_bool(response.value)
        elif isinstance(response, SizeResponse):
            writer.write_long(response.count)
        elif isinstance(response, ValueResponse):
            writer.write_raw(response.value)
        elif isinstance(response, PartitionsResponse):
            writer.write_long(response.version)
            writer.write_int(response.partition_count)
            writer.write_int(len(response.nodes))
            for node in response.nodes:
                writer.write_int(node.node_id)
                writer.write_string(node.host)
                writer.write_int(node.port)
                writer.write_int(len(node.partitions))
                for partition in node.partitions:
                    writer.write_int(partition)
        return writer.getvalue()

    def format_error(self, request_id: int, status: ResponseStatus, message: str) -> bytes:
        """Encode a failed response into a frame body."""
        writer = BinaryWriter()
        writer.write_long(request_id)
        writer.write_int(status)
        writer.write_string(message)
        return writer.getvalue()

    @staticmethod
    def parse_request_id(body: bytes) -> int:
        """Read the correlation id at the start of a response body."""
        if len(body) < _REQUEST_ID.size:
            raise DecodingError("Response too short for a request id")
        return _REQUEST_ID.unpack_from(body)[0]

    def parse_response(self, body: bytes, opcode: OpCode) -> Response:
        """
        Decode a response body for the given opcode.

        Args:
            body: Frame body starting with the request id
            opcode: Opcode of the request this body answers

        Returns:
            The fully decoded response variant

        Raises:
            NotPrimaryError: Server does not own the key's partition
            ServerApplicationError: Any other non-success status
            DecodingError: Payload does not match the opcode's shape
        """
        reader = BinaryReader(body)
        reader.read_long()
        status = reader.read_int()

        if status != ResponseStatus.SUCCESS:
            message = reader.read_string() or ""
            if status == ResponseStatus.NOT_PRIMARY:
                raise NotPrimaryError(message)
            raise ServerApplicationError(status, message)

        response_type = RESPONSE_TYPES[opcode]
        if response_type is AckResponse:
            response = AckResponse()
        elif response_type is BoolResponse:
            response = BoolResponse(reader.read_bool())
        elif response_type is SizeResponse:
            response = SizeResponse(reader.read_long())
        elif response_type is ValueResponse:
            response = ValueResponse(reader.read_object_bytes())
        else:
            response = self._parse_partitions(reader)

        reader.expect_end()
        return response

    def _parse_partitions(self, reader: BinaryReader) -> PartitionsResponse:
        version = reader.read_long()
        partition_count = reader.read_int()
        node_count = reader.read_int()
        if node_count < 0:
            raise DecodingError(f"Negative node count {node_count}")
        nodes = []
        for _ in range(node_count):
            node_id = reader.read_int()
            host = reader.read_string()
            if host is None:
                raise DecodingError(f"Node {node_id} has no host")
            port = reader.read_int()
            count = reader.read_int()
            if count < 0:
                raise DecodingError(f"Negative partition count for node {node_id}")
            partitions = tuple(reader.read_int() for _ in range(count))
            nodes.append(NodePartitions(node_id=node_id, host=host, port=port, partitions=partitions))
        return PartitionsResponse(version=version, partition_count=partition_count, nodes=tuple(nodes))
