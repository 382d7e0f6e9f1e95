"""Transparent UART framing: 6-byte big-endian header plus payload.

Header layout::

    transaction_id (u16) | protocol_id (u16) | payload_length (u16)

The peripheral silently discards frames whose payload exceeds its buffer
(249 bytes is the largest observed to loop back). ``encode`` refuses such
payloads locally instead of letting them vanish on the air.

Each ``rx`` notification is decoded on its own. A frame split across two
notifications is not reassembled: the head decodes as incomplete, and a
tail fragment is parsed as if it began with a header, which may yield a
bogus frame. No buffering happens here.
"""

from __future__ import annotations

import struct

from mbble.core.errors import InvalidParameterError, PayloadTooLargeError
from mbble.core.model import Frame

HEADER = struct.Struct(">HHH")
HEADER_SIZE = HEADER.size
MODBUS_PROTOCOL_ID = 0x0000
LOOPBACK_PROTOCOL_ID = 0xFFFF
MIN_MODBUS_PAYLOAD = 2
DEFAULT_MAX_PAYLOAD = 249
DEFAULT_CHUNK_SIZE = 20


def encode(
    transaction_id: int,
    protocol_id: int,
    payload: bytes,
    *,
    max_payload: int = DEFAULT_MAX_PAYLOAD,
) -> bytes:
    for name, value in (("transaction_id", transaction_id), ("protocol_id", protocol_id)):
        if not 0 <= value <= 0xFFFF:
            raise InvalidParameterError(f"{name} must fit in 16 bits, got {value}")
    if len(payload) > max_payload:
        raise PayloadTooLargeError(len(payload), max_payload)
    return HEADER.pack(transaction_id, protocol_id, len(payload)) + bytes(payload)


def decode(data: bytes) -> Frame | None:
    """Parse one frame from the start of ``data``; None while incomplete.

    Bytes past the declared payload length are ignored.
    """
    if len(data) < HEADER_SIZE:
        return None
    transaction_id, protocol_id, length = HEADER.unpack_from(data)
    end = HEADER_SIZE + length
    if len(data) < end:
        return None
    return Frame(
        transaction_id=transaction_id,
        protocol_id=protocol_id,
        payload=bytes(data[HEADER_SIZE:end]),
    )


def chunk(data: bytes, size: int = DEFAULT_CHUNK_SIZE) -> list[bytes]:
    if size < 1:
        raise InvalidParameterError(f"chunk size must be positive, got {size}")
    return [bytes(data[index:index + size]) for index in range(0, len(data), size)]
