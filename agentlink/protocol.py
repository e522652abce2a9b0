"""Frame codec for agent traffic.

Two encodings share one request identity space:

- structured frames: UTF-8 JSON objects carrying an integer ``id`` field
- binary frames: an 8-byte header (request id as uint32 little-endian, then
  4 reserved bytes) followed by an opaque payload. A binary frame with an
  empty payload marks end-of-stream for that request id.
"""

from __future__ import annotations

import json
import struct
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .errors import MalformedFrameError

# "<II" = request id + reserved word, both uint32 little-endian
BINARY_HEADER = struct.Struct("<II")
HEADER_SIZE = BINARY_HEADER.size
MAX_REQUEST_ID = 0xFFFFFFFF


@dataclass(frozen=True, slots=True)
class InboundFrame:
    """Decoded inbound frame."""

    request_id: int
    payload: dict[str, Any] | bytes
    is_binary: bool

    @property
    def is_end_of_stream(self) -> bool:
        """True for an empty binary frame."""
        return self.is_binary and len(self.payload) == 0


def _check_request_id(request_id: int) -> None:
    if isinstance(request_id, bool) or not isinstance(request_id, int):
        raise ValueError(f"Request id must be an integer, got {type(request_id).__name__}")
    if not 0 <= request_id <= MAX_REQUEST_ID:
        raise ValueError(f"Request id {request_id} does not fit in 32 bits")


def encode_structured(fields: Mapping[str, Any], request_id: int) -> str:
    """Serialize a request mapping with its request id injected.

    Args:
        fields: JSON-serializable request fields (``type``, ``op``, ...)
        request_id: Identity assigned by the multiplexer

    Returns:
        JSON text ready to be sent as a TEXT frame.
    """
    _check_request_id(request_id)
    return json.dumps({**fields, "id": request_id})


def encode_binary(request_id: int, payload: bytes | None = None) -> bytes:
    """Build a binary frame for a request id.

    An empty or missing payload produces the bare header, which the peer
    reads as end-of-stream.
    """
    _check_request_id(request_id)
    header = BINARY_HEADER.pack(request_id, 0)
    if not payload:
        return header
    return header + bytes(payload)


def decode_inbound(data: str | bytes | bytearray | memoryview) -> InboundFrame:
    """Decode a TEXT or BINARY message into an InboundFrame.

    Raises:
        MalformedFrameError: If the frame is undersized, not valid JSON, or
            lacks an integer ``id``.
    """
    if isinstance(data, str):
        return _decode_structured(data)

    raw = bytes(data)
    if len(raw) < HEADER_SIZE:
        raise MalformedFrameError(
            f"Binary frame too short: {len(raw)} bytes, need {HEADER_SIZE}"
        )
    request_id, _reserved = BINARY_HEADER.unpack_from(raw)
    return InboundFrame(request_id=request_id, payload=raw[HEADER_SIZE:], is_binary=True)


def _decode_structured(text: str) -> InboundFrame:
    try:
        message = json.loads(text)
    except ValueError as err:
        raise MalformedFrameError(f"Invalid JSON frame: {err}") from err

    if not isinstance(message, dict):
        raise MalformedFrameError(
            f"Structured frame must be an object, got {type(message).__name__}"
        )

    request_id = message.get("id")
    # bool is a subclass of int
    if isinstance(request_id, bool) or not isinstance(request_id, int):
        raise MalformedFrameError("Structured frame has no integer id")

    return InboundFrame(request_id=request_id, payload=message, is_binary=False)
