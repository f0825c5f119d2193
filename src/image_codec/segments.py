"""
Image Segment Codec
====================
Parses and re-emits the narrow subset of JPEG segments needed to carry a
payload in the comment field of an otherwise untouched image.

Stream layout:
    FF D8                      start of image
    FF <type> <len:2> payload  segments (len counts itself, not the marker)
    FF DA <len:2> payload      start of scan, last segment parsed
    ...                        entropy coded scan data (opaque)
    FF D9                      end of image

Only COM, DQT, SOF0, DHT and SOS are kept. Anything else (APPn, DRI, ...)
is dropped on re-encode.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List, Optional, Tuple, Union

from loguru import logger


MARKER_PREFIX = 0xFF
SOI = 0xD8
EOI = 0xD9
COM = 0xFE
SOF0 = 0xC0
DQT = 0xDB
DHT = 0xC4
SOS = 0xDA

START_MARKER = bytes([MARKER_PREFIX, SOI])
END_MARKER = bytes([MARKER_PREFIX, EOI])

MAX_TABLE_SEGMENTS = 10
MAX_PAYLOAD_SIZE = 0xFFFF - 2

SEGMENT_HEADER = struct.Struct(">BBH")


class FormatError(ValueError):
    """The byte stream is not an image this codec can handle."""

    def __init__(self, reason: str, offset: Optional[int] = None):
        message = reason if offset is None else f"{reason} at {offset}"
        super().__init__(message)
        self.reason = reason
        self.offset = offset


@dataclass(frozen=True)
class ImageRecord:
    """
    Structured form of an image.

    Immutable; use ``with_comment`` to get a copy carrying a new comment.
    """
    comment: bytes = b""
    start_of_frame: bytes = b""
    start_of_scan: bytes = b""
    quantization_tables: Tuple[bytes, ...] = field(default_factory=tuple)
    huffman_tables: Tuple[bytes, ...] = field(default_factory=tuple)
    scan_data: bytes = b""

    def with_comment(self, comment: Union[bytes, str]) -> ImageRecord:
        if isinstance(comment, str):
            comment = comment.encode("ascii")
        return replace(self, comment=comment)


def _append_table(tables: List[bytes], payload: bytes, kind: str) -> None:
    if len(tables) >= MAX_TABLE_SEGMENTS:
        raise FormatError(f"too many {kind} segments")
    tables.append(payload)


def decode(data: bytes) -> ImageRecord:
    """
    Parse an image into an ImageRecord.

    Args:
        data: Complete image file contents

    Returns:
        Parsed record

    Raises:
        FormatError: Bad header/footer, malformed segment or too many tables
    """
    data = bytes(data)
    if len(data) < 4 or data[:2] != START_MARKER or data[-2:] != END_MARKER:
        raise FormatError("bad header or footer")

    end = len(data) - 2
    offset = 2

    comment = b""
    start_of_frame = b""
    start_of_scan: Optional[bytes] = None
    quantization: List[bytes] = []
    huffman: List[bytes] = []

    while start_of_scan is None:
        if offset + SEGMENT_HEADER.size > end:
            raise FormatError("truncated segment", offset)
        prefix, segment, length = SEGMENT_HEADER.unpack_from(data, offset)
        if prefix != MARKER_PREFIX:
            raise FormatError("expected marker", offset)
        payload_start = offset + SEGMENT_HEADER.size
        payload_end = offset + 2 + length
        if length < 2 or payload_end > end:
            raise FormatError("truncated segment", offset)
        payload = data[payload_start:payload_end]

        if segment == COM:
            comment = payload
        elif segment == SOF0:
            start_of_frame = payload
        elif segment == DQT:
            _append_table(quantization, payload, "quantization")
        elif segment == DHT:
            _append_table(huffman, payload, "huffman")
        elif segment == SOS:
            start_of_scan = payload
        else:
            logger.trace(f"Skipping segment 0x{segment:02X} ({length} bytes) at {offset}")

        offset = payload_end

    return ImageRecord(
        comment=comment,
        start_of_frame=start_of_frame,
        start_of_scan=start_of_scan,
        quantization_tables=tuple(quantization),
        huffman_tables=tuple(huffman),
        scan_data=data[offset:end],
    )


def encode_segment(segment: int, payload: bytes) -> bytes:
    """Wrap a payload as ``FF <type> <len> payload``."""
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise ValueError(f"Segment 0x{segment:02X} payload too large: {len(payload)} bytes")
    return SEGMENT_HEADER.pack(MARKER_PREFIX, segment, len(payload) + 2) + payload


def encode(record: ImageRecord) -> bytes:
    """
    Serialize a record in canonical segment order.

    COM and SOS are always written, even when empty.
    """
    parts = [START_MARKER, encode_segment(COM, record.comment)]
    parts.extend(encode_segment(DQT, table) for table in record.quantization_tables)
    parts.append(encode_segment(SOF0, record.start_of_frame))
    parts.extend(encode_segment(DHT, table) for table in record.huffman_tables)
    parts.append(encode_segment(SOS, record.start_of_scan))
    parts.append(record.scan_data)
    parts.append(END_MARKER)
    return b"".join(parts)


def load_image(path: Union[str, Path]) -> ImageRecord:
    """
    Read and decode an image file.

    Raises:
        FileNotFoundError: File does not exist
        FormatError: File is not a usable image
    """
    path = Path(path)
    record = decode(path.read_bytes())
    logger.debug(
        f"Loaded {path.name}: {len(record.quantization_tables)} DQT, "
        f"{len(record.huffman_tables)} DHT, {len(record.scan_data)} bytes of scan data"
    )
    return record
