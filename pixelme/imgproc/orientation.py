"""EXIF orientation extraction straight from JPEG bytes.

Only the handful of structures needed to reach the orientation tag are parsed:
the SOI signature, the marker segment chain, the APP1 ``Exif`` payload, the TIFF
header and the first image file directory. Anything unexpected degrades to
orientation 1 so an upload is never blocked by broken metadata.
"""

from __future__ import annotations

import logging
import struct

logger = logging.getLogger(__name__)

DEFAULT_ORIENTATION = 1

JPEG_SOI = 0xFFD8
APP1_MARKER = 0xFFE1
SOS_MARKER = 0xFFDA
EXIF_MAGIC = b"Exif"
TIFF_HEADER_OFFSET = 6
LITTLE_ENDIAN_MARK = b"II"
ORIENTATION_TAG = 0x0112
IFD_ENTRY_SIZE = 12


class OrientationParseError(ValueError):
    """Raised internally when the metadata container is malformed."""


def read_orientation(data: bytes) -> int:
    """Return the EXIF orientation code (1..8) of ``data``, defaulting to 1."""

    try:
        return _parse_orientation(memoryview(data))
    except (OrientationParseError, struct.error, IndexError) as exc:
        logger.debug("Could not read EXIF orientation: %s", exc)
        return DEFAULT_ORIENTATION


def _parse_orientation(buffer: memoryview) -> int:
    if len(buffer) < 4 or _u16(buffer, 0, ">") != JPEG_SOI:
        return DEFAULT_ORIENTATION

    offset = 2
    while offset + 4 <= len(buffer):
        marker = _u16(buffer, offset, ">")
        if marker >> 8 != 0xFF:
            raise OrientationParseError(f"expected a marker at offset {offset}")
        if marker == SOS_MARKER:
            break
        segment_length = _u16(buffer, offset + 2, ">")
        if segment_length < 2:
            raise OrientationParseError(f"segment length {segment_length} at offset {offset}")
        if marker == APP1_MARKER:
            payload = buffer[offset + 4 : offset + 2 + segment_length]
            return _orientation_from_exif(payload)
        offset += 2 + segment_length

    return DEFAULT_ORIENTATION


def _orientation_from_exif(payload: memoryview) -> int:
    if len(payload) < TIFF_HEADER_OFFSET + 8:
        raise OrientationParseError("APP1 payload is truncated")
    if bytes(payload[:4]) != EXIF_MAGIC:
        return DEFAULT_ORIENTATION

    byte_order = "<" if bytes(payload[TIFF_HEADER_OFFSET : TIFF_HEADER_OFFSET + 2]) == LITTLE_ENDIAN_MARK else ">"
    ifd_offset = TIFF_HEADER_OFFSET + _u32(payload, TIFF_HEADER_OFFSET + 4, byte_order)
    tag_count = _u16(payload, ifd_offset, byte_order)

    for index in range(tag_count):
        entry = ifd_offset + 2 + index * IFD_ENTRY_SIZE
        if _u16(payload, entry, byte_order) != ORIENTATION_TAG:
            continue
        orientation = _u16(payload, entry + 8, byte_order)
        if not 1 <= orientation <= 8:
            raise OrientationParseError(f"orientation value {orientation} is out of range")
        logger.debug("EXIF orientation detected: %s", orientation)
        return orientation

    return DEFAULT_ORIENTATION


def _u16(buffer: memoryview, offset: int, byte_order: str) -> int:
    return struct.unpack_from(f"{byte_order}H", buffer, offset)[0]


def _u32(buffer: memoryview, offset: int, byte_order: str) -> int:
    return struct.unpack_from(f"{byte_order}I", buffer, offset)[0]
