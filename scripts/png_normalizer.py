#!/usr/bin/env python3
import logging
import struct
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional, Tuple

PNG_SIGNATURE = b'\x89PNG\r\n\x1a\n'
BYTES_PER_PIXEL = 4

logger = logging.getLogger(__name__)


class PngNormalizerError(ValueError):
    pass


class CorruptPNGError(PngNormalizerError):
    """Raised when the input cannot be read as an iOS-optimized PNG."""


class ChunkKind(Enum):
    HEADER = b'IHDR'
    PIXEL_DATA = b'IDAT'
    VENDOR_EXTENSION = b'CgBI'
    TRAILER = b'IEND'
    OTHER = None

    @classmethod
    def from_type(cls, chunk_type: bytes) -> "ChunkKind":
        for kind in cls:
            if kind.value == chunk_type:
                return kind
        return cls.OTHER


@dataclass
class Chunk:
    type: bytes
    length: int
    payload: bytes
    crc: int
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def kind(self) -> ChunkKind:
        return ChunkKind.from_type(self.type)


def iter_raw_chunks(data: bytes, offset: int = len(PNG_SIGNATURE)) -> Iterator[Tuple[bytes, bytes, int]]:
    """Yield (type, payload, crc) for every chunk framed in data from offset on."""
    while offset < len(data):
        if offset + 8 > len(data):
            raise CorruptPNGError(f"Truncated chunk header at offset {offset}")
        chunk_length, chunk_type = struct.unpack('>I4s', data[offset:offset+8])
        chunk_end = offset + chunk_length + 12
        if chunk_end > len(data):
            raise CorruptPNGError(
                f"Chunk {chunk_type!r} at offset {offset} claims {chunk_length} bytes, "
                f"only {len(data) - offset - 12} available"
            )
        payload = data[offset+8:chunk_end-4]
        crc = struct.unpack('>I', data[chunk_end-4:chunk_end])[0]
        yield chunk_type, payload, crc
        offset = chunk_end


def is_ios_optimized_png(data: bytes) -> bool:
    """Check if the PNG is iOS-optimized by looking for CgBI chunk.

    Raises CorruptPNGError if the chunk framing ends early.
    """
    if not data.startswith(PNG_SIGNATURE):
        return False
    for chunk_type, _, _ in iter_raw_chunks(data):
        if chunk_type == ChunkKind.VENDOR_EXTENSION.value:
            return True
        if chunk_type == ChunkKind.TRAILER.value:
            break
    return False


def _read_dimensions(payload: bytes) -> Tuple[int, int]:
    if len(payload) < 8:
        raise CorruptPNGError(f"IHDR payload too short: {len(payload)} bytes")
    width, height = struct.unpack('>II', payload[:8])
    if not width or not height:
        raise CorruptPNGError(f"Invalid image dimensions {width}x{height}")
    return width, height


def parse_chunks(data: bytes, offset: int = len(PNG_SIGNATURE)) -> List[Chunk]:
    """
    Split the chunk stream into records.

    The CgBI chunk is dropped, consecutive IDAT chunks come back as a single
    record carrying the dimensions of the preceding IHDR, and parsing ends
    with the IEND chunk.
    """
    chunks: List[Chunk] = []
    dimensions: Tuple[Optional[int], Optional[int]] = (None, None)
    pending: List[bytes] = []
    pending_crc = 0

    def flush_pixel_data():
        merged = b''.join(pending)
        chunks.append(Chunk(ChunkKind.PIXEL_DATA.value, len(merged), merged, pending_crc, *dimensions))
        logger.debug(f"Merged {len(pending)} IDAT chunk(s) into {len(merged)} bytes")
        pending.clear()

    found_trailer = False
    for chunk_type, payload, crc in iter_raw_chunks(data, offset):
        kind = ChunkKind.from_type(chunk_type)

        if kind is ChunkKind.VENDOR_EXTENSION:
            logger.debug("Dropping CgBI chunk")
            continue

        if kind is ChunkKind.PIXEL_DATA:
            if not pending:
                pending_crc = crc
            pending.append(payload)
            continue

        if pending:
            flush_pixel_data()

        if kind is ChunkKind.HEADER:
            if dimensions != (None, None):
                raise CorruptPNGError("Duplicate IHDR chunk")
            dimensions = _read_dimensions(payload)

        chunks.append(Chunk(chunk_type, len(payload), payload, crc))

        if kind is ChunkKind.TRAILER:
            found_trailer = True
            break

    if pending:
        flush_pixel_data()
    if not found_trailer:
        logger.warning("PNG stream ended without an IEND chunk")
    return chunks


def swap_channels(pixels: bytes, width: int, height: int) -> bytearray:
    """Swap the first and third byte of every pixel, leaving each scanline's filter byte alone."""
    stride = width * BYTES_PER_PIXEL
    swapped = bytearray(pixels)
    for y in range(height):
        start = y * (stride + 1) + 1
        row = pixels[start:start + stride]
        swapped[start:start + stride:4] = row[2::4]
        swapped[start + 2:start + stride:4] = row[0::4]
    return swapped


def _inflate_pixels(chunk: Chunk) -> bytes:
    if chunk.width is None or chunk.height is None:
        raise CorruptPNGError("IDAT chunk found before IHDR")

    buffer_size = chunk.width * chunk.height * BYTES_PER_PIXEL + chunk.height
    inflater = zlib.decompressobj(-zlib.MAX_WBITS)
    try:
        pixels = inflater.decompress(chunk.payload, buffer_size)
    except zlib.error as e:
        raise CorruptPNGError(f"Could not inflate IDAT data: {e}") from e

    if len(pixels) != buffer_size:
        raise CorruptPNGError(
            f"IDAT data inflated to {len(pixels)} bytes, expected {buffer_size} "
            f"for {chunk.width}x{chunk.height}"
        )
    return pixels


def reconstruct_chunks(buffer: bytearray, chunks: List[Chunk], level: int = zlib.Z_DEFAULT_COMPRESSION) -> bytearray:
    """Append every chunk to buffer, rebuilding the IDAT payload as standard RGBA."""
    for chunk in chunks:
        payload, crc = chunk.payload, chunk.crc

        if chunk.kind is ChunkKind.PIXEL_DATA:
            pixels = swap_channels(_inflate_pixels(chunk), chunk.width, chunk.height)
            payload = zlib.compress(bytes(pixels), level)
            crc = zlib.crc32(payload, zlib.crc32(chunk.type))
            logger.debug(f"Rebuilt IDAT: {chunk.length} -> {len(payload)} bytes")

        buffer += struct.pack('>I', len(payload))
        buffer += chunk.type
        buffer += payload
        buffer += struct.pack('>I', crc)
    return buffer


def normalize(data: bytes, level: int = zlib.Z_DEFAULT_COMPRESSION) -> bytes:
    """Convert an iOS-optimized PNG into a standard PNG."""
    if data[:len(PNG_SIGNATURE)] != PNG_SIGNATURE:
        raise CorruptPNGError("Missing PNG signature")
    output = bytearray(PNG_SIGNATURE)
    chunks = parse_chunks(data, len(PNG_SIGNATURE))
    reconstruct_chunks(output, chunks, level)
    return bytes(output)
