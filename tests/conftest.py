import struct
import zlib

import pytest

SIGNATURE = b'\x89PNG\r\n\x1a\n'
CGBI_PAYLOAD = b'\x50\x00\x20\x02'


def build_chunk(chunk_type: bytes, payload: bytes) -> bytes:
    crc = zlib.crc32(chunk_type + payload)
    return struct.pack('>I', len(payload)) + chunk_type + payload + struct.pack('>I', crc)


def raw_deflate(data: bytes) -> bytes:
    compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -zlib.MAX_WBITS)
    return compressor.compress(data) + compressor.flush()


def scanlines(rows, filters=None) -> bytes:
    """Serialize rows of 4-tuples, each row prefixed with its filter byte (0 by default)."""
    out = bytearray()
    for y, row in enumerate(rows):
        out.append(filters[y] if filters else 0)
        for pixel in row:
            out.extend(pixel)
    return bytes(out)


def build_png(rows, cgbi=True, idat_parts=1, filters=None, extra_chunks=(), compress=raw_deflate):
    height = len(rows)
    width = len(rows[0])
    ihdr = struct.pack('>IIBBBBB', width, height, 8, 6, 0, 0, 0)
    stream = compress(scanlines(rows, filters))

    size = -(-len(stream) // idat_parts)
    parts = [stream[i:i + size] for i in range(0, len(stream), size)]

    data = bytearray(SIGNATURE)
    if cgbi:
        data += build_chunk(b'CgBI', CGBI_PAYLOAD)
    data += build_chunk(b'IHDR', ihdr)
    for chunk_type, payload in extra_chunks:
        data += build_chunk(chunk_type, payload)
    for part in parts:
        data += build_chunk(b'IDAT', part)
    data += build_chunk(b'IEND', b'')
    return bytes(data)


@pytest.fixture
def make_png():
    return build_png


@pytest.fixture
def make_chunk():
    return build_chunk


@pytest.fixture
def deflate_raw():
    return raw_deflate


@pytest.fixture
def bgra_rows():
    """A 3x2 image stored BGRA, as Apple's optimizer writes it."""
    return [
        [(10, 20, 30, 255), (40, 50, 60, 255), (70, 80, 90, 128)],
        [(1, 2, 3, 4), (200, 150, 100, 255), (0, 0, 255, 255)],
    ]
