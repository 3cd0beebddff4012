#!/usr/bin/env python3
"""
wmx_format.py
=============

Binary layout of the Final Fantasy VIII world map geometry dump (wmx.obj).

The file is a flat run of fixed-size segments. Each segment starts with a
4-byte group id followed by a 16-entry table of little-endian block offsets.
Every block stores:

    u8   num_polys
    u8   num_verts
    u8   reserved[2]
    poly polygons[num_polys]   # 16 bytes, first 3 bytes are local vertex indices
    vert vertices[num_verts]   # 8 bytes, 3 x u16 coordinates + u16 unused

Segments are laid out on a 32-wide grid, blocks on a 4x4 grid inside their
segment.
"""

from __future__ import annotations

import io
import struct
from dataclasses import dataclass
from typing import BinaryIO, Tuple

import numpy as np


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SEGMENT_SIZE = 0x9000
SEGMENT_MIN = 0
SEGMENT_MAX = 834
SEGMENTS_PER_ROW = 32
SEGMENT_BOUNDS = 8192

BLOCKS_PER_SEGMENT = 16
BLOCKS_PER_ROW = 4
BLOCK_SIZE = SEGMENT_SIZE // BLOCKS_PER_SEGMENT
BLOCK_OFFSET_MAX = SEGMENT_SIZE - BLOCK_SIZE
BLOCK_BOUNDS = SEGMENT_BOUNDS // BLOCKS_PER_ROW

GROUP_ID_SIZE = 4
BLOCK_OFFSET_SIZE = 4
BLOCK_HEADER_SIZE = 4
POLYGON_SIZE = 16
VERTEX_SIZE = 8
VERTICES_PER_POLYGON = 3

VERTEX_DTYPE = np.dtype([
    ("x", "<u2"),
    ("y", "<u2"),
    ("z", "<u2"),
    ("pad", "<u2"),
])


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class WmxError(Exception):
    pass


class ArgumentError(WmxError):
    pass


class FileOpenError(WmxError):
    pass


class SeekError(WmxError):
    pass


class ReadError(WmxError):
    pass


class InvalidBlockOffset(WmxError):
    pass


class InvalidRecordBounds(WmxError):
    pass


class WriteError(WmxError):
    pass


# ---------------------------------------------------------------------------
# Grid helpers
# ---------------------------------------------------------------------------

def segment_grid_position(index: int) -> Tuple[int, int]:
    """Return (row, col) of a segment on the world grid."""
    return index // SEGMENTS_PER_ROW, index % SEGMENTS_PER_ROW


def segment_world_offset(index: int) -> Tuple[int, int]:
    """Return the (x, z) origin of a segment in map units."""
    row, col = segment_grid_position(index)
    return col * SEGMENT_BOUNDS, row * SEGMENT_BOUNDS


def block_world_offset(pos: int) -> Tuple[int, int]:
    """Return the (x, z) origin of a block relative to its segment."""
    return pos % BLOCKS_PER_ROW * BLOCK_BOUNDS, pos // BLOCKS_PER_ROW * BLOCK_BOUNDS


def limit_within_bounds(value: int) -> int:
    """Fold a raw u16 coordinate that wrapped below zero back into range.

    Values up to BLOCK_BOUNDS are kept; anything larger is the two's
    complement of a small negative displacement and is negated mod 2**16.
    """
    return value if value <= BLOCK_BOUNDS else (~value + 1) & 0xFFFF


def limit_within_bounds_array(values: np.ndarray) -> np.ndarray:
    """Vectorised limit_within_bounds() over raw u16 coordinates."""
    wide = values.astype(np.int64)
    return np.where(wide <= BLOCK_BOUNDS, wide, (-wide) & 0xFFFF)


# ---------------------------------------------------------------------------
# Segment reading
# ---------------------------------------------------------------------------

class SegmentReader:
    """Sequential reader over consecutive segments sharing one buffer."""

    def __init__(self, stream: BinaryIO):
        self.stream = stream
        self.buffer = bytearray(SEGMENT_SIZE)
        self._view = memoryview(self.buffer).toreadonly()

    def seek_to(self, index: int) -> None:
        if index < 0:
            raise SeekError(f"Seek failed: negative segment index {index}")
        try:
            if not self.stream.seekable():
                raise SeekError("Seek failed: input stream is not seekable")
            self.stream.seek(index * SEGMENT_SIZE, io.SEEK_SET)
        except (OSError, ValueError) as exc:
            raise SeekError(f"Seek failed: {exc}") from exc

    def read_next(self) -> memoryview:
        """Fill the shared buffer with the next segment and return a read-only view."""
        target = memoryview(self.buffer)
        filled = 0
        while filled < SEGMENT_SIZE:
            try:
                count = self.stream.readinto(target[filled:])
            except (OSError, ValueError) as exc:
                raise ReadError(f"Read failed: {exc}") from exc
            if count is None:
                raise ReadError("Read failed: no data available on non-blocking stream")
            if count == 0:
                raise ReadError(
                    f"Read failed: got {filled} of {SEGMENT_SIZE} bytes (EOF was reached)"
                )
            filled += count
        return self._view


# ---------------------------------------------------------------------------
# Block decoding
# ---------------------------------------------------------------------------

@dataclass
class RawBlock:
    pos: int
    offset: int
    num_polys: int
    num_verts: int
    polygons: np.ndarray
    vertices: np.ndarray


def read_block_offset(segment: memoryview, pos: int) -> int:
    offset_loc = GROUP_ID_SIZE + pos * BLOCK_OFFSET_SIZE
    return struct.unpack_from("<I", segment, offset_loc)[0]


def decode_block(segment: memoryview, pos: int) -> RawBlock:
    """Resolve block *pos* through the offset table and slice out its records."""
    if not 0 <= pos < BLOCKS_PER_SEGMENT:
        raise ValueError(f"block position out of range: {pos}")

    offset = read_block_offset(segment, pos)
    if offset > BLOCK_OFFSET_MAX:
        raise InvalidBlockOffset(
            f"Block offset too large: block {pos} offset 0x{offset:X} > 0x{BLOCK_OFFSET_MAX:X}"
        )

    num_polys = segment[offset]
    num_verts = segment[offset + 1]

    polys_start = offset + BLOCK_HEADER_SIZE
    verts_start = polys_start + num_polys * POLYGON_SIZE
    end = verts_start + num_verts * VERTEX_SIZE
    if end > len(segment):
        raise InvalidRecordBounds(
            f"Block {pos} records end at 0x{end:X}, past segment size 0x{len(segment):X} "
            f"(polys={num_polys}, verts={num_verts})"
        )

    polygons = np.frombuffer(
        segment, dtype=np.uint8, count=num_polys * POLYGON_SIZE, offset=polys_start
    ).reshape(num_polys, POLYGON_SIZE)
    vertices = np.frombuffer(segment, dtype=VERTEX_DTYPE, count=num_verts, offset=verts_start)

    return RawBlock(
        pos=pos,
        offset=offset,
        num_polys=num_polys,
        num_verts=num_verts,
        polygons=polygons,
        vertices=vertices,
    )
