#!/usr/bin/env python3
import io
import struct
import unittest
from pathlib import Path
import sys

import numpy as np


SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

import wmx_format as wmx


def _segment_with_block(pos: int, offset: int, header: bytes = b"\x00\x00\x00\x00") -> bytearray:
    buf = bytearray(wmx.SEGMENT_SIZE)
    struct.pack_into("<I", buf, wmx.GROUP_ID_SIZE + pos * wmx.BLOCK_OFFSET_SIZE, offset)
    buf[offset:offset + len(header)] = header
    return buf


class _UnseekableBytesIO(io.BytesIO):
    def seekable(self) -> bool:
        return False


class GridTests(unittest.TestCase):
    def test_segment_grid_position(self) -> None:
        self.assertEqual(wmx.segment_grid_position(0), (0, 0))
        self.assertEqual(wmx.segment_grid_position(31), (0, 31))
        self.assertEqual(wmx.segment_grid_position(33), (1, 1))
        self.assertEqual(wmx.segment_grid_position(834), (26, 2))

    def test_segment_world_offset_is_col_row_scaled(self) -> None:
        for index in (0, 1, 32, 417, 834):
            row, col = index // 32, index % 32
            self.assertEqual(wmx.segment_world_offset(index), (col * 8192, row * 8192))

    def test_block_world_offset(self) -> None:
        self.assertEqual(wmx.block_world_offset(0), (0, 0))
        self.assertEqual(wmx.block_world_offset(3), (6144, 0))
        self.assertEqual(wmx.block_world_offset(5), (2048, 2048))
        self.assertEqual(wmx.block_world_offset(15), (6144, 6144))

    def test_derived_sizes(self) -> None:
        self.assertEqual(wmx.SEGMENT_SIZE, 36864)
        self.assertEqual(wmx.BLOCK_SIZE, 2304)
        self.assertEqual(wmx.BLOCK_OFFSET_MAX, 34560)
        self.assertEqual(wmx.BLOCK_BOUNDS, 2048)


class FoldIntoBoundsTests(unittest.TestCase):
    def test_values_inside_bounds_are_kept(self) -> None:
        for value in (0, 1, 1024, 2048):
            self.assertEqual(wmx.limit_within_bounds(value), value)

    def test_wrapped_values_are_negated(self) -> None:
        self.assertEqual(wmx.limit_within_bounds(65535), 1)
        self.assertEqual(wmx.limit_within_bounds(65534), 2)
        self.assertEqual(wmx.limit_within_bounds(0x10000 - 300), 300)
        self.assertEqual(wmx.limit_within_bounds(2049), 63487)

    def test_array_version_matches_scalar(self) -> None:
        raw = np.array([0, 7, 2048, 2049, 30000, 65000, 65535], dtype="<u2")
        expected = [wmx.limit_within_bounds(int(v)) for v in raw]
        self.assertEqual(wmx.limit_within_bounds_array(raw).tolist(), expected)


class SegmentReaderTests(unittest.TestCase):
    def test_seek_then_read_sequential_segments(self) -> None:
        data = b"".join(bytes([index]) * wmx.SEGMENT_SIZE for index in range(3))
        reader = wmx.SegmentReader(io.BytesIO(data))
        reader.seek_to(1)

        first = reader.read_next()
        self.assertEqual(len(first), wmx.SEGMENT_SIZE)
        self.assertEqual(first[0], 1)
        second = reader.read_next()
        self.assertEqual(second[wmx.SEGMENT_SIZE - 1], 2)

    def test_buffer_is_reused_and_read_only(self) -> None:
        data = bytes(wmx.SEGMENT_SIZE * 2)
        reader = wmx.SegmentReader(io.BytesIO(data))
        reader.seek_to(0)
        first = reader.read_next()
        second = reader.read_next()
        self.assertIs(first.obj, second.obj)
        self.assertTrue(first.readonly)
        with self.assertRaises(TypeError):
            first[0] = 1

    def test_short_read_reports_eof(self) -> None:
        reader = wmx.SegmentReader(io.BytesIO(bytes(wmx.SEGMENT_SIZE - 10)))
        reader.seek_to(0)
        with self.assertRaises(wmx.ReadError) as ctx:
            reader.read_next()
        self.assertIn("EOF was reached", str(ctx.exception))

    def test_seek_past_end_fails_on_read(self) -> None:
        reader = wmx.SegmentReader(io.BytesIO(bytes(wmx.SEGMENT_SIZE)))
        reader.seek_to(5)
        with self.assertRaises(wmx.ReadError):
            reader.read_next()

    def test_unseekable_stream_raises_seek_error(self) -> None:
        reader = wmx.SegmentReader(_UnseekableBytesIO(bytes(wmx.SEGMENT_SIZE)))
        with self.assertRaises(wmx.SeekError):
            reader.seek_to(0)

    def test_closed_stream_raises_seek_error(self) -> None:
        stream = io.BytesIO(bytes(wmx.SEGMENT_SIZE))
        stream.close()
        with self.assertRaises(wmx.SeekError):
            wmx.SegmentReader(stream).seek_to(0)


class DecodeBlockTests(unittest.TestCase):
    def test_decodes_polygons_and_vertices(self) -> None:
        offset = 0x44
        polygon = bytes([0, 1, 2]) + bytes(range(100, 113))
        vertices = struct.pack("<4H", 10, 20, 30, 0xAAAA) + struct.pack("<4H", 65535, 0, 2048, 0)
        header = bytes([1, 2, 0xEE, 0xEE]) + polygon + vertices
        segment = memoryview(bytes(_segment_with_block(4, offset, header)))

        block = wmx.decode_block(segment, 4)

        self.assertEqual(block.offset, offset)
        self.assertEqual(block.num_polys, 1)
        self.assertEqual(block.num_verts, 2)
        self.assertEqual(block.polygons.shape, (1, wmx.POLYGON_SIZE))
        self.assertEqual(block.polygons[0, :3].tolist(), [0, 1, 2])
        self.assertEqual(block.vertices["x"].tolist(), [10, 65535])
        self.assertEqual(block.vertices["y"].tolist(), [20, 0])
        self.assertEqual(block.vertices["z"].tolist(), [30, 2048])

    def test_offset_at_limit_is_accepted(self) -> None:
        segment = memoryview(bytes(_segment_with_block(0, wmx.BLOCK_OFFSET_MAX)))
        block = wmx.decode_block(segment, 0)
        self.assertEqual(block.offset, wmx.BLOCK_OFFSET_MAX)
        self.assertEqual(block.num_polys, 0)
        self.assertEqual(block.num_verts, 0)

    def test_offset_past_limit_is_rejected(self) -> None:
        buf = bytearray(wmx.SEGMENT_SIZE)
        struct.pack_into("<I", buf, wmx.GROUP_ID_SIZE + 7 * 4, wmx.BLOCK_OFFSET_MAX + 1)
        with self.assertRaises(wmx.InvalidBlockOffset):
            wmx.decode_block(memoryview(bytes(buf)), 7)

    def test_records_past_segment_end_are_rejected(self) -> None:
        header = bytes([255, 255, 0, 0])
        segment = memoryview(bytes(_segment_with_block(2, wmx.BLOCK_OFFSET_MAX, header)))
        with self.assertRaises(wmx.InvalidRecordBounds):
            wmx.decode_block(segment, 2)

    def test_unset_offset_reads_empty_header_at_group_id(self) -> None:
        block = wmx.decode_block(memoryview(bytes(wmx.SEGMENT_SIZE)), 9)
        self.assertEqual(block.offset, 0)
        self.assertEqual(block.num_polys, 0)
        self.assertEqual(len(block.vertices), 0)


if __name__ == "__main__":
    unittest.main()
