#!/usr/bin/env python3
"""
wmx2obj.py
==========

Push Final Fantasy VIII world map geometry (wmx.obj) to Wavefront OBJ.

Segments are converted in file order. Every block emits its faces first and
then its vertices, so OBJ vertex numbering is cumulative across the whole run.

Usage:
    python3 wmx2obj.py wmx.obj world.obj
    python3 wmx2obj.py wmx.obj world.obj 0 31 --verbose \\
        --report reports/world_report.json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, TextIO

import numpy as np

from wmx_format import (
    ArgumentError,
    BLOCKS_PER_SEGMENT,
    FileOpenError,
    RawBlock,
    SEGMENT_MAX,
    SEGMENT_MIN,
    SEGMENTS_PER_ROW,
    SegmentReader,
    VERTICES_PER_POLYGON,
    WmxError,
    WriteError,
    block_world_offset,
    decode_block,
    limit_within_bounds_array,
    segment_world_offset,
)

# Map units to OBJ units.
SCALE = np.longdouble("0.001")


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------

@dataclass
class VertexIndexData:
    # Wavefront OBJ vertex indices start from 1
    vert_max: int = 1
    prev_vert_max: int = 1


@dataclass
class ConversionStats:
    segments: int = 0
    blocks: int = 0
    empty_blocks: int = 0
    faces: int = 0
    vertices: int = 0
    vert_max: int = 0
    elapsed_seconds: float = 0.0

    def to_report(self) -> Dict[str, object]:
        return asdict(self)


# ---------------------------------------------------------------------------
# OBJ output
# ---------------------------------------------------------------------------

def format_coordinate(value: np.longdouble) -> str:
    """Fixed three-decimal rendering, rounded at long double precision."""
    return np.format_float_positional(value, precision=3, unique=False, fractional=True, trim="k")


class ObjWriter:
    def __init__(self, out: TextIO):
        self.out = out

    def _write(self, line: str) -> None:
        try:
            self.out.write(line)
        except (OSError, ValueError) as exc:
            raise WriteError(f"Write failed: {exc}") from exc

    def face(self, a: int, b: int, c: int) -> None:
        self._write(f"f {a} {b} {c}\n")

    def vertex(self, x: np.longdouble, y: np.longdouble, z: np.longdouble) -> None:
        self._write(
            f"v {format_coordinate(x)} {format_coordinate(y)} {format_coordinate(z)}\n"
        )


# ---------------------------------------------------------------------------
# Geometry emission
# ---------------------------------------------------------------------------

def emit_polygons(block: RawBlock, index_data: VertexIndexData, writer: ObjWriter) -> int:
    """Write one face per polygon record and advance vert_max."""
    local = block.polygons[:, :VERTICES_PER_POLYGON].astype(np.int64)
    for row in local:
        verts: List[int] = []
        for value in row:
            vert = index_data.prev_vert_max + int(value)
            verts.append(vert)
            if vert > index_data.vert_max:
                index_data.vert_max = vert
        writer.face(*verts)
    return block.num_polys


def emit_vertices(block: RawBlock, x: int, z: int, writer: ObjWriter) -> int:
    """Write the block's vertices, shifted by the block origin (x, z) and scaled."""
    if block.num_verts == 0:
        return 0

    vertices = block.vertices
    xs = (x + limit_within_bounds_array(vertices["x"])).astype(np.longdouble) * SCALE
    ys = limit_within_bounds_array(vertices["y"]).astype(np.longdouble) * SCALE
    zs = (z + limit_within_bounds_array(vertices["z"])).astype(np.longdouble) * SCALE

    for vx, vy, vz in zip(xs, ys, zs):
        writer.vertex(vx, vy, vz)
    return block.num_verts


# ---------------------------------------------------------------------------
# Conversion driver
# ---------------------------------------------------------------------------

def convert_block(
    segment: memoryview,
    pos: int,
    x: int,
    z: int,
    index_data: VertexIndexData,
    writer: ObjWriter,
    stats: ConversionStats,
) -> None:
    block = decode_block(segment, pos)

    bx, bz = block_world_offset(pos)
    x += bx
    z += bz

    index_data.prev_vert_max = index_data.vert_max

    stats.faces += emit_polygons(block, index_data, writer)
    stats.vertices += emit_vertices(block, x, z, writer)

    # Legacy numbering pads every block by one, referenced or not.
    index_data.vert_max += 1

    stats.blocks += 1
    if block.num_polys == 0 and block.num_verts == 0:
        stats.empty_blocks += 1


def convert_segment(
    grid_index: int,
    reader: SegmentReader,
    index_data: VertexIndexData,
    writer: ObjWriter,
    stats: ConversionStats,
) -> None:
    segment = reader.read_next()
    x, z = segment_world_offset(grid_index)

    for pos in range(BLOCKS_PER_SEGMENT):
        convert_block(segment, pos, x, z, index_data, writer, stats)

    stats.segments += 1


def first_grid_index(start: int, end: int) -> int:
    """Grid slot for the first converted segment.

    Keeps the output model as close to (0, 0, 0) as possible: a range that
    spans several rows keeps its starting column, a single-row range is
    shifted to column 0.
    """
    if start // SEGMENTS_PER_ROW != end // SEGMENTS_PER_ROW:
        return start % SEGMENTS_PER_ROW
    return 0


def convert_to_obj(
    start: int,
    end: int,
    in_stream: BinaryIO,
    out_stream: TextIO,
    stats: Optional[ConversionStats] = None,
) -> ConversionStats:
    """Convert segments start..end (inclusive) from *in_stream* into OBJ text."""
    if stats is None:
        stats = ConversionStats()
    started = time.perf_counter()

    reader = SegmentReader(in_stream)
    reader.seek_to(start)

    index_data = VertexIndexData()
    writer = ObjWriter(out_stream)

    grid_index = first_grid_index(start, end)
    try:
        for segment_index in range(start, end + 1):
            logging.debug("Segment %d -> grid slot %d", segment_index, grid_index)
            try:
                convert_segment(grid_index, reader, index_data, writer, stats)
            except WmxError as exc:
                raise type(exc)(f"Segment {segment_index}: {exc}") from exc
            grid_index += 1
    finally:
        stats.vert_max = index_data.vert_max
        stats.elapsed_seconds = time.perf_counter() - started

    logging.info(
        "Converted %d segments: %d blocks (%d empty), %d faces, %d vertices",
        stats.segments, stats.blocks, stats.empty_blocks, stats.faces, stats.vertices,
    )
    return stats


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_segment_index(raw: str, minimum: int, maximum: int, label: str) -> int:
    try:
        value = int(raw, 10)
    except ValueError:
        raise ArgumentError(f"{label}: not an integer: {raw!r}") from None
    if value < minimum or value > maximum:
        raise ArgumentError(f"{label}: {value} is outside {minimum}-{maximum}")
    return value


def write_report(
    stats: ConversionStats,
    report_path: Path,
    start: int,
    end: int,
    error: Optional[str],
) -> None:
    report = {
        "start_segment": start,
        "end_segment": end,
        "status": "failed" if error else "ok",
        "error": error,
        **stats.to_report(),
    }
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2))
    logging.info("Report written to %s", report_path)


def run(
    input_path: Path,
    output_path: Path,
    start: int,
    end: int,
    stats: ConversionStats,
) -> ConversionStats:
    try:
        in_stream = open(input_path, "rb")
    except OSError as exc:
        raise FileOpenError(f"Failed to open input file: {exc}") from exc

    with in_stream:
        try:
            out_stream = open(output_path, "w", encoding="ascii", newline="\n")
        except OSError as exc:
            raise FileOpenError(f"Failed to open output file: {exc}") from exc

        with out_stream:
            print(f"Starting conversion of segments {start}-{end} to {output_path}")
            return convert_to_obj(start, end, in_stream, out_stream, stats)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Convert Final Fantasy VIII world map geometry (wmx.obj) to Wavefront OBJ."
    )
    parser.add_argument("input", type=Path, help="World map geometry file (wmx.obj)")
    parser.add_argument("output", type=Path, help="Wavefront OBJ file to write")
    parser.add_argument(
        "start", nargs="?", default=None,
        help=f"First segment to convert (default: {SEGMENT_MIN})",
    )
    parser.add_argument(
        "end", nargs="?", default=None,
        help=f"Last segment to convert, inclusive (default: {SEGMENT_MAX})",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--report", type=Path, default=None,
        help="Path for JSON conversion report",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        start = SEGMENT_MIN
        if args.start is not None:
            start = parse_segment_index(args.start, SEGMENT_MIN, SEGMENT_MAX, "Bad start segment")
        end = SEGMENT_MAX
        if args.end is not None:
            end = parse_segment_index(args.end, start, SEGMENT_MAX, "Bad end segment")
    except ArgumentError as exc:
        logging.error("%s", exc)
        return 1

    stats = ConversionStats()
    error: Optional[str] = None
    try:
        run(args.input, args.output, start, end, stats)
    except WmxError as exc:
        error = str(exc)
        logging.error("%s", exc)

    if args.report:
        write_report(stats, args.report, start, end, error)

    if error:
        logging.error("Conversion failed")
        return 1

    print("Conversion successful")
    return 0


if __name__ == "__main__":
    sys.exit(main())
