"""
GHSL tile naming utilities.

Purpose: Identify population raster tiles on disk
Decision log:
  - GHSL tile IDs are R{row}_C{col}, embedded in the GeoTIFF filename
  - A global (untiled) GeoTIFF is treated as a single tile named GLOBAL
  - Tiles are returned sorted by (row, col) so runs are reproducible
Date: 2025-01-14
"""

import re
from pathlib import Path
from typing import NamedTuple

TILE_ID_PATTERN = re.compile(r"R(\d+)_C(\d+)")
GLOBAL_TILE_ID = "GLOBAL"


class TileFile(NamedTuple):
    """A population raster file and the tile it covers."""

    tile_id: str
    path: Path


def parse_tile_id(tile_id: str) -> tuple[int, int]:
    """
    Parse tile ID string to row/column.

    Args:
        tile_id: Format "R5_C19"

    Returns:
        Tuple of (row, col)
    """
    match = TILE_ID_PATTERN.fullmatch(tile_id)
    if not match:
        raise ValueError(f"Not a GHSL tile id: {tile_id!r}")
    return int(match.group(1)), int(match.group(2))


def format_tile_id(row: int, col: int) -> str:
    """Format row/column to tile ID string like "R5_C19"."""
    return f"R{row}_C{col}"


def tile_id_from_filename(filename: str) -> str | None:
    """
    Extract tile ID from a GHSL filename.

    Args:
        filename: Like "GHS_POP_E2020_GLOBE_R2023A_54009_1000_V1_0_R5_C19.tif"

    Returns:
        Tile ID or None if the name carries no R/C suffix
    """
    matches = TILE_ID_PATTERN.findall(filename)
    if not matches:
        return None
    # Release tags like R2023A never match (trailing letter), so the last
    # R{n}_C{n} group is the tile suffix
    row, col = matches[-1]
    return format_tile_id(int(row), int(col))


def find_tile_files(directory: Path) -> list[TileFile]:
    """
    Find population raster files in a directory.

    Tiled files are keyed by their R/C suffix; if no tiled files exist, a
    single untiled GeoTIFF is accepted as the GLOBAL tile.

    Returns:
        List of TileFile sorted by (row, col)
    """
    tiles = []
    untiled = []
    for tif_file in sorted(directory.glob("*.tif")):
        tile_id = tile_id_from_filename(tif_file.name)
        if tile_id:
            tiles.append(TileFile(tile_id=tile_id, path=tif_file))
        else:
            untiled.append(tif_file)

    if tiles:
        return sorted(tiles, key=lambda t: parse_tile_id(t.tile_id))
    if len(untiled) == 1:
        return [TileFile(tile_id=GLOBAL_TILE_ID, path=untiled[0])]
    if untiled:
        raise ValueError(
            f"Found {len(untiled)} untiled GeoTIFFs in {directory}; expected one global file"
        )
    return []
