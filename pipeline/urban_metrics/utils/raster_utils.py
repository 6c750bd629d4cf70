"""
Raster processing utilities.

Purpose: Load GHSL population tiles and extract the pixels under a polygon
Decision log:
  - Use rioxarray for Dask-integrated raster loading
  - Nodata is normalised to NaN once, when a tile is built
  - Pixels are read through a window around the polygon's bounds; the global
    1km raster is never materialised as a whole
  - Pixel selection follows the centroid rule (all_touched=False), both for
    point sampling and for clipping
  - Clipping returns a ClipOutcome instead of raising: topology failures on
    degenerate boundaries are common and must not stop a run
Date: 2025-01-14
"""

from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple

import numpy as np
import pyproj
import rioxarray
import shapely
import xarray as xr
from affine import Affine
from rasterio.features import geometry_mask
from rasterio.transform import from_origin

from .geometry_utils import MOLLWEIDE


def open_raster(
    path: Path,
    chunks: tuple[int, int] | None = (2048, 2048),
) -> xr.DataArray:
    """
    Open raster with optional Dask chunking.

    Args:
        path: Path to raster file
        chunks: Chunk size as (y, x) or None for no chunking

    Returns:
        xarray DataArray with optional Dask backing
    """
    if chunks:
        data = rioxarray.open_rasterio(
            path,
            chunks={"x": chunks[1], "y": chunks[0]},
            lock=False,  # Allow parallel reads
        )
    else:
        data = rioxarray.open_rasterio(path)

    # Squeeze out single band dimension if present
    if "band" in data.dims and data.sizes["band"] == 1:
        data = data.squeeze("band", drop=True)

    return data


def mask_nodata(data: xr.DataArray, nodata: float | None = -200.0) -> xr.DataArray:
    """
    Mask nodata values in raster.

    Args:
        data: Input DataArray
        nodata: Value to treat as nodata (None to only normalise dtype)

    Returns:
        float64 DataArray with nodata masked as NaN
    """
    data = data.astype("float64")
    if nodata is not None and not np.isnan(nodata):
        data = data.where(data != nodata)
    return data


class ClipOutcome(NamedTuple):
    """Result of clipping one tile to a polygon."""

    tile_id: str
    values: np.ndarray  # non-missing pixel values inside the polygon
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class PixelSample(NamedTuple):
    """Pixel centroids and their population, sorted by (x, y)."""

    x: np.ndarray
    y: np.ndarray
    population: np.ndarray

    def __len__(self) -> int:
        return len(self.population)


@dataclass(frozen=True, eq=False)
class PopulationTile:
    """
    One north-up tile of the population grid.

    `data` is a 2D (y, x) DataArray with NaN for nodata; `transform` maps
    (col, row) pixel corners to projected coordinates.
    """

    tile_id: str
    data: xr.DataArray
    transform: Affine

    @classmethod
    def from_array(
        cls,
        tile_id: str,
        values,
        origin: tuple[float, float],
        pixel_size: float,
        crs: pyproj.CRS = MOLLWEIDE,
        nodata: float | None = None,
    ) -> "PopulationTile":
        """
        Build a tile from an in-memory grid.

        Args:
            tile_id: Tile identifier
            values: 2D array of population counts, row 0 at the top
            origin: (x, y) of the upper-left corner
            pixel_size: Square pixel edge length in CRS units
            crs: Projected CRS of the grid
            nodata: Value marking missing pixels
        """
        values = np.asarray(values, dtype="float64")
        height, width = values.shape
        transform = from_origin(origin[0], origin[1], pixel_size, pixel_size)

        xs = origin[0] + (np.arange(width) + 0.5) * pixel_size
        ys = origin[1] - (np.arange(height) + 0.5) * pixel_size
        data = xr.DataArray(values, dims=("y", "x"), coords={"y": ys, "x": xs})
        data = data.rio.write_crs(crs).rio.write_transform(transform)

        return cls(tile_id=tile_id, data=mask_nodata(data, nodata), transform=transform)

    @classmethod
    def from_file(
        cls,
        tile_id: str,
        path: Path,
        nodata: float | None = -200.0,
        chunks: tuple[int, int] | None = (2048, 2048),
    ) -> "PopulationTile":
        """Open a GeoTIFF tile lazily and normalise its nodata."""
        data = open_raster(path, chunks=chunks)
        if data.rio.nodata is not None:
            nodata = data.rio.nodata
        return cls(
            tile_id=tile_id,
            data=mask_nodata(data, nodata),
            transform=data.rio.transform(),
        )

    @property
    def shape(self) -> tuple[int, int]:
        return self.data.sizes["y"], self.data.sizes["x"]

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        """(minx, miny, maxx, maxy) of the tile's outer pixel edges."""
        height, width = self.shape
        x0, y0 = self.transform @ (0, 0)
        x1, y1 = self.transform @ (width, height)
        return min(x0, x1), min(y0, y1), max(x0, x1), max(y0, y1)

    def window(self, bounds: tuple[float, float, float, float]) -> tuple[slice, slice] | None:
        """
        Row/column slices of the pixels overlapping a bounding box.

        Returns:
            (row_slice, col_slice) or None when the box misses the tile
        """
        minx, miny, maxx, maxy = bounds
        inverse = ~self.transform
        col_a, row_a = inverse @ (minx, maxy)
        col_b, row_b = inverse @ (maxx, miny)

        height, width = self.shape
        col0 = max(int(np.floor(min(col_a, col_b))), 0)
        col1 = min(int(np.ceil(max(col_a, col_b))), width)
        row0 = max(int(np.floor(min(row_a, row_b))), 0)
        row1 = min(int(np.ceil(max(row_a, row_b))), height)

        if col0 >= col1 or row0 >= row1:
            return None
        return slice(row0, row1), slice(col0, col1)

    def read_window(self, rows: slice, cols: slice) -> np.ndarray:
        return np.asarray(self.data.isel(y=rows, x=cols).values, dtype="float64")

    def pixel_centers(self, rows: slice, cols: slice) -> tuple[np.ndarray, np.ndarray]:
        """Projected x/y of pixel centers for a window, as 2D grids."""
        col_idx, row_idx = np.meshgrid(
            np.arange(cols.start, cols.stop) + 0.5,
            np.arange(rows.start, rows.stop) + 0.5,
        )
        t = self.transform
        xs = t.c + col_idx * t.a + row_idx * t.b
        ys = t.f + col_idx * t.d + row_idx * t.e
        return xs, ys


def clip_tile(tile: PopulationTile, geometry: shapely.Geometry) -> ClipOutcome:
    """
    Clip one tile to a polygon.

    A polygon that does not overlap the tile gives an empty outcome. Any
    failure while rasterising the polygon (typically a topology problem on a
    degenerate boundary) gives an empty outcome carrying the error text.
    """
    empty = np.empty(0, dtype="float64")
    try:
        window = tile.window(geometry.bounds)
        if window is None:
            return ClipOutcome(tile.tile_id, empty)

        rows, cols = window
        values = tile.read_window(rows, cols)
        window_transform = tile.transform @ Affine.translation(cols.start, rows.start)
        inside = geometry_mask(
            [geometry],
            out_shape=values.shape,
            transform=window_transform,
            all_touched=False,
            invert=True,
        )
    except Exception as e:
        return ClipOutcome(tile.tile_id, empty, error=f"{type(e).__name__}: {e}")

    selected = values[inside]
    return ClipOutcome(tile.tile_id, selected[~np.isnan(selected)])


class PopulationRaster:
    """
    Tiled population grid shared read-only by all workers.

    Usage:
        raster = PopulationRaster([PopulationTile.from_file("R5_C19", path)])
        outcomes = raster.clip(polygon)
        sample = raster.sample_centroids(polygon)
    """

    def __init__(self, tiles: list[PopulationTile]):
        self.tiles = list(tiles)

    def __len__(self) -> int:
        return len(self.tiles)

    def tiles_intersecting(self, geometry: shapely.Geometry) -> list[PopulationTile]:
        """Tiles whose extent intersects the geometry."""
        if geometry.is_empty:
            return []
        return [t for t in self.tiles if shapely.box(*t.bounds).intersects(geometry)]

    def clip(self, geometry: shapely.Geometry) -> list[ClipOutcome]:
        """Clip every intersecting tile to the geometry."""
        return [clip_tile(tile, geometry) for tile in self.tiles_intersecting(geometry)]

    def sample_centroids(self, geometry: shapely.Geometry) -> PixelSample:
        """
        Pixels whose centroid intersects the geometry.

        Missing pixels are skipped. A pixel covered by more than one tile is
        kept once. Output is sorted by (x, y).
        """
        xs, ys, values = [], [], []
        for tile in self.tiles_intersecting(geometry):
            window = tile.window(geometry.bounds)
            if window is None:
                continue
            rows, cols = window
            window_values = tile.read_window(rows, cols).ravel()
            cx, cy = tile.pixel_centers(rows, cols)
            cx, cy = cx.ravel(), cy.ravel()

            keep = ~np.isnan(window_values)
            keep[keep] = shapely.intersects_xy(geometry, cx[keep], cy[keep])
            xs.append(cx[keep])
            ys.append(cy[keep])
            values.append(window_values[keep])

        if not xs or sum(len(v) for v in values) == 0:
            empty = np.empty(0, dtype="float64")
            return PixelSample(empty, empty.copy(), empty.copy())

        coords = np.column_stack([np.concatenate(xs), np.concatenate(ys)])
        coords, first = np.unique(coords, axis=0, return_index=True)
        return PixelSample(coords[:, 0], coords[:, 1], np.concatenate(values)[first])
