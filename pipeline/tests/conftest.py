"""Shared synthetic inputs: Mollweide polygons near (0, 0) and small population grids."""

import numpy as np
import pytest
import shapely
from shapely import Polygon

from urban_metrics.models import UrbanCenter
from urban_metrics.utils.raster_utils import PopulationRaster, PopulationTile

PIXEL = 1000.0  # 1km cells, like GHSL-POP 1km


def cell_box(row: int, col: int, origin=(0.0, 0.0), pixel: float = PIXEL) -> Polygon:
    """Polygon exactly covering pixel (row, col) of a grid anchored at `origin` (upper-left)."""
    x0 = origin[0] + col * pixel
    y1 = origin[1] - row * pixel
    return shapely.box(x0, y1 - pixel, x0 + pixel, y1)


def block_box(row0: int, col0: int, row1: int, col1: int, origin=(0.0, 0.0), pixel: float = PIXEL) -> Polygon:
    """Polygon covering pixels rows row0..row1-1 and cols col0..col1-1."""
    return shapely.box(
        origin[0] + col0 * pixel,
        origin[1] - row1 * pixel,
        origin[0] + col1 * pixel,
        origin[1] - row0 * pixel,
    )


def make_raster(values, origin=(0.0, 0.0), pixel: float = PIXEL, tile_id: str = "R0_C0", nodata=None) -> PopulationRaster:
    return PopulationRaster([PopulationTile.from_array(tile_id, values, origin, pixel, nodata=nodata)])


@pytest.fixture
def l_shape() -> Polygon:
    """3 of the 4 quadrants of a 10km square; its hull cuts the inner corner diagonally (87.5 km²)."""
    return Polygon([
        (0, 0), (10_000, 0), (10_000, 5_000), (5_000, 5_000),
        (5_000, 10_000), (0, 10_000), (0, 0),
    ])


@pytest.fixture
def bowtie() -> Polygon:
    """Self-intersecting polygon (invalid)."""
    return Polygon([(0, 0), (4_000, 4_000), (4_000, 0), (0, 4_000), (0, 0)])


@pytest.fixture
def world_land() -> list:
    """One land mass covering everything the tests use."""
    return [shapely.box(-1_000_000, -1_000_000, 1_000_000, 1_000_000)]


@pytest.fixture
def uniform_raster():
    """4x4 grid of 100 people per cell."""
    return make_raster(np.full((4, 4), 100.0))


@pytest.fixture
def center_factory():
    def _make(uc_id, geometry):
        return UrbanCenter(uc_id=uc_id, geometry=geometry)
    return _make
