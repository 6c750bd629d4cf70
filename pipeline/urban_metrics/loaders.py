"""
Input loading for the urban metrics steps.

Purpose: Read urban centers, shoreline and population tiles from data/raw
Input:
  - data/raw/ucdb/*.gpkg | *.parquet (GHSL UCDB urban centers)
  - data/raw/shoreline/*.gpkg | *.shp | *.parquet (land polygons)
  - data/raw/ghsl_pop_1km/*.tif (GHSL-POP tiles or one global GeoTIFF)

Decision log:
  - Everything is brought into the urban center CRS (Mollweide) on load
  - Geometries are NOT repaired here; each metric repairs what it uses
  - Attribute table goes to polars with geometry as WKB for the merge step
Date: 2025-01-14
"""

from pathlib import Path

import geopandas as gpd
import polars as pl
import shapely

from .models import UrbanCenter
from .utils.config import config, get_raw_path
from .utils.raster_utils import PopulationRaster, PopulationTile
from .utils.tile_utils import find_tile_files

VECTOR_PATTERNS = ("*.gpkg", "*.parquet", "*.shp", "*.geojson")


def find_vector_file(directory: Path) -> Path:
    """First vector dataset in a directory."""
    for pattern in VECTOR_PATTERNS:
        matches = sorted(directory.glob(pattern))
        if matches:
            return matches[0]
    raise FileNotFoundError(
        f"No vector dataset ({', '.join(VECTOR_PATTERNS)}) found in {directory}"
    )


def read_vector(path: Path, crs: str | None = None) -> gpd.GeoDataFrame:
    """Read a vector file, reprojecting to `crs` when given."""
    if path.suffix == ".parquet":
        gdf = gpd.read_parquet(path)
    else:
        gdf = gpd.read_file(path)

    if crs is not None and gdf.crs is not None and not gdf.crs.equals(crs):
        print(f"  Reprojecting {path.name} from {gdf.crs.to_string()} to {crs}...")
        gdf = gdf.to_crs(crs)
    return gdf


def load_urban_centers(path: Path | None = None, id_column: str | None = None) -> gpd.GeoDataFrame:
    """
    Load urban center polygons.

    Returns:
        GeoDataFrame in the configured urban center CRS
    """
    path = path or find_vector_file(get_raw_path(config.URBAN_CENTERS_SUBDIR))
    id_column = id_column or config.URBAN_CENTER_ID_COLUMN

    print(f"Loading urban centers from {path}...")
    gdf = read_vector(path, crs=config.URBAN_CENTER_CRS)
    if id_column not in gdf.columns:
        raise KeyError(f"Id column {id_column!r} not in {path.name}: {list(gdf.columns)}")
    print(f"  Loaded {len(gdf):,} urban centers")

    invalid_count = int((~gdf.geometry.is_valid).sum())
    if invalid_count > 0:
        print(f"  {invalid_count} invalid geometries (repaired per metric)")

    return gdf


def urban_centers_from_frame(gdf: gpd.GeoDataFrame, id_column: str | None = None) -> list[UrbanCenter]:
    """One UrbanCenter per row."""
    id_column = id_column or config.URBAN_CENTER_ID_COLUMN
    return [
        UrbanCenter(uc_id=uc_id, geometry=geom)
        for uc_id, geom in zip(gdf[id_column].tolist(), gdf.geometry)
    ]


def attributes_frame(gdf: gpd.GeoDataFrame) -> pl.DataFrame:
    """Urban center attribute table as polars, geometry column encoded as WKB."""
    geometry_column = gdf.geometry.name
    attributes = pl.from_pandas(gdf.drop(columns=geometry_column))
    return attributes.with_columns(
        pl.Series(geometry_column, shapely.to_wkb(gdf.geometry.to_numpy()).tolist(), dtype=pl.Binary)
    )


def load_shoreline(path: Path | None = None) -> list[shapely.Geometry]:
    """
    Load land polygons.

    Returns:
        Non-empty land geometries in the urban center CRS
    """
    path = path or find_vector_file(get_raw_path(config.SHORELINE_SUBDIR))

    print(f"Loading shoreline from {path}...")
    gdf = read_vector(path, crs=config.URBAN_CENTER_CRS)
    land = [g for g in gdf.geometry if g is not None and not g.is_empty]
    print(f"  Loaded {len(land):,} land geometries")
    return land


def load_population_raster(directory: Path | None = None) -> PopulationRaster:
    """
    Open GHSL-POP tiles lazily.

    Returns:
        PopulationRaster over every tile found in `directory`
    """
    directory = directory or get_raw_path(config.POPULATION_SUBDIR)
    tile_files = find_tile_files(directory)
    if not tile_files:
        raise FileNotFoundError(
            f"No population GeoTIFFs found in {directory}. Download GHSL-POP first."
        )

    print(f"Opening {len(tile_files)} population tile(s) from {directory}...")
    tiles = [
        PopulationTile.from_file(
            tf.tile_id,
            tf.path,
            nodata=config.POPULATION_NODATA,
            chunks=config.RASTER_CHUNK_SIZE,
        )
        for tf in tile_files
    ]
    return PopulationRaster(tiles)
