"""
04 - Merge urban metrics into one table per urban center.

Purpose: Full outer join of urban center attributes with the compactness,
         weighted density and density gradient result sets.
Input:
  - data/raw/ucdb/*.gpkg (urban center attributes)
  - data/interim/urban_metrics/compactness.parquet (from s01)
  - data/interim/urban_metrics/density_gradients.parquet (from s02)
  - data/interim/urban_metrics/weighted_density.parquet (from s03)
Output:
  - data/processed/urban_metrics/urban_centers_metrics.parquet (GeoParquet)

Output Schema (urban_centers_metrics.parquet):
  | Column                       | Type    | Description                          |
  |------------------------------|---------|--------------------------------------|
  | ID_HDC_G0                    | source  | Urban center id                      |
  | (UCDB attributes)            | source  | All original attributes + geometry   |
  | hull_geom                    | Polygon | Land-clipped convex hull             |
  | compactness                  | Float64 | (0, 1]                               |
  | used_land_fallback           | Boolean | Shoreline missed the urban center    |
  | ghs_pop                      | Float64 | Total population                     |
  | ghs_cell_count               | Int64   | Cells inside the polygon             |
  | ghs_density                  | Float64 | Mean cell density                    |
  | ghs_wt_density               | Float64 | Population-weighted density          |
  | ghs_clip_failures            | Int64   | Tiles counted as empty               |
  | density_gradient_slope       | Float64 | Decay rate (may be negative)         |
  | density_gradient_intercept   | Float64 | ln(population) at the center         |
  | density_gradient_r_squared   | Float64 | Fit quality                          |
  | density_gradient_center_geom | Point   | Inferred center                      |
  | density_gradient_cells       | Int64   | Populated cells considered           |

Decision log:
  - Exactly one row per input urban center; metrics that could not be
    computed are null
  - Duplicate ids in any input set abort the merge (DataIntegrityError)
  - Output validated with Pandera before writing
  - --from-raw computes the three metrics in memory instead of reading
    interim files
Date: 2025-01-14
"""

from pathlib import Path

import click
import geopandas as gpd
import polars as pl
import pyproj
import shapely

from .loaders import (
    attributes_frame,
    load_population_raster,
    load_shoreline,
    load_urban_centers,
    urban_centers_from_frame,
)
from .models import (
    CompactnessResult,
    DensityGradientResult,
    WeightedDensityResult,
    results_to_frame,
)
from .s01_compute_compactness import Shoreline, compute_all_compactness
from .s02_compute_density_gradients import compute_all_density_gradients
from .s03_compute_weighted_density import compute_all_weighted_density
from .utils.config import config, get_interim_path, get_processed_path
from .utils.raster_utils import PopulationRaster
from .utils.schemas import UrbanMetricsSchema, check_unique_ids

GEOMETRY_RESULT_COLUMNS = ["hull_geom", "density_gradient_center_geom"]
INTERIM_FILES = {
    "compactness": "compactness.parquet",
    "density gradients": "density_gradients.parquet",
    "weighted density": "weighted_density.parquet",
}


def merge_urban_metrics(
    urban_centers: pl.DataFrame,
    compactness: pl.DataFrame,
    weighted_density: pl.DataFrame,
    density_gradients: pl.DataFrame,
    id_column: str,
    validate: bool = True,
) -> pl.DataFrame:
    """
    Full outer join of attributes and metric result sets on the id column.

    Args:
        urban_centers: Attribute table, one row per urban center
        compactness, weighted_density, density_gradients: Result sets
        id_column: Join key present in every frame
        validate: Run the output schema checks

    Returns:
        One row per id, in urban center order (ids only found in a result
        set come last)

    Raises:
        DataIntegrityError: an id repeats within any single input
    """
    check_unique_ids(urban_centers[id_column].to_list(), "urban centers")
    id_dtype = urban_centers.schema[id_column]

    merged = urban_centers.with_row_index("_row")
    for name, frame in (
        ("compactness", compactness),
        ("weighted density", weighted_density),
        ("density gradients", density_gradients),
    ):
        check_unique_ids(frame[id_column].to_list(), name)
        frame = frame.with_columns(pl.col(id_column).cast(id_dtype))
        merged = merged.join(frame, on=id_column, how="full", coalesce=True)

    merged = merged.sort("_row", nulls_last=True, maintain_order=True).drop("_row")

    if validate:
        UrbanMetricsSchema.validate(merged, lazy=True)
    return merged


def merge_results(
    urban_centers: pl.DataFrame,
    compactness: list[CompactnessResult],
    weighted_density: list[WeightedDensityResult],
    density_gradients: list[DensityGradientResult],
    id_column: str,
    validate: bool = True,
) -> pl.DataFrame:
    """Merge in-memory result lists (see merge_urban_metrics)."""
    id_dtype = urban_centers.schema[id_column]
    return merge_urban_metrics(
        urban_centers,
        results_to_frame(compactness, CompactnessResult, id_column, id_dtype),
        results_to_frame(weighted_density, WeightedDensityResult, id_column, id_dtype),
        results_to_frame(density_gradients, DensityGradientResult, id_column, id_dtype),
        id_column,
        validate=validate,
    )


def compute_urban_metrics(
    gdf: gpd.GeoDataFrame,
    land: list[shapely.Geometry],
    raster: PopulationRaster,
    id_column: str,
    crs: pyproj.CRS,
    workers: int = 8,
    chunk_size: int = 512,
) -> pl.DataFrame:
    """
    Run all three metrics in memory and merge them.

    The three passes are independent; each yields one result per urban center.
    """
    centers = urban_centers_from_frame(gdf, id_column)

    compactness = compute_all_compactness(centers, Shoreline(land), crs=crs, workers=workers)
    weighted_density = compute_all_weighted_density(centers, raster, workers=workers)
    density_gradients = compute_all_density_gradients(
        centers, raster, workers=workers, chunk_size=chunk_size
    )

    return merge_results(
        attributes_frame(gdf), compactness, weighted_density, density_gradients, id_column
    )


def to_geodataframe(
    merged: pl.DataFrame,
    geometry_column: str,
    crs: pyproj.CRS,
) -> gpd.GeoDataFrame:
    """Decode WKB columns and return a GeoDataFrame with the urban center geometry active."""
    df = merged.to_pandas()
    for column in [geometry_column, *GEOMETRY_RESULT_COLUMNS]:
        if column in df.columns:
            df[column] = gpd.GeoSeries(shapely.from_wkb(df[column].to_numpy()), index=df.index, crs=crs)
    return gpd.GeoDataFrame(df, geometry=geometry_column, crs=crs)


def load_interim_results(interim_dir: Path) -> dict[str, pl.DataFrame]:
    """Read the three per-metric result sets written by s01-s03."""
    frames = {}
    for name, filename in INTERIM_FILES.items():
        path = interim_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Missing {name} results: {path}. Run the metric step first.")
        frames[name] = pl.read_parquet(path)
    return frames


@click.command()
@click.option("--force", is_flag=True, help="Overwrite existing output")
@click.option("--from-raw", is_flag=True, help="Compute all metrics in memory instead of reading interim files")
@click.option("--workers", default=config.PARALLEL_WORKERS, help="Number of parallel workers (--from-raw)")
@click.option("--urban-centers", "urban_centers_path", type=click.Path(path_type=Path), default=None)
@click.option("--shoreline", "shoreline_path", type=click.Path(path_type=Path), default=None)
@click.option("--population-dir", type=click.Path(path_type=Path), default=None)
def main(
    force: bool = False,
    from_raw: bool = False,
    workers: int = 8,
    urban_centers_path: Path | None = None,
    shoreline_path: Path | None = None,
    population_dir: Path | None = None,
):
    """Merge urban metrics into one row per urban center."""
    print("=" * 60)
    print("Urban Metrics Merge")
    print("=" * 60)

    output_dir = get_processed_path("urban_metrics")
    output_path = output_dir / "urban_centers_metrics.parquet"

    if output_path.exists() and not force:
        print(f"Output already exists: {output_path}")
        print("Use --force to overwrite")
        return

    id_column = config.URBAN_CENTER_ID_COLUMN
    crs = pyproj.CRS(config.URBAN_CENTER_CRS)

    try:
        gdf = load_urban_centers(urban_centers_path)
        if from_raw:
            land = load_shoreline(shoreline_path)
            raster = load_population_raster(population_dir)
        else:
            frames = load_interim_results(get_interim_path("urban_metrics"))
    except FileNotFoundError as e:
        print(f"ERROR: {e}")
        return

    if from_raw:
        print(f"\nComputing all metrics for {len(gdf):,} urban centers...")
        merged = compute_urban_metrics(
            gdf,
            land,
            raster,
            id_column,
            crs,
            workers=workers,
            chunk_size=config.GRADIENT_CHUNK_SIZE,
        )
    else:
        print("\nMerging interim results...")
        merged = merge_urban_metrics(
            attributes_frame(gdf),
            frames["compactness"],
            frames["weighted density"],
            frames["density gradients"],
            id_column,
        )

    print(f"\nSaving to {output_path}...")
    to_geodataframe(merged, gdf.geometry.name, crs).to_parquet(output_path)

    # Summary
    print("\n" + "=" * 60)
    print("Summary")
    print("=" * 60)
    print(f"Urban centers in: {len(gdf):,}")
    print(f"Rows out: {len(merged):,}")
    for column in ["compactness", "ghs_density", "ghs_wt_density", "density_gradient_slope"]:
        missing = merged[column].null_count()
        print(f"  {column}: {len(merged) - missing:,} computed, {missing:,} null")
    print(f"Output: {output_path}")


if __name__ == "__main__":
    main()
