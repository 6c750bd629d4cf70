"""
03 - Compute population-weighted density of urban centers.

Purpose: Zonal population statistics per urban center: total population,
         mean cell density and population-weighted density (the density
         experienced by the average resident).
Input:
  - data/raw/ucdb/*.gpkg (urban center polygons, Mollweide)
  - data/raw/ghsl_pop_1km/*.tif (GHSL-POP, Mollweide)
Output:
  - data/interim/urban_metrics/weighted_density.parquet

Output Schema (weighted_density.parquet):
  | Column            | Type    | Description                                |
  |-------------------|---------|--------------------------------------------|
  | ID_HDC_G0         | source  | Urban center id                            |
  | ghs_pop           | Float64 | Sum of cell populations                    |
  | ghs_cell_count    | Int64   | Non-missing cells inside the polygon       |
  | ghs_density       | Float64 | ghs_pop / ghs_cell_count (null if no cells)|
  | ghs_wt_density    | Float64 | sum(p^2) / sum(p), 0 when ghs_pop is 0     |
  | ghs_clip_failures | Int64   | Tiles whose clip failed (counted as empty) |

Decision log:
  - Cells selected by centroid-in-polygon after geometry repair
  - A tile whose clip fails is counted as zero cells and reported as a
    NOTICE; the run continues for every other tile and urban center
  - Weighted density >= mean density, equal iff all cells are equal
Date: 2025-01-14
"""

from functools import partial
from pathlib import Path

import click
import numpy as np

from .loaders import load_population_raster, load_urban_centers, urban_centers_from_frame
from .models import UrbanCenter, WeightedDensityResult, results_to_frame
from .utils.config import config, get_interim_path
from .utils.geometry_utils import fix_invalid_geometry
from .utils.parallel import map_urban_centers
from .utils.raster_utils import PopulationRaster
from .utils.schemas import WeightedDensitySchema, validate_frame


def summarize_population(values: np.ndarray) -> tuple[float, int, float | None, float]:
    """
    Aggregate cell populations.

    Returns:
        (total_population, cell_count, mean_density, weighted_density)
    """
    values = np.asarray(values, dtype="float64")
    cell_count = len(values)
    total = float(values.sum())

    mean_density = total / cell_count if cell_count else None
    weighted_density = float(np.square(values).sum()) / total if total != 0 else 0.0

    return total, cell_count, mean_density, weighted_density


def compute_weighted_density(center: UrbanCenter, raster: PopulationRaster) -> WeightedDensityResult:
    """Compute zonal population statistics for one urban center."""
    geom = fix_invalid_geometry(center.geometry)
    outcomes = raster.clip(geom)

    failures = [o for o in outcomes if o.failed]
    for outcome in failures:
        print(
            f"    NOTICE: clip failed for {center.uc_id} on tile {outcome.tile_id}, "
            f"counted as empty ({outcome.error})"
        )

    if outcomes:
        values = np.concatenate([o.values for o in outcomes])
    else:
        values = np.empty(0, dtype="float64")

    total, cell_count, mean_density, weighted_density = summarize_population(values)

    return WeightedDensityResult(
        uc_id=center.uc_id,
        total_population=total,
        cell_count=cell_count,
        mean_density=mean_density,
        weighted_density=weighted_density,
        clip_failures=len(failures),
    )


def compute_all_weighted_density(
    centers: list[UrbanCenter],
    raster: PopulationRaster,
    workers: int = 8,
) -> list[WeightedDensityResult]:
    """Compute zonal population statistics for every urban center."""
    results = map_urban_centers(
        partial(compute_weighted_density, raster=raster),
        centers,
        workers=workers,
        desc="Weighted density",
    )
    return list(results.values())


@click.command()
@click.option("--force", is_flag=True, help="Overwrite existing output")
@click.option("--workers", default=config.PARALLEL_WORKERS, help="Number of parallel workers")
@click.option("--limit", type=int, default=None, help="Process only the first N urban centers")
@click.option("--urban-centers", "urban_centers_path", type=click.Path(path_type=Path), default=None)
@click.option("--population-dir", type=click.Path(path_type=Path), default=None)
def main(
    force: bool = False,
    workers: int = 8,
    limit: int | None = None,
    urban_centers_path: Path | None = None,
    population_dir: Path | None = None,
):
    """Compute population-weighted density for all urban centers."""
    print("=" * 60)
    print("Urban Center Weighted Density")
    print("=" * 60)

    output_dir = get_interim_path("urban_metrics")
    output_path = output_dir / "weighted_density.parquet"

    if output_path.exists() and not force:
        print(f"Output already exists: {output_path}")
        print("Use --force to overwrite")
        return

    try:
        gdf = load_urban_centers(urban_centers_path)
        raster = load_population_raster(population_dir)
    except FileNotFoundError as e:
        print(f"ERROR: {e}")
        return

    if limit:
        gdf = gdf.head(limit)
        print(f"Limiting to {len(gdf)} urban centers")

    id_column = config.URBAN_CENTER_ID_COLUMN
    centers = urban_centers_from_frame(gdf, id_column)

    print(f"\nComputing weighted density for {len(centers):,} urban centers...")
    results = compute_all_weighted_density(centers, raster, workers=workers)

    df = results_to_frame(results, WeightedDensityResult, id_column)
    df = validate_frame(df, WeightedDensitySchema, id_column, "weighted density")

    print(f"\nSaving to {output_path}...")
    df.write_parquet(output_path)

    # Summary
    failed = sum(1 for r in results if r.clip_failures)
    empty = sum(1 for r in results if r.cell_count == 0)
    print("\n" + "=" * 60)
    print("Summary")
    print("=" * 60)
    print(f"Urban centers: {len(results):,}")
    print(f"Total population: {df['ghs_pop'].sum():,.0f}")
    print(f"Centers with clip failures: {failed:,}")
    print(f"Centers with no cells: {empty:,}")
    print(f"Output: {output_path}")


if __name__ == "__main__":
    main()
