"""
02 - Compute population density gradients of urban centers.

Purpose: Estimate how fast population density decays away from the center of
         each urban center, without knowing where that center is.
Input:
  - data/raw/ucdb/*.gpkg (urban center polygons, Mollweide)
  - data/raw/ghsl_pop_1km/*.tif (GHSL-POP, Mollweide)
Output:
  - data/interim/urban_metrics/density_gradients.parquet

Output Schema (density_gradients.parquet):
  | Column                       | Type    | Description                          |
  |------------------------------|---------|--------------------------------------|
  | ID_HDC_G0                    | source  | Urban center id                      |
  | density_gradient_slope       | Float64 | Decay rate per CRS unit (may be < 0) |
  | density_gradient_intercept   | Float64 | ln(population) at distance 0         |
  | density_gradient_r_squared   | Float64 | Fit quality of the chosen center     |
  | density_gradient_center_geom | Binary  | Chosen center pixel centroid (WKB)   |
  | density_gradient_cells       | Int64   | Populated cells inside the center    |

Decision log:
  - Every populated pixel inside the polygon is a candidate center; for each,
    regress ln(population) of every other populated pixel on its distance
    (OLS, model ln(pop) = a - slope * d)
  - Keep the candidate with the largest slope; negative slopes are kept
  - Candidates with < 2 observations or a single distinct distance have no
    slope; no candidate with a slope -> all-null result
  - Ties on slope go to the lowest (x, y) pixel centroid
  - O(n^2) per center, evaluated in blocks of GRADIENT_CHUNK_SIZE candidate
    rows to bound memory on the largest centers
Date: 2025-01-14
"""

from functools import partial
from pathlib import Path
from typing import NamedTuple

import click
import numpy as np
from shapely import Point

from .loaders import load_population_raster, load_urban_centers, urban_centers_from_frame
from .models import DensityGradientResult, UrbanCenter, results_to_frame
from .utils.config import config, get_interim_path
from .utils.geometry_utils import fix_invalid_geometry
from .utils.parallel import map_urban_centers
from .utils.raster_utils import PopulationRaster
from .utils.schemas import DensityGradientSchema, validate_frame


class CandidateFits(NamedTuple):
    """Per-candidate regression results, NaN where undefined."""

    slope: np.ndarray
    intercept: np.ndarray
    r_squared: np.ndarray


def fit_candidate_gradients(
    x: np.ndarray,
    y: np.ndarray,
    population: np.ndarray,
    chunk_size: int = 512,
) -> CandidateFits:
    """
    Fit a log-linear decay around every candidate cell.

    For candidate A, observations are (distance(A, B), ln population(B)) over
    all other cells B at a positive distance.

    Args:
        x, y: Cell centroid coordinates
        population: Cell populations, all > 0
        chunk_size: Candidate rows per distance block

    Returns:
        CandidateFits aligned with the input cells
    """
    x = np.asarray(x, dtype="float64")
    y = np.asarray(y, dtype="float64")
    log_pop = np.log(np.asarray(population, dtype="float64"))
    chunk_size = max(int(chunk_size), 1)

    n = len(log_pop)
    slope = np.full(n, np.nan)
    intercept = np.full(n, np.nan)
    r_squared = np.full(n, np.nan)

    for start in range(0, n, chunk_size):
        block = slice(start, min(start + chunk_size, n))
        dist = np.hypot(x[block, None] - x[None, :], y[block, None] - y[None, :])
        valid = dist > 0

        count = valid.sum(axis=1)
        dist_max = np.where(valid, dist, -np.inf).max(axis=1)
        dist_min = np.where(valid, dist, np.inf).min(axis=1)
        defined = (count >= 2) & (dist_max > dist_min)
        if not defined.any():
            continue

        safe_count = np.maximum(count, 1)
        x_mean = np.where(valid, dist, 0.0).sum(axis=1) / safe_count
        y_mean = np.where(valid, log_pop[None, :], 0.0).sum(axis=1) / safe_count

        dx = np.where(valid, dist - x_mean[:, None], 0.0)
        dy = np.where(valid, log_pop[None, :] - y_mean[:, None], 0.0)
        sxx = (dx * dx).sum(axis=1)
        sxy = (dx * dy).sum(axis=1)
        syy = (dy * dy).sum(axis=1)

        with np.errstate(divide="ignore", invalid="ignore"):
            beta = sxy / sxx
            r2 = np.where(syy > 0, sxy * sxy / (sxx * syy), np.nan)

        slope[block] = np.where(defined, -beta, np.nan)
        intercept[block] = np.where(defined, y_mean - beta * x_mean, np.nan)
        r_squared[block] = np.where(defined, np.minimum(r2, 1.0), np.nan)

    return CandidateFits(slope=slope, intercept=intercept, r_squared=r_squared)


def select_best_candidate(slope: np.ndarray) -> int | None:
    """
    Index of the largest defined slope.

    Cells are ordered by (x, y), so the first maximum is the lowest-coordinate
    candidate among ties.
    """
    if len(slope) == 0 or np.isnan(slope).all():
        return None
    return int(np.nanargmax(slope))


def _optional(value: float) -> float | None:
    return None if np.isnan(value) else float(value)


def estimate_density_gradient(
    center: UrbanCenter,
    raster: PopulationRaster,
    chunk_size: int = 512,
) -> DensityGradientResult:
    """
    Estimate the density gradient of one urban center.

    Args:
        center: Urban center in the raster CRS
        raster: Population grid
        chunk_size: Candidate rows per distance block

    Returns:
        DensityGradientResult, undetermined when no candidate has a slope
    """
    geom = fix_invalid_geometry(center.geometry)
    sample = raster.sample_centroids(geom)

    populated = sample.population > 0
    x = sample.x[populated]
    y = sample.y[populated]
    population = sample.population[populated]

    fits = fit_candidate_gradients(x, y, population, chunk_size=chunk_size)
    best = select_best_candidate(fits.slope)
    if best is None:
        return DensityGradientResult.undetermined(center.uc_id, cell_count=len(population))

    return DensityGradientResult(
        uc_id=center.uc_id,
        slope=float(fits.slope[best]),
        intercept=float(fits.intercept[best]),
        center=Point(x[best], y[best]),
        r_squared=_optional(fits.r_squared[best]),
        cell_count=len(population),
    )


def compute_all_density_gradients(
    centers: list[UrbanCenter],
    raster: PopulationRaster,
    workers: int = 8,
    chunk_size: int = 512,
) -> list[DensityGradientResult]:
    """Estimate density gradients for every urban center."""
    results = map_urban_centers(
        partial(estimate_density_gradient, raster=raster, chunk_size=chunk_size),
        centers,
        workers=workers,
        desc="Density gradients",
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
    """Estimate population density gradients for all urban centers."""
    print("=" * 60)
    print("Urban Center Density Gradients")
    print("=" * 60)

    output_dir = get_interim_path("urban_metrics")
    output_path = output_dir / "density_gradients.parquet"

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

    print(f"\nEstimating density gradients for {len(centers):,} urban centers...")
    results = compute_all_density_gradients(
        centers, raster, workers=workers, chunk_size=config.GRADIENT_CHUNK_SIZE
    )

    df = results_to_frame(results, DensityGradientResult, id_column)
    df = validate_frame(df, DensityGradientSchema, id_column, "density gradients")

    print(f"\nSaving to {output_path}...")
    df.write_parquet(output_path)

    # Summary
    determined = [r for r in results if r.is_determined]
    negative = sum(1 for r in determined if r.slope < 0)
    print("\n" + "=" * 60)
    print("Summary")
    print("=" * 60)
    print(f"Urban centers: {len(results):,}")
    print(f"Gradient determined: {len(determined):,}")
    print(f"Undetermined (too few cells): {len(results) - len(determined):,}")
    print(f"Negative slopes: {negative:,}")
    if determined:
        print(f"Median slope: {np.median([r.slope for r in determined]):.6f}")
    print(f"Output: {output_path}")


if __name__ == "__main__":
    main()
