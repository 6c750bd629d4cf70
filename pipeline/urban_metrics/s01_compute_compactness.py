"""
01 - Compute land-clipped compactness of urban centers.

Purpose: Ratio of an urban center's land area to the land area of its convex
         hull, so that bays and coastline do not count against compactness.
Input:
  - data/raw/ucdb/*.gpkg (urban center polygons, Mollweide)
  - data/raw/shoreline/*.gpkg (land polygons)
Output:
  - data/interim/urban_metrics/compactness.parquet

Output Schema (compactness.parquet):
  | Column             | Type    | Description                                 |
  |--------------------|---------|---------------------------------------------|
  | ID_HDC_G0          | source  | Urban center id                             |
  | hull_geom          | Binary  | Land-clipped convex hull (WKB, Mollweide)   |
  | compactness        | Float64 | Land area / hull land area, in (0, 1]       |
  | used_land_fallback | Boolean | True when the shoreline missed the center   |

Decision log:
  - Areas measured on the WGS84 ellipsoid, not the Mollweide plane
  - Shoreline gaps (an urban center entirely "in water") fall back to the
    unclipped polygon and hull
  - Precision overshoot above 1 is clamped to 1
  - STRtree over land parts; results identical to a full scan
Date: 2025-01-14
"""

from functools import partial
from pathlib import Path

import click
import pyproj
import shapely
from shapely import Polygon

from .loaders import load_shoreline, load_urban_centers, urban_centers_from_frame
from .models import CompactnessResult, UrbanCenter, results_to_frame
from .utils.config import config, get_interim_path
from .utils.geometry_utils import (
    MOLLWEIDE,
    fix_invalid_geometry,
    geodesic_area_m2,
    polygonal_parts,
)
from .utils.parallel import map_urban_centers
from .utils.schemas import CompactnessSchema, validate_frame


class Shoreline:
    """
    Land mask made of one or many land geometries.

    Multipart land is split into its polygons so the STRtree indexes each
    island on its own.

    Read-only after construction, so one instance is shared by all workers.
    """

    def __init__(self, land: list[shapely.Geometry]):
        self.land = [
            part
            for g in land
            if g is not None and not g.is_empty
            for part in shapely.get_parts(fix_invalid_geometry(g))
            if not part.is_empty
        ]
        self.tree = shapely.STRtree(self.land)

    def __len__(self) -> int:
        return len(self.land)

    def intersecting(self, geometry: shapely.Geometry) -> list[shapely.Geometry]:
        """Land parts intersecting the geometry, in input order."""
        if geometry.is_empty or not self.land:
            return []
        indices = self.tree.query(geometry, predicate="intersects")
        return [self.land[i] for i in sorted(indices)]

    def clip(self, geometry: shapely.Geometry) -> shapely.Geometry:
        """
        Areal part of the geometry that lies on land.

        Returns:
            Polygon/MultiPolygon, empty when nothing of positive area is on land
        """
        pieces = [geometry.intersection(land) for land in self.intersecting(geometry)]
        if not pieces:
            return Polygon()
        return polygonal_parts(shapely.union_all(pieces))


def compute_compactness(
    center: UrbanCenter,
    shoreline: Shoreline,
    crs: pyproj.CRS = MOLLWEIDE,
) -> CompactnessResult:
    """
    Compute compactness for one urban center.

    Args:
        center: Urban center in `crs`
        shoreline: Land mask in `crs`
        crs: Projected CRS of the inputs

    Returns:
        CompactnessResult; compactness is None only when the repaired
        polygon has no area at all
    """
    geom = fix_invalid_geometry(center.geometry)
    hull = geom.convex_hull

    land_geom = shoreline.clip(geom)
    used_fallback = land_geom.is_empty

    if used_fallback:
        # Shoreline gap: whole urban center misclassified as water
        land_geom = geom
        hull_land_geom = polygonal_parts(hull)
    else:
        hull_land_geom = shoreline.clip(hull)

    hull_area = geodesic_area_m2(hull_land_geom, crs)
    if hull_area <= 0:
        return CompactnessResult(
            uc_id=center.uc_id,
            hull_geom=None,
            compactness=None,
            used_land_fallback=used_fallback,
        )

    compactness = geodesic_area_m2(land_geom, crs) / hull_area
    if compactness > 1:
        compactness = 1.0

    return CompactnessResult(
        uc_id=center.uc_id,
        hull_geom=hull_land_geom,
        compactness=compactness,
        used_land_fallback=used_fallback,
    )


def compute_all_compactness(
    centers: list[UrbanCenter],
    shoreline: Shoreline,
    crs: pyproj.CRS = MOLLWEIDE,
    workers: int = 8,
) -> list[CompactnessResult]:
    """Compute compactness for every urban center."""
    results = map_urban_centers(
        partial(compute_compactness, shoreline=shoreline, crs=crs),
        centers,
        workers=workers,
        desc="Compactness",
    )
    return list(results.values())


@click.command()
@click.option("--force", is_flag=True, help="Overwrite existing output")
@click.option("--workers", default=config.PARALLEL_WORKERS, help="Number of parallel workers")
@click.option("--limit", type=int, default=None, help="Process only the first N urban centers")
@click.option("--urban-centers", "urban_centers_path", type=click.Path(path_type=Path), default=None)
@click.option("--shoreline", "shoreline_path", type=click.Path(path_type=Path), default=None)
def main(
    force: bool = False,
    workers: int = 8,
    limit: int | None = None,
    urban_centers_path: Path | None = None,
    shoreline_path: Path | None = None,
):
    """Compute land-clipped compactness for all urban centers."""
    print("=" * 60)
    print("Urban Center Compactness")
    print("=" * 60)

    output_dir = get_interim_path("urban_metrics")
    output_path = output_dir / "compactness.parquet"

    if output_path.exists() and not force:
        print(f"Output already exists: {output_path}")
        print("Use --force to overwrite")
        return

    try:
        gdf = load_urban_centers(urban_centers_path)
        land = load_shoreline(shoreline_path)
    except FileNotFoundError as e:
        print(f"ERROR: {e}")
        return

    if limit:
        gdf = gdf.head(limit)
        print(f"Limiting to {len(gdf)} urban centers")

    id_column = config.URBAN_CENTER_ID_COLUMN
    centers = urban_centers_from_frame(gdf, id_column)
    shoreline = Shoreline(land)

    print(f"\nComputing compactness for {len(centers):,} urban centers...")
    results = compute_all_compactness(
        centers, shoreline, crs=pyproj.CRS(config.URBAN_CENTER_CRS), workers=workers
    )

    df = results_to_frame(results, CompactnessResult, id_column)
    df = validate_frame(df, CompactnessSchema, id_column, "compactness")

    print(f"\nSaving to {output_path}...")
    df.write_parquet(output_path)

    # Summary
    fallback_count = sum(1 for r in results if r.used_land_fallback)
    missing_count = sum(1 for r in results if r.compactness is None)
    print("\n" + "=" * 60)
    print("Summary")
    print("=" * 60)
    print(f"Urban centers: {len(results):,}")
    print(f"Shoreline fallback used: {fallback_count:,}")
    if missing_count:
        print(f"Zero-area geometries (no compactness): {missing_count:,}")
    if df["compactness"].drop_nulls().len():
        print(f"Mean compactness: {df['compactness'].mean():.3f}")
    print(f"Output: {output_path}")


if __name__ == "__main__":
    main()
