"""
Urban center inputs and per-metric result records.

Purpose: Typed records passed between the metric steps and the merge step
Decision log:
  - Frozen dataclasses: every record is written once by one worker
  - Results convert to polars frames with a fixed schema so empty result
    sets still join cleanly
  - Geometries travel through polars as WKB (pl.Binary)
Date: 2025-01-14
"""

from dataclasses import dataclass
from typing import Any, ClassVar

import polars as pl
import shapely
from shapely import Point


@dataclass(frozen=True)
class UrbanCenter:
    """One urban center polygon in the projected source CRS."""

    uc_id: Any
    geometry: shapely.Geometry


def _wkb(geometry: shapely.Geometry | None) -> bytes | None:
    if geometry is None:
        return None
    return shapely.to_wkb(geometry)


@dataclass(frozen=True)
class CompactnessResult:
    """Land-clipped area over land-clipped convex hull area."""

    COLUMNS: ClassVar[dict[str, pl.DataType]] = {
        "hull_geom": pl.Binary,
        "compactness": pl.Float64,
        "used_land_fallback": pl.Boolean,
    }

    uc_id: Any
    hull_geom: shapely.Geometry | None
    compactness: float | None
    used_land_fallback: bool = False

    def to_row(self) -> dict:
        return {
            "hull_geom": _wkb(self.hull_geom),
            "compactness": self.compactness,
            "used_land_fallback": self.used_land_fallback,
        }


@dataclass(frozen=True)
class DensityGradientResult:
    """
    Best-fitting exponential density decay for one urban center.

    slope is the decay rate (positive = density falls with distance);
    all fields except uc_id and cell_count are None when undeterminable.
    """

    COLUMNS: ClassVar[dict[str, pl.DataType]] = {
        "density_gradient_slope": pl.Float64,
        "density_gradient_intercept": pl.Float64,
        "density_gradient_r_squared": pl.Float64,
        "density_gradient_center_geom": pl.Binary,
        "density_gradient_cells": pl.Int64,
    }

    uc_id: Any
    slope: float | None
    intercept: float | None
    center: Point | None
    r_squared: float | None = None
    cell_count: int = 0

    @classmethod
    def undetermined(cls, uc_id: Any, cell_count: int = 0) -> "DensityGradientResult":
        return cls(uc_id=uc_id, slope=None, intercept=None, center=None, cell_count=cell_count)

    @property
    def is_determined(self) -> bool:
        return self.slope is not None

    def to_row(self) -> dict:
        return {
            "density_gradient_slope": self.slope,
            "density_gradient_intercept": self.intercept,
            "density_gradient_r_squared": self.r_squared,
            "density_gradient_center_geom": _wkb(self.center),
            "density_gradient_cells": self.cell_count,
        }


@dataclass(frozen=True)
class WeightedDensityResult:
    """Zonal population statistics for one urban center."""

    COLUMNS: ClassVar[dict[str, pl.DataType]] = {
        "ghs_pop": pl.Float64,
        "ghs_cell_count": pl.Int64,
        "ghs_density": pl.Float64,
        "ghs_wt_density": pl.Float64,
        "ghs_clip_failures": pl.Int64,
    }

    uc_id: Any
    total_population: float
    cell_count: int
    mean_density: float | None
    weighted_density: float
    clip_failures: int = 0

    def to_row(self) -> dict:
        return {
            "ghs_pop": self.total_population,
            "ghs_cell_count": self.cell_count,
            "ghs_density": self.mean_density,
            "ghs_wt_density": self.weighted_density,
            "ghs_clip_failures": self.clip_failures,
        }


def results_to_frame(
    results: list,
    result_type: type,
    id_column: str,
    id_dtype: pl.DataType | None = None,
) -> pl.DataFrame:
    """
    Convert result records to a polars frame.

    Args:
        results: Records of a single result type
        result_type: The record class (provides the column schema)
        id_column: Name for the urban center id column
        id_dtype: Id dtype to enforce (needed when results may be empty)

    Returns:
        DataFrame with the id column followed by the result columns
    """
    rows = [r.to_row() for r in results]
    data = {id_column: [r.uc_id for r in results]}
    for column in result_type.COLUMNS:
        data[column] = [row[column] for row in rows]

    overrides = dict(result_type.COLUMNS)
    if id_dtype is not None:
        overrides[id_column] = id_dtype
    return pl.DataFrame(data, schema_overrides=overrides)
