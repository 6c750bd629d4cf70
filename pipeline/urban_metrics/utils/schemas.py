"""
Result set schemas and integrity checks.

Purpose: Guard the per-metric result sets and the merged output
Decision log:
  - Uses Pandera (polars backend) for column range/nullability checks
  - Id uniqueness checked separately: the id column name comes from config,
    so it cannot be a model field
  - A duplicate id is an upstream contract violation and aborts the run
Date: 2025-01-14
"""

from collections import Counter
from typing import Iterable

import polars as pl
from pandera.polars import DataFrameModel, Field


class DataIntegrityError(ValueError):
    """A result set or input table breaks the one-row-per-id contract."""


def find_duplicate_ids(ids: Iterable) -> list:
    """Ids occurring more than once, in first-seen order."""
    counts = Counter(ids)
    return [uc_id for uc_id, n in counts.items() if n > 1]


def check_unique_ids(ids: Iterable, source: str) -> None:
    """
    Raise DataIntegrityError if any id repeats.

    Args:
        ids: Urban center ids of one result set or input table
        source: Name of that set, used in the error message
    """
    duplicates = find_duplicate_ids(ids)
    if duplicates:
        shown = ", ".join(str(d) for d in duplicates[:10])
        more = f" (+{len(duplicates) - 10} more)" if len(duplicates) > 10 else ""
        raise DataIntegrityError(
            f"{source}: {len(duplicates)} duplicate urban center id(s): {shown}{more}"
        )


# =============================================================================
# Schema Definitions
# =============================================================================


class CompactnessSchema(DataFrameModel):
    """Schema for compactness.parquet."""

    compactness: float = Field(gt=0, le=1, nullable=True)  # null only for zero-area input
    used_land_fallback: bool = Field(nullable=False)

    class Config:
        strict = False  # Allow id and geometry columns
        coerce = True


class DensityGradientSchema(DataFrameModel):
    """Schema for density_gradients.parquet."""

    density_gradient_slope: float = Field(nullable=True)  # may be negative
    density_gradient_intercept: float = Field(nullable=True)
    density_gradient_r_squared: float = Field(ge=0, le=1, nullable=True)
    density_gradient_cells: int = Field(ge=0, nullable=False)

    class Config:
        strict = False
        coerce = True


class WeightedDensitySchema(DataFrameModel):
    """Schema for weighted_density.parquet."""

    ghs_pop: float = Field(ge=0, nullable=False)
    ghs_cell_count: int = Field(ge=0, nullable=False)
    ghs_density: float = Field(ge=0, nullable=True)  # null when no cells
    ghs_wt_density: float = Field(ge=0, nullable=False)
    ghs_clip_failures: int = Field(ge=0, nullable=False)

    class Config:
        strict = False
        coerce = True


class UrbanMetricsSchema(DataFrameModel):
    """Schema for the merged output; every metric may be missing."""

    compactness: float = Field(gt=0, le=1, nullable=True)
    used_land_fallback: bool = Field(nullable=True)
    ghs_pop: float = Field(ge=0, nullable=True)
    ghs_cell_count: int = Field(ge=0, nullable=True)
    ghs_density: float = Field(ge=0, nullable=True)
    ghs_wt_density: float = Field(ge=0, nullable=True)
    ghs_clip_failures: int = Field(ge=0, nullable=True)
    density_gradient_slope: float = Field(nullable=True)
    density_gradient_intercept: float = Field(nullable=True)
    density_gradient_r_squared: float = Field(ge=0, le=1, nullable=True)
    density_gradient_cells: int = Field(ge=0, nullable=True)

    class Config:
        strict = False
        coerce = True


def validate_frame(df: pl.DataFrame, schema: type[DataFrameModel], id_column: str, source: str) -> pl.DataFrame:
    """
    Check id uniqueness, then validate against a Pandera schema.

    Raises:
        DataIntegrityError: duplicate ids
        pandera.errors.SchemaErrors: column checks failed (all failures collected)
    """
    check_unique_ids(df[id_column].to_list(), source)
    return schema.validate(df, lazy=True)
