"""
Pipeline configuration and constants.

Purpose: Central configuration for the urban metrics steps
Decision log:
  - Using pydantic-settings for type-safe config with env var support
  - Paths are relative to project root for portability
  - Urban centers and population tiles share the GHSL Mollweide CRS (ESRI:54009)
  - GHSL-POP marks nodata as -200
  - Density gradient pairwise pass is blocked by candidate rows to bound memory
Date: 2025-01-14
"""

from pathlib import Path
from typing import ClassVar

from pydantic_settings import BaseSettings


class PipelineConfig(BaseSettings):
    """Configuration loaded from environment or defaults."""

    # Paths (computed from project root)
    PROJECT_ROOT: ClassVar[Path] = Path(__file__).parent.parent.parent.parent
    DATA_DIR: ClassVar[Path] = PROJECT_ROOT / "data"
    RAW_DIR: ClassVar[Path] = DATA_DIR / "raw"
    INTERIM_DIR: ClassVar[Path] = DATA_DIR / "interim"
    PROCESSED_DIR: ClassVar[Path] = DATA_DIR / "processed"

    # Source dataset settings
    URBAN_CENTER_ID_COLUMN: str = "ID_HDC_G0"
    URBAN_CENTER_CRS: str = "ESRI:54009"  # World Mollweide, same as GHSL-POP
    POPULATION_NODATA: float = -200.0

    # Raw input locations (relative to RAW_DIR)
    URBAN_CENTERS_SUBDIR: str = "ucdb"
    SHORELINE_SUBDIR: str = "shoreline"
    POPULATION_SUBDIR: str = "ghsl_pop_1km"

    # Processing settings
    RASTER_CHUNK_SIZE: tuple[int, int] = (2048, 2048)
    GRADIENT_CHUNK_SIZE: int = 512  # candidate rows per pairwise distance block
    PARALLEL_WORKERS: int = 8

    class Config:
        env_prefix = "URBAN_"
        case_sensitive = False


# Global config instance
config = PipelineConfig()


# Convenience path accessors
def get_raw_path(subdir: str = "") -> Path:
    """Get path in raw data directory."""
    path = config.RAW_DIR / subdir if subdir else config.RAW_DIR
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_interim_path(subdir: str = "") -> Path:
    """Get path in interim data directory."""
    path = config.INTERIM_DIR / subdir if subdir else config.INTERIM_DIR
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_processed_path(subdir: str = "") -> Path:
    """Get path in processed data directory."""
    path = config.PROCESSED_DIR / subdir if subdir else config.PROCESSED_DIR
    path.mkdir(parents=True, exist_ok=True)
    return path
