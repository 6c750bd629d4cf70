"""Utility modules for the urban metrics pipeline."""

from .config import config
from .schemas import DataIntegrityError

__all__ = ["config", "DataIntegrityError"]
