"""
Per-urban-center parallel map.

Purpose: Run one metric over all urban centers and collect results by id
Decision log:
  - Urban centers are independent, inputs are read-only: ThreadPoolExecutor
    (shapely, numpy and GDAL release the GIL for the heavy parts)
  - Only the main thread writes to the result dict (single writer)
  - Duplicate ids are rejected before any work is scheduled
  - A worker exception propagates and stops the step; expected per-entity
    conditions are already values in the results
Date: 2025-01-14
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, TypeVar

from tqdm import tqdm

from ..models import UrbanCenter
from .schemas import check_unique_ids

R = TypeVar("R")


def map_urban_centers(
    func: Callable[[UrbanCenter], R],
    centers: list[UrbanCenter],
    workers: int = 8,
    desc: str = "Urban centers",
) -> dict[Any, R]:
    """
    Apply `func` to every urban center.

    Args:
        func: Metric function taking one UrbanCenter
        centers: Urban centers to process
        workers: Thread count (1 runs inline)
        desc: Progress bar label

    Returns:
        Dict of uc_id -> result, in input order
    """
    check_unique_ids((c.uc_id for c in centers), "urban centers")

    collected: dict[Any, R] = {}

    if workers <= 1:
        for center in tqdm(centers, desc=desc):
            collected[center.uc_id] = func(center)
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(func, center): center.uc_id for center in centers}
            for future in tqdm(as_completed(futures), total=len(futures), desc=desc):
                collected[futures[future]] = future.result()

    return {c.uc_id: collected[c.uc_id] for c in centers}
