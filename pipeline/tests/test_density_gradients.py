import math

import numpy as np
import pytest
from shapely import Point

from urban_metrics.s02_compute_density_gradients import (
    compute_all_density_gradients,
    estimate_density_gradient,
    fit_candidate_gradients,
    select_best_candidate,
)

from conftest import PIXEL, block_box, make_raster


def brute_force_fits(x, y, population):
    """Per-candidate OLS with np.polyfit, one candidate at a time."""
    log_pop = np.log(population)
    slopes, intercepts, r2s = [], [], []
    for i in range(len(x)):
        d = np.hypot(x - x[i], y - y[i])
        keep = d > 0
        if keep.sum() < 2 or np.unique(d[keep]).size < 2:
            slopes.append(np.nan)
            intercepts.append(np.nan)
            r2s.append(np.nan)
            continue
        beta, alpha = np.polyfit(d[keep], log_pop[keep], 1)
        slopes.append(-beta)
        intercepts.append(alpha)
        r2s.append(np.corrcoef(d[keep], log_pop[keep])[0, 1] ** 2)
    return np.array(slopes), np.array(intercepts), np.array(r2s)


@pytest.fixture
def scattered_cells():
    rng = np.random.default_rng(42)
    cells = rng.choice(100, size=25, replace=False)
    x = (cells % 10).astype(float) * PIXEL
    y = (cells // 10).astype(float) * PIXEL
    population = rng.uniform(1, 5_000, size=25)
    return x, y, population


def test_exact_exponential_decay_from_first_cell():
    x = np.arange(5, dtype=float)
    y = np.zeros(5)
    population = 2000.0 / 2 ** np.arange(5)

    fits = fit_candidate_gradients(x, y, population)

    assert fits.slope[0] == pytest.approx(math.log(2))
    assert fits.intercept[0] == pytest.approx(math.log(2000))
    assert fits.r_squared[0] == pytest.approx(1.0)
    # Seen from the other end the decay is a growth
    assert fits.slope[4] == pytest.approx(-math.log(2))


def test_candidate_fits_match_polyfit(scattered_cells):
    x, y, population = scattered_cells
    fits = fit_candidate_gradients(x, y, population)
    slopes, intercepts, r2s = brute_force_fits(x, y, population)

    np.testing.assert_allclose(fits.slope, slopes, rtol=1e-8, atol=1e-12, equal_nan=True)
    np.testing.assert_allclose(fits.intercept, intercepts, rtol=1e-8, equal_nan=True)
    np.testing.assert_allclose(fits.r_squared, r2s, rtol=1e-6, atol=1e-10, equal_nan=True)


@pytest.mark.parametrize("chunk_size", [1, 3, 7, 0])
def test_chunk_size_does_not_change_results(scattered_cells, chunk_size):
    x, y, population = scattered_cells
    reference = fit_candidate_gradients(x, y, population, chunk_size=512)
    chunked = fit_candidate_gradients(x, y, population, chunk_size=chunk_size)
    np.testing.assert_allclose(chunked.slope, reference.slope, equal_nan=True)
    np.testing.assert_allclose(chunked.intercept, reference.intercept, equal_nan=True)


def test_equidistant_candidate_has_no_slope():
    x = np.array([0.0, 1.0, 0.0])
    y = np.array([0.0, 0.0, 1.0])
    fits = fit_candidate_gradients(x, y, np.array([1.0, 2.0, 3.0]))
    assert np.isnan(fits.slope[0])
    assert not np.isnan(fits.slope[1])


def test_select_best_candidate():
    assert select_best_candidate(np.array([])) is None
    assert select_best_candidate(np.array([np.nan, np.nan])) is None
    assert select_best_candidate(np.array([np.nan, 0.5, 0.5, 0.1])) == 1
    assert select_best_candidate(np.array([-3.0, -1.0, np.nan])) == 1


@pytest.mark.parametrize("values", [[[100.0]], [[100.0, 50.0]]])
def test_too_few_cells_is_undetermined(center_factory, values):
    raster = make_raster(np.array(values))
    result = estimate_density_gradient(center_factory(1, block_box(0, 0, 1, len(values[0]))), raster)

    assert not result.is_determined
    assert result.slope is None
    assert result.intercept is None
    assert result.center is None
    assert result.cell_count == len(values[0])


def test_no_cells_is_undetermined(center_factory):
    raster = make_raster(np.full((2, 2), 10.0))
    result = estimate_density_gradient(center_factory(1, block_box(5, 5, 6, 6)), raster)
    assert not result.is_determined
    assert result.cell_count == 0


def test_negative_slope_is_kept_and_ties_go_to_lowest_x(center_factory):
    raster = make_raster(np.array([[100.0, 1.0, 100.0]]))
    result = estimate_density_gradient(center_factory(1, block_box(0, 0, 1, 3)), raster)

    assert result.slope == pytest.approx(-math.log(100) / PIXEL)
    assert result.slope < 0
    assert result.center.equals(Point(500, -500))
    assert result.cell_count == 3


def test_flat_population_has_zero_slope_and_no_r_squared(center_factory):
    raster = make_raster(np.full((1, 3), 50.0))
    result = estimate_density_gradient(center_factory(1, block_box(0, 0, 1, 3)), raster)
    assert result.slope == pytest.approx(0.0)
    assert result.r_squared is None


def test_unpopulated_cells_are_excluded(center_factory):
    values = np.array([[0.0, 400.0, 200.0, 100.0]])
    raster = make_raster(values)
    result = estimate_density_gradient(center_factory(1, block_box(0, 0, 1, 4)), raster)

    assert result.cell_count == 3
    assert result.slope == pytest.approx(math.log(2) / PIXEL)
    assert result.center.equals(Point(1500, -500))


def test_estimate_picks_the_steepest_candidate(center_factory):
    rng = np.random.default_rng(7)
    values = rng.uniform(1, 1_000, size=(5, 5))
    values[0, 0] = 0.0
    raster = make_raster(values)

    result = estimate_density_gradient(center_factory(1, block_box(0, 0, 5, 5)), raster, chunk_size=4)

    sample = raster.sample_centroids(block_box(0, 0, 5, 5))
    keep = sample.population > 0
    x, y, population = sample.x[keep], sample.y[keep], sample.population[keep]
    slopes, intercepts, _ = brute_force_fits(x, y, population)
    best = int(np.nanargmax(slopes))

    assert result.cell_count == 24
    assert result.slope == pytest.approx(slopes[best])
    assert result.intercept == pytest.approx(intercepts[best])
    assert result.center.equals(Point(x[best], y[best]))


def test_compute_all_density_gradients(center_factory):
    raster = make_raster(np.array([[400.0, 200.0, 100.0, 50.0]]))
    centers = [
        center_factory("b", block_box(0, 0, 1, 4)),
        center_factory("a", block_box(0, 0, 1, 1)),
    ]
    results = compute_all_density_gradients(centers, raster, workers=2)

    assert [r.uc_id for r in results] == ["b", "a"]
    assert results[0].is_determined
    assert not results[1].is_determined
