import geopandas as gpd
import numpy as np
import pandera.errors
import polars as pl
import pytest
import shapely
from shapely import Point

from urban_metrics.models import (
    CompactnessResult,
    DensityGradientResult,
    WeightedDensityResult,
    results_to_frame,
)
from urban_metrics.s04_merge_urban_metrics import (
    compute_urban_metrics,
    merge_results,
    merge_urban_metrics,
    to_geodataframe,
)
from urban_metrics.utils.geometry_utils import MOLLWEIDE
from urban_metrics.utils.parallel import map_urban_centers
from urban_metrics.utils.schemas import DataIntegrityError

from conftest import block_box, make_raster

ID = "ID_HDC_G0"


@pytest.fixture
def urban_centers():
    return pl.DataFrame({ID: [30, 10, 20], "UC_NM_MN": ["Gamma", "Alpha", "Beta"]})


def compactness(uc_id, value=0.8):
    return CompactnessResult(uc_id=uc_id, hull_geom=shapely.box(0, 0, 1, 1), compactness=value)


def weighted(uc_id, pop=100.0):
    return WeightedDensityResult(
        uc_id=uc_id, total_population=pop, cell_count=1, mean_density=pop, weighted_density=pop
    )


def gradient(uc_id):
    return DensityGradientResult(
        uc_id=uc_id, slope=0.001, intercept=7.0, center=Point(500, -500), r_squared=0.9, cell_count=5
    )


def test_merge_keeps_every_urban_center_in_order(urban_centers):
    merged = merge_results(
        urban_centers,
        [compactness(20), compactness(30)],
        [weighted(10)],
        [gradient(30), DensityGradientResult.undetermined(10, cell_count=1)],
        ID,
    )

    assert merged[ID].to_list() == [30, 10, 20]
    assert merged["UC_NM_MN"].to_list() == ["Gamma", "Alpha", "Beta"]
    assert merged["compactness"].to_list() == [0.8, None, 0.8]
    assert merged["ghs_pop"].to_list() == [None, 100.0, None]
    assert merged["density_gradient_slope"].to_list() == [0.001, None, None]
    assert merged["density_gradient_cells"].to_list() == [5, 1, None]


def test_merge_with_empty_result_sets(urban_centers):
    merged = merge_results(urban_centers, [], [], [], ID)

    assert merged.height == 3
    assert merged[ID].to_list() == [30, 10, 20]
    for column in ["compactness", "ghs_wt_density", "density_gradient_slope"]:
        assert merged[column].null_count() == 3


def test_merge_output_columns(urban_centers):
    merged = merge_results(urban_centers, [compactness(10)], [weighted(10)], [gradient(10)], ID)
    expected = [
        ID, "UC_NM_MN",
        *CompactnessResult.COLUMNS,
        *WeightedDensityResult.COLUMNS,
        *DensityGradientResult.COLUMNS,
    ]
    assert merged.columns == expected


def test_result_ids_missing_from_urban_centers_come_last(urban_centers):
    merged = merge_results(urban_centers, [compactness(99)], [], [], ID)
    assert merged[ID].to_list() == [30, 10, 20, 99]
    assert merged["UC_NM_MN"].to_list()[-1] is None


def test_duplicate_result_id_aborts_merge(urban_centers):
    with pytest.raises(DataIntegrityError, match="compactness"):
        merge_results(urban_centers, [compactness(10), compactness(10)], [], [], ID)


def test_duplicate_urban_center_id_aborts_merge():
    centers = pl.DataFrame({ID: [1, 1]})
    with pytest.raises(DataIntegrityError, match="urban centers"):
        merge_results(centers, [], [], [], ID)


def test_merged_output_is_schema_checked(urban_centers):
    bad = pl.DataFrame(
        {ID: [10], "hull_geom": [None], "compactness": [1.5], "used_land_fallback": [False]},
        schema_overrides={"hull_geom": pl.Binary},
    )
    empty_weighted = results_to_frame([], WeightedDensityResult, ID, pl.Int64)
    empty_gradients = results_to_frame([], DensityGradientResult, ID, pl.Int64)

    with pytest.raises(pandera.errors.SchemaErrors):
        merge_urban_metrics(urban_centers, bad, empty_weighted, empty_gradients, ID)


def test_results_to_frame_empty_uses_fixed_schema():
    df = results_to_frame([], DensityGradientResult, ID, pl.Int32)
    assert df.height == 0
    assert df.schema[ID] == pl.Int32
    assert df.schema["density_gradient_center_geom"] == pl.Binary
    assert df.schema["density_gradient_cells"] == pl.Int64


def test_results_to_frame_encodes_geometry_as_wkb():
    df = results_to_frame([gradient("a")], DensityGradientResult, "uc")
    assert shapely.from_wkb(df["density_gradient_center_geom"][0]).equals(Point(500, -500))


def test_to_geodataframe_decodes_geometries():
    merged = pl.DataFrame(
        {
            ID: [1, 2],
            "geometry": [shapely.to_wkb(shapely.box(0, 0, 1, 1)), shapely.to_wkb(shapely.box(1, 1, 2, 2))],
            "hull_geom": [shapely.to_wkb(shapely.box(0, 0, 1, 1)), None],
        },
        schema_overrides={"geometry": pl.Binary, "hull_geom": pl.Binary},
    )
    gdf = to_geodataframe(merged, "geometry", MOLLWEIDE)

    assert isinstance(gdf, gpd.GeoDataFrame)
    assert gdf.geometry.name == "geometry"
    assert gdf.crs.equals(MOLLWEIDE)
    assert gdf.geometry.iloc[1].equals(shapely.box(1, 1, 2, 2))
    assert gdf["hull_geom"].iloc[1] is None


def test_map_urban_centers_rejects_duplicate_ids(center_factory):
    centers = [center_factory(1, shapely.box(0, 0, 1, 1)), center_factory(1, shapely.box(0, 0, 1, 1))]
    with pytest.raises(DataIntegrityError):
        map_urban_centers(lambda c: c.uc_id, centers)


@pytest.mark.parametrize("workers", [1, 4])
def test_map_urban_centers_propagates_worker_errors(center_factory, workers):
    def explode(center):
        if center.uc_id == 2:
            raise RuntimeError("boom")
        return center.uc_id

    centers = [center_factory(i, shapely.box(0, 0, 1, 1)) for i in range(4)]
    with pytest.raises(RuntimeError, match="boom"):
        map_urban_centers(explode, centers, workers=workers)


def test_compute_urban_metrics_end_to_end():
    gdf = gpd.GeoDataFrame(
        {ID: [1, 2], "UC_NM_MN": ["Inland", "Offshore"]},
        geometry=[block_box(0, 0, 2, 2), block_box(0, 10, 2, 12)],
        crs=MOLLWEIDE,
    )
    # Land stops west of the second urban center
    land = [shapely.box(-1e6, -1e6, 5_000, 1e6)]
    values = np.array([
        [400.0, 200.0, 100.0, 50.0],
        [200.0, 100.0, 50.0, 25.0],
        [100.0, 50.0, 25.0, 12.0],
        [50.0, 25.0, 12.0, 6.0],
    ])
    raster = make_raster(values)

    merged = compute_urban_metrics(gdf, land, raster, ID, MOLLWEIDE, workers=2)

    assert merged[ID].to_list() == [1, 2]
    assert merged["used_land_fallback"].to_list() == [False, True]
    assert merged["compactness"].to_list() == pytest.approx([1.0, 1.0])

    assert merged["ghs_pop"].to_list() == pytest.approx([900.0, 0.0])
    assert merged["ghs_cell_count"].to_list() == [4, 0]
    assert merged["ghs_density"].to_list()[1] is None

    slopes = merged["density_gradient_slope"].to_list()
    assert slopes[0] is not None and slopes[0] > 0
    assert slopes[1] is None

    out = to_geodataframe(merged, "geometry", MOLLWEIDE)
    assert out.geometry.iloc[0].equals(block_box(0, 0, 2, 2))
    assert out["density_gradient_center_geom"].iloc[0].equals(Point(500, -500))
