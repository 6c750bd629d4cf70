import pytest

from urban_metrics.utils.tile_utils import (
    GLOBAL_TILE_ID,
    find_tile_files,
    format_tile_id,
    parse_tile_id,
    tile_id_from_filename,
)


def test_parse_and_format_tile_id():
    assert parse_tile_id("R5_C19") == (5, 19)
    assert format_tile_id(5, 19) == "R5_C19"


def test_parse_tile_id_rejects_garbage():
    with pytest.raises(ValueError):
        parse_tile_id("tile_5_19")


def test_tile_id_from_filename_skips_release_tag():
    name = "GHS_POP_E2020_GLOBE_R2023A_54009_1000_V1_0_R5_C19.tif"
    assert tile_id_from_filename(name) == "R5_C19"


def test_tile_id_from_untiled_filename_is_none():
    assert tile_id_from_filename("GHS_POP_E2020_GLOBE_R2023A_54009_1000_V1_0.tif") is None


def test_find_tile_files_sorted_by_row_col(tmp_path):
    for name in ["pop_R10_C2.tif", "pop_R2_C11.tif", "pop_R2_C3.tif", "notes.txt"]:
        (tmp_path / name).touch()

    tiles = find_tile_files(tmp_path)

    assert [t.tile_id for t in tiles] == ["R2_C3", "R2_C11", "R10_C2"]
    assert tiles[0].path == tmp_path / "pop_R2_C3.tif"


def test_find_tile_files_accepts_single_global_file(tmp_path):
    (tmp_path / "GHS_POP_E2020_GLOBE_R2023A_54009_1000_V1_0.tif").touch()
    tiles = find_tile_files(tmp_path)
    assert len(tiles) == 1
    assert tiles[0].tile_id == GLOBAL_TILE_ID


def test_find_tile_files_rejects_several_untiled_files(tmp_path):
    (tmp_path / "a.tif").touch()
    (tmp_path / "b.tif").touch()
    with pytest.raises(ValueError):
        find_tile_files(tmp_path)


def test_find_tile_files_empty_directory(tmp_path):
    assert find_tile_files(tmp_path) == []
