"""Tests for sampling, model fitting, and block prediction."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from tilewise import model as model_mod
from tilewise.errors import InvalidArgument, PredictionError
from tilewise.stack import Block, open_raster_stack
from tilewise.tiling import Extent, Tile

from .conftest import SOURCE_NODATA


def test_sampling_is_reproducible_for_a_seed():
    extent = Extent(200, 300)

    rows_a, cols_a = model_mod.sample_within_extent(extent, 500, seed=7)
    rows_b, cols_b = model_mod.sample_within_extent(extent, 500, seed=7)
    rows_c, _ = model_mod.sample_within_extent(extent, 500, seed=8)

    np.testing.assert_array_equal(rows_a, rows_b)
    np.testing.assert_array_equal(cols_a, cols_b)
    assert not np.array_equal(rows_a, rows_c)
    assert rows_a.min() >= 0 and rows_a.max() < 200
    assert cols_a.min() >= 0 and cols_a.max() < 300
    assert len(set(zip(rows_a.tolist(), cols_a.tolist()))) == 500


def test_sampling_caps_at_pixel_count():
    rows, cols = model_mod.sample_within_extent(Extent(3, 4), 100, seed=0)

    assert rows.size == 12
    assert sorted(zip(rows.tolist(), cols.tolist())) == [
        (r, c) for r in range(3) for c in range(4)
    ]


def test_sampling_rejects_non_positive_count():
    with pytest.raises(InvalidArgument):
        model_mod.sample_within_extent(Extent(3, 4), 0, seed=0)


def test_extract_values_discards_nodata_rows(scene_path, scene):
    rows = np.array([0, 5, 3, 19])
    cols = np.array([0, 7, 4, 49])

    with open_raster_stack(scene_path) as stack:
        frame = model_mod.extract_values(stack, rows, cols)

    assert list(frame.columns) == ["row", "col", "x", "y", "band_1", "band_2", "band_3"]
    assert frame[["row", "col"]].values.tolist() == [[3, 4], [19, 49]]
    np.testing.assert_allclose(frame.loc[0, ["band_1", "band_2", "band_3"]], scene[:, 3, 4], rtol=1e-6)
    np.testing.assert_allclose(frame.loc[1, ["band_1", "band_2", "band_3"]], scene[:, 19, 49], rtol=1e-6)
    assert frame.loc[0, "x"] == pytest.approx(500000 + 4 * 10 + 5)
    assert frame.loc[0, "y"] == pytest.approx(4000000 - 3 * 10 - 5)


def test_extract_values_honours_band_selection(split_scene_paths, scene):
    with open_raster_stack(split_scene_paths, band_indices=[3]) as stack:
        frame = model_mod.extract_values(stack, np.array([1]), np.array([2]))

    assert "band_3" in frame.columns and "band_1" not in frame.columns
    assert frame.loc[0, "band_3"] == pytest.approx(scene[2, 1, 2])


def test_fit_model_requires_enough_samples():
    samples = pd.DataFrame({"band_1": [1.0, 2.0], "band_2": [3.0, 4.0]})

    with pytest.raises(InvalidArgument, match="at least 3"):
        model_mod.fit_model(samples, 3)


def test_fit_model_rejects_unknown_covariance():
    samples = pd.DataFrame({"band_1": [1.0, 2.0, 3.0]})

    with pytest.raises(InvalidArgument, match="covariance_type"):
        model_mod.fit_model(samples, 1, covariance_type="banana")


def test_fit_model_separates_surfaces(scene_path):
    with open_raster_stack(scene_path) as stack:
        rows, cols = model_mod.sample_within_extent(stack.extent, 400, seed=1)
        samples = model_mod.extract_values(stack, rows, cols)

    gmm = model_mod.fit_model(samples, 2, random_state=1)

    assert gmm.band_columns_ == ["band_1", "band_2", "band_3"]
    assert gmm.n_features_in_ == 3
    labels = gmm.predict(samples[gmm.band_columns_].to_numpy())
    left = labels[samples["col"].to_numpy() < 25]
    right = labels[samples["col"].to_numpy() >= 25]
    assert len(set(left)) == 1 and len(set(right)) == 1
    assert left[0] != right[0]


def test_save_and_load_model(tmp_path, gmm_model):
    path = model_mod.save_model(gmm_model, tmp_path / "models" / "gmm.joblib")
    loaded = model_mod.load_model(path)

    np.testing.assert_allclose(loaded.means_, gmm_model.means_)


def test_load_model_missing_file(tmp_path):
    with pytest.raises(InvalidArgument, match="not found"):
        model_mod.load_model(tmp_path / "nope.joblib")


def _block(data: np.ndarray, nodata=SOURCE_NODATA) -> Block:
    tile = Tile(index=5, row_off=0, col_off=0, rows=data.shape[1], cols=data.shape[2])
    return Block(
        tile=tile,
        data=data.astype("float32"),
        transform=None,
        crs=None,
        nodata_values=[nodata] * data.shape[0],
    )


def test_predict_block_propagates_nodata(threshold_model):
    data = np.full((3, 2, 3), 10.0)
    data[:, 1, :] = 90.0
    data[1, 0, 2] = SOURCE_NODATA
    data[2, 1, 0] = np.nan

    labels = model_mod.predict_block(threshold_model, _block(data))

    assert labels.dtype == np.int16
    assert labels.tolist() == [[0, 0, -1], [-1, 1, 1]]


def test_predict_block_all_nodata_skips_model(threshold_model):
    data = np.full((3, 2, 2), SOURCE_NODATA)

    labels = model_mod.predict_block(threshold_model, _block(data), nodata_value=255, out_dtype="uint8")

    assert labels.tolist() == [[255, 255], [255, 255]]
    assert threshold_model.calls == 0


def test_predict_block_rejects_wrong_band_count(threshold_model):
    with pytest.raises(PredictionError, match="expects 3 bands") as excinfo:
        model_mod.predict_block(threshold_model, _block(np.zeros((2, 2, 2))))

    assert excinfo.value.tile_index == 5


def test_predict_block_wraps_model_errors():
    class _Broken:
        def predict(self, X):
            raise ValueError("bad input")

    with pytest.raises(PredictionError, match="bad input"):
        model_mod.predict_block(_Broken(), _block(np.ones((3, 2, 2))))


def test_write_sample_points(tmp_path, scene_path):
    import geopandas as gpd

    with open_raster_stack(scene_path) as stack:
        rows, cols = model_mod.sample_within_extent(stack.extent, 10, seed=3)
        frame = model_mod.extract_values(stack, rows, cols)
        crs = stack.crs

    out = model_mod.write_sample_points(frame, tmp_path / "pts.gpkg", crs=crs)
    gdf = gpd.read_file(out)

    assert len(gdf) == len(frame)
    assert gdf.crs.to_epsg() == 32631
