"""End-to-end tests for the training and tiled prediction workflows."""

from __future__ import annotations

import numpy as np
import pytest
import rasterio

from tilewise import classify
from tilewise.errors import LoadError, MosaicError, RunCancelled
from tilewise.model import load_model
from tilewise.stack import RasterStack


@pytest.fixture
def trained(tmp_path, split_scene_paths):
    model_fp = tmp_path / "model" / "gmm.joblib"
    gmm = classify.train_gmm(
        split_scene_paths,
        model_fp,
        n_clusters=2,
        sample_size=300,
        seed=3,
        points_out=tmp_path / "model" / "samples.gpkg",
    )
    return gmm, model_fp


def test_train_gmm_saves_model_and_points(trained, tmp_path):
    gmm, model_fp = trained

    loaded = load_model(model_fp)
    assert loaded.n_components == 2
    assert loaded.sample_seed_ == 3
    assert 0 < loaded.sample_count_ <= 300
    np.testing.assert_allclose(loaded.means_, gmm.means_)
    assert (tmp_path / "model" / "samples.gpkg").exists()


def test_train_gmm_records_band_selection(tmp_path, scene_path):
    gmm = classify.train_gmm(
        scene_path, tmp_path / "gmm.joblib", n_clusters=2, sample_size=200, band_indices=[1, 3]
    )

    assert gmm.band_indices == [1, 3]
    assert gmm.band_columns_ == ["band_1", "band_3"]
    assert gmm.n_features_in_ == 2


def test_predict_gmm_end_to_end(tmp_path, trained, split_scene_paths, scene):
    _, model_fp = trained

    result = classify.predict_gmm(
        split_scene_paths, model_fp, tmp_path / "out" / "classes.tif", block_shape=(8, 12), jobs=3
    )

    assert result.prediction.complete
    assert result.mosaic.complete
    with rasterio.open(result.output) as ds:
        labels = ds.read(1)
        assert (ds.height, ds.width) == (20, 50)
    assert labels[0, 0] == -1 and labels[5, 7] == -1
    left = set(np.unique(labels[:, :25])) - {-1}
    right = set(np.unique(labels[:, 25:])) - {-1}
    assert len(left) == 1 and len(right) == 1 and left != right
    assert "Succeeded: 15" in result.report.read_text(encoding="utf-8")
    assert not (tmp_path / "out" / "classes.vrt").exists()
    assert [p.name for p in (tmp_path / "out").iterdir() if p.name.startswith("tilewise-")] == []


def test_predict_gmm_keeps_tiles_in_workdir(tmp_path, trained, split_scene_paths):
    _, model_fp = trained
    workdir = tmp_path / "work"

    result = classify.predict_gmm(
        split_scene_paths,
        model_fp,
        tmp_path / "classes.tif",
        block_shape=(10, 25),
        jobs=1,
        workdir=workdir,
        keep_tiles=True,
    )

    assert sorted(p.name for p in workdir.glob("tile_*.tif")) == [
        "tile_0.tif",
        "tile_1.tif",
        "tile_2.tif",
        "tile_3.tif",
    ]
    assert result.mosaic.vrt_path.exists()


def test_predict_gmm_removes_tiles_from_workdir_by_default(tmp_path, trained, split_scene_paths):
    _, model_fp = trained
    workdir = tmp_path / "work"

    classify.predict_gmm(
        split_scene_paths, model_fp, tmp_path / "classes.tif", block_shape=(10, 25), workdir=workdir
    )

    assert list(workdir.glob("tile_*.tif")) == []


def test_predict_gmm_rewrites_vrt_output(tmp_path, trained, split_scene_paths):
    _, model_fp = trained

    result = classify.predict_gmm(split_scene_paths, model_fp, tmp_path / "classes.vrt", jobs=1)

    assert result.output == tmp_path / "classes.tif"


def test_predict_gmm_reports_partial_mosaic(tmp_path, trained, split_scene_paths, monkeypatch):
    _, model_fp = trained
    original = RasterStack.read_block

    def flaky(self, tile):
        if tile.index == 1:
            raise LoadError("corrupt block", tile.index)
        return original(self, tile)

    monkeypatch.setattr(RasterStack, "read_block", flaky)

    result = classify.predict_gmm(
        split_scene_paths, model_fp, tmp_path / "classes.tif", block_shape=(10, 25), jobs=2
    )

    assert not result.prediction.complete
    assert result.mosaic.missing_tiles == (1,)
    with rasterio.open(result.output) as ds:
        assert np.all(ds.read(1)[:10, 25:] == -1)
    text = result.report.read_text(encoding="utf-8")
    assert "Failed: 1" in text
    assert "corrupt block" in text
    assert "partial tile set" in text


def test_predict_gmm_all_tiles_failed_writes_report(tmp_path, trained, split_scene_paths, monkeypatch):
    _, model_fp = trained

    def broken(self, tile):
        raise LoadError("unreadable", tile.index)

    monkeypatch.setattr(RasterStack, "read_block", broken)

    with pytest.raises(MosaicError):
        classify.predict_gmm(
            split_scene_paths, model_fp, tmp_path / "classes.tif", block_shape=(10, 25), jobs=1
        )

    text = (tmp_path / "classes_report.txt").read_text(encoding="utf-8")
    assert "Failed: 4" in text
    assert "Mosaic: not run." in text


def test_predict_gmm_interrupt_writes_report_and_keeps_workdir_tiles(
    tmp_path, trained, split_scene_paths, monkeypatch
):
    _, model_fp = trained
    workdir = tmp_path / "work"
    original = RasterStack.read_block

    def interrupted(self, tile):
        if tile.index == 2:
            raise KeyboardInterrupt
        return original(self, tile)

    monkeypatch.setattr(RasterStack, "read_block", interrupted)

    with pytest.raises(RunCancelled):
        classify.predict_gmm(
            split_scene_paths,
            model_fp,
            tmp_path / "classes.tif",
            block_shape=(10, 25),
            jobs=1,
            workdir=workdir,
        )

    assert sorted(p.name for p in workdir.glob("tile_*.tif")) == ["tile_0.tif", "tile_1.tif"]
    assert not (tmp_path / "classes.tif").exists()
    text = (tmp_path / "classes_report.txt").read_text(encoding="utf-8")
    assert "Succeeded: 2" in text
    assert "Failed: 2" in text
    assert "tile 2 (row 10, col 0): Cancelled" in text
    assert "Mosaic: not run." in text
