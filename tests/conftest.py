"""Pytest fixtures for tilewise tests."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
import rasterio
from rasterio.transform import from_origin

SOURCE_NODATA = -9999.0
CRS = "EPSG:32631"


def write_raster(
    fp: Path,
    data: np.ndarray,
    *,
    transform=None,
    crs: str = CRS,
    nodata=SOURCE_NODATA,
    dtype: str = "float32",
) -> Path:
    """Write a (bands, rows, cols) array as a GeoTIFF."""
    if data.ndim == 2:
        data = data[np.newaxis, :, :]
    fp.parent.mkdir(parents=True, exist_ok=True)
    profile = {
        "driver": "GTiff",
        "height": int(data.shape[1]),
        "width": int(data.shape[2]),
        "count": int(data.shape[0]),
        "dtype": dtype,
        "crs": crs,
        "transform": transform if transform is not None else from_origin(500000, 4000000, 10, 10),
        "nodata": nodata,
    }
    with rasterio.open(fp, "w", **profile) as ds:
        ds.write(data.astype(dtype))
    return fp


def make_scene(rows: int = 20, cols: int = 50, bands: int = 3, seed: int = 0) -> np.ndarray:
    """Two well separated surfaces: dark on the left half, bright on the right."""
    rng = np.random.default_rng(seed)
    data = np.empty((bands, rows, cols), dtype="float32")
    half = cols // 2
    for band in range(bands):
        data[band, :, :half] = 10 + band + rng.normal(0, 1, size=(rows, half))
        data[band, :, half:] = 100 + band + rng.normal(0, 1, size=(rows, cols - half))
    return data


class ThresholdModel:
    """Deterministic stand-in for a fitted clustering model."""

    n_features_in_ = 3

    def __init__(self):
        self.calls = 0

    def predict(self, X):
        self.calls += 1
        return (np.asarray(X).mean(axis=1) > 50).astype("int64")


@pytest.fixture
def scene() -> np.ndarray:
    data = make_scene()
    data[0, 0, 0] = SOURCE_NODATA
    data[2, 5, 7] = SOURCE_NODATA
    return data


@pytest.fixture
def scene_path(tmp_path, scene) -> Path:
    return write_raster(tmp_path / "src" / "scene.tif", scene)


@pytest.fixture
def split_scene_paths(tmp_path, scene) -> list:
    """The same scene stored as a 2-band file plus a 1-band file."""
    return [
        write_raster(tmp_path / "split" / "a.tif", scene[:2]),
        write_raster(tmp_path / "split" / "b.tif", scene[2:]),
    ]


@pytest.fixture
def threshold_model() -> ThresholdModel:
    return ThresholdModel()


@pytest.fixture
def gmm_model(scene):
    from sklearn.mixture import GaussianMixture

    pixels = scene.reshape(scene.shape[0], -1).T
    valid = ~(pixels == SOURCE_NODATA).any(axis=1)
    gmm = GaussianMixture(n_components=2, random_state=0)
    gmm.fit(pixels[valid])
    return gmm
