"""Pixel sampling, Gaussian mixture fitting, and per-block prediction."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

import geopandas as gpd
import joblib
import numpy as np
import pandas as pd
import rasterio
from sklearn.exceptions import NotFittedError
from sklearn.mixture import GaussianMixture

from .errors import InvalidArgument, PredictionError
from .stack import Block, RasterStack
from .tiling import Extent

PathLike = Union[str, Path]

DEFAULT_NODATA = -1
DEFAULT_DTYPE = "int16"
COVARIANCE_TYPES = ("full", "tied", "diag", "spherical")

logger = logging.getLogger(__name__)


def sample_within_extent(
    extent: Extent, count: int, *, seed: int
) -> Tuple[np.ndarray, np.ndarray]:
    """Draw unique pixel positions uniformly inside `extent`.

    Returns `(rows, cols)` sorted in row-major order. `count` is capped at the
    number of pixels in the extent.
    """

    if count <= 0:
        raise InvalidArgument(f"sample count must be > 0; got {count}.")
    total = extent.pixel_count
    size = min(int(count), total)
    rng = np.random.default_rng(seed)
    flat = np.sort(rng.choice(total, size=size, replace=False))
    rows, cols = np.divmod(flat, extent.cols)
    return rows.astype("int64"), cols.astype("int64")


def band_column_names(stack: RasterStack) -> List[str]:
    band_ids = stack.band_indices or list(range(1, stack.count + 1))
    return [f"band_{idx}" for idx in band_ids]


def extract_values(
    stack: RasterStack, rows: np.ndarray, cols: np.ndarray
) -> pd.DataFrame:
    """Read stacked band values at pixel positions.

    Pixels carrying nodata (or NaN) in any band are discarded.
    """

    rows = np.asarray(rows, dtype="int64")
    cols = np.asarray(cols, dtype="int64")
    if rows.shape != cols.shape:
        raise InvalidArgument("rows and cols must have the same shape.")

    values = np.full((rows.size, stack.count), np.nan, dtype="float64")
    if rows.size:
        xs, ys = rasterio.transform.xy(stack.transform, rows, cols, offset="center")
        xs = np.asarray(xs, dtype="float64").reshape(-1)
        ys = np.asarray(ys, dtype="float64").reshape(-1)
        coords = list(zip(xs, ys))
        per_dataset = [
            np.array(list(ds.sample(coords)), dtype="float64").reshape(rows.size, ds.count)
            for ds in stack.datasets
        ]
        for slot, (pos, band) in enumerate(stack.bands):
            values[:, slot] = per_dataset[pos][:, band - 1]
    else:
        xs = np.empty(0, dtype="float64")
        ys = np.empty(0, dtype="float64")

    for band_idx, nd_val in enumerate(stack.nodata_values):
        if nd_val is None or np.isnan(nd_val):
            continue
        values[values[:, band_idx] == nd_val, band_idx] = np.nan

    frame = pd.DataFrame(values, columns=band_column_names(stack))
    frame.insert(0, "row", rows)
    frame.insert(1, "col", cols)
    frame.insert(2, "x", xs)
    frame.insert(3, "y", ys)

    before = len(frame)
    frame = frame.dropna().reset_index(drop=True)
    dropped = before - len(frame)
    if dropped:
        logger.info("Discarded %d of %d samples touching nodata.", dropped, before)
    return frame


def samples_to_geodataframe(frame: pd.DataFrame, crs=None) -> gpd.GeoDataFrame:
    geometry = gpd.points_from_xy(frame["x"], frame["y"], crs=crs)
    return gpd.GeoDataFrame(frame.copy(), geometry=geometry, crs=crs)


def write_sample_points(frame: pd.DataFrame, out_path: PathLike, crs=None) -> Path:
    """Write sampled pixels as a GeoPackage point layer."""
    out_path = Path(out_path)
    gdf = samples_to_geodataframe(frame, crs=crs)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    gdf.to_file(out_path, driver="GPKG", index=False)
    logger.info("Wrote %d sample points to %s.", len(gdf), out_path)
    return out_path


def _band_columns(frame: pd.DataFrame) -> List[str]:
    return [name for name in frame.columns if str(name).startswith("band_")]


def fit_model(
    samples: pd.DataFrame,
    n_clusters: int,
    *,
    covariance_type: str = "full",
    random_state: int = 42,
    max_iter: int = 100,
) -> GaussianMixture:
    """Fit a Gaussian mixture on the `band_*` columns of `samples`."""

    if n_clusters < 1:
        raise InvalidArgument("n_clusters must be >= 1.")
    if covariance_type not in COVARIANCE_TYPES:
        raise InvalidArgument(
            f"covariance_type must be one of {', '.join(COVARIANCE_TYPES)}."
        )
    columns = _band_columns(samples)
    if not columns:
        raise InvalidArgument("Samples contain no band_* columns.")

    X = samples[columns].dropna().to_numpy(dtype="float64")
    if X.shape[0] < n_clusters:
        raise InvalidArgument(
            f"Need at least {n_clusters} valid samples to fit {n_clusters} "
            f"clusters; got {X.shape[0]}."
        )

    logger.info(
        "Fitting GaussianMixture (%d clusters, %s covariance) on %s samples "
        "x %d bands.",
        n_clusters,
        covariance_type,
        f"{X.shape[0]:,}",
        X.shape[1],
    )
    gmm = GaussianMixture(
        n_components=n_clusters,
        covariance_type=covariance_type,
        random_state=random_state,
        max_iter=max_iter,
    )
    gmm.fit(X)
    if not gmm.converged_:
        logger.warning(
            "GaussianMixture did not converge after %d iterations.", gmm.n_iter_
        )
    gmm.band_columns_ = columns  # type: ignore[attr-defined]
    return gmm


def save_model(model: GaussianMixture, model_out: PathLike) -> Path:
    model_out = Path(model_out)
    model_out.parent.mkdir(parents=True, exist_ok=True)
    joblib.dump(model, model_out)
    logger.info("Model saved to %s", model_out)
    return model_out


def load_model(model_path: PathLike) -> GaussianMixture:
    model_path = Path(model_path)
    if not model_path.is_file():
        raise InvalidArgument(f"Model file not found: {model_path}")
    return joblib.load(model_path)


def predict_block(
    model,
    block: Block,
    *,
    nodata_value: Union[int, float] = DEFAULT_NODATA,
    out_dtype: str = DEFAULT_DTYPE,
) -> np.ndarray:
    """Label every pixel of `block`.

    Pixels with nodata (or NaN) in any band become `nodata_value`; the model
    only sees valid pixels. Returns a (rows, cols) array.
    """

    tile = block.tile
    expected = getattr(model, "n_features_in_", None)
    if expected is not None and expected != block.band_count:
        raise PredictionError(
            f"Model expects {expected} bands, but block has {block.band_count}.",
            tile.index,
        )

    samples = block.pixels()
    valid = block.valid_mask().reshape(-1)
    labels = np.full(samples.shape[0], nodata_value, dtype=out_dtype)
    if np.any(valid):
        try:
            preds = model.predict(samples[valid])
        except (ValueError, NotFittedError) as exc:
            raise PredictionError(
                f"Model rejected tile {tile.index}: {exc}", tile.index
            ) from exc
        labels[valid] = np.asarray(preds).astype(out_dtype, copy=False)
    return labels.reshape(tile.rows, tile.cols)


__all__ = [
    "DEFAULT_NODATA",
    "DEFAULT_DTYPE",
    "COVARIANCE_TYPES",
    "sample_within_extent",
    "extract_values",
    "samples_to_geodataframe",
    "write_sample_points",
    "fit_model",
    "save_model",
    "load_model",
    "predict_block",
]
