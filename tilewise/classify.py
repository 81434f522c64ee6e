"""Unsupervised classification of large rasters: sample, fit, predict by tile."""

from __future__ import annotations

import contextlib
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence, Tuple, Union

from sklearn.mixture import GaussianMixture

from .errors import MosaicError, RunCancelled
from .model import (
    extract_values,
    fit_model,
    load_model,
    sample_within_extent,
    save_model,
    write_sample_points,
)
from .mosaic import MosaicReport, assemble
from .pipeline import (
    DEFAULT_BLOCK_SHAPE,
    PredictionSettings,
    TiledPredictionResult,
    report_path,
    run_tiled_prediction,
    write_report,
)
from .stack import open_raster_stack

PathLike = Union[str, Path]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationResult:
    output: Path
    prediction: TiledPredictionResult
    mosaic: MosaicReport
    report: Path


def train_gmm(
    image_path: Union[PathLike, Iterable[PathLike]],
    model_out: PathLike,
    *,
    n_clusters: int = 5,
    sample_size: int = 10000,
    seed: int = 42,
    band_indices: Optional[Sequence[int]] = None,
    covariance_type: str = "full",
    max_iter: int = 100,
    points_out: Optional[PathLike] = None,
) -> GaussianMixture:
    """Fit a Gaussian mixture on randomly sampled pixels of a raster stack.

    `image_path` can be a single multi-band raster, a directory of GeoTIFFs,
    or an iterable of coregistered rasters; bands are stacked in input order
    and `band_indices` (1-based) selects a subset. Samples touching nodata are
    dropped before fitting. The model is saved with joblib and remembers the
    selected bands so prediction reads the same stack.
    """

    logger.info("Sampling %s pixels (seed=%d)...", f"{sample_size:,}", seed)
    with open_raster_stack(image_path, band_indices=band_indices) as stack:
        rows, cols = sample_within_extent(stack.extent, sample_size, seed=seed)
        samples = extract_values(stack, rows, cols)
        crs = stack.crs

    gmm = fit_model(
        samples,
        n_clusters,
        covariance_type=covariance_type,
        random_state=seed,
        max_iter=max_iter,
    )
    if band_indices is not None:
        gmm.band_indices = list(band_indices)  # type: ignore[attr-defined]
    gmm.sample_count_ = len(samples)  # type: ignore[attr-defined]
    gmm.sample_seed_ = seed  # type: ignore[attr-defined]

    if points_out is not None:
        labeled = samples.copy()
        labeled["cluster"] = gmm.predict(samples[gmm.band_columns_].to_numpy())
        write_sample_points(labeled, points_out, crs=crs)

    save_model(gmm, model_out)
    return gmm


def _normalize_output(output_path: PathLike) -> Path:
    out_path = Path(output_path)
    if out_path.suffix.lower() == ".vrt":
        out_path = out_path.with_suffix(".tif")
        logger.warning("Output path ended with .vrt; writing GeoTIFF to .tif instead.")
    out_path.parent.mkdir(parents=True, exist_ok=True)
    return out_path


def predict_gmm(
    image_path: Union[PathLike, Iterable[PathLike]],
    model_path: PathLike,
    output_path: PathLike,
    *,
    block_shape: Tuple[int, int] = DEFAULT_BLOCK_SHAPE,
    jobs: Optional[int] = None,
    workdir: Optional[PathLike] = None,
    keep_tiles: bool = False,
    fail_fast: bool = False,
    band_indices: Optional[Sequence[int]] = None,
    settings: Optional[PredictionSettings] = None,
    show_progress: bool = False,
) -> ClassificationResult:
    """Classify a raster stack tile by tile and mosaic the result.

    Tiles go to `workdir` when given; otherwise to a temporary directory that
    is removed whether the run succeeds or fails. `keep_tiles` only applies to
    an explicit `workdir`. The mosaic always covers the full source grid, so
    failed tiles show up as nodata and are listed in `<output>_report.txt`.
    A run stopped by an interrupt still writes that report for the tiles it
    finished before `RunCancelled` propagates.
    """

    out_path = _normalize_output(output_path)
    settings = settings or PredictionSettings()
    model = load_model(model_path)

    with contextlib.ExitStack() as scope:
        if workdir is None:
            tile_dir = Path(
                scope.enter_context(
                    tempfile.TemporaryDirectory(prefix="tilewise-", dir=out_path.parent)
                )
            )
        else:
            tile_dir = Path(workdir)

        report_fp = report_path(out_path)
        try:
            prediction = run_tiled_prediction(
                image_path,
                model,
                block_shape,
                jobs,
                tile_dir,
                band_indices=band_indices,
                settings=settings,
                fail_fast=fail_fast,
                show_progress=show_progress,
            )
        except RunCancelled as exc:
            if exc.result is not None:
                write_report(report_fp, exc.result)
                logger.warning("Partial run recorded in %s.", report_fp)
            raise

        try:
            mosaic = assemble(
                prediction.outputs,
                out_path,
                nodata_value=settings.nodata_value,
                grid=prediction.grid,
                compress=settings.compress,
            )
        except MosaicError:
            write_report(report_fp, prediction)
            raise
        write_report(report_fp, prediction, mosaic)

        if workdir is not None and not keep_tiles:
            for out in prediction.written_tiles:
                out.path.unlink(missing_ok=True)

    # The VRT points at tile files; drop it once they are gone.
    if workdir is None or not keep_tiles:
        mosaic.vrt_path.unlink(missing_ok=True)

    if prediction.complete:
        logger.info("Classification saved to %s", out_path)
    else:
        logger.warning(
            "Classification saved to %s with %d missing tile(s); see %s.",
            out_path,
            len(prediction.failed_tiles),
            report_fp,
        )
    return ClassificationResult(
        output=out_path, prediction=prediction, mosaic=mosaic, report=report_fp
    )


__all__ = ["ClassificationResult", "train_gmm", "predict_gmm"]
