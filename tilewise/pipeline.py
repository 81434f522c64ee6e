"""Tiled, out-of-core prediction: load, predict, and persist one tile at a time.

Each tile is an independent unit of work. Units are distributed across a
thread pool (or run sequentially), every unit writes its own GeoTIFF, and the
collected `TileOutput` records are returned in tile-index order regardless of
completion order. A failing tile is recorded and never stops its siblings
unless fail-fast is requested.
"""

from __future__ import annotations

import concurrent.futures
import contextlib
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import rasterio
from rasterio.dtypes import in_dtype_range
from rasterio.errors import RasterioError

from .console import ProgressManager, progress_enabled
from .errors import (
    InvalidArgument,
    LoadError,
    RunCancelled,
    TileError,
    TilewiseError,
    WriteError,
)
from .model import DEFAULT_DTYPE, DEFAULT_NODATA, load_model, predict_block
from .mosaic import MosaicGrid, MosaicReport
from .stack import Block, RasterStack, expand_raster_inputs
from .tiling import Extent, Tile, parse_block_shape, tile_extent

PathLike = Union[str, Path]

DEFAULT_BLOCK_SHAPE = (2048, 2048)
DEFAULT_COMPRESS = "lzw"
TILE_SUFFIX = ".tif"
CANCELLED = "Cancelled"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PredictionSettings:
    """Output options shared by every work unit."""

    nodata_value: Union[int, float] = DEFAULT_NODATA
    out_dtype: str = DEFAULT_DTYPE
    compress: Optional[str] = DEFAULT_COMPRESS
    ext: str = TILE_SUFFIX

    def __post_init__(self) -> None:
        try:
            in_range = in_dtype_range(self.nodata_value, self.out_dtype)
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidArgument(f"Unsupported output dtype {self.out_dtype!r}.") from exc
        if not in_range:
            raise InvalidArgument(
                f"nodata value {self.nodata_value} does not fit dtype {self.out_dtype}."
            )


@dataclass(frozen=True)
class TileOutput:
    """Outcome of one work unit."""

    index: int
    tile: Tile
    path: Optional[Path] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.path is not None

    @classmethod
    def succeeded(cls, tile: Tile, path: Path) -> "TileOutput":
        return cls(index=tile.index, tile=tile, path=path)

    @classmethod
    def failed(cls, tile: Tile, exc: TileError) -> "TileOutput":
        return cls(index=tile.index, tile=tile, error=str(exc), error_kind=exc.kind)

    @classmethod
    def cancelled(cls, tile: Tile) -> "TileOutput":
        return cls(
            index=tile.index,
            tile=tile,
            error="Run stopped before this tile was processed.",
            error_kind=CANCELLED,
        )

    @classmethod
    def aborted(cls, tile: Tile, exc: BaseException) -> "TileOutput":
        """Record for a tile whose work raised instead of returning."""
        if isinstance(exc, KeyboardInterrupt):
            return cls.cancelled(tile)
        kind = type(exc).__name__
        return cls(index=tile.index, tile=tile, error=str(exc) or kind, error_kind=kind)


@dataclass(frozen=True)
class TiledPredictionResult:
    """Every tile's outcome plus the grid they were cut from."""

    extent: Extent
    block_shape: Tuple[int, int]
    outputs: Tuple[TileOutput, ...]
    transform: object = None
    crs: object = None
    output_dir: Optional[Path] = None
    nodata_value: Union[int, float] = DEFAULT_NODATA

    @property
    def written_tiles(self) -> List[TileOutput]:
        return [out for out in self.outputs if out.ok]

    @property
    def failed_tiles(self) -> List[TileOutput]:
        return [out for out in self.outputs if not out.ok]

    @property
    def complete(self) -> bool:
        return not self.failed_tiles

    @property
    def grid(self) -> MosaicGrid:
        return MosaicGrid(
            transform=self.transform,
            width=self.extent.cols,
            height=self.extent.rows,
            crs=self.crs,
        )


def tile_path(output_dir: PathLike, index: int, ext: str = TILE_SUFFIX) -> Path:
    """Deterministic per-tile output path."""
    return Path(output_dir) / f"tile_{index}{ext}"


def write_tile(
    labels: np.ndarray,
    block: Block,
    path: PathLike,
    *,
    nodata_value: Union[int, float] = DEFAULT_NODATA,
    dtype: str = DEFAULT_DTYPE,
    compress: Optional[str] = DEFAULT_COMPRESS,
) -> Path:
    """Persist one predicted tile as a georeferenced single-band GeoTIFF.

    The file is written as one strip covering the whole tile.
    """

    tile = block.tile
    path = Path(path)
    if labels.shape != tile.shape:
        raise WriteError(
            f"Prediction shape {labels.shape} does not match tile shape {tile.shape}.",
            tile.index,
        )

    profile = {
        "driver": "GTiff",
        "height": tile.rows,
        "width": tile.cols,
        "count": 1,
        "dtype": dtype,
        "crs": block.crs,
        "transform": block.transform,
        "nodata": nodata_value,
        "tiled": False,
        "blockysize": tile.rows,
    }
    if compress:
        profile["compress"] = compress

    try:
        with rasterio.open(path, "w", **profile) as dst:
            dst.write(labels.astype(dtype, copy=False), 1)
    except (RasterioError, OSError) as exc:
        with contextlib.suppress(OSError):
            path.unlink(missing_ok=True)
        raise WriteError(f"Failed to write tile {tile.index} to {path}: {exc}", tile.index) from exc
    return path


def _failure(tile: Tile, exc: TileError) -> TileOutput:
    if exc.tile_index is None:
        exc.tile_index = tile.index
    logger.warning("Tile %d failed (%s): %s", tile.index, exc.kind, exc)
    return TileOutput.failed(tile, exc)


def process_tile(
    tile: Tile,
    stack: RasterStack,
    model,
    output_dir: PathLike,
    settings: Optional[PredictionSettings] = None,
) -> TileOutput:
    """Load, predict, and write one tile; tile-level errors become the output."""

    settings = settings or PredictionSettings()
    path = tile_path(output_dir, tile.index, settings.ext)
    try:
        block = stack.read_block(tile)
        labels = predict_block(
            model,
            block,
            nodata_value=settings.nodata_value,
            out_dtype=settings.out_dtype,
        )
        write_tile(
            labels,
            block,
            path,
            nodata_value=settings.nodata_value,
            dtype=settings.out_dtype,
            compress=settings.compress,
        )
    except TileError as exc:
        return _failure(tile, exc)

    logger.debug(
        "Tile %d (%d x %d at row %d, col %d) written to %s.",
        tile.index,
        tile.rows,
        tile.cols,
        tile.row_off,
        tile.col_off,
        path,
    )
    return TileOutput.succeeded(tile, path)


def resolve_concurrency(concurrency: Optional[int]) -> int:
    if concurrency is None or concurrency <= 0:
        return max(1, os.cpu_count() or 1)
    return int(concurrency)


def run_tiles(
    tiles: Iterable[Tile],
    work_fn: Callable[[Tile], TileOutput],
    *,
    concurrency: Optional[int] = 1,
    fail_fast: bool = False,
    progress: Optional[ProgressManager] = None,
) -> List[TileOutput]:
    """Run `work_fn` over every tile and return outputs ordered by tile index.

    `concurrency=1` runs in index order on the calling thread. Larger values
    use a thread pool fed through a bounded in-flight window. With
    `fail_fast`, the first failed output stops new submissions and every tile
    that never started is reported as cancelled. The pool is shut down before
    this function returns or raises.

    An interrupt, or an exception `work_fn` does not turn into a `TileOutput`,
    stops the run after the running tiles finish and raises `RunCancelled`
    carrying the outputs collected so far.
    """

    tiles = list(tiles)
    workers = resolve_concurrency(concurrency)
    results: Dict[int, TileOutput] = {}
    task_id = progress.add("Predicting tiles", total=len(tiles)) if progress else None

    def record(output: TileOutput) -> bool:
        results[output.index] = output
        if progress is not None:
            progress.advance(task_id)
        return fail_fast and not output.ok

    try:
        if workers == 1 or len(tiles) <= 1:
            _run_sequential(tiles, work_fn, record)
        else:
            _run_parallel(tiles, work_fn, workers, record)
    except (KeyboardInterrupt, Exception) as exc:
        outputs = _in_index_order(tiles, results)
        written = sum(1 for out in outputs if out.ok)
        if isinstance(exc, KeyboardInterrupt):
            reason = "interrupted"
        else:
            reason = f"aborted by {type(exc).__name__}: {exc}"
        logger.warning("Tiled run %s; %d of %d tile(s) written.", reason, written, len(tiles))
        raise RunCancelled(
            f"Tiled run {reason}; {written} of {len(tiles)} tile(s) written.", outputs
        ) from exc

    return _in_index_order(tiles, results)


def _in_index_order(tiles: Sequence[Tile], results: Dict[int, TileOutput]) -> List[TileOutput]:
    return [
        results.get(tile.index) or TileOutput.cancelled(tile)
        for tile in sorted(tiles, key=lambda t: t.index)
    ]


def _run_sequential(
    tiles: Sequence[Tile],
    work_fn: Callable[[Tile], TileOutput],
    record: Callable[[TileOutput], bool],
) -> None:
    for tile in tiles:
        try:
            output = work_fn(tile)
        except (KeyboardInterrupt, Exception) as exc:
            record(TileOutput.aborted(tile, exc))
            raise
        if record(output):
            logger.warning("Fail-fast: stopping after tile %d failed.", tile.index)
            break


def _run_parallel(
    tiles: Sequence[Tile],
    work_fn: Callable[[Tile], TileOutput],
    workers: int,
    record: Callable[[TileOutput], bool],
) -> None:
    max_pending = workers * 2
    futures: Dict[concurrent.futures.Future, Tile] = {}
    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=workers, thread_name_prefix="tilewise"
    )

    def collect(done) -> bool:
        stop = False
        for finished in done:
            tile = futures.pop(finished)
            if finished.cancelled():
                continue
            exc = finished.exception()
            if exc is not None:
                record(TileOutput.aborted(tile, exc))
                raise exc
            if record(finished.result()):
                logger.warning("Fail-fast: stopping after tile %d failed.", tile.index)
                stop = True
        return stop

    def drain() -> None:
        for pending in futures:
            pending.cancel()
        concurrent.futures.wait(futures)
        for finished, tile in list(futures.items()):
            if finished.cancelled():
                continue
            exc = finished.exception()
            record(finished.result() if exc is None else TileOutput.aborted(tile, exc))
        futures.clear()

    stop = False
    try:
        for tile in tiles:
            futures[executor.submit(work_fn, tile)] = tile
            if len(futures) >= max_pending:
                done, _ = concurrent.futures.wait(
                    futures, return_when=concurrent.futures.FIRST_COMPLETED
                )
                if collect(done):
                    stop = True
                    break

        while futures and not stop:
            done, _ = concurrent.futures.wait(
                futures, return_when=concurrent.futures.FIRST_COMPLETED
            )
            stop = collect(done)

        if futures:
            drain()
    except (KeyboardInterrupt, Exception):
        logger.warning("Stopping; waiting for running tiles to finish.")
        drain()
        raise
    finally:
        executor.shutdown(wait=True, cancel_futures=True)


class WorkerStacks:
    """One `RasterStack` per worker thread, opened on first use.

    GDAL dataset handles are not shared between threads. Every stack opened
    through this object is closed when the context exits.
    """

    def __init__(self, paths: List[Path], band_indices: Optional[Sequence[int]] = None):
        self.paths = paths
        self.band_indices = list(band_indices) if band_indices is not None else None
        self._local = threading.local()
        self._lock = threading.Lock()
        self._opened: List[RasterStack] = []

    def __enter__(self) -> "WorkerStacks":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def acquire(self, tile: Tile) -> RasterStack:
        stack = getattr(self._local, "stack", None)
        if stack is not None:
            return stack
        stack = RasterStack(self.paths, band_indices=self.band_indices)
        try:
            stack.__enter__()
        except TilewiseError as exc:
            raise LoadError(
                f"Worker could not open source rasters: {exc}", tile.index
            ) from exc
        with self._lock:
            self._opened.append(stack)
        self._local.stack = stack
        return stack

    def close(self) -> None:
        with self._lock:
            opened, self._opened = self._opened, []
        for stack in opened:
            stack.close()
        logger.debug("Closed %d worker raster handle set(s).", len(opened))


def run_tiled_prediction(
    source_paths,
    model,
    block_shape: Tuple[int, int] = DEFAULT_BLOCK_SHAPE,
    concurrency: Optional[int] = None,
    output_dir: Optional[PathLike] = None,
    *,
    band_indices: Optional[Sequence[int]] = None,
    settings: Optional[PredictionSettings] = None,
    fail_fast: bool = False,
    show_progress: bool = False,
) -> TiledPredictionResult:
    """Predict every tile of the source stack into `output_dir`.

    `model` is a fitted estimator or a path to one saved with joblib. Tiling
    parameters and band compatibility are validated before any tile runs.
    `concurrency` of None or <= 0 uses every available core.
    """

    if output_dir is None:
        raise InvalidArgument("output_dir is required.")
    block_rows, block_cols = parse_block_shape(block_shape)
    settings = settings or PredictionSettings()
    if isinstance(model, (str, Path)):
        model = load_model(model)

    paths = expand_raster_inputs(source_paths)
    if band_indices is None:
        model_band_indices = getattr(model, "band_indices", None)
        band_indices = list(model_band_indices) if model_band_indices else None

    with RasterStack(paths, band_indices=band_indices) as stack:
        expected = getattr(model, "n_features_in_", None)
        if expected is not None and expected != stack.count:
            raise InvalidArgument(
                f"Model expects {expected} bands, but input stack has {stack.count}. "
                "Pass band_indices to select the bands used during training."
            )
        extent = stack.extent
        transform = stack.transform
        crs = stack.crs

    tiles = tile_extent(extent, block_rows, block_cols)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    workers = resolve_concurrency(concurrency)
    if workers > 1:
        model_jobs = getattr(model, "n_jobs", None)
        if model_jobs not in (None, 1):
            logger.warning(
                "Tile-level parallelism requested but model n_jobs=%s. This may "
                "oversubscribe CPU; consider setting model.n_jobs=1.",
                model_jobs,
            )

    logger.info(
        "Predicting %d tile(s) of up to %d x %d over a %d x %d raster with %d worker(s).",
        len(tiles),
        block_rows,
        block_cols,
        extent.rows,
        extent.cols,
        workers,
    )

    def as_result(outputs: Sequence[TileOutput]) -> TiledPredictionResult:
        return TiledPredictionResult(
            extent=extent,
            block_shape=(block_rows, block_cols),
            outputs=tuple(outputs),
            transform=transform,
            crs=crs,
            output_dir=output_dir,
            nodata_value=settings.nodata_value,
        )

    with WorkerStacks(paths, band_indices) as stacks, ProgressManager(
        enabled=progress_enabled(show_progress)
    ) as progress:

        def work(tile: Tile) -> TileOutput:
            try:
                stack = stacks.acquire(tile)
            except LoadError as exc:
                return _failure(tile, exc)
            return process_tile(tile, stack, model, output_dir, settings)

        try:
            outputs = run_tiles(
                tiles,
                work,
                concurrency=workers,
                fail_fast=fail_fast,
                progress=progress,
            )
        except RunCancelled as exc:
            exc.result = as_result(exc.outputs)
            raise

    result = as_result(outputs)
    logger.info(
        "Tiled prediction finished: %d written, %d failed.",
        len(result.written_tiles),
        len(result.failed_tiles),
    )
    return result


def format_report(
    result: TiledPredictionResult, mosaic: Optional[MosaicReport] = None
) -> str:
    """Human-readable run summary."""
    total = len(result.outputs)
    lines = [
        f"Tiles: {total} ({result.extent.rows} x {result.extent.cols} px, "
        f"block {result.block_shape[0]} x {result.block_shape[1]})",
        f"Succeeded: {len(result.written_tiles)}",
        f"Failed: {len(result.failed_tiles)}",
    ]
    for out in result.failed_tiles:
        tile = out.tile
        lines.append(
            f"  tile {out.index} (row {tile.row_off}, col {tile.col_off}): "
            f"{out.error_kind}: {out.error}"
        )

    lines.append("")
    if mosaic is None:
        lines.append("Mosaic: not run.")
    else:
        coverage = "full" if mosaic.complete else "partial"
        lines.append(
            f"Mosaic: {mosaic.path} built from {coverage} tile set "
            f"({mosaic.tiles_used} of {mosaic.tiles_used + len(mosaic.missing_tiles)} tiles)."
        )
        if mosaic.missing_tiles:
            lines.append(
                "Missing tiles (nodata in mosaic): "
                + ", ".join(str(idx) for idx in mosaic.missing_tiles)
            )
    return "\n".join(lines)


def report_path(out_path: Path) -> Path:
    base = out_path.with_suffix("")
    return base.with_name(f"{base.name}_report.txt")


def write_report(
    path: PathLike,
    result: TiledPredictionResult,
    mosaic: Optional[MosaicReport] = None,
) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(format_report(result, mosaic) + "\n", encoding="utf-8")
    logger.info("Wrote run report to %s.", path)
    return path


__all__ = [
    "DEFAULT_BLOCK_SHAPE",
    "DEFAULT_COMPRESS",
    "PredictionSettings",
    "TileOutput",
    "TiledPredictionResult",
    "WorkerStacks",
    "format_report",
    "process_tile",
    "report_path",
    "resolve_concurrency",
    "run_tiled_prediction",
    "run_tiles",
    "tile_path",
    "write_report",
    "write_tile",
]
