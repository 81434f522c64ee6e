"""Band-aligned access to one or more coregistered rasters."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import rasterio
from rasterio import windows
from rasterio.errors import RasterioError

from .errors import InvalidArgument, LoadError
from .tiling import Extent, Tile

PathLike = Union[str, Path]

# (dataset position in the stack, 1-based band index within that dataset)
BandRef = Tuple[int, int]

logger = logging.getLogger(__name__)


def nodata_pixel_mask(
    pixels: np.ndarray, nodata_values: Sequence[Optional[float]]
) -> np.ndarray:
    """Boolean mask of pixels that are NaN or nodata in any band.

    `pixels` is laid out as (pixels, bands) with one nodata entry per band.
    """

    mask = np.isnan(pixels).any(axis=1)
    for column, nodata in zip(pixels.T, nodata_values):
        if nodata is not None and not np.isnan(nodata):
            mask |= column == nodata
    return mask


@dataclass
class Block:
    """Pixel data for one tile, laid out as (bands, rows, cols)."""

    tile: Tile
    data: np.ndarray
    transform: object
    crs: object
    nodata_values: List[Optional[float]]

    @property
    def band_count(self) -> int:
        return int(self.data.shape[0])

    def pixels(self) -> np.ndarray:
        """Flatten to (pixels, bands) for model input."""
        return self.data.reshape(self.band_count, -1).T

    def valid_mask(self) -> np.ndarray:
        """Boolean (rows, cols) mask of pixels with valid data in every band."""
        invalid = nodata_pixel_mask(self.pixels(), self.nodata_values)
        return ~invalid.reshape(self.tile.rows, self.tile.cols)


def _select_bands(available: List[BandRef], band_indices: Sequence[int]) -> List[BandRef]:
    selection = [int(idx) for idx in band_indices]
    if not selection:
        raise InvalidArgument("band_indices must include at least one band.")
    if len(set(selection)) != len(selection):
        raise InvalidArgument("band_indices must not contain duplicates.")
    for idx in selection:
        if not 1 <= idx <= len(available):
            raise InvalidArgument(f"band_indices must be between 1 and {len(available)}.")
    return [available[idx - 1] for idx in selection]


class RasterStack:
    """Coregistered rasters exposed as one band stack.

    Entering the context opens every dataset for metadata only. Pixels are
    read one tile at a time through `read_block`, which gathers the selected
    bands from each file with a single read per file.
    """

    def __init__(self, paths: List[Path], band_indices: Optional[Sequence[int]] = None):
        self.paths = paths
        self.band_indices = [int(idx) for idx in band_indices] if band_indices is not None else None
        self.datasets: List[rasterio.io.DatasetReader] = []
        self.bands: List[BandRef] = []
        self.nodata_values: List[Optional[float]] = []
        # dataset position -> (band indexes to read, destination slots in the block)
        self._reads: Dict[int, Tuple[List[int], List[int]]] = {}

    def __enter__(self) -> "RasterStack":
        try:
            self._open()
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        for ds in self.datasets:
            ds.close()
        self.datasets = []

    @property
    def count(self) -> int:
        return len(self.bands)

    def _open(self) -> None:
        if not self.paths:
            raise InvalidArgument("No raster paths were provided.")
        for path in self.paths:
            try:
                self.datasets.append(rasterio.open(path))
            except RasterioError as exc:
                raise InvalidArgument(f"Unable to open raster {path}: {exc}") from exc

        first = self.datasets[0]
        for ds in self.datasets[1:]:
            if (ds.width, ds.height) != (first.width, first.height):
                raise InvalidArgument("All rasters must have the same dimensions.")
            if not np.allclose(ds.transform, first.transform):
                raise InvalidArgument("All rasters must share the same transform/grid.")
            if first.crs is not None and ds.crs is not None and ds.crs != first.crs:
                raise InvalidArgument("All rasters must share the same CRS.")

        available = [
            (pos, band) for pos, ds in enumerate(self.datasets) for band in ds.indexes
        ]
        if self.band_indices is None:
            self.bands = available
        else:
            self.bands = _select_bands(available, self.band_indices)

        self.nodata_values = []
        self._reads = {}
        for slot, (pos, band) in enumerate(self.bands):
            self.nodata_values.append(self.datasets[pos].nodatavals[band - 1])
            indexes, slots = self._reads.setdefault(pos, ([], []))
            indexes.append(band)
            slots.append(slot)

        logger.debug(
            "Opened %d raster(s) as a %d-band stack (%d x %d).",
            len(self.datasets),
            self.count,
            self.height,
            self.width,
        )

    def _first(self) -> rasterio.io.DatasetReader:
        if not self.datasets:
            raise InvalidArgument("Raster stack is not open.")
        return self.datasets[0]

    @property
    def width(self) -> int:
        return self._first().width

    @property
    def height(self) -> int:
        return self._first().height

    @property
    def extent(self) -> Extent:
        return Extent(rows=self.height, cols=self.width)

    @property
    def crs(self):
        return self._first().crs

    @property
    def transform(self):
        return self._first().transform

    def read_block(self, tile: Tile) -> Block:
        """Load exactly the `tile` window from every stacked band as float32."""
        if not self.datasets:
            raise LoadError("Raster stack is not open.", tile.index)
        if (
            tile.row_off < 0
            or tile.col_off < 0
            or tile.rows <= 0
            or tile.cols <= 0
            or tile.row_off + tile.rows > self.height
            or tile.col_off + tile.cols > self.width
        ):
            raise LoadError(
                f"Tile {tile.index} window {tile.as_tuple()[1:]} is outside the "
                f"{self.height} x {self.width} raster.",
                tile.index,
            )

        win = tile.window
        data = np.empty((self.count, tile.rows, tile.cols), dtype="float32")
        try:
            for pos, (indexes, slots) in self._reads.items():
                data[slots] = self.datasets[pos].read(
                    indexes=indexes, window=win, out_dtype="float32"
                )
        except (RasterioError, OSError) as exc:
            raise LoadError(f"Failed to read tile {tile.index}: {exc}", tile.index) from exc

        return Block(
            tile=tile,
            data=data,
            transform=windows.transform(win, self.transform),
            crs=self.crs,
            nodata_values=list(self.nodata_values),
        )


def expand_raster_inputs(
    image_path: Union[PathLike, Iterable[PathLike]],
) -> List[Path]:
    """Normalize raster inputs to a list of Paths.

    Accepts a single file/VRT, a directory (expands *.tif / *.tiff), or an
    iterable of mixed paths (files or directories). Directories must contain
    at least one GeoTIFF.
    """

    paths: List[Path] = []

    def add_path(p: Path) -> None:
        if p.is_dir():
            candidates = sorted([*p.glob("*.tif"), *p.glob("*.tiff")])
            if not candidates:
                raise InvalidArgument(f"No GeoTIFFs found in directory: {p}")
            paths.extend(candidates)
        elif p.is_file():
            paths.append(p)
        else:
            raise InvalidArgument(f"Raster path not found: {p}")

    if isinstance(image_path, Iterable) and not isinstance(
        image_path, (str, bytes, Path)
    ):
        for item in image_path:
            add_path(Path(item))
    else:
        add_path(Path(image_path))  # type: ignore[arg-type]

    if not paths:
        raise InvalidArgument("No raster paths were provided.")

    return paths


def open_raster_stack(
    image_path: Union[PathLike, Iterable[PathLike]],
    band_indices: Optional[Sequence[int]] = None,
) -> RasterStack:
    return RasterStack(expand_raster_inputs(image_path), band_indices=band_indices)


__all__ = [
    "Block",
    "RasterStack",
    "expand_raster_inputs",
    "nodata_pixel_mask",
    "open_raster_stack",
]
