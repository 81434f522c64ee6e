"""Assemble per-tile GeoTIFFs into one raster through a GDAL VRT."""

from __future__ import annotations

import argparse
import contextlib
import logging
import math
import os
import sys
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import rasterio
from rasterio.dtypes import _gdal_typename
from rasterio.errors import RasterioError
from rasterio.transform import from_origin

from .console import configure_logging
from .errors import MosaicError, TilewiseError
from .model import DEFAULT_NODATA
from .stack import expand_raster_inputs
from .tiling import Extent, parse_block_shape, tile_extent

PathLike = Union[str, Path]

DEFAULT_COPY_BLOCK = (2048, 2048)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MosaicGrid:
    """Target grid for a mosaic: pixels outside every tile stay nodata."""

    transform: object
    width: int
    height: int
    crs: object = None


@dataclass(frozen=True)
class MosaicReport:
    path: Path
    vrt_path: Path
    tiles_used: int
    missing_tiles: Tuple[int, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.missing_tiles


def _format_nodata(value: Union[int, float]) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_vrt(
    tile_paths: Sequence[PathLike],
    vrt_path: PathLike,
    *,
    nodata_value: Optional[Union[int, float]] = None,
    grid: Optional[MosaicGrid] = None,
) -> Path:
    """Write a VRT referencing every tile at its own world position.

    Without `grid` the VRT covers the union of the tile bounds.
    """

    if not tile_paths:
        raise MosaicError("At least one tile path is required.")
    vrt_path = Path(vrt_path)

    with contextlib.ExitStack() as opened:
        sources = []
        for path in tile_paths:
            try:
                sources.append(opened.enter_context(rasterio.open(path)))
            except RasterioError as exc:
                raise MosaicError(f"Unable to open tile {path} for mosaicking: {exc}") from exc

        base = sources[0]
        crs = base.crs
        res_x, res_y = abs(base.res[0]), abs(base.res[1])
        dtype = base.dtypes[0]
        band_count = base.count
        if nodata_value is None:
            nodata_value = base.nodata
        for src in sources[1:]:
            if src.crs != crs:
                raise MosaicError("All mosaic tiles must share the same CRS.")
            if not np.allclose((abs(src.res[0]), abs(src.res[1])), (res_x, res_y)):
                raise MosaicError("All mosaic tiles must share the same resolution.")
            if src.count != band_count:
                raise MosaicError("All mosaic tiles must share the same band count.")
            if src.dtypes[0] != dtype:
                raise MosaicError("All mosaic tiles must share the same dtype.")

        if grid is not None:
            transform = grid.transform
            width, height = int(grid.width), int(grid.height)
            if not np.allclose((abs(transform.a), abs(transform.e)), (res_x, res_y)):
                raise MosaicError("Tile resolution differs from the mosaic grid.")
            if grid.crs is not None:
                crs = grid.crs
        else:
            min_x = min(src.bounds.left for src in sources)
            min_y = min(src.bounds.bottom for src in sources)
            max_x = max(src.bounds.right for src in sources)
            max_y = max(src.bounds.top for src in sources)
            width = max(1, int(math.ceil(round((max_x - min_x) / res_x, 6))))
            height = max(1, int(math.ceil(round((max_y - min_y) / res_y, 6))))
            transform = from_origin(min_x, max_y, res_x, res_y)

        root = ET.Element("VRTDataset", rasterXSize=str(width), rasterYSize=str(height))
        if crs is not None:
            ET.SubElement(root, "SRS").text = " ".join(crs.to_wkt().split())
        ET.SubElement(root, "GeoTransform").text = ", ".join(
            f"{value:.10f}" for value in transform.to_gdal()
        )

        inverse = ~transform
        relative_root = vrt_path.parent
        dtype_name = _gdal_typename(dtype)
        for band_index in range(1, band_count + 1):
            band_node = ET.SubElement(
                root, "VRTRasterBand", dataType=dtype_name, band=str(band_index)
            )
            if nodata_value is not None:
                ET.SubElement(band_node, "NoDataValue").text = _format_nodata(
                    nodata_value
                )
            for src in sources:
                col, row = inverse * (src.bounds.left, src.bounds.top)
                source_node = ET.SubElement(band_node, "SimpleSource")
                rel_path = os.path.relpath(src.name, relative_root)
                ET.SubElement(
                    source_node, "SourceFilename", relativeToVRT="1"
                ).text = Path(rel_path).as_posix()
                ET.SubElement(source_node, "SourceBand").text = str(band_index)
                ET.SubElement(
                    source_node,
                    "SrcRect",
                    xOff="0",
                    yOff="0",
                    xSize=str(src.width),
                    ySize=str(src.height),
                )
                ET.SubElement(
                    source_node,
                    "DstRect",
                    xOff=str(int(round(col))),
                    yOff=str(int(round(row))),
                    xSize=str(src.width),
                    ySize=str(src.height),
                )

    try:
        vrt_path.parent.mkdir(parents=True, exist_ok=True)
        ET.ElementTree(root).write(vrt_path, encoding="utf-8", xml_declaration=True)
    except OSError as exc:
        raise MosaicError(f"Unable to write VRT {vrt_path}: {exc}") from exc
    logger.debug("Wrote VRT with %d source tile(s) to %s.", len(tile_paths), vrt_path)
    return vrt_path


def materialize(
    vrt_path: PathLike,
    destination: PathLike,
    *,
    block_shape: Tuple[int, int] = DEFAULT_COPY_BLOCK,
    compress: Optional[str] = "lzw",
) -> Path:
    """Copy a VRT into a tiled GeoTIFF one window at a time."""
    destination = Path(destination)
    block_rows, block_cols = parse_block_shape(block_shape)
    try:
        with rasterio.open(vrt_path) as src:
            profile = {
                "driver": "GTiff",
                "height": src.height,
                "width": src.width,
                "count": src.count,
                "dtype": src.dtypes[0],
                "crs": src.crs,
                "transform": src.transform,
                "nodata": src.nodata,
                "tiled": True,
                "blockxsize": 256,
                "blockysize": 256,
                "BIGTIFF": "IF_SAFER",
            }
            if compress:
                profile["compress"] = compress
            destination.parent.mkdir(parents=True, exist_ok=True)
            with rasterio.open(destination, "w", **profile) as dst:
                extent = Extent(rows=src.height, cols=src.width)
                for tile in tile_extent(extent, block_rows, block_cols):
                    dst.write(src.read(window=tile.window), window=tile.window)
    except (RasterioError, OSError) as exc:
        raise MosaicError(f"Failed to materialize {vrt_path}: {exc}") from exc
    return destination


def mosaic_paths(
    tile_paths: Sequence[PathLike],
    destination: PathLike,
    *,
    nodata_value: Optional[Union[int, float]] = None,
    grid: Optional[MosaicGrid] = None,
    compress: Optional[str] = "lzw",
    block_shape: Tuple[int, int] = DEFAULT_COPY_BLOCK,
) -> Tuple[Path, Path]:
    """Build the VRT beside `destination` and materialize it.

    A `.vrt` destination stops after the VRT is written.
    """

    destination = Path(destination)
    vrt_path = destination.with_suffix(".vrt")
    build_vrt(tile_paths, vrt_path, nodata_value=nodata_value, grid=grid)
    if destination.suffix.lower() == ".vrt":
        return destination, vrt_path
    materialize(vrt_path, destination, block_shape=block_shape, compress=compress)
    return destination, vrt_path


def assemble(
    tile_outputs: Iterable,
    destination: PathLike,
    *,
    nodata_value: Union[int, float] = DEFAULT_NODATA,
    grid: Optional[MosaicGrid] = None,
    compress: Optional[str] = "lzw",
    block_shape: Tuple[int, int] = DEFAULT_COPY_BLOCK,
) -> MosaicReport:
    """Mosaic the successful tile outputs; failed tiles are reported as missing."""

    outputs = list(tile_outputs)
    written = sorted((out for out in outputs if out.ok), key=lambda out: out.index)
    missing = tuple(sorted(out.index for out in outputs if not out.ok))
    if not written:
        raise MosaicError("No successfully written tiles to mosaic.")
    if missing:
        logger.warning(
            "Building a partial mosaic: %d tile(s) missing (%s).",
            len(missing),
            ", ".join(str(idx) for idx in missing),
        )

    path, vrt_path = mosaic_paths(
        [out.path for out in written],
        destination,
        nodata_value=nodata_value,
        grid=grid,
        compress=compress,
        block_shape=block_shape,
    )
    logger.info("Mosaic of %d tile(s) written to %s.", len(written), path)
    return MosaicReport(
        path=path,
        vrt_path=vrt_path,
        tiles_used=len(written),
        missing_tiles=missing,
    )


def build_parser() -> argparse.ArgumentParser:
    """Create the CLI parser for the mosaic command."""
    parser = argparse.ArgumentParser(
        prog="tilewise mosaic",
        description="Combine predicted tile GeoTIFFs into a single raster.",
    )
    parser.add_argument(
        "--tiles",
        "-t",
        nargs="+",
        required=True,
        help="Tile GeoTIFFs or directories containing them.",
    )
    parser.add_argument(
        "--output",
        "-out",
        required=True,
        help="Destination GeoTIFF (or .vrt to stop after the virtual mosaic).",
    )
    parser.add_argument(
        "--nodata",
        type=float,
        default=None,
        help="Nodata value for uncovered pixels (default: the tiles' nodata).",
    )
    parser.add_argument(
        "--compress",
        default="lzw",
        help="GeoTIFF compression (default: lzw). Use 'none' to disable.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity: -v (info), -vv (debug).",
    )
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = build_parser()
    return parser.parse_args(argv)


def _nodata_arg(value: Optional[float]) -> Optional[Union[int, float]]:
    if value is None:
        return None
    return int(value) if float(value).is_integer() else value


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point used by both python -m tilewise.mosaic and the tilewise CLI."""
    args = parse_args(argv)
    configure_logging(args.verbose)

    compress = None if args.compress.lower() == "none" else args.compress
    try:
        tile_paths: List[Path] = expand_raster_inputs(args.tiles)
        path, _ = mosaic_paths(
            tile_paths,
            args.output,
            nodata_value=_nodata_arg(args.nodata),
            compress=compress,
        )
    except TilewiseError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    logger.info("Mosaic written to %s.", path)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
