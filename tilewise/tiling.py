"""Partition a raster grid into non-overlapping block windows."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Tuple

from rasterio import windows
from rasterio.coords import BoundingBox

from .errors import InvalidArgument

TileTuple = Tuple[int, int, int, int, int]


def _require_positive(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        try:
            as_int = int(value)
        except (TypeError, ValueError) as exc:
            raise InvalidArgument(f"{name} must be an integer; got {value!r}.") from exc
        if as_int != value:
            raise InvalidArgument(f"{name} must be an integer; got {value!r}.")
        value = as_int
    if value <= 0:
        raise InvalidArgument(f"{name} must be > 0; got {value}.")
    return value


@dataclass(frozen=True)
class Extent:
    """Total raster size in pixels."""

    rows: int
    cols: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "rows", _require_positive("extent rows", self.rows))
        object.__setattr__(self, "cols", _require_positive("extent cols", self.cols))

    @property
    def pixel_count(self) -> int:
        return self.rows * self.cols


@dataclass(frozen=True)
class Tile:
    """A rectangular window of the raster grid, addressed by a zero-based index."""

    index: int
    row_off: int
    col_off: int
    rows: int
    cols: int

    @property
    def window(self) -> windows.Window:
        return windows.Window(
            col_off=self.col_off, row_off=self.row_off, width=self.cols, height=self.rows
        )

    @property
    def shape(self) -> Tuple[int, int]:
        return self.rows, self.cols

    def as_tuple(self) -> TileTuple:
        return (self.index, self.row_off, self.col_off, self.rows, self.cols)

    @classmethod
    def from_tuple(cls, values: TileTuple) -> "Tile":
        index, row_off, col_off, rows, cols = values
        return cls(index=index, row_off=row_off, col_off=col_off, rows=rows, cols=cols)

    def bounds_in(self, transform) -> BoundingBox:
        """World-coordinate bounds of this tile for a grid transform."""
        left, bottom, right, top = windows.bounds(self.window, transform)
        return BoundingBox(left, bottom, right, top)


def _offsets(total: int, block: int) -> List[Tuple[int, int]]:
    return [(off, min(block, total - off)) for off in range(0, total, block)]


def tile_count(extent: Extent, block_rows: int, block_cols: int) -> int:
    """Number of tiles `tile_extent` would produce, without building them."""
    block_rows = _require_positive("block_rows", block_rows)
    block_cols = _require_positive("block_cols", block_cols)
    return math.ceil(extent.rows / block_rows) * math.ceil(extent.cols / block_cols)


def tile_extent(extent: Extent, block_rows: int, block_cols: int) -> List[Tile]:
    """Split `extent` into row-major tiles of at most `block_rows` x `block_cols`.

    Edge tiles are clipped to the remaining rows/columns. Tile indices follow
    row-major order: every column band of the first row band, then the next
    row band, and so on.
    """

    if not isinstance(extent, Extent):
        raise InvalidArgument("extent must be an Extent.")
    block_rows = _require_positive("block_rows", block_rows)
    block_cols = _require_positive("block_cols", block_cols)

    tiles: List[Tile] = []
    col_bands = _offsets(extent.cols, block_cols)
    for row_off, rows in _offsets(extent.rows, block_rows):
        for col_off, cols in col_bands:
            tiles.append(
                Tile(
                    index=len(tiles),
                    row_off=row_off,
                    col_off=col_off,
                    rows=rows,
                    cols=cols,
                )
            )
    return tiles


def parse_block_shape(block_shape) -> Tuple[int, int]:
    """Validate a (rows, cols) pair."""
    try:
        block_rows, block_cols = block_shape
    except (TypeError, ValueError) as exc:
        raise InvalidArgument("block_shape must be a (rows, cols) pair.") from exc
    return (
        _require_positive("block_rows", block_rows),
        _require_positive("block_cols", block_cols),
    )


__all__ = [
    "Extent",
    "Tile",
    "tile_count",
    "tile_extent",
    "parse_block_shape",
]
