"""Exception types raised by tilewise."""

from __future__ import annotations

from typing import Optional, Sequence


class TilewiseError(Exception):
    """Base class for every error raised by tilewise."""


class InvalidArgument(TilewiseError, ValueError):
    """Bad parameters detected before any tile work starts."""


class TileError(TilewiseError):
    """A failure confined to a single tile."""

    def __init__(self, message: str, tile_index: Optional[int] = None):
        super().__init__(message)
        self.tile_index = tile_index

    @property
    def kind(self) -> str:
        return type(self).__name__


class LoadError(TileError):
    """The tile window could not be read from the source rasters."""


class PredictionError(TileError):
    """The model rejected the block."""


class WriteError(TileError):
    """The predicted tile could not be persisted."""


class MosaicError(TilewiseError):
    """Building or materializing the mosaic failed."""


class RunCancelled(TilewiseError):
    """A tiled run stopped early on an interrupt or an unexpected error.

    `outputs` holds one record per tile in index order: tiles written before
    the stop are successful, the rest are marked as not completed. The
    triggering exception is chained as `__cause__`.
    """

    def __init__(self, message: str, outputs: Sequence = ()):
        super().__init__(message)
        self.outputs = tuple(outputs)
        self.result = None


__all__ = [
    "TilewiseError",
    "InvalidArgument",
    "TileError",
    "LoadError",
    "PredictionError",
    "WriteError",
    "MosaicError",
    "RunCancelled",
]
