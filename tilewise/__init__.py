"""Top-level package for tilewise."""

from .classify import predict_gmm, train_gmm
from .mosaic import assemble
from .pipeline import run_tiled_prediction
from .tiling import Extent, Tile, tile_extent

__version__ = "0.1.0"

__all__ = [
    "train_gmm",
    "predict_gmm",
    "run_tiled_prediction",
    "assemble",
    "tile_extent",
    "Extent",
    "Tile",
]
