"""Command-line interface for Gaussian mixture training and tiled prediction."""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional, Sequence

from .classify import predict_gmm, train_gmm
from .console import configure_logging
from .errors import TilewiseError
from .model import COVARIANCE_TYPES
from .pipeline import DEFAULT_BLOCK_SHAPE


def _parse_block_shape(values: Optional[Sequence[int]]) -> Optional[tuple[int, int]]:
    if values is None:
        return None
    if len(values) != 2:
        raise argparse.ArgumentTypeError("block shape must be two integers")
    return int(values[0]), int(values[1])


def _flatten_image_args(image_args: Sequence[Sequence[str]]) -> List[str]:
    images: List[str] = []
    for group in image_args:
        images.extend(group)
    return images


def _add_image_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--image",
        required=True,
        nargs="+",
        action="append",
        help=(
            "Raster input(s): pass one or more GeoTIFF/VRT paths after --image, "
            "or repeat --image. Directories are expanded to TIFFs."
        ),
    )
    parser.add_argument(
        "--band-indices",
        nargs="+",
        type=int,
        help="Optional 1-based band indices to use from the stacked inputs.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity: -v (info), -vv (debug).",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tilewise classify",
        description="Fit a Gaussian mixture on sampled pixels and classify rasters by tile.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    train_parser = subparsers.add_parser(
        "train", help="Sample pixels and fit a Gaussian mixture model."
    )
    _add_image_args(train_parser)
    train_parser.add_argument(
        "--model-out", required=True, help="Path to save the fitted model (.joblib)."
    )
    train_parser.add_argument(
        "--n-clusters",
        type=int,
        default=5,
        help="Number of mixture components / classes (default: 5).",
    )
    train_parser.add_argument(
        "--sample-size",
        type=int,
        default=10000,
        help="Number of random pixels to sample (default: 10000).",
    )
    train_parser.add_argument(
        "--seed",
        type=int,
        default=42,
        help="Random seed for sampling and model initialization (default: 42).",
    )
    train_parser.add_argument(
        "--covariance-type",
        choices=list(COVARIANCE_TYPES),
        default="full",
        help="Covariance structure of the mixture components (default: full).",
    )
    train_parser.add_argument(
        "--max-iter",
        type=int,
        default=100,
        help="EM iterations (default: 100).",
    )
    train_parser.add_argument(
        "--points-out",
        help="Optional GeoPackage of the sampled pixels with their cluster labels.",
    )

    predict_parser = subparsers.add_parser(
        "predict", help="Apply a fitted model tile by tile and mosaic the result."
    )
    _add_image_args(predict_parser)
    predict_parser.add_argument("--model", required=True, help="Fitted model path.")
    predict_parser.add_argument(
        "--output", required=True, help="Path for the classified GeoTIFF."
    )
    predict_parser.add_argument(
        "--block-shape",
        nargs=2,
        type=int,
        metavar=("HEIGHT", "WIDTH"),
        help=(
            "Tile shape in pixels (default: "
            f"{DEFAULT_BLOCK_SHAPE[0]} {DEFAULT_BLOCK_SHAPE[1]})."
        ),
    )
    predict_parser.add_argument(
        "--jobs",
        type=int,
        default=-1,
        help="Parallel workers for tile prediction (default: -1 = all cores).",
    )
    predict_parser.add_argument(
        "--workdir",
        help="Directory for per-tile outputs (defaults to a temporary directory).",
    )
    predict_parser.add_argument(
        "--keep-tiles",
        action="store_true",
        help="Keep per-tile GeoTIFFs in --workdir after the mosaic is written.",
    )
    predict_parser.add_argument(
        "--fail-fast",
        action="store_true",
        help="Stop scheduling tiles after the first tile failure.",
    )
    predict_parser.add_argument(
        "--progress",
        action="store_true",
        help="Show a progress bar while tiles are processed.",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(args.verbose)
    image_paths = _flatten_image_args(args.image)

    try:
        if args.command == "train":
            train_gmm(
                image_path=image_paths,
                model_out=args.model_out,
                n_clusters=args.n_clusters,
                sample_size=args.sample_size,
                seed=args.seed,
                band_indices=args.band_indices,
                covariance_type=args.covariance_type,
                max_iter=args.max_iter,
                points_out=args.points_out,
            )
            return 0

        block_shape = _parse_block_shape(args.block_shape) or DEFAULT_BLOCK_SHAPE
        result = predict_gmm(
            image_path=image_paths,
            model_path=args.model,
            output_path=args.output,
            block_shape=block_shape,
            jobs=args.jobs,
            workdir=args.workdir,
            keep_tiles=args.keep_tiles,
            fail_fast=args.fail_fast,
            band_indices=args.band_indices,
            show_progress=args.progress,
        )
    except TilewiseError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if not result.prediction.complete:
        print(
            f"{len(result.prediction.failed_tiles)} tile(s) failed; "
            f"see {result.report}.",
            file=sys.stderr,
        )
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
