"""Console script entry point for tilewise."""

from __future__ import annotations

import sys
from typing import List, Optional, Sequence

from . import classify_cli
from . import mosaic as mosaic_cli


def _print_usage(error: Optional[str] = None) -> int:
    if error:
        print(f"Error: {error}", file=sys.stderr)
    print("Usage: tilewise <command> [options]", file=sys.stderr)
    print("Commands: classify, mosaic", file=sys.stderr)
    print("Run `tilewise <command> --help` for subcommand options.", file=sys.stderr)
    return 2


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Dispatch to the requested subcommand."""
    args = list(argv) if argv is not None else sys.argv[1:]
    if not args:
        return _print_usage()

    command = args[0]
    subargv: List[str] = args[1:]
    if command == "classify":
        return classify_cli.main(subargv)
    if command == "mosaic":
        return mosaic_cli.main(subargv)

    return _print_usage(f"Unknown command '{command}'.")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
