"""Command-line interface for tile-extract."""

import argparse
import logging
import sys
from pathlib import Path

from .core import LOSSY_METRICS, TileExtractionError, available_cpus, extract_tile


def _setup_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Detect the repeating tile of a patterned image and crop one tile out of it"
    )
    parser.add_argument("input", help="Input image path")
    parser.add_argument("-o", "--output", help="Output image path (default: input_tile.png)")
    parser.add_argument("--row-tolerance", type=float, default=0.1,
                        help="Minimum share of rows the row period must match, in percent (default: 0.1)")
    parser.add_argument("--col-tolerance", type=float, default=0.1,
                        help="Minimum share of columns the column period must match, in percent (default: 0.1)")
    parser.add_argument("-x", "--x-offset", type=int, default=0, help="Left edge of the crop (default: 0)")
    parser.add_argument("-y", "--y-offset", type=int, default=0, help="Top edge of the crop (default: 0)")
    parser.add_argument("-j", "--number-of-processes", type=int, default=available_cpus(),
                        help="Maximum number of worker processes (default: available CPUs)")
    parser.add_argument("--row-prefer-frequency", action="store_true",
                        help="Take the most frequent row period, ignoring the tolerance")
    parser.add_argument("--col-prefer-frequency", action="store_true",
                        help="Take the most frequent column period, ignoring the tolerance")
    parser.add_argument("--lossy", action="store_true", help="Match lines approximately (default for non-PNG input)")
    parser.add_argument("--lossless", action="store_true", help="Match lines exactly (default for PNG input)")
    parser.add_argument("--metric", choices=LOSSY_METRICS, default="distance",
                        help="Line comparison used in lossy mode (default: distance)")
    parser.add_argument("-q", "--quiet", action="store_true", help="Suppress output")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    for name in ("row_tolerance", "col_tolerance"):
        value = getattr(args, name)
        if not 0.0 <= value <= 100.0:
            parser.error(f"--{name.replace('_', '-')} must be between 0 and 100, got {value}")
    if args.number_of_processes < 1:
        parser.error(f"--number-of-processes must be at least 1, got {args.number_of_processes}")
    if args.lossy and args.lossless:
        parser.error("--lossy and --lossless are mutually exclusive")

    return args


def main(argv=None) -> None:
    args = parse_args(argv)
    _setup_logging(args.debug)

    # Default output path
    if args.output is None:
        input_path = Path(args.input)
        args.output = input_path.parent / f"{input_path.stem}_tile.png"

    try:
        extract_tile(
            args.input,
            args.output,
            row_tolerance=args.row_tolerance / 100.0,
            col_tolerance=args.col_tolerance / 100.0,
            offset_x=args.x_offset,
            offset_y=args.y_offset,
            row_prefer_frequency=args.row_prefer_frequency,
            col_prefer_frequency=args.col_prefer_frequency,
            lossy=args.lossy,
            lossless=args.lossless,
            metric=args.metric,
            max_workers=args.number_of_processes,
            verbose=not args.quiet,
        )
    except (TileExtractionError, OSError) as exc:
        sys.exit(f"error: {exc}")


if __name__ == "__main__":
    main()
