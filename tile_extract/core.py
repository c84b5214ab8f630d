"""
Extract one tile from an image of a repeating pattern.

Every row and every column of the image is treated as a sequence of colors
and its smallest period is detected independently (see ``period.py``). The
per-line periods of each axis are tallied, ranked, and one period per axis is
chosen under a tolerance policy. The row period becomes the tile width and
the column period the tile height; the tile is then cropped at the requested
offset.
"""

import logging
import os
import time
from collections import Counter
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path

import numpy as np
from PIL import Image

from .period import AXES, detect_period, sample_line

logger = logging.getLogger(__name__)

LOSSY_METRICS = ("distance", "luma")
LOSSLESS_EXTENSIONS = {".png"}
DEFAULT_TOLERANCE = 0.001  # 0.1% of lines
INTEGER_GRAY_MODES = {"I", "I;16", "I;16L", "I;16B"}
ARRAY_MODES = {"L", "LA", "RGB", "RGBA"} | INTEGER_GRAY_MODES


class TileExtractionError(Exception):
    """Base class for failures while inferring or cropping a tile."""


class ConfigurationConflictError(TileExtractionError, ValueError):
    """Mutually exclusive options were requested together."""


class TileBoundsError(TileExtractionError, ValueError):
    """The requested tile rectangle does not fit inside the source image."""


@dataclass
class AxisSelection:
    """The period chosen for one axis and how much of the axis agreed with it."""

    period: int
    count: int
    total: int
    pairs: list[tuple[int, int]] = field(default_factory=list)

    @property
    def share(self) -> float:
        """Percentage of lines on this axis that produced ``period``."""
        return 100.0 * self.count / self.total


@dataclass(frozen=True)
class TileSpec:
    """Tile rectangle: the row period is its width, the column period its height."""

    row_period: int
    col_period: int
    offset_x: int = 0
    offset_y: int = 0

    @property
    def width(self) -> int:
        return self.row_period

    @property
    def height(self) -> int:
        return self.col_period

    @property
    def box(self) -> tuple[int, int, int, int]:
        """(left, upper, right, lower), right/lower exclusive."""
        return (
            self.offset_x,
            self.offset_y,
            self.offset_x + self.row_period,
            self.offset_y + self.col_period,
        )


def available_cpus() -> int:
    """CPUs this process may run on, honouring affinity masks where the OS reports them."""
    if hasattr(os, "process_cpu_count"):
        return os.process_cpu_count() or 1
    if hasattr(os, "sched_getaffinity"):
        return len(os.sched_getaffinity(0)) or 1
    return os.cpu_count() or 1


# Set once per worker process by the pool initializer; read-only afterwards.
_worker_pixels: np.ndarray | None = None


def _init_worker(pixels: np.ndarray) -> None:
    global _worker_pixels
    _worker_pixels = pixels


def _line_period(pixels: np.ndarray, axis: str, strategy: str, index: int) -> int:
    return detect_period(sample_line(pixels, axis, index), strategy)


def _pooled_line_period(axis: str, strategy: str, index: int) -> int:
    return _line_period(_worker_pixels, axis, strategy, index)


def scan_periods(
    pixels: np.ndarray,
    axis: str,
    strategy: str = "lossless",
    max_workers: int | None = None,
) -> list[int]:
    """
    Detect the period of every row (axis="row") or column (axis="col").

    Returns one period per line, in no particular order. With more than one
    worker the lines are spread over a process pool; the call only returns
    once every line has been processed.
    """
    if axis not in AXES:
        raise ValueError(f"Unknown axis {axis!r}, expected one of {AXES}")
    if max_workers is not None and max_workers < 1:
        raise ValueError(f"max_workers must be at least 1, got {max_workers}")

    n_lines = pixels.shape[0] if axis == "row" else pixels.shape[1]
    workers = min(max_workers or available_cpus(), max(n_lines, 1))

    logger.debug("Scanning %d %ss (%s) with %d worker(s)", n_lines, axis, strategy, workers)
    start = time.perf_counter()

    if workers == 1:
        periods = [_line_period(pixels, axis, strategy, index) for index in range(n_lines)]
    else:
        task = partial(_pooled_line_period, axis, strategy)
        chunksize = max(1, n_lines // (workers * 4))
        with ProcessPoolExecutor(
            max_workers=workers,
            initializer=_init_worker,
            initargs=(pixels,),
        ) as executor:
            periods = list(executor.map(task, range(n_lines), chunksize=chunksize))

    logger.debug("Scanned %d %ss in %.2fs", n_lines, axis, time.perf_counter() - start)
    return periods


def frequency_pairs(periods) -> tuple[list[tuple[int, int]], int]:
    """Tally periods into (period, count) pairs, plus the number of lines tallied."""
    counts = Counter(periods)
    return list(counts.items()), sum(counts.values())


def rank_pairs(pairs: list[tuple[int, int]], prefer_frequency: bool = False) -> list[tuple[int, int]]:
    """
    Order pairs for selection.

    By default the largest period comes first. With ``prefer_frequency`` the
    most frequent period comes first, ties going to the smaller period.
    """
    if prefer_frequency:
        return sorted(pairs, key=lambda pair: (-pair[1], pair[0]))
    return sorted(pairs, key=lambda pair: pair[0], reverse=True)


def select_period(
    pairs: list[tuple[int, int]],
    total: int,
    tolerance: float = DEFAULT_TOLERANCE,
    prefer_frequency: bool = False,
) -> AxisSelection:
    """
    Pick the first ranked period claiming at least ``tolerance`` of all lines.

    ``prefer_frequency`` ranks by count and forces the tolerance to 0, so the
    most frequent period always wins. If no pair reaches the tolerance the
    scan wraps around to the top-ranked pair, which is returned with its real
    (below tolerance) share.
    """
    if not pairs or total <= 0:
        raise TileExtractionError("No lines were scanned, cannot select a period")

    ranked = rank_pairs(pairs, prefer_frequency)
    if prefer_frequency:
        tolerance = 0.0

    index = 0
    while index < len(ranked) and ranked[index][1] / total < tolerance:
        index += 1

    period, count = ranked[index % len(ranked)]
    return AxisSelection(period=period, count=count, total=total, pairs=ranked)


def crop_tile(pixels: np.ndarray, tile: TileSpec) -> np.ndarray:
    """Copy the tile rectangle out of ``pixels`` into a new array."""
    height, width = pixels.shape[:2]
    left, upper, right, lower = tile.box

    if tile.width < 1 or tile.height < 1:
        raise TileBoundsError(f"Tile size {tile.width}x{tile.height} is empty")
    if left < 0 or upper < 0 or right > width or lower > height:
        raise TileBoundsError(
            f"Tile {tile.width}x{tile.height} at offset ({left}, {upper}) "
            f"exceeds the {width}x{height} source image"
        )

    return pixels[upper:lower, left:right].copy()


def crop_image(img: Image.Image, tile: TileSpec) -> Image.Image:
    """
    Crop ``tile`` out of a PIL image.

    Gray, RGB(A) and 16/32-bit integer images keep their mode, channel
    values and alpha. Other modes (palette, CMYK, ...) are cropped from their
    RGBA conversion.
    """
    if img.mode not in ARRAY_MODES:
        img = img.convert("RGBA")
    return Image.fromarray(crop_tile(np.array(img), tile))


def resolve_lossy(input_path: str | Path, lossy: bool = False, lossless: bool = False) -> bool:
    """
    Decide whether the source should be matched with a lossy metric.

    Explicit flags win; otherwise ``.png`` files are lossless and everything
    else is treated as lossy.
    """
    if lossy and lossless:
        raise ConfigurationConflictError("Cannot treat the image as both lossy and lossless")
    if lossy or lossless:
        return lossy
    return Path(input_path).suffix.lower() not in LOSSLESS_EXTENSIONS


def load_image(input_path: str | Path) -> Image.Image:
    """Decode an image fully so it stays usable after the file is closed."""
    with Image.open(input_path) as img:
        return img.copy()


def image_colors(img: Image.Image) -> np.ndarray:
    """
    (height, width, 3) color array for period detection.

    Integer gray modes keep their native depth, so distinct 16-bit values
    stay distinct; they are repeated into three equal channels. Everything
    else goes through Pillow's RGB conversion and alpha is dropped.
    """
    if img.mode in INTEGER_GRAY_MODES:
        gray = np.array(img).astype(np.int64)
        return np.stack([gray, gray, gray], axis=2)
    return np.array(img.convert("RGB"))


def _save_format(output_path: str | Path) -> str:
    """Pillow save format for the output's extension, PNG when it has no writable one."""
    fmt = Image.registered_extensions().get(Path(output_path).suffix.lower())
    return fmt if fmt in Image.SAVE else "PNG"


def find_tile(
    pixels: np.ndarray,
    row_tolerance: float = DEFAULT_TOLERANCE,
    col_tolerance: float = DEFAULT_TOLERANCE,
    offset_x: int = 0,
    offset_y: int = 0,
    row_prefer_frequency: bool = False,
    col_prefer_frequency: bool = False,
    strategy: str = "lossless",
    max_workers: int | None = None,
) -> tuple[TileSpec, AxisSelection, AxisSelection]:
    """
    Infer the tile of an in-memory image.

    Rows are scanned first, then columns. Returns the tile together with the
    selection made on each axis.
    """
    row_pairs, row_total = frequency_pairs(scan_periods(pixels, "row", strategy, max_workers))
    row = select_period(row_pairs, row_total, row_tolerance, row_prefer_frequency)
    logger.debug("Ranked row periods: %s", row.pairs[:10])

    col_pairs, col_total = frequency_pairs(scan_periods(pixels, "col", strategy, max_workers))
    col = select_period(col_pairs, col_total, col_tolerance, col_prefer_frequency)
    logger.debug("Ranked col periods: %s", col.pairs[:10])

    tile = TileSpec(row_period=row.period, col_period=col.period, offset_x=offset_x, offset_y=offset_y)
    return tile, row, col


def extract_tile(
    input_path: str | Path,
    output_path: str | Path | None = None,
    row_tolerance: float = DEFAULT_TOLERANCE,
    col_tolerance: float = DEFAULT_TOLERANCE,
    offset_x: int = 0,
    offset_y: int = 0,
    row_prefer_frequency: bool = False,
    col_prefer_frequency: bool = False,
    lossy: bool = False,
    lossless: bool = False,
    metric: str = "distance",
    max_workers: int | None = None,
    verbose: bool = True,
) -> Image.Image:
    """
    Extract one repeating tile from a pattern image.

    Args:
        input_path: Path to the input image
        output_path: Path to save the tile (optional)
        row_tolerance: Minimum fraction of rows the row period must account for
        col_tolerance: Minimum fraction of columns the column period must account for
        offset_x, offset_y: Top-left corner of the crop
        row_prefer_frequency: Always take the most frequent row period
        col_prefer_frequency: Always take the most frequent column period
        lossy, lossless: Force the matching mode (default: sniff the extension)
        metric: Lossy cost function, "distance" or "luma"
        max_workers: Worker processes per scan (default: available CPUs)
        verbose: Print detection info

    Returns:
        The extracted tile, in the source's mode where it can be kept
    """
    if metric not in LOSSY_METRICS:
        raise ValueError(f"Unknown lossy metric {metric!r}, expected one of {LOSSY_METRICS}")
    is_lossy = resolve_lossy(input_path, lossy=lossy, lossless=lossless)
    strategy = metric if is_lossy else "lossless"

    img = load_image(input_path)
    pixels = image_colors(img)
    height, width = pixels.shape[:2]

    if verbose:
        print(f"Input image: {width}x{height} ({'lossy, ' + metric if is_lossy else 'lossless'})")

    tile, row, col = find_tile(
        pixels,
        row_tolerance=row_tolerance,
        col_tolerance=col_tolerance,
        offset_x=offset_x,
        offset_y=offset_y,
        row_prefer_frequency=row_prefer_frequency,
        col_prefer_frequency=col_prefer_frequency,
        strategy=strategy,
        max_workers=max_workers,
    )

    if verbose:
        print(f"Row periodicity is {row.share:.6f} percent of total frequency.")
        print(f"Row period: {row.period}")
        print(f"Col periodicity is {col.share:.6f} percent of total frequency.")
        print(f"Col period: {col.period}")
        print(f"Tile: {tile.width}x{tile.height} at offset ({tile.offset_x}, {tile.offset_y})")

    output = crop_image(img, tile)

    if output_path:
        output.save(output_path, format=_save_format(output_path))
        if verbose:
            print(f"Saved to: {output_path}")
            print("Image cropped and saved successfully.")

    return output
