"""
Smoke tests for the command line interface.

Runs the whole pipeline on a tiny synthetic wallpaper so regressions in
argument wiring, defaults, and exit behaviour are caught early.
"""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from tile_extract.cli import main as cli_main


def _save_wallpaper(path: Path, tile_w: int = 6, tile_h: int = 4) -> np.ndarray:
    """Tile a small gradient 3x across and 2x down and save it."""
    tile = np.zeros((tile_h, tile_w, 3), dtype=np.uint8)
    for y in range(tile_h):
        for x in range(tile_w):
            tile[y, x] = (20 + x * 35, 30 + y * 50, 90)
    pixels = np.tile(tile, (2, 3, 1))
    Image.fromarray(pixels).save(path)
    return tile


def test_cli_smoke(tmp_path, capsys):
    source = tmp_path / "wallpaper.png"
    output = tmp_path / "out" / "tile.png"
    output.parent.mkdir()
    tile = _save_wallpaper(source)

    cli_main([str(source), "-o", str(output), "-j", "1"])

    assert output.exists(), "CLI did not write the tile"
    with Image.open(output) as saved:
        assert saved.size == (6, 4)
        assert np.array_equal(np.array(saved.convert("RGB")), tile)

    out = capsys.readouterr().out
    assert "Row period: 6" in out
    assert "Col period: 4" in out
    assert "percent of total frequency" in out


def test_cli_default_output_and_quiet(tmp_path, capsys):
    source = tmp_path / "wallpaper.png"
    _save_wallpaper(source)

    cli_main([str(source), "--quiet", "-j", "1", "--row-prefer-frequency", "--col-tolerance", "50"])

    assert (tmp_path / "wallpaper_tile.png").exists()
    assert capsys.readouterr().out == ""


def test_cli_lossy_metric(tmp_path):
    source = tmp_path / "wallpaper.png"
    output = tmp_path / "tile.png"
    _save_wallpaper(source)

    cli_main([str(source), "-o", str(output), "--lossy", "--metric", "luma", "-q", "-j", "1"])

    with Image.open(output) as saved:
        assert saved.size == (6, 4)


def test_cli_rejects_lossy_and_lossless(tmp_path):
    source = tmp_path / "wallpaper.png"
    _save_wallpaper(source)

    with pytest.raises(SystemExit) as excinfo:
        cli_main([str(source), "--lossy", "--lossless"])
    assert excinfo.value.code == 2


@pytest.mark.parametrize(
    "extra",
    [["--row-tolerance", "150"], ["--col-tolerance", "-1"], ["-j", "0"]],
)
def test_cli_rejects_bad_values(tmp_path, extra):
    with pytest.raises(SystemExit) as excinfo:
        cli_main([str(tmp_path / "wallpaper.png"), *extra])
    assert excinfo.value.code == 2


def test_cli_missing_input(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        cli_main([str(tmp_path / "nope.png"), "-q"])
    assert str(excinfo.value.code).startswith("error:")


def test_cli_tile_out_of_bounds(tmp_path):
    source = tmp_path / "wallpaper.png"
    output = tmp_path / "tile.png"
    _save_wallpaper(source)

    with pytest.raises(SystemExit) as excinfo:
        cli_main([str(source), "-o", str(output), "-x", "15", "-q", "-j", "1"])

    assert "exceeds" in str(excinfo.value.code)
    assert not output.exists()


def test_cli_output_without_extension(tmp_path):
    source = tmp_path / "wallpaper.png"
    output = tmp_path / "tile"
    _save_wallpaper(source)

    cli_main([str(source), "-o", str(output), "-q", "-j", "1"])

    with Image.open(output) as saved:
        assert saved.format == "PNG"
        assert saved.size == (6, 4)
