"""Tests for tiler helpers."""

from __future__ import annotations

import io
from pathlib import Path

import pytest
from PIL import Image

from layout_uploader.errors import ImageDecodeError
from layout_uploader.tiler import (
    TileSlice,
    encode_jpeg,
    grid_shape,
    iter_tiles,
    load_source_image,
    pad,
    read_image_size,
    render_level,
    resample,
)
from layout_uploader.zoom import plan_level, plan_levels

RED = (200, 10, 10, 255)
BACKGROUND = (12, 34, 56)


def _write_png(path: Path, size: tuple[int, int], color: tuple[int, int, int, int] = RED) -> Path:
    Image.new("RGBA", size, color).save(path, format="PNG")
    return path


def test_load_source_image_converts_to_rgba(tmp_path: Path) -> None:
    path = tmp_path / "source.jpg"
    Image.new("RGB", (40, 30), (1, 2, 3)).save(path, format="JPEG")

    image = load_source_image(path)

    assert image.mode == "RGBA"
    assert image.size == (40, 30)


def test_load_source_image_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ImageDecodeError) as excinfo:
        load_source_image(tmp_path / "missing.png")
    assert "missing.png" in str(excinfo.value)


def test_load_source_image_rejects_non_image(tmp_path: Path) -> None:
    path = tmp_path / "notes.png"
    path.write_text("definitely not a png", encoding="utf-8")

    with pytest.raises(ImageDecodeError):
        load_source_image(path)


def test_read_image_size_uses_header(tmp_path: Path) -> None:
    path = _write_png(tmp_path / "wide.png", (300, 120))

    assert read_image_size(path) == (300, 120)


def test_resample_floors_to_plan_dimensions() -> None:
    source = Image.new("RGBA", (1000, 600), RED)
    plan = plan_level(1, 1000, 600, 256)

    resampled = resample(source, plan)

    assert resampled.size == (512, 307)


@pytest.mark.parametrize(
    "width,height,tile_size",
    [(512, 512, 256), (300, 200, 256), (200, 300, 64), (1000, 37, 128), (1, 1, 16)],
)
def test_padded_canvas_is_tile_aligned(width: int, height: int, tile_size: int) -> None:
    source = Image.new("RGBA", (width, height), RED)

    for plan in plan_levels(width, height, tile_size):
        canvas = render_level(source, plan, BACKGROUND)
        assert canvas.width % tile_size == 0
        assert canvas.height % tile_size == 0
        assert canvas.size == (plan.canvas_size, plan.canvas_size)


def test_pad_fills_background_exactly_around_centered_image() -> None:
    plan = plan_level(0, 100, 50, 64)
    resampled = Image.new("RGBA", (plan.resampled_width, plan.resampled_height), RED)

    canvas = pad(resampled, plan, BACKGROUND)

    # 64x32 resampled on a 64x64 canvas: 16 rows of background above and below.
    assert resampled.size == (64, 32)
    assert canvas.getpixel((0, 0)) == (*BACKGROUND, 255)
    assert canvas.getpixel((63, 15)) == (*BACKGROUND, 255)
    assert canvas.getpixel((0, 16)) == RED
    assert canvas.getpixel((63, 47)) == RED
    assert canvas.getpixel((0, 48)) == (*BACKGROUND, 255)
    assert canvas.getpixel((32, 63)) == (*BACKGROUND, 255)


def test_pad_blends_transparent_pixels_onto_background() -> None:
    plan = plan_level(0, 256, 256, 256)
    clear = Image.new("RGBA", (256, 256), (0, 0, 0, 0))
    half = Image.new("RGBA", (256, 256), (0, 0, 0, 128))

    clear_canvas = pad(clear, plan, (255, 255, 255))
    half_canvas = pad(half, plan, (255, 255, 255))

    assert clear_canvas.getpixel((128, 128)) == (255, 255, 255, 255)
    red, green, blue, alpha = half_canvas.getpixel((128, 128))
    assert alpha == 255
    assert all(abs(channel - 127) <= 1 for channel in (red, green, blue))

    tile = next(iter_tiles(clear_canvas, 0, 256))
    flattened = Image.open(io.BytesIO(encode_jpeg(tile))).convert("RGB")
    assert all(channel >= 250 for channel in flattened.getpixel((128, 128)))


def test_pad_offsets_use_floor_of_half_extra() -> None:
    plan = plan_level(0, 10, 7, 16)
    resampled = Image.new("RGBA", (plan.resampled_width, plan.resampled_height), RED)

    canvas = pad(resampled, plan, BACKGROUND)

    # resampled 16x11 -> extra_h = 5, top offset 2
    assert resampled.size == (16, 11)
    assert canvas.getpixel((0, 1)) == (*BACKGROUND, 255)
    assert canvas.getpixel((0, 2)) == RED
    assert canvas.getpixel((0, 12)) == RED
    assert canvas.getpixel((0, 13)) == (*BACKGROUND, 255)


def test_iter_tiles_covers_grid_without_gaps() -> None:
    canvas = Image.new("RGBA", (3 * 32, 2 * 32), RED)

    tiles = list(iter_tiles(canvas, level=4, tile_size=32))

    assert len(tiles) == 6
    assert {(tile.tile_x, tile.tile_y) for tile in tiles} == {(x, y) for x in range(3) for y in range(2)}
    assert all(tile.image.size == (32, 32) for tile in tiles)
    assert [(tile.tile_x, tile.tile_y) for tile in tiles[:2]] == [(0, 0), (0, 1)]
    assert (tiles[-1].pixel_x, tiles[-1].pixel_y) == (64, 32)


def test_iter_tiles_crops_matching_pixels() -> None:
    canvas = Image.new("RGBA", (64, 64), RED)
    canvas.paste(Image.new("RGBA", (32, 32), (0, 255, 0, 255)), (32, 0))

    tiles = {(tile.tile_x, tile.tile_y): tile for tile in iter_tiles(canvas, level=1, tile_size=32)}

    assert tiles[(1, 0)].image.getpixel((0, 0)) == (0, 255, 0, 255)
    assert tiles[(0, 0)].image.getpixel((31, 31)) == RED


def test_grid_shape_rejects_misaligned_canvas() -> None:
    with pytest.raises(ValueError):
        grid_shape(Image.new("RGBA", (100, 64), RED), 32)


def test_encode_jpeg_drops_alpha() -> None:
    tile = TileSlice(level=0, tile_x=0, tile_y=0, tile_size=16, image=Image.new("RGBA", (16, 16), RED))

    payload = encode_jpeg(tile)

    assert payload[:2] == b"\xff\xd8"
    decoded = Image.open(io.BytesIO(payload))
    assert decoded.format == "JPEG"
    assert decoded.mode == "RGB"
    assert decoded.size == (16, 16)
