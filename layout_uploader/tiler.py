"""Resample, pad, slice and encode pyramid levels with Pillow."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from PIL import Image, UnidentifiedImageError

from layout_uploader.errors import EncodeError, ImageDecodeError
from layout_uploader.zoom import LevelPlan

LOGGER = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".gif", ".bmp", ".webp"})
RESAMPLE_FILTER = Image.Resampling.LANCZOS


@dataclass(slots=True)
class TileSlice:
    """One ``tile_size`` square cut from a padded level canvas."""

    level: int
    tile_x: int
    tile_y: int
    tile_size: int
    image: Image.Image

    @property
    def pixel_x(self) -> int:
        return self.tile_x * self.tile_size

    @property
    def pixel_y(self) -> int:
        return self.tile_y * self.tile_size


def load_source_image(path: str | Path) -> Image.Image:
    """Decode ``path`` into a fully loaded RGBA image.

    Raises:
        ImageDecodeError: if the file is missing, unreadable, or not an image.
    """

    source = Path(path)
    try:
        with Image.open(source) as handle:
            image = handle.convert("RGBA")
    except FileNotFoundError as exc:
        raise ImageDecodeError(f"Failed to open image: file not found: {source}") from exc
    except UnidentifiedImageError as exc:
        raise ImageDecodeError(f"Failed to open image: unsupported or corrupt file: {source}") from exc
    except (OSError, ValueError) as exc:
        raise ImageDecodeError(f"Failed to open image: {source}: {exc}") from exc
    LOGGER.info("Loaded %s (%sx%s)", source, image.width, image.height)
    return image


def read_image_size(path: str | Path) -> tuple[int, int]:
    """Return ``(width, height)`` from the image header without decoding pixels."""

    source = Path(path)
    try:
        with Image.open(source) as handle:
            return handle.size
    except (OSError, ValueError) as exc:
        raise ImageDecodeError(f"Failed to open image: {source}: {exc}") from exc


def resample(image: Image.Image, plan: LevelPlan) -> Image.Image:
    """Resize the full source to the level's resampled size using Lanczos."""

    size = (plan.resampled_width, plan.resampled_height)
    if image.size == size:
        return image.copy()
    return image.resize(size, RESAMPLE_FILTER)


def pad(
    image: Image.Image,
    plan: LevelPlan,
    background: tuple[int, int, int],
) -> Image.Image:
    """Center ``image`` on an opaque background canvas sized to the level grid.

    ``extra`` is computed per axis against ``tiles_per_axis * tile_size``. The
    resampled pixels are alpha-composited, so transparent areas take the
    background colour.
    """

    span = plan.canvas_size
    width, height = image.size
    extra_w = max(0, span - width)
    extra_h = max(0, span - height)
    canvas = Image.new("RGBA", (width + extra_w, height + extra_h), (*background, 255))
    canvas.alpha_composite(image.convert("RGBA"), dest=(extra_w // 2, extra_h // 2))
    return canvas


def render_level(
    source: Image.Image,
    plan: LevelPlan,
    background: tuple[int, int, int],
) -> Image.Image:
    """Resample then pad ``source`` for one zoom level."""

    canvas = pad(resample(source, plan), plan, background)
    LOGGER.debug(
        "Level %s rendered: resampled %sx%s, canvas %sx%s",
        plan.level,
        plan.resampled_width,
        plan.resampled_height,
        canvas.width,
        canvas.height,
    )
    return canvas


def grid_shape(canvas: Image.Image, tile_size: int) -> tuple[int, int]:
    width, height = canvas.size
    if width % tile_size or height % tile_size:
        raise ValueError(f"Canvas {width}x{height} is not aligned to tile size {tile_size}")
    return width // tile_size, height // tile_size


def iter_tiles(canvas: Image.Image, level: int, tile_size: int) -> Iterator[TileSlice]:
    """Yield tiles column by column (outer ``tile_x``, inner ``tile_y``)."""

    tiles_x, tiles_y = grid_shape(canvas, tile_size)
    for tile_x in range(tiles_x):
        for tile_y in range(tiles_y):
            left = tile_x * tile_size
            top = tile_y * tile_size
            crop = canvas.crop((left, top, left + tile_size, top + tile_size))
            yield TileSlice(level=level, tile_x=tile_x, tile_y=tile_y, tile_size=tile_size, image=crop)


def encode_jpeg(tile: TileSlice) -> bytes:
    """Drop alpha and encode the tile as JPEG with Pillow's default quality."""

    buffer = io.BytesIO()
    try:
        tile.image.convert("RGB").save(buffer, format="JPEG")
    except (OSError, ValueError) as exc:
        raise EncodeError(
            f"Failed to encode JPEG for tile {tile.level}/{tile.tile_x}/{tile.tile_y}: {exc}"
        ) from exc
    return buffer.getvalue()
