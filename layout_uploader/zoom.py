"""Zoom-level arithmetic for quad-tree tile pyramids."""

from __future__ import annotations

from dataclasses import dataclass

from layout_uploader.errors import ConfigurationError


@dataclass(frozen=True, slots=True)
class LevelPlan:
    """Geometry of one zoom level, all derived from the same ``level`` value."""

    level: int
    scale: float
    resampled_width: int
    resampled_height: int
    tiles_per_axis: int
    tile_size: int

    @property
    def canvas_size(self) -> int:
        return self.tiles_per_axis * self.tile_size

    @property
    def tile_count(self) -> int:
        return self.tiles_per_axis * self.tiles_per_axis


def _require_positive_tile_size(tile_size: int) -> None:
    if tile_size <= 0:
        raise ConfigurationError(f"Tile size must be a positive integer, got {tile_size}")


def _require_dimensions(width: int, height: int) -> None:
    if width <= 0 or height <= 0:
        raise ConfigurationError(f"Image dimensions must be positive, got {width}x{height}")


def level_count(width: int, height: int, tile_size: int) -> int:
    """Return ``ceil(log2(ceil(max(w, h) / t))) + 1``.

    Computed on integers: for ``n >= 1``, ``(n - 1).bit_length()`` equals
    ``ceil(log2(n))`` without floating point rounding at exact powers of two.
    """

    _require_positive_tile_size(tile_size)
    _require_dimensions(width, height)
    max_dimension = max(width, height)
    tiles_across = -(-max_dimension // tile_size)
    return (tiles_across - 1).bit_length() + 1


def tiles_per_axis(level: int) -> int:
    return 2**level


def scale_factor(level: int, width: int, height: int, tile_size: int) -> float:
    """Fraction by which the source is resampled at ``level``.

    The finest level may slightly exceed 1.0; that guarantees one full tile
    grid covers the image.
    """

    _require_positive_tile_size(tile_size)
    _require_dimensions(width, height)
    return (tiles_per_axis(level) * tile_size) / max(width, height)


def total_tile_count(levels: int) -> int:
    """Closed-form ``sum(4**i for i in range(levels))``."""

    if levels <= 0:
        return 0
    return (4**levels - 1) // 3


def plan_level(level: int, width: int, height: int, tile_size: int) -> LevelPlan:
    """Describe the resampled size and tile grid for ``level``.

    Resampled dimensions are ``floor(dim * scale)`` evaluated exactly as
    ``dim * 2**level * t // max(w, h)`` so they never exceed the level canvas.
    """

    _require_positive_tile_size(tile_size)
    _require_dimensions(width, height)
    per_axis = tiles_per_axis(level)
    span = per_axis * tile_size
    max_dimension = max(width, height)
    return LevelPlan(
        level=level,
        scale=span / max_dimension,
        resampled_width=max(1, width * span // max_dimension),
        resampled_height=max(1, height * span // max_dimension),
        tiles_per_axis=per_axis,
        tile_size=tile_size,
    )


def plan_levels(width: int, height: int, tile_size: int) -> list[LevelPlan]:
    """Return level plans finest first, the order the builder processes them."""

    count = level_count(width, height, tile_size)
    return [plan_level(level, width, height, tile_size) for level in reversed(range(count))]
