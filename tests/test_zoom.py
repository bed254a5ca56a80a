from __future__ import annotations

import math

import pytest

from layout_uploader.errors import ConfigurationError
from layout_uploader.zoom import (
    level_count,
    plan_level,
    plan_levels,
    scale_factor,
    total_tile_count,
)


@pytest.mark.parametrize(
    "width,height,tile_size,expected",
    [
        (1, 1, 256, 1),
        (256, 256, 256, 1),
        (257, 10, 256, 2),
        (512, 512, 256, 2),
        (513, 512, 256, 3),
        (1024, 300, 256, 3),
        (300, 1025, 256, 4),
        (4000, 3000, 512, 4),
    ],
)
def test_level_count_matches_closed_form(width: int, height: int, tile_size: int, expected: int) -> None:
    assert level_count(width, height, tile_size) == expected
    formula = math.ceil(math.log2(math.ceil(max(width, height) / tile_size))) + 1
    assert level_count(width, height, tile_size) == formula


@pytest.mark.parametrize(
    "width,height,tile_size",
    [(1, 1, 256), (255, 3, 256), (512, 512, 256), (513, 100, 256), (1000, 1999, 100), (7, 9, 1)],
)
def test_finest_level_is_smallest_covering_level(width: int, height: int, tile_size: int) -> None:
    levels = level_count(width, height, tile_size)
    max_dimension = max(width, height)

    assert 2 ** (levels - 1) * tile_size >= max_dimension
    if levels > 1:
        assert 2 ** (levels - 2) * tile_size < max_dimension


def test_scale_factor_finest_level_may_exceed_one() -> None:
    # 300px needs two 256px tiles across at the finest level
    assert scale_factor(1, 300, 200, 256) == pytest.approx(512 / 300)
    assert scale_factor(0, 300, 200, 256) == pytest.approx(256 / 300)


@pytest.mark.parametrize("levels,expected", [(0, 0), (1, 1), (2, 5), (3, 21), (5, 341)])
def test_total_tile_count(levels: int, expected: int) -> None:
    assert total_tile_count(levels) == expected
    assert total_tile_count(levels) == sum(4**i for i in range(levels))


@pytest.mark.parametrize("tile_size", [0, -256])
def test_non_positive_tile_size_is_configuration_error(tile_size: int) -> None:
    with pytest.raises(ConfigurationError):
        level_count(100, 100, tile_size)
    with pytest.raises(ConfigurationError):
        scale_factor(0, 100, 100, tile_size)


def test_zero_dimension_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        level_count(0, 10, 256)


def test_plan_levels_orders_finest_first_and_fits_canvas() -> None:
    plans = plan_levels(1000, 600, 256)

    assert [plan.level for plan in plans] == [2, 1, 0]
    for plan in plans:
        assert plan.tiles_per_axis == 2**plan.level
        assert plan.resampled_width <= plan.canvas_size
        assert plan.resampled_height <= plan.canvas_size
    assert plans[0].resampled_width == 1024
    assert plans[0].resampled_height == 600 * 1024 // 1000


def test_plan_level_never_collapses_to_zero_pixels() -> None:
    plan = plan_level(0, 10_000, 1, 256)

    assert plan.resampled_width == 256
    assert plan.resampled_height == 1
