import numpy as np
import pytest

from provmark.tiling import (MIN_TILE, STRENGTH_MAX, STRENGTH_MIN, TILE_SIZE, texture_strength,
                             tile_grid)


@pytest.mark.parametrize("h, w", [(160, 160), (256, 384), (300, 203), (1000, 130), (32, 32)])
def test_tiles_cover_without_overlap(h, w):
    tiles = tile_grid(h, w)
    cover = np.zeros((h, w), dtype=np.int32)
    for t in tiles:
        assert t.height >= MIN_TILE and t.width >= MIN_TILE
        assert t.height <= TILE_SIZE and t.width <= TILE_SIZE
        cover[t.slices()] += 1
    assert cover.max() == 1
    rows = np.where(cover.any(axis=1))[0]
    cols = np.where(cover.any(axis=0))[0]
    assert rows[0] == 0 and cols[0] == 0
    assert h - (rows[-1] + 1) < TILE_SIZE
    assert w - (cols[-1] + 1) < TILE_SIZE
    # Everything inside the covered rectangle is covered
    assert cover[: rows[-1] + 1, : cols[-1] + 1].all()


def test_small_edge_tiles_dropped():
    tiles = tile_grid(150, 140)
    assert [(t.height, t.width) for t in tiles] == [(128, 128)]


def test_image_smaller_than_min_tile_has_no_tiles():
    assert tile_grid(31, 500) == []


def test_texture_strength_range():
    flat = np.full((64, 64), 120.0)
    assert texture_strength(flat) == pytest.approx(STRENGTH_MIN)
    busy = np.random.RandomState(0).choice([0.0, 255.0], size=(64, 64))
    assert texture_strength(busy) == pytest.approx(STRENGTH_MAX)
    mid = texture_strength(np.random.RandomState(1).normal(128, 25, (64, 64)))
    assert STRENGTH_MIN < mid < STRENGTH_MAX
