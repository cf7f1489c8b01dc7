"""
tiling.py
=========
Fixed-size, non-overlapping tile grid and the texture-based strength estimate.
"""

from __future__ import annotations

from typing import List, NamedTuple

import numpy as np

TILE_SIZE = 128
MIN_TILE = 32

STRENGTH_MIN = 0.7
STRENGTH_MAX = 1.5
VARIANCE_CEILING = 2500.0


class Tile(NamedTuple):
    start_y: int
    start_x: int
    height: int
    width: int

    def slices(self):
        return (slice(self.start_y, self.start_y + self.height),
                slice(self.start_x, self.start_x + self.width))


def tile_grid(height: int, width: int, tile: int = TILE_SIZE,
              min_tile: int = MIN_TILE) -> List[Tile]:
    """Row-major tiles clipped to the image edge; undersized edge tiles are dropped."""
    tiles: List[Tile] = []
    for y in range(0, height, tile):
        th = min(tile, height - y)
        if th < min_tile:
            continue
        for x in range(0, width, tile):
            tw = min(tile, width - x)
            if tw < min_tile:
                continue
            tiles.append(Tile(y, x, th, tw))
    return tiles


def texture_strength(tile_luma: np.ndarray) -> float:
    """Map local luminance variance linearly into ``[STRENGTH_MIN, STRENGTH_MAX]``.

    Advisory only: the QIM step stays fixed so that extraction can rebuild the
    exact lattice without side information.
    """
    values = np.asarray(tile_luma, dtype=np.float64)
    if values.size == 0:
        return STRENGTH_MIN
    variance = float(np.mean((values - values.mean()) ** 2))
    norm = min(variance / VARIANCE_CEILING, 1.0)
    return STRENGTH_MIN + (STRENGTH_MAX - STRENGTH_MIN) * norm
