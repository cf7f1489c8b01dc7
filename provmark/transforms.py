"""
transforms.py
=============
Luminance extraction and the one-level 2D Haar wavelet transform.

Sub-band naming follows the row-then-column convention:

- ``LL`` low along rows, low along columns (coarse approximation)
- ``LH`` low along rows, high along columns (horizontal detail)
- ``HL`` high along rows, low along columns (vertical detail)
- ``HH`` high along both (diagonal detail)

PyWavelets uses the orthonormal ``1/sqrt(2)`` Haar pairing, so forward and
inverse are exact inverses up to floating-point rounding.
"""

from __future__ import annotations

from typing import NamedTuple

import numpy as np
import pywt

WAVELET = "haar"
_MODE = "periodization"

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)


class SubBands(NamedTuple):
    LL: np.ndarray
    LH: np.ndarray
    HL: np.ndarray
    HH: np.ndarray


def luminance(rgba: np.ndarray) -> np.ndarray:
    """Return the HxW float64 luma grid ``Y = 0.299R + 0.587G + 0.114B``."""
    if rgba.ndim != 3 or rgba.shape[2] < 3:
        raise ValueError("Expected an HxWx3 or HxWx4 pixel buffer")
    return rgba[:, :, :3].astype(np.float64) @ LUMA_WEIGHTS


def even_shape(height: int, width: int) -> tuple[int, int]:
    return height - (height % 2), width - (width % 2)


def dwt2(grid: np.ndarray) -> SubBands:
    """One decomposition level over an even-dimensioned grid."""
    h, w = grid.shape
    if h % 2 or w % 2:
        raise ValueError(f"Haar DWT needs even dimensions, got {h}x{w}")
    ll, (lh, hl, hh) = pywt.dwt2(np.asarray(grid, dtype=np.float64), WAVELET, mode=_MODE)
    return SubBands(ll, lh, hl, hh)


def idwt2(bands: SubBands) -> np.ndarray:
    return pywt.idwt2((bands.LL, (bands.LH, bands.HL, bands.HH)), WAVELET, mode=_MODE)
