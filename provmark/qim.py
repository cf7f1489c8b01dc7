"""
qim.py
======
Quantization-index modulation of wavelet coefficients, plus the corner sync
marker used as a per-tile reliability signal.

Bit 0 lives on the lattice ``{k*S}`` and bit 1 on ``{k*S + S/2}``. A
coefficient decodes to the bit of whichever lattice point is nearer, so any
perturbation smaller than ``S/4`` is tolerated.
"""

from __future__ import annotations

import numpy as np

# Must be identical at embed and extract time.
QIM_STEP = 12.0

SYNC_PATTERN = np.array([1, 0, 1, 1, 0, 0, 1, 1, 1, 0, 0, 0, 1, 1, 0, 1], dtype=np.uint8)
SYNC_BLOCK = 4


def qim_embed(coeffs, bits, step: float = QIM_STEP) -> np.ndarray:
    """Snap each coefficient onto the lattice selected by its bit."""
    coeffs = np.asarray(coeffs, dtype=np.float64)
    offset = np.asarray(bits, dtype=np.float64) * (step / 2.0)
    return np.round((coeffs - offset) / step) * step + offset


def qim_extract(coeffs, step: float = QIM_STEP) -> np.ndarray:
    coeffs = np.asarray(coeffs, dtype=np.float64)
    half = step / 2.0
    d0 = np.abs(coeffs - np.round(coeffs / step) * step)
    d1 = np.abs(coeffs - half - np.round((coeffs - half) / step) * step)
    return (d1 < d0).astype(np.uint8)


def _corner_slices(band: np.ndarray):
    h, w = band.shape
    if h < 2 * SYNC_BLOCK or w < 2 * SYNC_BLOCK:
        raise ValueError(f"Sub-band {h}x{w} too small for corner sync markers")
    s = SYNC_BLOCK
    return [
        (slice(0, s), slice(0, s)),
        (slice(0, s), slice(w - s, w)),
        (slice(h - s, h), slice(0, s)),
        (slice(h - s, h), slice(w - s, w)),
    ]


def embed_sync(band: np.ndarray, step: float = QIM_STEP) -> np.ndarray:
    """Return a copy of ``band`` with the sync pattern written into all four corners."""
    out = np.array(band, dtype=np.float64, copy=True)
    pattern = SYNC_PATTERN.reshape(SYNC_BLOCK, SYNC_BLOCK)
    for rows, cols in _corner_slices(out):
        out[rows, cols] = qim_embed(out[rows, cols], pattern, step)
    return out


def sync_score(band: np.ndarray, step: float = QIM_STEP) -> float:
    """Fraction of corner positions matching the sync pattern, averaged over corners."""
    pattern = SYNC_PATTERN.reshape(SYNC_BLOCK, SYNC_BLOCK)
    scores = [
        float(np.mean(qim_extract(band[rows, cols], step) == pattern))
        for rows, cols in _corner_slices(band)
    ]
    return float(np.mean(scores))
