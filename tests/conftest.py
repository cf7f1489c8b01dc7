import sys
from pathlib import Path
import numpy as np
import cv2
import pytest

# Ensure repo root (containing the provmark package) is importable
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from provmark.registry import LocalLedgerCache, MemoryRegistry  # noqa: E402

CREATOR = "alice@x.com"
TIMESTAMP = "2024-01-01T00:00:00.000Z"


def make_rgba_host(h, w, seed=1234):
    """RGBA host with mid-range gradients and a touch of noise (no clipping headroom issues)."""
    rng = np.random.RandomState(seed)
    y = np.linspace(40, 215, h)[:, None]
    x = np.linspace(40, 215, w)[None, :]
    r = x * 0.8 + y * 0.2
    g = x * 0.2 + y * 0.8
    b = (x + y) / 2
    img = np.dstack([r, g, b]) + rng.randn(h, w, 3) * 2
    rgb = np.clip(np.rint(img), 0, 255).astype(np.uint8)
    alpha = np.full((h, w, 1), 255, dtype=np.uint8)
    return np.concatenate([rgb, alpha], axis=2)


def make_textured_host(h, w, seed=99):
    """Busier RGBA host: smoothed random texture, still inside 30..225."""
    rng = np.random.RandomState(seed)
    noise = rng.rand(h, w, 3).astype(np.float32)
    smooth = cv2.GaussianBlur(noise, (0, 0), 3)
    smooth = (smooth - smooth.min()) / max(float(smooth.max() - smooth.min()), 1e-6)
    rgb = (30 + smooth * 195).astype(np.uint8)
    alpha = np.full((h, w, 1), 255, dtype=np.uint8)
    return np.concatenate([rgb, alpha], axis=2)


def write_png(path, rgba):
    cv2.imwrite(str(path), cv2.cvtColor(rgba, cv2.COLOR_RGBA2BGRA))
    return path


@pytest.fixture
def host():
    return make_rgba_host(160, 160)


@pytest.fixture
def host_png(tmp_path):
    # Odd sizes exercise the even-truncation path
    return write_png(tmp_path / "host.png", make_rgba_host(203, 261))


@pytest.fixture
def registry():
    return MemoryRegistry()


@pytest.fixture
def cache(tmp_path):
    return LocalLedgerCache(tmp_path / "cache.json")
