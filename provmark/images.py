"""
images.py
=========
Pixel buffer I/O and the content fingerprint.

Pixel buffers are ``HxWx4`` uint8 arrays in RGBA order. OpenCV decodes and
encodes in BGR(A), so conversions happen only at this boundary.

The fingerprint is SHA-256 over the UTF-8 bytes of the PNG data URL, not over
raw pixels: the same pixels serialized through another encoder hash
differently, and stored registry hashes depend on this exact text.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from pathlib import Path
from typing import Union

import cv2
import numpy as np

LOGGER = logging.getLogger("provmark.images")

ImageSource = Union[str, Path, bytes, bytearray]


class ImageLoadError(ValueError):
    """The input could not be decoded as an image."""


def _ensure_uint8(arr: np.ndarray) -> np.ndarray:
    arr = np.ascontiguousarray(arr)
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    return arr


def _to_rgba(img: np.ndarray) -> np.ndarray:
    img = _ensure_uint8(img)
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2RGBA)
    if img.shape[2] == 3:
        return cv2.cvtColor(img, cv2.COLOR_BGR2RGBA)
    if img.shape[2] == 4:
        return cv2.cvtColor(img, cv2.COLOR_BGRA2RGBA)
    raise ImageLoadError(f"Unsupported channel count: {img.shape[2]}")


def decode_image(data: bytes) -> np.ndarray:
    buf = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(buf, cv2.IMREAD_UNCHANGED) if buf.size else None
    if img is None:
        raise ImageLoadError("Failed to decode image bytes")
    return _to_rgba(img)


def load_image(source: ImageSource) -> np.ndarray:
    """Load a path, encoded bytes, or ``data:`` URL into an RGBA buffer."""
    if isinstance(source, (bytes, bytearray)):
        return decode_image(bytes(source))
    if isinstance(source, str) and source.startswith("data:"):
        return decode_image(data_url_bytes(source))
    path = Path(source)
    if not path.is_file():
        raise ImageLoadError(f"Image not found: {path}")
    rgba = decode_image(path.read_bytes())
    LOGGER.debug("Loaded %s (%dx%d)", path, rgba.shape[1], rgba.shape[0])
    return rgba


def encode_png(rgba: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", cv2.cvtColor(_ensure_uint8(rgba), cv2.COLOR_RGBA2BGRA))
    if not ok:
        raise IOError("PNG encoding failed")
    return buf.tobytes()


def _sniff_mime(data: bytes) -> str:
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


def bytes_to_data_url(data: bytes) -> str:
    """Textual form of an already-encoded file, as a browser file reader produces it."""
    return f"data:{_sniff_mime(data)};base64," + base64.b64encode(data).decode("ascii")


def data_url_bytes(url: str) -> bytes:
    _, _, encoded = url.partition(",")
    try:
        return base64.b64decode(encoded, validate=True)
    except binascii.Error as exc:
        raise ImageLoadError(f"Malformed data URL: {exc}") from exc


def to_data_url(rgba: np.ndarray) -> str:
    return bytes_to_data_url(encode_png(rgba))


def save_image(path: Union[str, Path], rgba: np.ndarray) -> Path:
    path = Path(path)
    if not cv2.imwrite(str(path), cv2.cvtColor(_ensure_uint8(rgba), cv2.COLOR_RGBA2BGRA)):
        raise IOError(f"Failed to write output image: {path}")
    return path


def fingerprint(encoded: str) -> str:
    """Lowercase hex SHA-256 of the image's textual encoded form."""
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
