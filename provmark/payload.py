"""
payload.py
==========
Attribution payload framing: ``creatorId|timestamp`` text, 8-bit MSB-first
character expansion, and a repetition error-correcting code.

The ECC repeats every bit ``R`` times consecutively and decodes by majority,
so it corrects up to ``floor((R-1)/2)`` flips per group. It is a plain
repetition code, not an algebraic Reed-Solomon code.
"""

from __future__ import annotations

import re
from typing import NamedTuple, Optional

import numpy as np

REDUNDANCY = 3
MAX_PAYLOAD_CHARS = 80
MIN_PAYLOAD_CHARS = 30
SEPARATOR = "|"
FILLER = " "

CREATOR_PATTERN = r"[A-Za-z0-9._%+\-]+(?:@[A-Za-z0-9.\-]+)?"
TIMESTAMP_PATTERN = r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z"

_CREATOR_RE = re.compile(CREATOR_PATTERN)
_TIMESTAMP_RE = re.compile(TIMESTAMP_PATTERN)
_PAYLOAD_RE = re.compile(f"({CREATOR_PATTERN})\\{SEPARATOR}({TIMESTAMP_PATTERN})")


class PayloadError(ValueError):
    """Creator id or timestamp rejected before any pixel work."""


class ExtractedPayload(NamedTuple):
    creator_id: str
    timestamp: str
    raw_match: str


def text_to_bits(text: str) -> np.ndarray:
    """Each character becomes 8 bits, most significant bit first."""
    codes = np.array([ord(c) & 0xFF for c in text], dtype=np.uint8)
    return np.unpackbits(codes)


def bits_to_text(bits) -> str:
    """Groups of 8 bits become printable ASCII, anything else a filler space.

    Trailing bits that do not fill a whole character are dropped.
    """
    bits = np.asarray(bits, dtype=np.uint8)
    usable = (bits.size // 8) * 8
    codes = np.packbits(bits[:usable])
    return "".join(chr(c) if 32 <= c <= 126 else FILLER for c in codes)


def ecc_encode(bits, redundancy: int = REDUNDANCY) -> np.ndarray:
    return np.repeat(np.asarray(bits, dtype=np.uint8), redundancy)


def ecc_decode(encoded, bit_count: int, redundancy: int = REDUNDANCY) -> np.ndarray:
    encoded = np.asarray(encoded, dtype=np.int32)
    groups = encoded[: bit_count * redundancy].reshape(bit_count, redundancy)
    threshold = (redundancy + 1) // 2
    return (groups.sum(axis=1) >= threshold).astype(np.uint8)


def validate(creator_id: str, timestamp: str) -> None:
    if not creator_id or not _CREATOR_RE.fullmatch(creator_id):
        raise PayloadError(f"Invalid creator id: {creator_id!r}")
    if not timestamp or not _TIMESTAMP_RE.fullmatch(timestamp):
        raise PayloadError(
            f"Timestamp must be ISO-8601 with milliseconds and trailing Z: {timestamp!r}"
        )
    size = len(creator_id) + len(SEPARATOR) + len(timestamp)
    if size > MAX_PAYLOAD_CHARS:
        raise PayloadError(f"Payload is {size} chars; maximum is {MAX_PAYLOAD_CHARS}")


def build_payload(creator_id: str, timestamp: str) -> str:
    """Validate and frame the payload text, padded to an even scan length."""
    validate(creator_id, timestamp)
    text = f"{creator_id}{SEPARATOR}{timestamp}"
    size = max(MIN_PAYLOAD_CHARS, len(text) + len(text) % 2)
    return text.ljust(size, FILLER)


def encode_payload(creator_id: str, timestamp: str) -> np.ndarray:
    return ecc_encode(text_to_bits(build_payload(creator_id, timestamp)))


def parse_payload(text: str) -> Optional[ExtractedPayload]:
    m = _PAYLOAD_RE.match(text)
    if m is None:
        return None
    return ExtractedPayload(m.group(1), m.group(2), m.group(0))
