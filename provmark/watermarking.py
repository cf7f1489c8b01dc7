#!/usr/bin/env python3
"""
watermarking.py
===============
Tiled DWT/QIM attribution watermarking (any decodable image in, PNG out).

An attribution record ``creatorId|timestamp`` is hidden in the luminance of
the image so that it can be recovered after re-encoding, mild filtering or a
bottom/right crop, and then cross-checked against the provenance ledger.

Algorithm
---------
Per 128x128 tile (edge tiles down to 32px are kept):
  1) One-level Haar DWT of the tile's luminance.
  2) Write the ECC-coded payload bits cyclically into every LH coefficient,
     and again, independently, into every HL coefficient (QIM, fixed step).
  3) Write the 16-bit sync pattern into the four 4x4 corners of HH.
  4) Inverse DWT; the luminance delta is added equally to R, G and B.

Extraction recomputes the same tiles, reads LH/HL bits, and votes per bit
position across tiles, each tile weighted by ``0.3 + 0.7 * sync_score``. The
payload length is not stored: candidate lengths are scanned in ascending
order and the first one whose decoded text has the expected shape wins. If no
ECC candidate matches, an unweighted, ECC-less scan is tried as a fallback.

CLI snippets
------------
    python -m provmark embed --host host.png --out stego.png \
        --creator alice@x.com --ledger ledger.json
    python -m provmark extract --stego stego.png
    python -m provmark verify --image stego.png --ledger ledger.json
    python -m provmark audit --ledger ledger.json
"""

from __future__ import annotations

import argparse
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, NamedTuple, Optional, Sequence

import numpy as np

from .images import (ImageSource, bytes_to_data_url, data_url_bytes, decode_image,
                     fingerprint, load_image, to_data_url)
from .payload import (MAX_PAYLOAD_CHARS, MIN_PAYLOAD_CHARS, REDUNDANCY, ExtractedPayload,
                      bits_to_text, ecc_decode, encode_payload, parse_payload)
from .qim import QIM_STEP, embed_sync, qim_embed, qim_extract, sync_score
from .registry import (DEFAULT_TIMEOUT, JsonFileRegistry, LedgerRecord, LocalLedgerCache,
                       Registry, RegistryError, guarded_call, utc_now_iso, verify_chain)
from .tiling import Tile, texture_strength, tile_grid
from .transforms import SubBands, dwt2, even_shape, idwt2, luminance
from .verification import VerificationResolver


# --------------------------- Logging ------------------------------------- #

LOGGER = logging.getLogger("provmark")

def configure_logging(level: str) -> None:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    LOGGER.setLevel(lvl)

def _log_bit_balance(bits: np.ndarray, name: str) -> None:
    ones = int(np.sum(bits))
    total = bits.size
    pct = 100.0 * ones / total if total else 0.0
    LOGGER.debug("%s: ones=%d / %d (%.2f%%)", name, ones, total, pct)

def _progress_enabled(step_percent: int) -> bool:
    return isinstance(step_percent, int) and step_percent > 0

def _maybe_report_progress(kind: str, k: int, total: int,
                           step_percent: int, last_pct: int) -> int:
    """Report progress in fixed percent steps; return updated last percentage."""
    if not _progress_enabled(step_percent):
        return last_pct
    if total <= 0:
        return last_pct
    pct = int((k * 100) // total)
    if pct >= last_pct + step_percent:
        LOGGER.info("[%s] %d%% (%d/%d tiles)", kind, pct, k, total)
        return pct
    return last_pct


# --------------------------- Constants ----------------------------------- #

ECC_CANDIDATES = range(MIN_PAYLOAD_CHARS, MAX_PAYLOAD_CHARS + 1, 2)
FALLBACK_CANDIDATES = range(40, MAX_PAYLOAD_CHARS + 1, 2)

BASE_WEIGHT = 0.3
SYNC_WEIGHT = 0.7

# A pixel moves by at most (|dLH| + |dHL| + |dHH|) / 2 <= 3 * QIM_STEP / 4; keeping
# tile luma this far from 0 and 255 stops clipping from erasing a band.
LUMA_MARGIN = 0.75 * QIM_STEP + 1.0
# The second pass re-embeds on the rounded, clipped pixels.
EMBED_PASSES = 2


class OperationCancelled(RuntimeError):
    """The caller's cancellation token was set while tiles were being processed."""


# --------------------------- Utility Functions --------------------------- #

def psnr(original: np.ndarray, processed: np.ndarray) -> float:
    original = original.astype(np.float64)
    processed = processed.astype(np.float64)
    mse = np.mean((original - processed) ** 2)
    if mse == 0:
        return 100.0
    return 20.0 * np.log10(255.0 / np.sqrt(mse))


def _crop_even(rgba: np.ndarray) -> np.ndarray:
    h, w = even_shape(*rgba.shape[:2])
    return rgba[:h, :w]


def _as_pixels(image) -> np.ndarray:
    if isinstance(image, np.ndarray):
        if image.ndim != 3 or image.shape[2] != 4:
            raise ValueError("Pixel buffers must be HxWx4 RGBA arrays")
        return image
    return load_image(image)


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("Watermark operation cancelled")


def _run_tiles(fn: Callable[[Tile], object], tiles: Sequence[Tile], workers: int,
               cancel: Optional[threading.Event], kind: str, progress_step: int) -> list:
    """Apply ``fn`` to every tile on a bounded pool; results keep tile order."""
    def task(tile):
        _check_cancel(cancel)
        return fn(tile)

    total = len(tiles)
    results = []
    last_pct = -1
    if workers <= 1:
        for k, tile in enumerate(tiles, 1):
            results.append(task(tile))
            last_pct = _maybe_report_progress(kind, k, total, progress_step, last_pct)
        return results

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(task, tile) for tile in tiles]
        try:
            for k, fut in enumerate(futures, 1):
                results.append(fut.result())
                last_pct = _maybe_report_progress(kind, k, total, progress_step, last_pct)
        except BaseException:
            for fut in futures:
                fut.cancel()
            raise
    return results


# ------------------------- Core Watermarking Logic ----------------------- #

@dataclass
class EmbedConfig:
    workers: int = 4
    progress_step: int = 10  # percent step for progress logs; 0 disables
    timeout: float = DEFAULT_TIMEOUT


@dataclass
class ExtractConfig:
    workers: int = 4
    progress_step: int = 10
    fallback: bool = True    # ECC-less, unweighted scan when the ECC scan finds nothing


@dataclass(frozen=True)
class WatermarkResult:
    watermarked_image: np.ndarray
    encoded_image: str        # PNG data URL; the fingerprinted representation
    content_hash: str
    ledger_entry: LedgerRecord
    psnr: float
    texture_strength: float   # mean advisory strength across tiles


class _TileUpdate(NamedTuple):
    tile: Tile
    luma: np.ndarray
    strength: float


class _TileReading(NamedTuple):
    bits: np.ndarray
    offsets: np.ndarray
    sync: float


def _embed_tile(luma: np.ndarray, tile: Tile, bits: np.ndarray) -> _TileUpdate:
    rows, cols = tile.slices()
    region = luma[rows, cols]
    h, w = even_shape(*region.shape)
    region = np.clip(region[:h, :w], LUMA_MARGIN, 255.0 - LUMA_MARGIN)
    bands = dwt2(region)
    marked = SubBands(
        LL=bands.LL,
        LH=qim_embed(bands.LH, np.resize(bits, bands.LH.shape)),
        HL=qim_embed(bands.HL, np.resize(bits, bands.HL.shape)),
        HH=embed_sync(bands.HH),
    )
    strength = texture_strength(region)
    LOGGER.debug("[EMBED] tile (%d,%d) %dx%d strength=%.3f",
                 tile.start_y, tile.start_x, h, w, strength)
    return _TileUpdate(tile, idwt2(marked), strength)


def _read_tile(luma: np.ndarray, tile: Tile) -> _TileReading:
    rows, cols = tile.slices()
    region = luma[rows, cols]
    h, w = even_shape(*region.shape)
    bands = dwt2(region[:h, :w])
    # LH and HL each carry the stream from position 0.
    bits = np.concatenate([qim_extract(bands.LH).ravel(), qim_extract(bands.HL).ravel()])
    offsets = np.concatenate([np.arange(bands.LH.size), np.arange(bands.HL.size)])
    score = sync_score(bands.HH)
    LOGGER.debug("[EXTRACT] tile (%d,%d) sync=%.3f", tile.start_y, tile.start_x, score)
    return _TileReading(bits, offsets, score)


def _vote(offsets: np.ndarray, bits: np.ndarray, weights: np.ndarray, length: int) -> np.ndarray:
    """Weighted majority per stream position ``offset mod length``."""
    pos = offsets % length
    ones = np.bincount(pos, weights=weights * bits, minlength=length)
    zeros = np.bincount(pos, weights=weights * (1 - bits), minlength=length)
    return (ones > zeros).astype(np.uint8)


class EmbeddingPipeline:
    """Embed an attribution record and register the result.

    ``registry`` and ``cache`` are optional; when present the new ledger entry
    is appended to the registry (chained) and mirrored into the cache.
    """

    def __init__(self, registry: Optional[Registry] = None,
                 cache: Optional[LocalLedgerCache] = None,
                 config: Optional[EmbedConfig] = None):
        self.registry = registry
        self.cache = cache
        self.config = config or EmbedConfig()

    def embed(self, image, creator_id: str, timestamp: str, prompt: Optional[str] = None,
              cancel: Optional[threading.Event] = None) -> WatermarkResult:
        cfg = self.config
        encoded = encode_payload(creator_id, timestamp)
        _log_bit_balance(encoded, "Encoded payload")

        source = _as_pixels(image)
        host = np.array(_crop_even(source), copy=True)
        H, W = host.shape[:2]
        LOGGER.info("Embedding start: %dx%d image, %d encoded bits", W, H, encoded.size)

        tiles = tile_grid(H, W)
        if not tiles:
            raise ValueError(f"Image {W}x{H} has no usable tile; need at least 32x32")
        LOGGER.info("[EMBED] tiles: %d (workers=%d)", len(tiles), cfg.workers)

        out = host
        for n in range(1, EMBED_PASSES + 1):
            out, updates = self._embed_pass(out, tiles, encoded, cancel, f"EMBED {n}/{EMBED_PASSES}")

        data_url = to_data_url(out)
        content_hash = fingerprint(data_url)
        quality = psnr(host[:, :, :3], out[:, :, :3])
        strength = float(np.mean([u.strength for u in updates]))
        LOGGER.info("PSNR(host, stego): %.2f dB | mean texture strength %.3f", quality, strength)

        entry = self._register(LedgerRecord.new(creator_id, timestamp, content_hash, prompt))
        LOGGER.info("Embedding completed: hash %s...", content_hash[:12])
        return WatermarkResult(out, data_url, content_hash, entry, quality, strength)

    def _embed_pass(self, rgba: np.ndarray, tiles: Sequence[Tile], encoded: np.ndarray,
                    cancel: Optional[threading.Event], kind: str):
        """Embed into every tile of ``rgba`` and return the new pixels with the tile updates."""
        luma = luminance(rgba)
        updates = _run_tiles(lambda t: _embed_tile(luma, t, encoded), tiles,
                             self.config.workers, cancel, kind, self.config.progress_step)

        marked = luma.copy()
        for upd in updates:
            h, w = upd.luma.shape
            marked[upd.tile.start_y:upd.tile.start_y + h,
                   upd.tile.start_x:upd.tile.start_x + w] = upd.luma

        delta = marked - luma
        out = rgba.copy()
        out[:, :, :3] = np.clip(np.rint(rgba[:, :, :3].astype(np.float64) + delta[:, :, None]),
                                0, 255).astype(np.uint8)
        return out, updates

    def _register(self, entry: LedgerRecord) -> LedgerRecord:
        if self.registry is not None:
            chained = guarded_call(self.registry.append, entry,
                                   timeout=self.config.timeout, what="registry append")
            if chained is None:
                LOGGER.warning("Registry append unconfirmed for %s; returning the unchained entry, "
                               "which may differ from what the registry stores", entry.id)
            entry = chained or entry
        if self.cache is not None:
            try:
                self.cache.mirror(entry)
            except OSError as exc:
                LOGGER.warning("Local ledger cache write failed: %s", exc)
        return entry


class ExtractionPipeline:
    """Search a possibly degraded image for an attribution record."""

    def __init__(self, config: Optional[ExtractConfig] = None):
        self.config = config or ExtractConfig()

    def extract(self, image, cancel: Optional[threading.Event] = None) -> Optional[ExtractedPayload]:
        cfg = self.config
        rgba = _crop_even(_as_pixels(image))
        H, W = rgba.shape[:2]
        tiles = tile_grid(H, W)
        LOGGER.info("Extraction start: %dx%d image, %d tiles", W, H, len(tiles))
        if not tiles:
            return None

        luma = luminance(rgba)
        readings = _run_tiles(lambda t: _read_tile(luma, t), tiles,
                              cfg.workers, cancel, "EXTRACT", cfg.progress_step)

        bits = np.concatenate([r.bits for r in readings]).astype(np.float64)
        offsets = np.concatenate([r.offsets for r in readings])
        weights = np.concatenate([
            np.full(r.bits.size, BASE_WEIGHT + SYNC_WEIGHT * r.sync) for r in readings
        ])
        LOGGER.info("Mean sync score: %.3f", float(np.mean([r.sync for r in readings])))

        for chars in ECC_CANDIDATES:
            _check_cancel(cancel)
            voted = _vote(offsets, bits, weights, chars * 8 * REDUNDANCY)
            found = parse_payload(bits_to_text(ecc_decode(voted, chars * 8)))
            if found is not None:
                LOGGER.info("Payload found at candidate length %d (ECC)", chars)
                return found

        if not cfg.fallback:
            LOGGER.info("No payload recognized")
            return None

        flat = np.ones_like(weights)
        for chars in FALLBACK_CANDIDATES:
            _check_cancel(cancel)
            found = parse_payload(bits_to_text(_vote(offsets, bits, flat, chars * 8)))
            if found is not None:
                LOGGER.info("Payload found at candidate length %d (fallback, no ECC)", chars)
                return found

        LOGGER.info("No payload recognized")
        return None


def embed(host_path: ImageSource, out_png_path: str, creator_id: str, timestamp: str,
          prompt: Optional[str] = None, cfg: EmbedConfig = EmbedConfig(),
          registry: Optional[Registry] = None,
          cache: Optional[LocalLedgerCache] = None) -> WatermarkResult:
    """Embed into ``host_path`` and write the fingerprinted PNG bytes to ``out_png_path``."""
    result = EmbeddingPipeline(registry, cache, cfg).embed(host_path, creator_id, timestamp, prompt)
    Path(out_png_path).write_bytes(data_url_bytes(result.encoded_image))
    LOGGER.info("Saved stego: %s", out_png_path)
    return result


def extract(stego_path: ImageSource, cfg: ExtractConfig = ExtractConfig()) -> Optional[ExtractedPayload]:
    return ExtractionPipeline(cfg).extract(stego_path)


# ------------------------------ CLI ------------------------------------- #

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Invisible attribution watermarking with a hash-chained ledger.")
    p.add_argument("--log-level", default="INFO", help="Logging level: DEBUG, INFO, WARNING, ERROR. Default INFO.")
    sub = p.add_subparsers(dest="cmd", required=True)

    # EMBED
    pe = sub.add_parser("embed", help="Embed an attribution record into an image.")
    pe.add_argument("--host", required=True, help="Path to host image.")
    pe.add_argument("--out", required=True, help="Output watermarked PNG path.")
    pe.add_argument("--creator", required=True, help="Creator identifier (e.g. an email address).")
    pe.add_argument("--timestamp", default=None,
                    help="ISO-8601 timestamp with milliseconds and Z. Default: now.")
    pe.add_argument("--prompt", default=None, help="Optional prompt/context stored in the ledger.")
    pe.add_argument("--ledger", default=None, help="JSON ledger file to append the record to.")
    pe.add_argument("--cache", default=None, help="JSON local cache file to mirror the record into.")
    pe.add_argument("--workers", type=int, default=4, help="Tile worker threads (default 4).")
    pe.add_argument("--progress", type=int, default=10,
                    help="Progress step in percent for logs (0 disables). Default 10.")

    # EXTRACT
    px = sub.add_parser("extract", help="Recover the attribution record from an image.")
    px.add_argument("--stego", required=True, help="Path to image.")
    px.add_argument("--workers", type=int, default=4, help="Tile worker threads (default 4).")
    px.add_argument("--no-fallback", action="store_true", help="Skip the ECC-less fallback scan.")
    px.add_argument("--progress", type=int, default=10,
                    help="Progress step in percent for logs (0 disables). Default 10.")

    # VERIFY
    pv = sub.add_parser("verify", help="Check an image against the ledger.")
    pv.add_argument("--image", required=True, help="Path to image.")
    pv.add_argument("--ledger", default=None, help="JSON ledger file.")
    pv.add_argument("--cache", default=None, help="JSON local cache file.")
    pv.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="Per-lookup timeout in seconds.")

    # AUDIT
    pa = sub.add_parser("audit", help="Verify the ledger's hash chain.")
    pa.add_argument("--ledger", required=True, help="JSON ledger file.")

    return p


def _open_ledger(path: Optional[str]) -> Optional[JsonFileRegistry]:
    if not path:
        return None
    try:
        return JsonFileRegistry(path)
    except RegistryError as exc:
        LOGGER.warning("Ledger unavailable, continuing without it: %s", exc)
        return None


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if args.cmd == "embed":
        registry = _open_ledger(args.ledger)
        cache = LocalLedgerCache(args.cache) if args.cache else None
        cfg = EmbedConfig(workers=args.workers, progress_step=args.progress)
        result = embed(args.host, args.out, args.creator, args.timestamp or utc_now_iso(),
                       prompt=args.prompt, cfg=cfg, registry=registry, cache=cache)
        LOGGER.info("[OK] Watermarked image saved to: %s", args.out)
        print(result.content_hash)

    elif args.cmd == "extract":
        cfg = ExtractConfig(workers=args.workers, progress_step=args.progress,
                            fallback=not args.no_fallback)
        found = extract(args.stego, cfg)
        if found is None:
            LOGGER.info("No watermark present or recoverable")
            return 1
        print(f"{found.creator_id}|{found.timestamp}")

    elif args.cmd == "verify":
        raw = Path(args.image).read_bytes()
        found = ExtractionPipeline(ExtractConfig(progress_step=0)).extract(decode_image(raw))
        resolver = VerificationResolver(
            registry=_open_ledger(args.ledger),
            cache=LocalLedgerCache(args.cache) if args.cache else None,
            timeout=args.timeout,
        )
        verdict = resolver.verify(bytes_to_data_url(raw), found)
        print(f"{verdict.status} {verdict.confidence}")

    elif args.cmd == "audit":
        try:
            broken = verify_chain(JsonFileRegistry(args.ledger).records())
        except RegistryError as exc:
            LOGGER.error("Cannot audit ledger: %s", exc)
            return 1
        if broken is not None:
            print(f"chain broken at {broken.record_id}")
            return 1
        print("chain intact")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
