"""
registry.py
===========
Append-only, hash-chained provenance ledger.

Every appended record links to its predecessor::

    chain_hash = SHA256("{creator_id}|{timestamp}|{image_hash}|{prompt}|{prev_hash}")

where ``prev_hash`` is the ``chain_hash`` of the most recent record, or
``GENESIS`` for the first one. ``verify_chain`` recomputes the chain from the
oldest record forward and reports the first record that disagrees.

Two capabilities live here:

- ``Registry``: the authoritative store (read by metadata or hash, append).
- ``LocalLedgerCache``: a best-effort JSON-file mirror, consulted only when
  the registry misses.

Callers talk to both through ``guarded_call`` so that a failing or slow
backend degrades to "not found" instead of an error.
"""

from __future__ import annotations

import abc
import hashlib
import json
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Union

LOGGER = logging.getLogger("provmark.registry")

GENESIS = "GENESIS"
DEFAULT_TIMEOUT = 5.0


class RegistryError(RuntimeError):
    """A registry read or write failed."""


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with milliseconds and a trailing ``Z``."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


@dataclass(frozen=True)
class LedgerRecord:
    id: str
    creator_id: str
    timestamp: str
    image_hash: str
    created_at: str
    prompt: Optional[str] = None
    prev_hash: Optional[str] = None
    chain_hash: Optional[str] = None

    @classmethod
    def new(cls, creator_id: str, timestamp: str, image_hash: str,
            prompt: Optional[str] = None) -> "LedgerRecord":
        return cls(
            id=str(uuid.uuid4()),
            creator_id=creator_id,
            timestamp=timestamp,
            image_hash=image_hash,
            created_at=utc_now_iso(),
            prompt=prompt,
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LedgerRecord":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__})


def chain_hash(record: LedgerRecord, prev_hash: str) -> str:
    payload = "|".join([
        record.creator_id,
        record.timestamp,
        record.image_hash,
        record.prompt or "",
        prev_hash,
    ])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ChainBreak:
    record_id: str
    expected_hash: str
    actual_hash: Optional[str]


def verify_chain(records: Iterable[LedgerRecord]) -> Optional[ChainBreak]:
    """Return the first record whose stored links disagree with a recomputation."""
    prev = GENESIS
    for rec in records:
        expected = chain_hash(rec, prev)
        if rec.chain_hash != expected or rec.prev_hash != prev:
            LOGGER.warning("Chain break at record %s", rec.id)
            return ChainBreak(rec.id, expected, rec.chain_hash)
        prev = rec.chain_hash
    return None


class RecordSource(abc.ABC):
    """Read side shared by the registry and the local cache."""

    @abc.abstractmethod
    def find_by_metadata(self, creator_id: str, timestamp: str) -> Optional[LedgerRecord]:
        ...

    @abc.abstractmethod
    def find_by_hash(self, image_hash: str) -> Optional[LedgerRecord]:
        ...


class Registry(RecordSource):
    """Authoritative append-only ledger."""

    @abc.abstractmethod
    def append(self, record: LedgerRecord) -> LedgerRecord:
        """Chain and store ``record``; return it with ``prev_hash``/``chain_hash`` set."""

    @abc.abstractmethod
    def records(self) -> List[LedgerRecord]:
        """All records, oldest first."""


class MemoryRegistry(Registry):
    """In-process registry. Appends are serialized; reads are lock-free snapshots."""

    def __init__(self, records: Iterable[LedgerRecord] = ()):
        self._records: List[LedgerRecord] = list(records)
        self._lock = threading.Lock()

    def append(self, record: LedgerRecord) -> LedgerRecord:
        with self._lock:
            prev = self._records[-1].chain_hash if self._records else None
            prev = prev or GENESIS
            chained = replace(record, prev_hash=prev, chain_hash=chain_hash(record, prev))
            self._records.append(chained)
        LOGGER.info("Registered %s for %s", chained.id, chained.creator_id)
        return chained

    def records(self) -> List[LedgerRecord]:
        return list(self._records)

    def find_by_metadata(self, creator_id: str, timestamp: str) -> Optional[LedgerRecord]:
        for rec in reversed(self._records):
            if rec.creator_id == creator_id and rec.timestamp == timestamp:
                return rec
        return None

    def find_by_hash(self, image_hash: str) -> Optional[LedgerRecord]:
        for rec in reversed(self._records):
            if rec.image_hash == image_hash:
                return rec
        return None


def _read_ledger_file(path: Path) -> List[LedgerRecord]:
    try:
        return [LedgerRecord.from_dict(item)
                for item in json.loads(path.read_text(encoding="utf-8"))]
    except (OSError, ValueError, AttributeError, TypeError) as exc:
        raise RegistryError(f"Unreadable ledger file {path}: {exc}") from exc


class LocalLedgerCache(RecordSource):
    """JSON-file mirror of ledger records, newest first."""

    def __init__(self, path: Union[str, Path, None] = None):
        self.path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._records: List[LedgerRecord] = self._load()

    def _load(self) -> List[LedgerRecord]:
        if self.path is None or not self.path.exists():
            return []
        try:
            return _read_ledger_file(self.path)
        except RegistryError as exc:
            LOGGER.warning("Local ledger cache ignored, starting empty: %s", exc)
            return []

    def _save(self) -> None:
        if self.path is not None:
            self.path.write_text(self.export_json(), encoding="utf-8")

    def mirror(self, record: LedgerRecord) -> None:
        with self._lock:
            self._records.insert(0, record)
            self._save()

    def entries(self) -> List[LedgerRecord]:
        return list(self._records)

    def export_json(self) -> str:
        return json.dumps([r.to_dict() for r in self._records], indent=2)

    def find_by_metadata(self, creator_id: str, timestamp: str) -> Optional[LedgerRecord]:
        return next((r for r in self._records
                     if r.creator_id == creator_id and r.timestamp == timestamp), None)

    def find_by_hash(self, image_hash: str) -> Optional[LedgerRecord]:
        return next((r for r in self._records if r.image_hash == image_hash), None)


class JsonFileRegistry(MemoryRegistry):
    """Registry persisted to a JSON file (oldest first), used by the CLI."""

    def __init__(self, path: Union[str, Path]):
        """Raises ``RegistryError`` when an existing file cannot be read."""
        self.path = Path(path)
        existing = _read_ledger_file(self.path) if self.path.exists() else []
        super().__init__(existing)

    def append(self, record: LedgerRecord) -> LedgerRecord:
        chained = super().append(record)
        try:
            self.path.write_text(
                json.dumps([r.to_dict() for r in self.records()], indent=2), encoding="utf-8")
        except OSError as exc:
            raise RegistryError(f"Could not persist ledger to {self.path}: {exc}") from exc
        return chained


# Shared by every guarded call; a hung backend call holds one worker until it returns.
_GUARD_POOL = ThreadPoolExecutor(max_workers=8, thread_name_prefix="provmark-registry")


def guarded_call(fn, *args, timeout: float = DEFAULT_TIMEOUT, what: str = "registry call"):
    """Run ``fn(*args)`` with a timeout; any failure or timeout returns ``None``.

    A timed-out call is not interrupted and may still complete later, e.g. an
    append that ends up stored even though the caller saw ``None``.
    """
    future = _GUARD_POOL.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        LOGGER.warning("%s timed out after %.1fs; treating as not found "
                       "(the call may still complete in the background)", what, timeout)
        return None
    except (RegistryError, OSError) as exc:
        LOGGER.warning("%s failed: %s; treating as not found", what, exc)
        return None
    except Exception:
        LOGGER.warning("%s raised unexpectedly; treating as not found", what, exc_info=True)
        return None
