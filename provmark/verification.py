"""
verification.py
===============
Trust verdict for an image, combining two independent facts:

1. the extracted ``(creator_id, timestamp)`` matches a ledger record;
2. the image's current fingerprint matches a record's stored hash.

=========  =========  ===============================
metadata   hash       verdict
=========  =========  ===============================
yes        yes        registered / exactHash
yes        no         registered / metadataMatch
no         yes        registered / exactHash
no         no         unregistered / none
=========  =========  ===============================

Each fact is looked up in the registry first, then the local cache. Backend
failures and timeouts count as misses, so verification always returns a
verdict.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .images import fingerprint
from .payload import ExtractedPayload
from .registry import DEFAULT_TIMEOUT, LedgerRecord, LocalLedgerCache, RecordSource, guarded_call

LOGGER = logging.getLogger("provmark.verification")

REGISTERED = "registered"
UNREGISTERED = "unregistered"

EXACT_HASH = "exactHash"
METADATA_MATCH = "metadataMatch"
NO_MATCH = "none"


@dataclass(frozen=True)
class VerificationVerdict:
    status: str
    confidence: str
    current_hash: str
    matched_record: Optional[LedgerRecord] = None
    extracted: Optional[ExtractedPayload] = None


class VerificationResolver:

    def __init__(self, registry: Optional[RecordSource] = None,
                 cache: Optional[LocalLedgerCache] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        self.registry = registry
        self.cache = cache
        self.timeout = timeout

    def _sources(self):
        return [(name, src) for name, src in (("registry", self.registry), ("local cache", self.cache))
                if src is not None]

    def _lookup_metadata(self, extracted: Optional[ExtractedPayload]) -> Optional[LedgerRecord]:
        if extracted is None:
            return None
        for name, src in self._sources():
            rec = guarded_call(src.find_by_metadata, extracted.creator_id, extracted.timestamp,
                               timeout=self.timeout, what=f"{name} metadata lookup")
            if rec is not None:
                LOGGER.info("Metadata match in %s: %s", name, rec.id)
                return rec
        return None

    def _lookup_hash(self, current_hash: str) -> Optional[LedgerRecord]:
        for name, src in self._sources():
            rec = guarded_call(src.find_by_hash, current_hash,
                               timeout=self.timeout, what=f"{name} hash lookup")
            if rec is not None:
                LOGGER.info("Hash match in %s: %s", name, rec.id)
                return rec
        return None

    def verify(self, encoded_image: str, extracted: Optional[ExtractedPayload]) -> VerificationVerdict:
        """Resolve a verdict for ``encoded_image`` (the PNG data URL) and its extraction result."""
        current_hash = fingerprint(encoded_image)
        by_meta = self._lookup_metadata(extracted)
        by_hash = self._lookup_hash(current_hash)

        if by_hash is not None:
            status, confidence, record = REGISTERED, EXACT_HASH, by_hash
        elif by_meta is not None:
            status, confidence, record = REGISTERED, METADATA_MATCH, by_meta
        else:
            status, confidence, record = UNREGISTERED, NO_MATCH, None

        LOGGER.info("Verdict: %s / %s (hash %s...)", status, confidence, current_hash[:12])
        return VerificationVerdict(status, confidence, current_hash, record, extracted)
