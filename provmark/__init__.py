"""Invisible attribution watermarking with a hash-chained provenance ledger."""

from .images import ImageLoadError, fingerprint, load_image, to_data_url
from .payload import ExtractedPayload, PayloadError
from .registry import LedgerRecord, LocalLedgerCache, MemoryRegistry, Registry, RegistryError
from .verification import VerificationResolver, VerificationVerdict
from .watermarking import (EmbedConfig, EmbeddingPipeline, ExtractConfig, ExtractionPipeline,
                           OperationCancelled, WatermarkResult, embed, extract)

__version__ = "0.1.0"
