"""Freshness-checked, persistent cache for build artifacts."""

from artifact_cache.codec import decode_record, encode_record
from artifact_cache.engine import ArtifactCache
from artifact_cache.errors import (
    CacheError,
    ConfigurationError,
    DestructedError,
    InvalidRecordError,
    RecordDecodeError,
    RecordNotFoundError,
)
from artifact_cache.models import CacheRecord, StatEntry

__all__ = [
    "ArtifactCache",
    "CacheError",
    "CacheRecord",
    "ConfigurationError",
    "DestructedError",
    "InvalidRecordError",
    "RecordDecodeError",
    "RecordNotFoundError",
    "StatEntry",
    "decode_record",
    "encode_record",
]
