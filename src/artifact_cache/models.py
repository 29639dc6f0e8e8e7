from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from artifact_cache.errors import InvalidRecordError

KEY_FIELD = "key"
SOURCE_PATHS_FIELD = "sourcePaths"
MINIMUM_MTIME_FIELD = "minimumMtime"
PAYLOADS_FIELD = "payloads"

# Whole-second mtime resolution on some filesystems hides edits made in the
# same second as the populate call.
MTIME_MARGIN_MS = 1000


@dataclass(slots=True)
class CacheRecord:
    metadata: Dict[str, Any]
    payloads: Dict[str, bytes] = field(default_factory=dict)

    @property
    def key(self) -> Optional[str]:
        return self.metadata.get(KEY_FIELD)

    @property
    def source_paths(self) -> List[str]:
        return list(self.metadata.get(SOURCE_PATHS_FIELD) or [])

    @property
    def minimum_mtime(self) -> Optional[int]:
        return self.metadata.get(MINIMUM_MTIME_FIELD)


@dataclass(frozen=True, slots=True)
class StatEntry:
    """
    Cached modification metadata for one absolute path.

    An entry either carries the path's mtime in epoch milliseconds or marks the
    path as absent. Paths without an entry are "unknown" and get stat-ed on the
    next lookup.
    """

    exists: bool
    mtime_ms: Optional[int] = None

    @classmethod
    def from_stat(cls, stat: os.stat_result) -> StatEntry:
        return cls(exists=True, mtime_ms=stat.st_mtime_ns // 1_000_000)

    @classmethod
    def absent(cls) -> StatEntry:
        return cls(exists=False)


def payload_to_bytes(name: str, payload: Any) -> bytes:
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, (bytearray, memoryview)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    raise InvalidRecordError(f"Payload {name!r} must be bytes or str, got: {type(payload).__name__}")


def coerce_record(value: Any) -> CacheRecord:
    """
    Normalize a populate result into a CacheRecord.

    Accepts a CacheRecord or a mapping with ``metadata`` and ``payloads``
    entries. Text payloads are encoded as UTF-8 and source paths are made
    absolute.
    """
    if isinstance(value, CacheRecord):
        metadata, payloads = value.metadata, value.payloads
    elif isinstance(value, Mapping):
        metadata, payloads = value.get("metadata"), value.get("payloads", {})
    else:
        raise InvalidRecordError(f"populate must return a CacheRecord, got: {type(value).__name__}")

    if not isinstance(metadata, Mapping):
        raise InvalidRecordError("Cache record metadata must be a mapping")
    if not isinstance(payloads, Mapping):
        raise InvalidRecordError("Cache record payloads must be a mapping")

    source_paths = metadata.get(SOURCE_PATHS_FIELD)
    if not isinstance(source_paths, (list, tuple)) or not all(isinstance(p, str) for p in source_paths):
        raise InvalidRecordError(f"Cache record metadata must declare {SOURCE_PATHS_FIELD} as a list of paths")

    normalized = dict(metadata)
    normalized[SOURCE_PATHS_FIELD] = [os.path.abspath(p) for p in source_paths]
    return CacheRecord(
        metadata=normalized,
        payloads={name: payload_to_bytes(name, payload) for name, payload in payloads.items()},
    )
