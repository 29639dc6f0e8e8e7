from __future__ import annotations

import json
from typing import Any, Dict

from artifact_cache.errors import RecordDecodeError
from artifact_cache.models import PAYLOADS_FIELD, CacheRecord, payload_to_bytes

DELIMITER = b"\n"


def encode_record(record: CacheRecord) -> bytes:
    """
    Serialize a record as one JSON metadata line followed by the payload blob.

    The metadata's ``payloads`` field becomes an offset table of
    ``{name, start, end}`` descriptors relative to the start of the blob.
    """
    metadata: Dict[str, Any] = dict(record.metadata)
    offsets: Dict[str, Dict[str, Any]] = {}
    blobs: list[bytes] = []
    offset = 0
    for name, payload in record.payloads.items():
        blob = payload_to_bytes(name, payload)
        offsets[name] = {"name": name, "start": offset, "end": offset + len(blob)}
        offset += len(blob)
        blobs.append(blob)
    metadata[PAYLOADS_FIELD] = offsets

    # Compact separators and escaped strings keep the metadata on a single line.
    header = json.dumps(metadata, separators=(",", ":")).encode("utf-8")
    return b"".join([header, DELIMITER, *blobs])


def decode_record(data: bytes) -> CacheRecord:
    index = data.find(DELIMITER)
    if index < 0:
        raise RecordDecodeError("Cache record has no metadata delimiter")

    try:
        metadata = json.loads(data[:index].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise RecordDecodeError(f"Cache record metadata is not valid JSON: {e}") from e
    if not isinstance(metadata, dict):
        raise RecordDecodeError("Cache record metadata must be a JSON object")

    offsets = metadata.pop(PAYLOADS_FIELD, {})
    if not isinstance(offsets, dict):
        raise RecordDecodeError("Cache record payload table must be a JSON object")

    blob = memoryview(data)[index + len(DELIMITER) :]
    payloads: Dict[str, bytes] = {}
    for name, info in offsets.items():
        start = info.get("start") if isinstance(info, dict) else None
        end = info.get("end") if isinstance(info, dict) else None
        if not isinstance(start, int) or not isinstance(end, int):
            raise RecordDecodeError(f"Payload {name!r} has no valid offsets")
        if not 0 <= start <= end <= len(blob):
            raise RecordDecodeError(
                f"Payload {name!r} offsets [{start}, {end}) fall outside the {len(blob)} byte blob"
            )
        payloads[name] = bytes(blob[start:end])

    return CacheRecord(metadata=metadata, payloads=payloads)


__all__ = ["decode_record", "encode_record"]
