from __future__ import annotations


class CacheError(Exception):
    """Base class for every error raised by the artifact cache."""


class ConfigurationError(CacheError, ValueError):
    """Raised at construction time when the cache is misconfigured."""


class RecordNotFoundError(CacheError):
    """No persisted record exists for the requested key."""

    def __init__(self, key: str) -> None:
        super().__init__(f"No cache record on disk for key: {key}")
        self.key = key


class RecordDecodeError(CacheError, ValueError):
    """A serialized record is truncated, undelimited or otherwise malformed."""


class InvalidRecordError(CacheError, ValueError):
    """The populate operation returned something that is not a usable record."""


class DestructedError(CacheError):
    def __init__(self) -> None:
        super().__init__("read operations not permitted on already destructed instances")


__all__ = [
    "CacheError",
    "ConfigurationError",
    "DestructedError",
    "InvalidRecordError",
    "RecordDecodeError",
    "RecordNotFoundError",
]
