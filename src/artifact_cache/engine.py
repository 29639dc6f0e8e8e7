from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from artifact_cache.codec import decode_record
from artifact_cache.config.models import CacheSettings
from artifact_cache.disk_store import DiskStore
from artifact_cache.errors import ConfigurationError, DestructedError, RecordNotFoundError
from artifact_cache.freshness import FreshnessOracle
from artifact_cache.models import (
    KEY_FIELD,
    MINIMUM_MTIME_FIELD,
    MTIME_MARGIN_MS,
    CacheRecord,
    coerce_record,
)
from artifact_cache.notifier import ChangeNotifier
from artifact_cache.stat_tracker import StatTracker

logger = logging.getLogger(__name__)

PopulateResult = Union[CacheRecord, Dict[str, Any]]
PopulateFn = Callable[[str], Union[PopulateResult, Awaitable[PopulateResult]]]


class LookupOutcome(enum.Enum):
    HIT = "hit"
    STALE = "stale"
    MISSING = "missing"


@dataclass(frozen=True, slots=True)
class Lookup:
    outcome: LookupOutcome
    record: Optional[CacheRecord] = None


_MISSING = Lookup(LookupOutcome.MISSING)
_STALE = Lookup(LookupOutcome.STALE)


def _now_ms() -> int:
    return int(time.time() * 1000)


class ArtifactCache:
    """
    Freshness-checked two-tier cache of populate results.

    ``read(key)`` serves a record from memory, then from disk, and finally from
    ``populate(key)``, accepting a cached record only while none of its declared
    source files changed since it was produced. Concurrent reads of one key share
    a single in-flight lookup.
    """

    def __init__(
        self,
        *,
        populate: PopulateFn,
        persist: bool = True,
        cache_dir: Optional[str | os.PathLike[str]] = None,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        if not callable(populate):
            raise ConfigurationError("populate must be given as a callable")
        if persist and not isinstance(cache_dir, (str, os.PathLike)):
            raise ConfigurationError("cache_dir must be given as a path when persist is enabled")

        self.populate = populate
        self.persist = persist
        self.memory_cache: Dict[str, CacheRecord] = {}
        self.stat_tracker = StatTracker()
        self._freshness = FreshnessOracle(self.stat_tracker)
        self._notifier = ChangeNotifier(self.stat_tracker, observer_factory=observer_factory)
        self._disk: Optional[DiskStore] = DiskStore(cache_dir) if persist else None
        self._in_flight: Dict[str, asyncio.Task[CacheRecord]] = {}
        self._purge_lock = asyncio.Lock()
        self._purge_gate: Optional[asyncio.Event] = None
        self._destructed = False
        if self._disk is not None:
            logger.debug("Using cache dir. path=%s", self._disk.cache_dir)

    @classmethod
    def from_settings(
        cls,
        settings: CacheSettings,
        *,
        populate: PopulateFn,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> ArtifactCache:
        return cls(
            populate=populate,
            persist=settings.persist,
            cache_dir=settings.cache_dir,
            observer_factory=observer_factory,
        )

    @property
    def cache_dir(self) -> Optional[str]:
        return str(self._disk.cache_dir) if self._disk is not None else None

    @property
    def notifier(self) -> ChangeNotifier:
        return self._notifier

    async def __aenter__(self) -> ArtifactCache:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.destruct()

    async def read(self, key: str) -> CacheRecord:
        logger.debug("read key=%s", key)
        if self._destructed:
            raise DestructedError()
        while self._purge_gate is not None:
            logger.debug("Waiting for purge to finish. key=%s", key)
            await self._purge_gate.wait()
            if self._destructed:
                raise DestructedError()

        task = self._in_flight.get(key)
        if task is None:
            logger.debug("Locking key=%s", key)
            task = asyncio.create_task(self._lookup(key))
            self._in_flight[key] = task
            task.add_done_callback(lambda done, k=key: self._release(k, done))
        else:
            logger.debug("Waiting for lock key=%s", key)
        # Waiters that get cancelled must not abort the shared lookup.
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task[CacheRecord]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Lookup failed. key=%s error=%r", key, task.exception())

    async def _lookup(self, key: str) -> CacheRecord:
        lookup = await self._check_memory(key)
        if lookup.outcome is not LookupOutcome.HIT:
            lookup = await self._load_from_disk(key)
        if lookup.outcome is LookupOutcome.HIT:
            assert lookup.record is not None
            record = lookup.record
        else:
            record = await self._populate_and_add(key)
        self.memory_cache[key] = record
        return record

    async def _check_memory(self, key: str) -> Lookup:
        record = self.memory_cache.get(key)
        if record is None:
            return _MISSING
        logger.debug("Found memory cache record. key=%s", key)
        if self._notifier.has_unscheduled_dirs(record.source_paths):
            # The watch on a removed source directory was dropped; restore it.
            self._notifier.watch(record.source_paths)
        if await self._freshness.is_fresh(record):
            return Lookup(LookupOutcome.HIT, record)
        return _STALE

    async def _load_from_disk(self, key: str) -> Lookup:
        if self._disk is None:
            return _MISSING
        try:
            data = await self._disk.read(key)
        except RecordNotFoundError:
            logger.debug("No cache record on disk, proceeding to populate. key=%s", key)
            return _MISSING

        record = decode_record(data)
        self._notifier.watch(record.source_paths)
        if await self._freshness.is_fresh(record):
            logger.debug("Serving cache record from disk. key=%s", key)
            return Lookup(LookupOutcome.HIT, record)
        logger.debug("Cache record on disk is stale. key=%s", key)
        return _STALE

    async def _populate_and_add(self, key: str) -> CacheRecord:
        logger.debug("Populating cache record. key=%s", key)
        start_ms = _now_ms()
        result = self.populate(key)
        if inspect.isawaitable(result):
            result = await result
        record = coerce_record(result)
        record.metadata[MINIMUM_MTIME_FIELD] = start_ms - MTIME_MARGIN_MS
        record.metadata[KEY_FIELD] = key

        self._notifier.watch(record.source_paths)
        if self._disk is not None:
            await self._persist_if_fresh(key, record)
        return record

    async def _persist_if_fresh(self, key: str, record: CacheRecord) -> None:
        assert self._disk is not None
        if not await self._freshness.is_fresh(record):
            logger.debug("Populated record is already stale, not persisting. key=%s", key)
            return
        try:
            await self._disk.write(key, record)
        except Exception:
            logger.warning("Failed to persist cache record. key=%s", key, exc_info=True)

    async def purge(self) -> None:
        """
        Reset every tier: wait for in-flight reads, delete the cache directory and
        clear the memory tier and stat cache. Reads issued meanwhile wait for it.
        """
        async with self._purge_lock:
            gate = asyncio.Event()
            self._purge_gate = gate
            try:
                pending = list(self._in_flight.values())
                if pending:
                    logger.debug("Purge waiting for in-flight reads. count=%d", len(pending))
                    await asyncio.wait(pending)
                if self._disk is not None:
                    try:
                        await self._disk.remove_all()
                    except OSError:
                        logger.warning("Failed to remove cache dir. path=%s", self._disk.cache_dir, exc_info=True)
                self.memory_cache.clear()
                self.stat_tracker.clear()
                logger.debug("Cache purged.")
            finally:
                self._purge_gate = None
                gate.set()

    def destruct(self) -> None:
        """
        Stop watching sources and refuse further reads. Idempotent.

        Stopping the file observer may block the caller for up to a second.
        """
        if self._destructed:
            return
        self._destructed = True
        self._notifier.close()
        logger.debug("Cache destructed.")


__all__ = ["ArtifactCache", "Lookup", "LookupOutcome"]
