from __future__ import annotations

import logging

from artifact_cache.models import CacheRecord
from artifact_cache.stat_tracker import StatTracker

logger = logging.getLogger(__name__)


class FreshnessOracle:
    def __init__(self, stat_tracker: StatTracker) -> None:
        self._stat_tracker = stat_tracker

    async def is_fresh(self, record: CacheRecord) -> bool:
        """
        Return True when every source path was last modified before the record's
        minimum mtime.

        Missing or unreadable sources make the record stale. An mtime equal to the
        minimum mtime is stale as well.
        """
        minimum_mtime = record.minimum_mtime
        if not isinstance(minimum_mtime, int):
            logger.debug("Cache record has no minimum mtime. key=%s", record.key)
            return False

        for path in record.source_paths:
            try:
                entry = await self._stat_tracker.resolve(path)
            except OSError as e:
                logger.debug("Source stat failed, treating as stale. key=%s path=%s error=%s", record.key, path, e)
                return False
            if not entry.exists:
                logger.debug("Source path is gone. key=%s path=%s", record.key, path)
                return False
            if entry.mtime_ms >= minimum_mtime:
                logger.debug(
                    "Source path not fresh. key=%s path=%s mtime_ms=%d minimum_mtime=%d",
                    record.key,
                    path,
                    entry.mtime_ms,
                    minimum_mtime,
                )
                return False
        return True
