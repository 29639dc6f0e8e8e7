from __future__ import annotations

import asyncio
import logging
import os
from typing import Dict, Optional

from artifact_cache.models import StatEntry

logger = logging.getLogger(__name__)


class StatTracker:
    """
    Memoized modification metadata keyed by absolute path.

    Entries are filled on demand by ``resolve`` and kept current by the change
    notifier. All mutations happen on the event loop thread.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, StatEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def get(self, path: str) -> Optional[StatEntry]:
        return self._entries.get(path)

    async def resolve(self, path: str) -> StatEntry:
        """
        Return the entry for ``path``, stat-ing it unless a present entry is known.

        An absent entry is stat-ed again, since a removed file may come back
        without an event reaching us. A missing file raises FileNotFoundError.
        """
        cached = self._entries.get(path)
        if cached is not None and cached.exists:
            return cached

        stat = await asyncio.to_thread(os.stat, path)
        entry = StatEntry.from_stat(stat)
        current = self._entries.get(path)
        if current is not cached:
            # A watcher event that landed while the stat was in flight wins.
            return current if current is not None else entry
        self._entries[path] = entry
        return entry

    def mark_changed(self, path: str, entry: StatEntry) -> None:
        logger.debug("Stat entry changed. path=%s mtime_ms=%s", path, entry.mtime_ms)
        self._entries[path] = entry

    def mark_removed(self, path: str) -> None:
        logger.debug("Stat entry removed. path=%s", path)
        self._entries[path] = StatEntry.absent()

    def mark_unknown(self, path: str) -> None:
        logger.debug("Stat entry reset. path=%s", path)
        self._entries.pop(path, None)

    def clear(self) -> None:
        self._entries.clear()
