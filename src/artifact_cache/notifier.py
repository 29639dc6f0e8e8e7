from __future__ import annotations

import asyncio
import enum
import logging
import os
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Set, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch

from artifact_cache.models import StatEntry
from artifact_cache.stat_tracker import StatTracker

logger = logging.getLogger(__name__)

# close() runs on the event loop, so the join must stay short.
OBSERVER_JOIN_TIMEOUT_SECONDS = 1.0


class ChangeKind(enum.Enum):
    CHANGED = "changed"
    REMOVED = "removed"
    ADDED = "added"
    DIRECTORY_REMOVED = "directory_removed"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    kind: ChangeKind
    path: str
    stat: Optional[StatEntry] = None


def _event_path(raw: str | bytes) -> str:
    return os.path.abspath(os.fsdecode(raw))


class SourceEventHandler(FileSystemEventHandler):
    """
    Watchdog handler translating file events into ChangeEvents.

    Runs on the observer thread; only paths registered with the notifier are
    forwarded.
    """

    def __init__(self, notifier: ChangeNotifier) -> None:
        super().__init__()
        self._notifier = notifier

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = _event_path(event.src_path)
        if not self._notifier.is_watching(path):
            return
        try:
            stat = os.stat(path)
        except FileNotFoundError:
            self._notifier.emit(ChangeEvent(ChangeKind.REMOVED, path))
            return
        except OSError as e:
            logger.debug("Failed to stat changed path, forcing re-stat. path=%s error=%s", path, e)
            self._notifier.emit(ChangeEvent(ChangeKind.ADDED, path))
            return
        self._notifier.emit(ChangeEvent(ChangeKind.CHANGED, path, StatEntry.from_stat(stat)))

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = _event_path(event.src_path)
        if self._notifier.is_watching(path):
            self._notifier.emit(ChangeEvent(ChangeKind.ADDED, path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        path = _event_path(event.src_path)
        # inotify reports the watched directory's own removal without the
        # directory flag, so check scheduled directories first.
        if self._notifier.covers_scheduled_dir(path):
            self._notifier.emit(ChangeEvent(ChangeKind.DIRECTORY_REMOVED, path))
            return
        if not event.is_directory and self._notifier.is_watching(path):
            self._notifier.emit(ChangeEvent(ChangeKind.REMOVED, path))

    def on_moved(self, event: FileSystemEvent) -> None:
        src = _event_path(event.src_path)
        dest = _event_path(event.dest_path)
        if self._notifier.covers_scheduled_dir(src):
            self._notifier.emit(ChangeEvent(ChangeKind.DIRECTORY_REMOVED, src))
            return
        if event.is_directory:
            return
        if self._notifier.is_watching(src):
            self._notifier.emit(ChangeEvent(ChangeKind.REMOVED, src))
        if self._notifier.is_watching(dest):
            self._notifier.emit(ChangeEvent(ChangeKind.ADDED, dest))


@dataclass(slots=True)
class _ScheduledDir:
    watch: ObservedWatch
    identity: Tuple[int, int]


def _dir_identity(directory: str) -> Optional[Tuple[int, int]]:
    try:
        stat = os.stat(directory)
    except OSError:
        return None
    return (stat.st_dev, stat.st_ino)


def _is_within(path: str, directory: str) -> bool:
    return path == directory or path.startswith(directory.rstrip(os.sep) + os.sep)


class ChangeNotifier:
    """
    Keeps a StatTracker in sync with filesystem change events.

    Watched files are monitored through their parent directories. Events cross
    from the observer thread to the event loop through an asyncio.Queue that a
    listener task drains in arrival order.

    A directory watch dies with its directory. When a scheduled directory is
    removed or replaced, its watch is dropped, the stat entries of the files
    beneath it are forgotten, and the directory is scheduled again as soon as
    it exists.
    """

    def __init__(
        self,
        stat_tracker: StatTracker,
        *,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        self._stat_tracker = stat_tracker
        self._observer_factory = observer_factory
        self._handler = SourceEventHandler(self)
        self._watched: Set[str] = set()
        self._scheduled: Dict[str, _ScheduledDir] = {}
        self._observer: Optional[BaseObserver] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue[ChangeEvent]] = None
        self._listener: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def watched_paths(self) -> Set[str]:
        return set(self._watched)

    @property
    def scheduled_dirs(self) -> Set[str]:
        return set(self._scheduled)

    def is_watching(self, path: str) -> bool:
        return path in self._watched

    def covers_scheduled_dir(self, path: str) -> bool:
        """True when ``path`` is a scheduled directory or one of its ancestors."""
        return any(_is_within(directory, path) for directory in list(self._scheduled))

    def has_unscheduled_dirs(self, paths: Iterable[str]) -> bool:
        if self._closed:
            return False
        return any(os.path.dirname(os.path.abspath(p)) not in self._scheduled for p in paths)

    def watch(self, paths: Iterable[str]) -> None:
        """
        Register absolute paths for monitoring.

        Must be called from the event loop. Re-adding a watched path is a no-op.
        Every call re-checks the watched directories: one that does not exist yet
        is scheduled once it appears, and one that was replaced since it was
        scheduled is scheduled again. This costs one stat per directory.
        """
        if self._closed:
            return
        added = {os.path.abspath(raw) for raw in paths} - self._watched
        if not added and not self._watched:
            return
        self._ensure_started()
        for path in sorted(added):
            self._watched.add(path)
            logger.debug("Watching source path. path=%s", path)
        self._schedule_pending_dirs()

    def emit(self, event: ChangeEvent) -> None:
        """Hand an event to the listener task. Safe to call from any thread."""
        loop = self._loop
        queue = self._queue
        if self._closed or loop is None or queue is None:
            return
        try:
            loop.call_soon_threadsafe(queue.put_nowait, event)
        except RuntimeError:
            # Event loop already closed.
            return

    def apply(self, event: ChangeEvent) -> None:
        if event.kind is ChangeKind.DIRECTORY_REMOVED:
            for directory in sorted(self._scheduled):
                if _is_within(directory, event.path):
                    self._drop_dir(directory)
            if not self._closed and self._observer is not None:
                self._schedule_pending_dirs()
        elif event.kind is ChangeKind.CHANGED and event.stat is not None:
            self._stat_tracker.mark_changed(event.path, event.stat)
        elif event.kind is ChangeKind.REMOVED:
            self._stat_tracker.mark_removed(event.path)
        else:
            self._stat_tracker.mark_unknown(event.path)

    def close(self) -> None:
        """
        Stop the observer and the listener task. Idempotent.

        Joins the observer thread for at most OBSERVER_JOIN_TIMEOUT_SECONDS, so a
        call from the event loop may block it that long.
        """
        if self._closed:
            return
        self._closed = True
        if self._observer is not None:
            try:
                self._observer.stop()
                if self._observer.is_alive():
                    self._observer.join(timeout=OBSERVER_JOIN_TIMEOUT_SECONDS)
            except RuntimeError:
                logger.warning("Failed to stop file observer.", exc_info=True)
            self._observer = None
        self._scheduled.clear()
        if self._listener is not None and not self._listener.done():
            self._listener.cancel()
        self._listener = None
        logger.debug("Change notifier closed. watched=%d", len(self._watched))

    def _ensure_started(self) -> None:
        if self._observer is None:
            self._observer = self._observer_factory()
            self._observer.daemon = True
            self._observer.start()
        if self._listener is None or self._listener.done():
            self._loop = asyncio.get_running_loop()
            self._queue = asyncio.Queue()
            self._listener = self._loop.create_task(self._listen())

    def _drop_dir(self, directory: str) -> None:
        scheduled = self._scheduled.pop(directory, None)
        if scheduled is None:
            return
        if self._observer is not None:
            try:
                self._observer.unschedule(scheduled.watch)
            except (KeyError, OSError):
                # The emitter of a removed directory may already be gone.
                logger.debug("Directory watch already released. path=%s", directory)
        for path in self._watched:
            if os.path.dirname(path) == directory:
                self._stat_tracker.mark_unknown(path)
        logger.info("Source directory removed or replaced, dropping its watch. path=%s", directory)

    def _schedule_pending_dirs(self) -> None:
        assert self._observer is not None
        for directory in sorted({os.path.dirname(p) for p in self._watched}):
            identity = _dir_identity(directory)
            scheduled = self._scheduled.get(directory)
            if scheduled is not None:
                if scheduled.identity == identity:
                    continue
                self._drop_dir(directory)
            if identity is None or not os.path.isdir(directory):
                logger.debug("Source directory does not exist yet, deferring watch. path=%s", directory)
                continue
            try:
                watch = self._observer.schedule(self._handler, directory, recursive=False)
            except OSError:
                logger.warning("Failed to watch source directory. path=%s", directory, exc_info=True)
                continue
            self._scheduled[directory] = _ScheduledDir(watch=watch, identity=identity)

    async def _listen(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            event = await queue.get()
            self.apply(event)


__all__ = ["ChangeEvent", "ChangeKind", "ChangeNotifier", "SourceEventHandler"]
