"""Source directory watcher built on watchdog."""

from __future__ import annotations

import os
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from webext_runner.build import FileFilter

logger = structlog.get_logger()

ShouldWatchFn = Callable[[str], bool]
OnChangeFn = Callable[[], Any]

_CHANGE_EVENTS = frozenset({"created", "modified", "moved", "deleted"})


class _SourceChangeHandler(FileSystemEventHandler):
    """Forwards file events from the observer thread."""

    def __init__(self, callback: Callable[[str], None]) -> None:
        self.callback = callback

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _CHANGE_EVENTS:
            return
        path = getattr(event, "dest_path", "") or event.src_path
        self.callback(os.fsdecode(path))


class SourceWatcher:
    """Calls on_change when a wanted file under source_dir changes.

    Changes are debounced on the leading edge: the first change fires at
    once, further changes are dropped until ``debounce`` seconds pass
    without any.
    """

    def __init__(
        self,
        source_dir: str | Path,
        artifacts_dir: str | Path,
        on_change: OnChangeFn,
        should_watch_file: ShouldWatchFn | None = None,
        watch_files: list[str] | None = None,
        debounce: float = 1.0,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.source_dir = Path(source_dir).resolve()
        self.artifacts_dir = Path(artifacts_dir).resolve()
        self.on_change = on_change
        if should_watch_file is None:
            file_filter = FileFilter(self.source_dir, artifacts_dir=self.artifacts_dir)
            should_watch_file = file_filter.want_file
        self.should_watch_file = should_watch_file
        self.watch_files = [str(Path(f).resolve()) for f in watch_files or []]
        self.debounce = debounce
        self._observer_factory = observer_factory
        self._observer: Any | None = None
        self._lock = threading.Lock()
        self._last_event = float("-inf")

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = self._observer_factory()
        handler = _SourceChangeHandler(self.proxy_file_changes)
        if self.watch_files:
            for parent in sorted({str(Path(f).parent) for f in self.watch_files}):
                observer.schedule(handler, parent, recursive=False)
            logger.debug("watching_files", files=self.watch_files)
        else:
            observer.schedule(handler, str(self.source_dir), recursive=True)
            logger.debug("watching_source_dir", source_dir=str(self.source_dir))
        observer.start()
        self._observer = observer

    def close(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5)

    def proxy_file_changes(self, file_path: str) -> None:
        """Filter one changed path and fire on_change unless debounced."""
        if self.watch_files and file_path not in self.watch_files:
            return
        if file_path.startswith(str(self.artifacts_dir)) or not self.should_watch_file(file_path):
            logger.debug("change_ignored", path=file_path)
            return

        with self._lock:
            now = time.monotonic()
            fire = now - self._last_event >= self.debounce
            self._last_event = now
        if not fire:
            logger.debug("change_debounced", path=file_path)
            return

        logger.info("source_changed", path=file_path)
        self.on_change()


def on_source_change(
    source_dir: str | Path,
    artifacts_dir: str | Path,
    on_change: OnChangeFn,
    should_watch_file: ShouldWatchFn | None = None,
    watch_files: list[str] | None = None,
    debounce: float = 1.0,
) -> SourceWatcher:
    """Start watching source_dir and return the running watcher."""
    watcher = SourceWatcher(
        source_dir,
        artifacts_dir,
        on_change,
        should_watch_file=should_watch_file,
        watch_files=watch_files,
        debounce=debounce,
    )
    watcher.start()
    return watcher
