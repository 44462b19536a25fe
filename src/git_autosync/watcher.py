"""File system watcher feeding filtered change events into a queue.

This module provides:
- IgnoreRules: gitignore-flavoured pattern matching relative to the watch root
- Watcher: Watches the root recursively using watchdog and enqueues ChangeEvents

Filtering happens in the watchdog handler, so consumers never see ignored paths.
"""

from __future__ import annotations

import fnmatch
import logging
import queue
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .config import EngineConfig
from .constants import APP_NAME
from .errors import WatchFailure
from .models import ChangeEvent, ChangeKind

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

logger = logging.getLogger(APP_NAME)

_KINDS = {
    EVENT_TYPE_CREATED: ChangeKind.CREATED,
    EVENT_TYPE_MODIFIED: ChangeKind.MODIFIED,
    EVENT_TYPE_DELETED: ChangeKind.DELETED,
    EVENT_TYPE_MOVED: ChangeKind.RENAMED,
}


def _as_path(raw: str | bytes) -> Path:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return Path(raw)


class IgnoreRules:
    """Matches paths against ignore patterns relative to a base directory.

    Pattern forms:
    - `name/` ignores any path with a directory component matching `name`.
    - Patterns containing `/` match the whole relative path.
    - Anything else matches any single component (`*.log`, `node_modules`).
    """

    def __init__(self, base_path: Path, patterns: Iterable[str]) -> None:
        self._base = base_path
        self._patterns = [p.strip() for p in patterns if p.strip()]

    @property
    def patterns(self) -> list[str]:
        return list(self._patterns)

    def ignored(self, path: Path) -> bool:
        """Check if a path should be ignored.

        Paths outside the base directory are always ignored.
        """
        try:
            rel_path = path.relative_to(self._base)
        except ValueError:
            return True

        parts = rel_path.parts
        if not parts:
            return False
        rel_str = "/".join(parts)

        for pattern in self._patterns:
            if pattern.endswith("/"):
                name = pattern.rstrip("/")
                if any(fnmatch.fnmatch(part, name) for part in parts):
                    return True
            elif "/" in pattern:
                if fnmatch.fnmatch(rel_str, pattern.lstrip("/")):
                    return True
            elif any(fnmatch.fnmatch(part, pattern) for part in parts):
                return True

        return False


class _ChangeHandler(FileSystemEventHandler):
    """Converts watchdog events into ChangeEvents, dropping ignored paths."""

    def __init__(self, rules: IgnoreRules, events: queue.Queue[ChangeEvent]) -> None:
        super().__init__()
        self._rules = rules
        self._events = events

    def on_any_event(self, event: FileSystemEvent) -> None:
        # git tracks files, directory events carry no extra information
        if event.is_directory:
            return
        kind = _KINDS.get(event.event_type)
        if kind is None:
            return

        src = _as_path(event.src_path)
        now = time.time()

        if kind is ChangeKind.RENAMED:
            dest = _as_path(event.dest_path)
            src_hidden = self._rules.ignored(src)
            dest_hidden = self._rules.ignored(dest)
            if src_hidden and dest_hidden:
                return
            if dest_hidden:
                # Moved out of view: the visible file is gone
                change = ChangeEvent(path=src, kind=ChangeKind.DELETED, observed_at=now)
            else:
                change = ChangeEvent(path=src, kind=kind, observed_at=now, dest_path=dest)
        else:
            if self._rules.ignored(src):
                return
            change = ChangeEvent(path=src, kind=kind, observed_at=now)

        self._events.put(change)
        logger.debug(f"Watcher queued {change.kind.value} {change.path}")


class Watcher:
    """Watches a directory tree and produces ChangeEvents on a queue.

    Restartable: each `start()` creates a fresh observer.
    """

    def __init__(
        self,
        root: Path,
        ignore_patterns: Iterable[str],
        events: queue.Queue[ChangeEvent] | None = None,
        observer_factory: Callable[[], BaseObserver] = Observer,
    ) -> None:
        """Initialize the watcher.

        Args:
            root: Directory to watch.
            ignore_patterns: Patterns dropped before enqueueing.
            events: Queue to put events on. A new one is created if omitted.
            observer_factory: Builds the watchdog observer.
        """
        self._root = Path(root).resolve()
        self._rules = IgnoreRules(self._root, ignore_patterns)
        self.events: queue.Queue[ChangeEvent] = events if events is not None else queue.Queue()
        self._observer_factory = observer_factory
        self._observer: BaseObserver | None = None

    @classmethod
    def from_config(
        cls, config: EngineConfig, events: queue.Queue[ChangeEvent] | None = None
    ) -> Watcher:
        return cls(config.watch_root, config.ignore_patterns, events=events)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self) -> queue.Queue[ChangeEvent]:
        """Start watching for changes.

        Returns:
            The queue ChangeEvents are delivered on.

        Raises:
            WatchFailure: If the root is missing or the OS watch cannot be set up.
        """
        if self._observer is not None:
            return self.events
        if not self._root.is_dir():
            raise WatchFailure(f"Watch root is not a directory: {self._root}")

        observer = self._observer_factory()
        handler = _ChangeHandler(self._rules, self.events)
        try:
            observer.schedule(handler, str(self._root), recursive=True)
            observer.start()
        except OSError as e:
            raise WatchFailure(f"Cannot watch {self._root}: {e}") from e

        self._observer = observer
        logger.info(f"WATCH {self._root.name}: Watching {self._root}")
        return self.events

    def stop(self) -> None:
        """Stop watching for changes."""
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5.0)

    def check(self) -> None:
        """Verifies the watch is still alive.

        Raises:
            WatchFailure: If the observer thread died or the root vanished.
        """
        if self._observer is None:
            return
        if not self._root.is_dir():
            raise WatchFailure(f"Watch root vanished: {self._root}")
        if not self._observer.is_alive():
            raise WatchFailure(f"Filesystem observer for {self._root} stopped")

    def __enter__(self) -> Watcher:
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()
