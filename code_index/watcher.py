# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Filesystem change watcher.

Uses watchdog to observe the index root. Events are filtered with the same
rules as the scanner, debounced (a save that fires several OS events
becomes one entry), and delivered as a deduplicated set of root-relative
paths for an incremental build.

Lost notifications are never silent: when the pending set grows past the
configured limit, or the observer thread dies or cannot start, the watcher
reports a WatcherOverflow and the owner schedules a full re-scan.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from code_index.config import IndexConfiguration
from code_index.errors import WatcherOverflow
from code_index.ignore_patterns import PathFilter, to_relative

logger = logging.getLogger(__name__)


class IndexEventHandler(FileSystemEventHandler):
    """Collects relevant change events and hands them off after a quiet period."""

    def __init__(
        self,
        root: Path,
        path_filter: PathFilter,
        on_changes: Callable[[Set[str]], None],
        on_overflow: Callable[[WatcherOverflow], None],
        debounce_seconds: float = 0.5,
        max_pending: int = 10000,
        before_flush: Optional[Callable[[], bool]] = None,
    ):
        """Initialize the handler.

        Args:
            root: Index root (events are reported relative to it)
            path_filter: Include/exclude/skip-dir rules
            on_changes: Receives each debounced set of changed paths
            on_overflow: Receives a WatcherOverflow when events were lost
            debounce_seconds: Quiet period before a flush
            max_pending: Pending-set size that counts as an overflow
            before_flush: Health check run before each flush; a False
                result drops the batch (the owner has scheduled a re-scan)
        """
        super().__init__()
        self.root = root
        self.path_filter = path_filter
        self.on_changes = on_changes
        self.on_overflow = on_overflow
        self.debounce_seconds = debounce_seconds
        self.max_pending = max_pending
        self.before_flush = before_flush
        self._debounce_lock = threading.Lock()
        self._pending_changes: Set[str] = set()
        self._debounce_timer: Optional[threading.Timer] = None

    @property
    def pending(self) -> Set[str]:
        with self._debounce_lock:
            return set(self._pending_changes)

    def _relative(self, path) -> Optional[str]:
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        rel = to_relative(self.root, path)
        return rel or None

    def _queue(self, path, is_directory: bool) -> None:
        rel = self._relative(path)
        if rel is None:
            return
        if is_directory:
            if not self.path_filter.accepts_directory(rel):
                return
        elif not self.path_filter.accepts(rel):
            return

        overflow = False
        with self._debounce_lock:
            self._pending_changes.add(rel)
            if len(self._pending_changes) > self.max_pending:
                overflow = True
                self._pending_changes.clear()
                self._cancel_timer()
            else:
                self._cancel_timer()
                self._debounce_timer = threading.Timer(self.debounce_seconds, self.flush)
                self._debounce_timer.daemon = True
                self._debounce_timer.start()

        if overflow:
            self.on_overflow(
                WatcherOverflow(f"more than {self.max_pending} changes pending")
            )

    def _cancel_timer(self) -> None:
        if self._debounce_timer is not None:
            self._debounce_timer.cancel()
            self._debounce_timer = None

    def flush(self) -> None:
        """Deliver pending changes now."""
        with self._debounce_lock:
            changes = set(self._pending_changes)
            self._pending_changes.clear()
            self._cancel_timer()

        if not changes:
            return
        if self.before_flush is not None and not self.before_flush():
            return
        try:
            self.on_changes(changes)
        except Exception as e:
            logger.warning(f"Error in file change callback: {e}")

    def cancel(self) -> None:
        with self._debounce_lock:
            self._cancel_timer()
            self._pending_changes.clear()

    def on_created(self, event: FileSystemEvent) -> None:
        self._queue(event.src_path, event.is_directory)

    def on_modified(self, event: FileSystemEvent) -> None:
        # Directory mtime changes are echoes of child events.
        if not event.is_directory:
            self._queue(event.src_path, False)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._queue(event.src_path, event.is_directory)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._queue(event.src_path, event.is_directory)
        self._queue(event.dest_path, event.is_directory)


class ChangeWatcher:
    """Owns the watchdog observer for one index root."""

    def __init__(
        self,
        config: IndexConfiguration,
        on_changes: Callable[[Set[str]], None],
        on_overflow: Callable[[WatcherOverflow], None],
        observer_factory: Callable[[], object] = Observer,
    ):
        self.root = config.root
        self._on_overflow = on_overflow
        self._observer_factory = observer_factory
        self._observer = None
        self._failed = False
        self.handler = IndexEventHandler(
            root=config.root,
            path_filter=config.path_filter,
            on_changes=on_changes,
            on_overflow=self._report_overflow,
            debounce_seconds=config.debounce_seconds,
            max_pending=config.max_pending_events,
            before_flush=self.check_health,
        )

    @property
    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> bool:
        """Start observing the root.

        Returns:
            True if the observer started; on failure an overflow is
            reported so the index is still brought up to date by a re-scan
        """
        if self.is_running:
            return True
        self._failed = False
        try:
            observer = self._observer_factory()
            observer.schedule(self.handler, str(self.root), recursive=True)
            observer.start()
        except OSError as e:
            logger.warning(f"File watcher failed to start for {self.root}: {e}")
            self._report_overflow(WatcherOverflow(f"watcher failed to start: {e}"))
            return False
        self._observer = observer
        logger.info(f"Watching {self.root} for changes")
        return True

    def stop(self) -> None:
        self.handler.cancel()
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5.0)
        logger.info(f"Stopped watching {self.root}")

    def check_health(self) -> bool:
        """Detect a dead observer thread; reports an overflow once if so."""
        if self._observer is None or self._observer.is_alive():
            return True
        if not self._failed:
            self._failed = True
            self._report_overflow(WatcherOverflow("observer thread stopped"))
        return False

    def _report_overflow(self, error: WatcherOverflow) -> None:
        logger.warning(f"Change notifications lost ({error}); scheduling full re-scan")
        try:
            self._on_overflow(error)
        except Exception as e:
            logger.warning(f"Error in watcher overflow callback: {e}")
