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

"""Index service facade.

IndexService owns everything for one index root: the store, the build
orchestrator, the query layer and (optionally) the change watcher. There
are no module-level singletons; create one service per root.

Usage:
    config = IndexConfiguration.discover("/path/to/repo")
    with IndexService(config) as service:
        service.wait(service.build("full"))
        matches = service.find_symbol("PlayerController", kind="class")
"""

import logging
import threading
from typing import Any, Callable, List, Optional, Set

from code_index.config import IndexConfiguration
from code_index.errors import IndexStoreError, IndexUnavailable, StoreCorruption, WatcherOverflow
from code_index.extractors import SymbolExtractor, create_extractor
from code_index.models import (
    BuildJob,
    IndexStatus,
    ReferencePage,
    SearchPage,
    SymbolMatch,
)
from code_index.orchestrator import BuildOrchestrator
from code_index.query import QueryLayer
from code_index.store import IndexStore
from code_index.watcher import ChangeWatcher

logger = logging.getLogger(__name__)


class IndexService:
    """Build and query a local source index."""

    def __init__(
        self,
        config: IndexConfiguration,
        extractor: Optional[SymbolExtractor] = None,
        observer_factory: Optional[Callable[[], Any]] = None,
    ):
        """Initialize the service (nothing touches disk until open()).

        Args:
            config: Index configuration
            extractor: Symbol extractor; built from configuration when omitted
            observer_factory: watchdog observer factory for the change watcher
        """
        self.config = config
        self.store = IndexStore(config.store_path)
        self.extractor = extractor or create_extractor(config)
        self.orchestrator = BuildOrchestrator(
            config,
            self.store,
            self.extractor,
            on_store_failure=self._on_store_failure,
        )
        self.queries = QueryLayer(
            config, self.store, current_job=lambda: self.orchestrator.current_job
        )
        self.watcher: Optional[ChangeWatcher] = None
        self._observer_factory = observer_factory
        self._lock = threading.RLock()
        self._opened = False
        self._unavailable_reason: Optional[str] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "IndexService":
        """Open the store, schedule an initial build if needed, start watching.

        A corrupt store does not fail open(): the service reports the index
        as unavailable until a full build recreates it.
        """
        with self._lock:
            if self._opened:
                return self
            try:
                self.store.open()
            except StoreCorruption as e:
                logger.error(f"Index store unusable: {e}")
                self._unavailable_reason = str(e)
            self._opened = True

        logger.info(f"Opened index for {self.config.root} (store: {self.config.store_path})")

        if self.config.build_on_open or self.store.schema_reset:
            self.build("full", trigger="open")

        if self.config.watch:
            kwargs = {}
            if self._observer_factory is not None:
                kwargs["observer_factory"] = self._observer_factory
            self.watcher = ChangeWatcher(
                self.config,
                on_changes=self._on_watcher_changes,
                on_overflow=self._on_watcher_overflow,
                **kwargs,
            )
            self.watcher.start()
        return self

    def close(self) -> None:
        """Stop watching, cancel any running build and release resources."""
        with self._lock:
            if not self._opened:
                return
            self._opened = False
        if self.watcher is not None:
            self.watcher.stop()
            self.watcher = None
        self.orchestrator.stop()
        self.extractor.close()
        self.store.close()
        logger.info(f"Closed index for {self.config.root}")

    def __enter__(self) -> "IndexService":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def is_available(self) -> bool:
        return self._opened and self._unavailable_reason is None

    # ------------------------------------------------------------------
    # Builds
    # ------------------------------------------------------------------

    def build(
        self,
        mode: str = "incremental",
        paths: Optional[List[str]] = None,
        force: bool = False,
        trigger: str = "api",
    ) -> str:
        """Start a build and return its job id without waiting.

        A full build on an unusable store deletes and recreates the store
        first.

        Raises:
            IndexUnavailable: If the service is closed, or the store is
                unusable and an incremental build was requested
            ValueError: For an unknown mode
        """
        with self._lock:
            if not self._opened:
                raise IndexUnavailable("Index service is closed")
            if self._unavailable_reason is not None:
                if mode != "full":
                    raise IndexUnavailable(
                        f"{self._unavailable_reason}; a full build is required"
                    )
                self.orchestrator.stop()
                self.store.recreate()
                self._unavailable_reason = None
        return self.orchestrator.request(mode, paths, force=force, trigger=trigger)

    def get_status(self, job_id: Optional[str] = None) -> BuildJob:
        """Status of a build job (default: the running or most recent one).

        Raises:
            JobNotFound: For unknown or expired ids, or when no job exists
        """
        return self.orchestrator.get_job(job_id)

    def wait(self, job_id: Optional[str] = None, timeout: Optional[float] = None) -> BuildJob:
        """Block until a job finishes; returns its final status."""
        return self.orchestrator.wait(job_id, timeout=timeout)

    def get_index_status(self) -> IndexStatus:
        """Readiness, coverage and the current job."""
        job = self.orchestrator.current_job
        if not self._opened:
            return IndexStatus(state="unavailable", reason="Index service is closed")
        if self._unavailable_reason is not None:
            return IndexStatus(state="unavailable", reason=self._unavailable_reason, job=job)

        try:
            stats = self.store.stats()
            ready = self.store.is_ready
            last_full = self.store.get_timestamp("last_full_build_at")
            last_build = self.store.get_timestamp("last_build_at")
        except StoreCorruption as e:
            self._mark_unavailable(e)
            return IndexStatus(state="unavailable", reason=str(e), job=job)

        if job is not None:
            state = "building"
        elif ready:
            state = "ready"
        else:
            state = "not_built"
        return IndexStatus(
            state=state,
            ready=ready,
            reason=None if ready else "No full build has completed",
            total_files=int(stats["total_files"]),
            indexed_files=int(stats["indexed_files"]),
            failed_files=int(stats["failed_files"]),
            symbols=int(stats["symbols"]),
            coverage=float(stats["coverage"]),
            last_full_build_at=last_full,
            last_build_at=last_build,
            job=job,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_symbol(
        self, name: str, kind: Optional[str] = None, exact: bool = False, limit: int = 100
    ) -> List[SymbolMatch]:
        return self._query(self.queries.find_symbol, name, kind=kind, exact=exact, limit=limit)

    def get_symbols(self, path: str) -> List[SymbolMatch]:
        return self._query(self.queries.get_symbols, path)

    def search(
        self,
        pattern: str,
        include: Optional[List[str]] = None,
        exclude: Optional[List[str]] = None,
        kind: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
        snippet_context: Optional[int] = None,
        pattern_type: str = "auto",
        flags: Optional[List[str]] = None,
    ) -> SearchPage:
        return self._query(
            self.queries.search,
            pattern,
            include=include,
            exclude=exclude,
            kind=kind,
            page=page,
            page_size=page_size,
            snippet_context=snippet_context,
            pattern_type=pattern_type,
            flags=flags,
        )

    def find_references(
        self,
        name: str,
        scope: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> ReferencePage:
        return self._query(
            self.queries.find_references, name, scope=scope, page=page, page_size=page_size
        )

    def _query(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        if not self._opened:
            raise IndexUnavailable("Index service is closed")
        if self._unavailable_reason is not None:
            raise IndexUnavailable(
                f"{self._unavailable_reason}; a full build is required",
                building=False,
            )
        try:
            return func(*args, **kwargs)
        except StoreCorruption as e:
            self._mark_unavailable(e)
            raise IndexUnavailable(f"{e}; a full build is required") from e

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _mark_unavailable(self, error: IndexStoreError) -> None:
        with self._lock:
            if self._unavailable_reason is None:
                logger.error(f"Index marked unavailable: {error}")
            self._unavailable_reason = str(error)

    def _on_store_failure(self, error: IndexStoreError) -> None:
        if isinstance(error, StoreCorruption):
            self._mark_unavailable(error)

    def _on_watcher_changes(self, paths: Set[str]) -> None:
        if not self.is_available:
            logger.debug(f"Ignoring {len(paths)} changes: index unavailable")
            return
        logger.debug(f"Watcher reported {len(paths)} changed paths")
        self.build("incremental", sorted(paths), trigger="watcher")

    def _on_watcher_overflow(self, error: WatcherOverflow) -> None:
        if not self._opened:
            return
        self.build("full", trigger="overflow")
