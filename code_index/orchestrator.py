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

"""Build orchestration: full and incremental index builds.

One build job runs at a time per index root, on a daemon thread:

1. Scope: a full build walks the root; an incremental build takes the
   candidate paths it was given (directories are expanded).
2. Classification via the signature tracker; unchanged files are skipped.
3. Deleted files are removed from the store in batches.
4. Added/modified files are extracted on a bounded thread pool; each
   result is committed in its own transaction as soon as it completes.

Requests arriving while a job runs are coalesced: their paths (or the
full-build flag) are folded into the running job, which makes another pass
over just the merged scope before finishing, and the running job's id is
returned.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

from code_index.config import IndexConfiguration
from code_index.errors import ExtractionError, IndexStoreError, JobNotFound
from code_index.extractors.base import SymbolExtractor
from code_index.ignore_patterns import iter_source_files, to_relative
from code_index.models import BuildJob, ChangeSet, ExtractedSymbol, FileRecord, FileSignature
from code_index.signatures import SignatureTracker
from code_index.store import IndexStore

logger = logging.getLogger(__name__)


class BuildState(str, Enum):
    IDLE = "idle"
    BUILDING = "building"
    FAILED = "failed"


class BuildCancelled(Exception):
    """The running build was stopped."""


@dataclass
class _Outcome:
    symbols: List[ExtractedSymbol] = field(default_factory=list)
    error: Optional[str] = None
    missing: bool = False


class BuildOrchestrator:
    """Schedules and runs builds against one index store."""

    def __init__(
        self,
        config: IndexConfiguration,
        store: IndexStore,
        extractor: SymbolExtractor,
        on_store_failure: Optional[Callable[[IndexStoreError], None]] = None,
    ):
        self.config = config
        self.root = config.root
        self.store = store
        self.extractor = extractor
        self.path_filter = config.path_filter
        self.tracker = SignatureTracker(self.root, store)
        self._on_store_failure = on_store_failure

        self._cond = threading.Condition()
        self._jobs: Dict[str, BuildJob] = {}
        self._current: Optional[BuildJob] = None
        self._last_job_id: Optional[str] = None
        self._pending_paths: Set[str] = set()
        self._pending_full = False
        self._pending_force = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    @property
    def state(self) -> BuildState:
        with self._cond:
            if self._current is not None:
                return BuildState.BUILDING
            last = self._jobs.get(self._last_job_id) if self._last_job_id else None
            if last is not None and last.status == "failed":
                return BuildState.FAILED
            return BuildState.IDLE

    def request(
        self,
        mode: str = "incremental",
        paths: Optional[Iterable[str]] = None,
        force: bool = False,
        trigger: str = "api",
    ) -> str:
        """Start a build, or fold the request into the running one.

        Never blocks on build work.

        Args:
            mode: "full" or "incremental"
            paths: Candidate paths for an incremental build (absolute or
                root-relative). Without paths an incremental request covers
                the whole root and runs as a full build.
            force: Re-index candidates even when their signature is unchanged
            trigger: Who asked (api, watcher, overflow); reported in status

        Returns:
            The id of the job that will cover this request
        """
        if mode not in ("full", "incremental"):
            raise ValueError(f"Unknown build mode: {mode}")

        candidates = self._normalize(paths or [])
        if mode == "incremental" and paths is None:
            mode = "full"

        with self._cond:
            self._prune_jobs()

            if self._current is not None:
                job = self._current
                if mode == "full":
                    self._pending_full = True
                    job.mode = "full"
                self._pending_paths |= candidates
                self._pending_force = self._pending_force or force
                logger.debug(
                    f"Coalesced {mode} request ({len(candidates)} paths) into {job.job_id}"
                )
                return job.job_id

            if mode == "incremental" and not self.store.is_ready:
                logger.info("Index has no completed full build, promoting to full build")
                mode = "full"

            job = BuildJob(mode=mode, trigger=trigger)
            self._jobs[job.job_id] = job
            self._current = job
            self._last_job_id = job.job_id
            self._pending_full = mode == "full"
            self._pending_paths = set() if mode == "full" else candidates
            self._pending_force = force
            self._stop_event.clear()

            self._thread = threading.Thread(
                target=self._run,
                args=(job,),
                name=f"index-build-{job.job_id}",
                daemon=True,
            )
            self._thread.start()

        logger.info(f"Started {mode} build {job.job_id} (trigger={trigger})")
        return job.job_id

    def _normalize(self, paths: Iterable[str]) -> Set[str]:
        normalized: Set[str] = set()
        for path in paths:
            rel = to_relative(self.root, path)
            if rel is None:
                logger.debug(f"Ignoring path outside index root: {path}")
                continue
            normalized.add(rel)
        return normalized

    def _prune_jobs(self) -> None:
        cutoff = time.time() - self.config.job_retention_seconds
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.finished_at is not None
            and job.finished_at < cutoff
            and job_id != self._last_job_id
        ]
        for job_id in expired:
            del self._jobs[job_id]

    def get_job(self, job_id: Optional[str] = None) -> BuildJob:
        """Snapshot of a job; without an id, the running or most recent one."""
        with self._cond:
            self._prune_jobs()
            key = job_id or self._last_job_id
            job = self._jobs.get(key) if key else None
            if job is None:
                raise JobNotFound(f"No build job {job_id}" if job_id else "No build has run yet")
            return job.model_copy()

    @property
    def current_job(self) -> Optional[BuildJob]:
        with self._cond:
            return self._current.model_copy() if self._current else None

    def wait(self, job_id: Optional[str] = None, timeout: Optional[float] = None) -> BuildJob:
        """Block until a job finishes (or the timeout expires)."""
        with self._cond:
            key = job_id or self._last_job_id
            job = self._jobs.get(key) if key else None
            if job is None:
                raise JobNotFound(f"No build job {job_id}" if job_id else "No build has run yet")
            self._cond.wait_for(lambda: not job.is_running, timeout=timeout)
            return job.model_copy()

    def stop(self, timeout: float = 10.0) -> None:
        """Cancel the running build; committed files stay committed."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread.is_alive():
            thread.join(timeout=timeout)

    # ------------------------------------------------------------------
    # Build loop
    # ------------------------------------------------------------------

    def _run(self, job: BuildJob) -> None:
        started = time.monotonic()
        ran_full = False
        first = True
        try:
            while True:
                with self._cond:
                    full = self._pending_full
                    paths = self._pending_paths
                    force = self._pending_force
                    if not first and not full and not paths:
                        self.store.mark_build(full=ran_full)
                        self._finish(job, "succeeded")
                        break
                    self._pending_full = False
                    self._pending_paths = set()
                    self._pending_force = False
                first = False
                self._run_pass(job, full, paths, force)
                ran_full = ran_full or full
        except BuildCancelled:
            logger.warning(f"Build {job.job_id} cancelled after {job.processed} files")
            self._finish(job, "failed", "cancelled")
        except IndexStoreError as e:
            logger.error(f"Build {job.job_id} failed: {e}")
            self._finish(job, "failed", str(e))
            if self._on_store_failure is not None:
                self._on_store_failure(e)
        except Exception as e:
            logger.exception(f"Build {job.job_id} failed unexpectedly: {e}")
            self._finish(job, "failed", str(e))
        else:
            logger.info(
                f"Build {job.job_id} finished in {time.monotonic() - started:.2f}s: "
                f"{job.scanned_count} scanned, {job.changed_count} changed, "
                f"{job.deleted_count} deleted, {job.failed_count} failed"
            )

    def _finish(self, job: BuildJob, status: str, error: Optional[str] = None) -> None:
        with self._cond:
            job.status = status
            job.error = error
            job.phase = "done"
            job.finished_at = time.time()
            if self._current is job:
                self._current = None
                self._pending_paths = set()
                self._pending_full = False
                self._pending_force = False
            self._cond.notify_all()

    def _run_pass(self, job: BuildJob, full: bool, paths: Set[str], force: bool) -> None:
        with self._cond:
            job.phase = "signature"

        candidates = (
            list(iter_source_files(self.root, self.path_filter)) if full else self._expand(paths)
        )
        self._check_cancelled()
        changes = self.tracker.classify(candidates, full=full, force=force)

        with self._cond:
            job.scanned_count += changes.scanned_count
            job.changed_count += len(changes.to_index)

        if changes.deleted:
            removed = self.store.delete_files(changes.deleted)
            with self._cond:
                job.deleted_count += removed
            logger.debug(f"Removed {removed} deleted files from index")

        if changes.to_index:
            self._index_files(job, changes)

    def _expand(self, paths: Iterable[str]) -> List[str]:
        """Turn incremental candidates into root-relative file paths."""
        candidates: List[str] = []
        for rel in sorted(paths):
            absolute = self.root / rel if rel else self.root
            if absolute.is_dir():
                candidates.extend(iter_source_files(self.root, self.path_filter, start=absolute))
                # Stored files under the directory that vanished from disk.
                prefix = f"{rel}/**" if rel else "**"
                candidates.extend(self.store.indexed_paths(include=[prefix]))
            elif absolute.exists():
                if self.path_filter.accepts(rel):
                    candidates.append(rel)
            else:
                # File or directory gone: anything stored at or under it is deleted.
                candidates.append(rel)
                candidates.extend(self.store.indexed_paths(include=[f"{rel}/**"]))
        return candidates

    def _check_cancelled(self) -> None:
        if self._stop_event.is_set():
            raise BuildCancelled()

    def _index_files(self, job: BuildJob, changes: ChangeSet) -> None:
        paths = changes.to_index
        with self._cond:
            job.phase = "index"
            job.total += len(paths)

        started = time.monotonic()
        next_report = 0.1
        pool = ThreadPoolExecutor(
            max_workers=self.config.concurrency, thread_name_prefix="index-extract"
        )
        try:
            futures = {pool.submit(self._extract, rel): rel for rel in paths}
            for future in as_completed(futures):
                rel = futures[future]
                self._commit(job, rel, changes.signatures[rel], future.result())

                with self._cond:
                    job.processed += 1
                    elapsed = time.monotonic() - started
                    job.rate = job.processed / elapsed if elapsed > 0 else 0.0
                    fraction = job.processed / job.total if job.total else 1.0
                if fraction >= next_report:
                    logger.info(
                        f"Build {job.job_id}: indexed {job.processed}/{job.total} files "
                        f"({job.rate:.1f} files/s)"
                    )
                    while next_report <= fraction:
                        next_report += 0.1
                self._check_cancelled()
        finally:
            pool.shutdown(wait=True, cancel_futures=True)

    def _extract(self, rel: str) -> _Outcome:
        """Read and extract one file on a worker thread. Never raises."""
        try:
            data = (self.root / rel).read_bytes()
        except (FileNotFoundError, NotADirectoryError):
            return _Outcome(missing=True)
        except OSError as e:
            return _Outcome(error=f"read failed: {e}")

        content = data.decode("utf-8", errors="replace")
        try:
            return _Outcome(symbols=self.extractor.extract(rel, content))
        except ExtractionError as e:
            return _Outcome(error=e.message)
        except Exception as e:
            logger.warning(f"Extractor {self.extractor.name} crashed on {rel}: {e}")
            return _Outcome(error=f"{type(e).__name__}: {e}")

    def _commit(self, job: BuildJob, rel: str, signature: FileSignature, outcome: _Outcome) -> None:
        if outcome.missing:
            removed = self.store.delete_files([rel])
            with self._cond:
                job.deleted_count += removed
            return

        record = FileRecord(
            path=rel,
            size=signature.size,
            mtime_ns=signature.mtime_ns,
            indexed_at=time.time(),
            has_errors=outcome.error is not None,
            error=outcome.error,
        )
        self.store.commit_file(record, outcome.symbols)
        if outcome.error is not None:
            logger.warning(f"Indexed {rel} without symbols: {outcome.error}")
            with self._cond:
                job.failed_count += 1
        else:
            logger.debug(f"Indexed {rel}: {len(outcome.symbols)} symbols")
