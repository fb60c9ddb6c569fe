# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.

"""Tests for build scheduling details not visible through the service."""

import threading
import time
from typing import List

import pytest

from code_index.errors import JobNotFound
from code_index.extractors.base import SymbolExtractor
from code_index.extractors.structural import StructuralExtractor
from code_index.models import ExtractedSymbol
from code_index.orchestrator import BuildOrchestrator, BuildState
from code_index.store import IndexStore


class GatedExtractor(SymbolExtractor):
    name = "gated"

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def extract(self, path: str, content: str) -> List[ExtractedSymbol]:
        self.entered.set()
        self.release.wait(timeout=10)
        return StructuralExtractor().extract(path, content)


@pytest.fixture
def make_orchestrator(make_config):
    stores = []

    def _make(extractor=None, **overrides):
        config = make_config(**overrides)
        store = IndexStore(config.store_path).open()
        stores.append(store)
        return BuildOrchestrator(config, store, extractor or StructuralExtractor())

    yield _make
    for store in stores:
        store.close()


class TestBuildOrchestrator:
    def test_finished_jobs_are_pruned(self, write, make_orchestrator):
        write("A.cs", "class A {}")
        orchestrator = make_orchestrator(job_retention_seconds=0)
        first = orchestrator.request("full")
        orchestrator.wait(first, timeout=30)
        second = orchestrator.request("full")
        orchestrator.wait(second, timeout=30)
        time.sleep(0.01)

        with pytest.raises(JobNotFound):
            orchestrator.get_job(first)
        assert orchestrator.get_job().job_id == second

    def test_paths_outside_root_are_ignored(self, write, make_orchestrator):
        write("A.cs", "class A {}")
        orchestrator = make_orchestrator()
        orchestrator.wait(orchestrator.request("full"), timeout=30)

        job = orchestrator.wait(
            orchestrator.request("incremental", paths=["/elsewhere/B.cs"]), timeout=30
        )

        assert job.status == "succeeded"
        assert job.scanned_count == 0

    def test_stop_cancels_running_build(self, write, make_orchestrator):
        write("A.cs", "class A {}")
        extractor = GatedExtractor()
        orchestrator = make_orchestrator(extractor=extractor)
        job_id = orchestrator.request("full")
        assert extractor.entered.wait(timeout=10)

        orchestrator.stop(timeout=0.1)
        extractor.release.set()
        job = orchestrator.wait(job_id, timeout=30)

        assert job.status == "failed"
        assert job.error == "cancelled"
        assert orchestrator.state == BuildState.FAILED
        assert orchestrator.store.get_file("A.cs") is not None
        assert not orchestrator.store.is_ready

    def test_progress_is_reported(self, write, make_orchestrator):
        for i in range(4):
            write(f"C{i}.cs", f"class C{i} {{}}")
        orchestrator = make_orchestrator()

        job = orchestrator.wait(orchestrator.request("full"), timeout=30)

        assert (job.processed, job.total) == (4, 4)
        assert job.progress == 1.0
        assert job.phase == "done"
        assert job.finished_at >= job.started_at
