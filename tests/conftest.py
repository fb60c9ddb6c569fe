# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.

"""Shared fixtures for the code index tests."""

import os
import threading
import time
from pathlib import Path
from typing import List

import pytest

from code_index.config import IndexConfiguration
from code_index.extractors.base import SymbolExtractor
from code_index.extractors.structural import StructuralExtractor
from code_index.models import ExtractedSymbol
from code_index.service import IndexService


class CountingExtractor(SymbolExtractor):
    """Structural extraction that records which files were extracted."""

    name = "counting"

    def __init__(self):
        self._inner = StructuralExtractor()
        self._lock = threading.Lock()
        self.calls: List[str] = []

    def extract(self, path: str, content: str) -> List[ExtractedSymbol]:
        with self._lock:
            self.calls.append(path)
        return self._inner.extract(path, content)

    def reset(self) -> None:
        with self._lock:
            self.calls.clear()


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    return root


@pytest.fixture
def write(repo: Path):
    """Write a source file with a strictly increasing mtime.

    Same-size rewrites within one filesystem tick would otherwise keep
    their signature.
    """
    base = time.time_ns() - 3600 * 1_000_000_000
    counter = [0]

    def _write(rel: str, content: str) -> Path:
        path = repo / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        counter[0] += 1
        mtime = base + counter[0] * 1_000_000_000
        os.utime(path, ns=(mtime, mtime))
        return path

    return _write


@pytest.fixture
def make_config(repo: Path):
    def _make(**overrides) -> IndexConfiguration:
        overrides.setdefault("concurrency", 2)
        return IndexConfiguration(root=repo, **overrides)

    return _make


@pytest.fixture
def counting_extractor() -> CountingExtractor:
    return CountingExtractor()


@pytest.fixture
def make_service(make_config):
    """Open IndexService instances that are closed at teardown."""
    services: List[IndexService] = []

    def _make(extractor=None, observer_factory=None, **overrides) -> IndexService:
        service = IndexService(
            make_config(**overrides), extractor=extractor, observer_factory=observer_factory
        )
        services.append(service)
        return service.open()

    yield _make
    for service in services:
        service.close()


def build_and_wait(service: IndexService, mode: str = "incremental", **kwargs):
    job = service.wait(service.build(mode, **kwargs), timeout=30)
    assert not job.is_running, "build did not finish in time"
    return job


@pytest.fixture
def run_build():
    return build_and_wait
