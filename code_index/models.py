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

"""Data model for the source index.

Storage-facing records are plain dataclasses (they are built in hot loops
by the extractors and the store). Everything handed back to callers
(build jobs, query results, index status) is a pydantic model so it can be
serialized with ``model_dump()`` by whatever transport sits on top.
"""

import os
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class SymbolKind(str, Enum):
    """Structural category of a declaration."""

    CLASS = "class"
    INTERFACE = "interface"
    STRUCT = "struct"
    ENUM = "enum"
    METHOD = "method"
    PROPERTY = "property"
    FIELD = "field"
    CONSTRUCTOR = "constructor"
    EVENT = "event"
    DELEGATE = "delegate"
    NAMESPACE = "namespace"


TYPE_KINDS = frozenset(
    {SymbolKind.CLASS, SymbolKind.INTERFACE, SymbolKind.STRUCT, SymbolKind.ENUM}
)


@dataclass(frozen=True)
class FileSignature:
    """Cheap change fingerprint: byte size plus mtime in nanoseconds."""

    size: int
    mtime_ns: int

    @classmethod
    def from_stat(cls, st: os.stat_result) -> "FileSignature":
        return cls(size=st.st_size, mtime_ns=st.st_mtime_ns)


@dataclass
class ExtractedSymbol:
    """A symbol as produced by an extractor, before it is stored."""

    name: str
    kind: SymbolKind
    start_line: int
    end_line: int
    column: int = 1
    container: Optional[str] = None
    namespace: Optional[str] = None


@dataclass
class FileRecord:
    """One indexed source file."""

    path: str  # root-relative, POSIX separators
    size: int
    mtime_ns: int
    indexed_at: float = field(default_factory=time.time)
    has_errors: bool = False
    error: Optional[str] = None
    symbol_count: int = 0

    @property
    def signature(self) -> FileSignature:
        return FileSignature(self.size, self.mtime_ns)


@dataclass
class SymbolRecord:
    """One stored symbol."""

    id: int
    path: str
    name: str
    kind: str
    start_line: int
    end_line: int
    column: int = 1
    container: Optional[str] = None
    namespace: Optional[str] = None

    @property
    def qualified_name(self) -> str:
        parts = [p for p in (self.namespace, self.container, self.name) if p]
        return ".".join(parts)


@dataclass
class ChangeSet:
    """Classification of candidate files against the stored signatures."""

    unchanged: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    signatures: Dict[str, FileSignature] = field(default_factory=dict)

    @property
    def to_index(self) -> List[str]:
        return self.added + self.modified

    @property
    def scanned_count(self) -> int:
        return len(self.unchanged) + len(self.added) + len(self.modified) + len(self.deleted)

    def __bool__(self) -> bool:
        return bool(self.added or self.modified or self.deleted)


def new_job_id() -> str:
    return f"build-{uuid.uuid4().hex[:12]}"


class BuildJob(BaseModel):
    """State of one build pass.

    Jobs live in memory only; finished jobs are pruned after the configured
    retention period.
    """

    job_id: str = Field(default_factory=new_job_id)
    mode: Literal["full", "incremental"]
    status: Literal["running", "succeeded", "failed"] = "running"
    trigger: str = "api"
    phase: Literal["pending", "signature", "index", "done"] = "pending"
    scanned_count: int = 0
    changed_count: int = 0
    deleted_count: int = 0
    failed_count: int = 0
    processed: int = 0
    total: int = 0
    rate: float = 0.0  # files per second in the index phase
    started_at: float = Field(default_factory=time.time)
    finished_at: Optional[float] = None
    error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    @property
    def progress(self) -> float:
        if self.total == 0:
            return 1.0 if self.phase == "done" else 0.0
        return min(1.0, self.processed / self.total)


class SymbolMatch(BaseModel):
    """A symbol returned by a lookup, with its match rank (0 is best)."""

    path: str
    name: str
    kind: str
    start_line: int
    end_line: int
    column: int = 1
    container: Optional[str] = None
    namespace: Optional[str] = None
    rank: int = 0
    snippet: Optional[str] = None

    @classmethod
    def from_record(cls, record: SymbolRecord, rank: int = 0) -> "SymbolMatch":
        return cls(
            path=record.path,
            name=record.name,
            kind=record.kind,
            start_line=record.start_line,
            end_line=record.end_line,
            column=record.column,
            container=record.container,
            namespace=record.namespace,
            rank=rank,
        )


class SearchPage(BaseModel):
    """One page of symbol search results."""

    items: List[SymbolMatch] = Field(default_factory=list)
    page: int = 1
    page_size: int = 20
    total: int = 0
    has_more: bool = False


class ReferenceHit(BaseModel):
    """A textual occurrence of a name in an indexed file."""

    path: str
    line: int
    column: int
    text: str
    snippet: Optional[str] = None
    is_declaration: bool = False


class ReferencePage(BaseModel):
    """One page of reference search results."""

    name: str
    items: List[ReferenceHit] = Field(default_factory=list)
    page: int = 1
    page_size: int = 50
    has_more: bool = False
    truncated: bool = False  # per-file match cap dropped occurrences
    files_scanned: int = 0


class IndexStatus(BaseModel):
    """Readiness and coverage of the index."""

    state: Literal["not_built", "building", "ready", "unavailable"]
    ready: bool = False
    reason: Optional[str] = None
    total_files: int = 0
    indexed_files: int = 0  # files with at least one symbol
    failed_files: int = 0
    symbols: int = 0
    coverage: float = 0.0
    last_full_build_at: Optional[float] = None
    last_build_at: Optional[float] = None
    job: Optional[BuildJob] = None
