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

"""Local source index and incremental build engine.

Scans a source tree, extracts declared symbols per file, persists them in a
SQLite store and keeps that store current with signature-based incremental
builds and an optional filesystem watcher.
"""

from code_index.config import IndexConfiguration
from code_index.errors import (
    BackendUnavailable,
    CodeIndexError,
    ExtractionError,
    IndexStoreError,
    IndexUnavailable,
    JobNotFound,
    StoreCorruption,
    WatcherOverflow,
)
from code_index.models import (
    BuildJob,
    IndexStatus,
    ReferenceHit,
    ReferencePage,
    SearchPage,
    SymbolKind,
    SymbolMatch,
)
from code_index.service import IndexService

__version__ = "0.1.0"

__all__ = [
    "IndexConfiguration",
    "IndexService",
    "BuildJob",
    "IndexStatus",
    "ReferenceHit",
    "ReferencePage",
    "SearchPage",
    "SymbolKind",
    "SymbolMatch",
    "CodeIndexError",
    "ExtractionError",
    "BackendUnavailable",
    "IndexStoreError",
    "StoreCorruption",
    "IndexUnavailable",
    "WatcherOverflow",
    "JobNotFound",
]
