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

"""Error taxonomy for the source index.

File-level errors (ExtractionError) are isolated by the build orchestrator
and never abort a build. Store-level errors (IndexStoreError and its
StoreCorruption subclass) abort the running job. BackendUnavailable and
WatcherOverflow are soft: the engine falls back to the structural extractor
or to a full re-scan respectively.
"""

from typing import Optional


class CodeIndexError(Exception):
    """Base class for all source index errors."""


class ExtractionError(CodeIndexError):
    """A single file could not be parsed for symbols."""

    def __init__(self, path: str, message: str):
        self.path = path
        self.message = message
        super().__init__(f"{path}: {message}")


class BackendUnavailable(CodeIndexError):
    """The semantic extraction backend cannot be reached."""


class IndexStoreError(CodeIndexError):
    """The index store failed to read or write."""


class StoreCorruption(IndexStoreError):
    """The index store is corrupt or violates its own invariants."""


class IndexUnavailable(CodeIndexError):
    """No usable index exists yet; a full build is required before querying."""

    def __init__(self, reason: str, building: bool = False, job_id: Optional[str] = None):
        self.reason = reason
        self.building = building
        self.job_id = job_id
        super().__init__(reason)


class WatcherOverflow(CodeIndexError):
    """The change watcher lost events and a full re-scan is needed."""


class JobNotFound(CodeIndexError):
    """No build job with the given id is known."""
