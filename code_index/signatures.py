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

"""File signature tracking.

A signature is ``(size, mtime_ns)``. Comparing live signatures against the
stored ones classifies candidates without reading file contents:

- not stored, exists        -> added
- stored, signature differs -> modified (any size change counts, even with
  an identical mtime)
- stored, signature equal   -> unchanged (no extraction, no write)
- stored, missing on disk   -> deleted

Known limitation: a same-size edit landing within one mtime tick of the
previous write is classified unchanged. Callers that suspect this can pass
``force=True``.
"""

import logging
import os
import stat
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional, Union

from code_index.models import ChangeSet, FileSignature

if TYPE_CHECKING:
    from code_index.store import IndexStore

logger = logging.getLogger(__name__)

_UNREADABLE = object()


def stat_signature(path: Path) -> Optional[Union[FileSignature, object]]:
    """Return the live signature of a regular file.

    Returns None when the file is missing (or is not a regular file), and
    the ``_UNREADABLE`` sentinel when it exists but cannot be stat'ed.
    """
    try:
        st = os.stat(path)
    except (FileNotFoundError, NotADirectoryError):
        return None
    except OSError as e:
        logger.warning(f"Cannot stat {path}: {e}")
        return _UNREADABLE
    if not stat.S_ISREG(st.st_mode):
        return None
    return FileSignature.from_stat(st)


class SignatureTracker:
    """Classifies candidate files against the signatures in the index store."""

    def __init__(self, root: Path, store: "IndexStore"):
        self.root = root
        self.store = store

    def classify(
        self,
        candidates: Iterable[str],
        full: bool = False,
        force: bool = False,
    ) -> ChangeSet:
        """Classify root-relative candidate paths.

        Args:
            candidates: Root-relative POSIX paths to check
            full: Candidates are the complete file set under the root, so any
                stored path not among them is deleted
            force: Treat every stored, existing candidate as modified

        Returns:
            ChangeSet with the live signatures of all existing candidates
        """
        paths = list(dict.fromkeys(candidates))
        stored = self.store.all_signatures() if full else self.store.get_signatures(paths)
        result = ChangeSet()

        for rel_path in paths:
            live = stat_signature(self.root / rel_path)
            previous = stored.get(rel_path)

            if live is _UNREADABLE:
                # Leave the stored record alone until the file is readable again.
                if previous is not None:
                    result.unchanged.append(rel_path)
                continue
            if live is None:
                if previous is not None:
                    result.deleted.append(rel_path)
                continue

            result.signatures[rel_path] = live
            if previous is None:
                result.added.append(rel_path)
            elif force or live != previous:
                result.modified.append(rel_path)
            else:
                result.unchanged.append(rel_path)

        if full:
            seen = set(paths)
            result.deleted.extend(sorted(p for p in stored if p not in seen))

        logger.debug(
            f"Classified {len(paths)} candidates: {len(result.added)} added, "
            f"{len(result.modified)} modified, {len(result.deleted)} deleted, "
            f"{len(result.unchanged)} unchanged"
        )
        return result
