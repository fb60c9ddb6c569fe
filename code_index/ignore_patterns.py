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

"""Shared path filtering for the scanner, the watcher and the query layer.

All three components must agree on which files belong to the index, so the
rules live here:
- Hidden directories (starting with '.') are never descended into
- Directory names in the skip set are pruned during the walk
- Files must match at least one include glob and no exclude glob

Globs are matched against root-relative POSIX paths. ``**`` spans any
number of directories, ``*`` and ``?`` stay within one path segment, and a
pattern without a slash matches at any depth.
"""

import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Pattern, Set, Union

# Directory names pruned during scans (non-hidden only; hidden ones are
# pruned by is_hidden_path()).
DEFAULT_SKIP_DIRS: Set[str] = {
    # .NET build outputs
    "bin",
    "obj",
    "TestResults",
    "artifacts",
    # Package caches
    "packages",
    "node_modules",
    # Generic build outputs
    "build",
    "dist",
    "out",
    # Python tooling that sometimes lives next to sources
    "__pycache__",
    "venv",
}

DEFAULT_INCLUDE: List[str] = ["**/*.cs"]
DEFAULT_EXCLUDE: List[str] = ["**/obj/**", "**/bin/**"]


def is_hidden_path(path: Union[str, Path]) -> bool:
    """Check if any component of the path is hidden.

    Args:
        path: Relative path to check

    Returns:
        True if any component starts with '.' (other than '.' and '..')
    """
    for part in Path(path).parts:
        if part.startswith(".") and part not in (".", ".."):
            return True
    return False


def should_ignore_path(path: Union[str, Path], skip_dirs: Optional[Set[str]] = None) -> bool:
    """Check if a relative path lies under a hidden or skipped directory.

    Example:
        >>> should_ignore_path("src/Game/Player.cs")
        False
        >>> should_ignore_path("src/obj/Debug/Gen.cs")
        True
        >>> should_ignore_path(".git/config")
        True
    """
    if is_hidden_path(path):
        return True
    effective_skip_dirs = skip_dirs if skip_dirs is not None else DEFAULT_SKIP_DIRS
    parents = Path(path).parts[:-1]
    return any(part in effective_skip_dirs for part in parents)


@lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> Pattern[str]:
    """Compile a path glob into an anchored regular expression.

    Supports ``**``, ``*``, ``?`` and ``{a,b}`` alternation.
    """
    pattern = pattern.replace("\\", "/")
    if pattern.startswith("./"):
        pattern = pattern[2:]
    if "/" not in pattern:
        pattern = "**/" + pattern

    out: List[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**/", i):
                out.append("(?:.*/)?")
                i += 3
                continue
            if pattern.startswith("**", i):
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "{":
            end = pattern.find("}", i)
            if end == -1:
                out.append(re.escape(c))
            else:
                options = pattern[i + 1 : end].split(",")
                out.append("(?:" + "|".join(re.escape(o) for o in options) + ")")
                i = end + 1
                continue
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("^" + "".join(out) + "$")


def matches_any(rel_path: str, patterns: Iterable[str]) -> bool:
    return any(glob_to_regex(p).match(rel_path) for p in patterns)


def has_glob_chars(pattern: str) -> bool:
    return any(c in pattern for c in "*?{")


class PathFilter:
    """Include/exclude/skip-dir rules for one index root."""

    def __init__(
        self,
        include: Optional[Iterable[str]] = None,
        exclude: Optional[Iterable[str]] = None,
        skip_dirs: Optional[Set[str]] = None,
    ):
        self.include = list(include) if include is not None else list(DEFAULT_INCLUDE)
        self.exclude = list(exclude) if exclude is not None else list(DEFAULT_EXCLUDE)
        self.skip_dirs = set(skip_dirs) if skip_dirs is not None else set(DEFAULT_SKIP_DIRS)

    def accepts_dir(self, name: str) -> bool:
        return not name.startswith(".") and name not in self.skip_dirs

    def accepts_directory(self, rel_path: str) -> bool:
        return all(self.accepts_dir(part) for part in rel_path.split("/") if part)

    def accepts(self, rel_path: str) -> bool:
        """Check whether a root-relative POSIX path belongs to the index."""
        if should_ignore_path(rel_path, self.skip_dirs):
            return False
        if not matches_any(rel_path, self.include):
            return False
        return not matches_any(rel_path, self.exclude)


def to_relative(root: Path, path: Union[str, Path]) -> Optional[str]:
    """Normalize a path to root-relative POSIX form.

    Relative inputs are taken as relative to ``root``. Returns None when
    the path falls outside the root.
    """
    candidate = Path(path)
    if not candidate.is_absolute():
        candidate = root / candidate
    try:
        rel = Path(os.path.normpath(candidate)).relative_to(root)
    except ValueError:
        return None
    rel_str = rel.as_posix()
    if rel_str in ("", "."):
        return ""
    return rel_str


def iter_source_files(
    root: Path, path_filter: PathFilter, start: Optional[Path] = None
) -> Iterator[str]:
    """Walk ``start`` (default ``root``) and yield root-relative paths of
    indexable files.

    Skipped and hidden directories are pruned before descent, so large
    build output trees are never listed.
    """
    for dirpath, dirnames, filenames in os.walk(start or root):
        dirnames[:] = sorted(d for d in dirnames if path_filter.accepts_dir(d))
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        prefix = "" if rel_dir == "." else rel_dir + "/"
        for name in sorted(filenames):
            rel_path = prefix + name
            if path_filter.accepts(rel_path):
                yield rel_path
