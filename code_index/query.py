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

"""Read path over the committed index state.

Queries never wait for a running build: they read the latest committed
snapshot, which may trail the build in progress but never shows a
half-written file. Before any full build has completed, every query raises
IndexUnavailable so callers can tell "no matches" from "no index".
"""

import logging
import re
from typing import Callable, Dict, List, Optional, Set, Tuple

from code_index.config import IndexConfiguration
from code_index.errors import IndexUnavailable
from code_index.extractors.structural import mask_source
from code_index.ignore_patterns import has_glob_chars, to_relative
from code_index.models import (
    BuildJob,
    ReferenceHit,
    ReferencePage,
    SearchPage,
    SymbolKind,
    SymbolMatch,
)
from code_index.store import IndexStore

logger = logging.getLogger(__name__)


def normalize_kind(kind: Optional[str]) -> Optional[str]:
    """Validate a symbol kind filter.

    Raises:
        ValueError: For kinds outside the SymbolKind enumeration
    """
    if kind is None:
        return None
    try:
        return SymbolKind(kind.lower()).value
    except ValueError:
        valid = ", ".join(k.value for k in SymbolKind)
        raise ValueError(f"Unknown symbol kind '{kind}'. Valid kinds: {valid}") from None


_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "u": 0}


def regex_flags_from(flags: Optional[List[str]]) -> int:
    """Combine single-letter regex flags into ``re`` flags.

    Raises:
        ValueError: For unsupported flags
    """
    value = 0
    for flag in flags or []:
        if flag not in _REGEX_FLAGS:
            raise ValueError(
                f"Unsupported regex flag '{flag}'. Valid flags: {', '.join(_REGEX_FLAGS)}"
            )
        value |= _REGEX_FLAGS[flag]
    return value


class QueryLayer:
    """Symbol lookup, listing, search and reference scanning."""

    def __init__(
        self,
        config: IndexConfiguration,
        store: IndexStore,
        current_job: Optional[Callable[[], Optional[BuildJob]]] = None,
    ):
        self.config = config
        self.root = config.root
        self.store = store
        self._current_job = current_job

    def ensure_ready(self) -> None:
        """Raise IndexUnavailable unless a full build has completed."""
        if self.store.is_ready:
            return
        job = self._current_job() if self._current_job else None
        if job is not None:
            raise IndexUnavailable(
                f"Index is building ({job.processed}/{job.total} files)",
                building=True,
                job_id=job.job_id,
            )
        raise IndexUnavailable("Index has not been built; run a full build first")

    # ------------------------------------------------------------------
    # Symbol lookups
    # ------------------------------------------------------------------

    def find_symbol(
        self,
        name: str,
        kind: Optional[str] = None,
        exact: bool = False,
        limit: int = 100,
    ) -> List[SymbolMatch]:
        """Ranked lookup: exact, then case-insensitive, prefix, substring.

        With ``exact`` only names equal to ``name`` (case-sensitive) match.

        ``Outer/Inner`` (or ``Outer.Inner``) falls back to a container-scoped
        lookup when nothing matches the literal name.
        """
        self.ensure_ready()
        kind = normalize_kind(kind)
        matches = [
            SymbolMatch.from_record(record, rank)
            for record, rank in self.store.find_symbols(name, kind, exact, limit)
        ]
        if not matches and ("/" in name or "." in name):
            matches = self._find_by_container_path(name, kind, limit)
        return matches

    def _find_by_container_path(
        self, path: str, kind: Optional[str], limit: int
    ) -> List[SymbolMatch]:
        parts = [p for p in re.split(r"[/.]", path) if p]
        if len(parts) < 2:
            return []
        records = self.store.find_in_containers(parts[-1], parts[-2], kind, limit)
        return [SymbolMatch.from_record(record) for record in records]

    def get_symbols(self, path: str) -> List[SymbolMatch]:
        """Symbols declared in one file, in source order; empty if not indexed."""
        self.ensure_ready()
        rel = to_relative(self.root, path)
        if not rel:
            return []
        return [SymbolMatch.from_record(record) for record in self.store.list_symbols(rel)]

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
        """Paginated symbol search by name pattern.

        Args:
            pattern: Name pattern, interpreted per ``pattern_type``
            include: Path globs a match must be under
            exclude: Path globs a match must not be under
            kind: Optional symbol kind filter
            page: 1-based page number
            page_size: Results per page (default from configuration)
            snippet_context: Lines of context around each match; 0 disables
            pattern_type: ``auto`` (glob when the pattern has ``*``/``?``,
                else substring), ``substring``, ``glob`` or ``regex``
            flags: Regex flags (``i``, ``m``, ``s``, ``u``); ignored otherwise

        Returns:
            SearchPage with total count and has_more

        Raises:
            ValueError: For an invalid regex, flag, kind or pattern type
        """
        self.ensure_ready()
        kind = normalize_kind(kind)
        regex_flags = regex_flags_from(flags) if pattern_type == "regex" else 0
        page = max(1, page)
        page_size = page_size or self.config.page_size
        context = self.config.snippet_context if snippet_context is None else snippet_context

        records, total = self.store.search(
            pattern,
            kind=kind,
            include=include,
            exclude=exclude,
            offset=(page - 1) * page_size,
            limit=page_size,
            pattern_type=pattern_type,
            regex_flags=regex_flags,
        )
        items = [SymbolMatch.from_record(record) for record in records]
        if context > 0:
            cache: Dict[str, Optional[List[str]]] = {}
            for item in items:
                if item.path not in cache:
                    cache[item.path] = self._read_lines(item.path)
                lines = cache[item.path]
                if lines is not None:
                    item.snippet = self._snippet(lines, item.start_line - 1, context)

        return SearchPage(
            items=items,
            page=page,
            page_size=page_size,
            total=total,
            has_more=page * page_size < total,
        )

    # ------------------------------------------------------------------
    # References
    # ------------------------------------------------------------------

    def find_references(
        self,
        name: str,
        scope: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
        snippet_context: int = 1,
        include_declarations: bool = True,
    ) -> ReferencePage:
        """Best-effort textual occurrences of ``name`` across indexed files.

        Files are scanned in path order; comments and string literals are
        ignored and a match must sit on identifier boundaries. At most
        ``max_matches_per_file`` hits are kept per file (``truncated`` is set
        when more existed).

        Args:
            name: Identifier to look for
            scope: Directory prefix, file path, or path glob to search within
            page: 1-based page number
            page_size: Hits per page (default from configuration)
            snippet_context: Lines of context around each hit
            include_declarations: Keep hits on lines that declare ``name``
        """
        self.ensure_ready()
        page = max(1, page)
        page_size = page_size or self.config.reference_page_size
        if not name:
            return ReferencePage(name=name, page=page, page_size=page_size)

        pattern = re.compile(rf"(?<![\w@]){re.escape(name)}(?!\w)")
        declarations = self.store.declaration_lines(name)
        offset = (page - 1) * page_size
        needed = offset + page_size + 1

        hits: List[ReferenceHit] = []
        truncated = False
        files_scanned = 0
        for path in self._scope_paths(scope):
            if len(hits) >= needed:
                break
            file_hits, capped = self._scan_file(
                path,
                name,
                pattern,
                declarations.get(path, set()),
                snippet_context,
                include_declarations,
            )
            files_scanned += 1
            truncated = truncated or capped
            hits.extend(file_hits)

        return ReferencePage(
            name=name,
            items=hits[offset : offset + page_size],
            page=page,
            page_size=page_size,
            has_more=len(hits) > offset + page_size,
            truncated=truncated,
            files_scanned=files_scanned,
        )

    def _scope_paths(self, scope: Optional[str]) -> List[str]:
        """Indexed paths to scan: all, a glob match, one file, or a directory."""
        if not scope:
            return self.store.indexed_paths()
        if has_glob_chars(scope):
            return self.store.indexed_paths([scope])
        rel = to_relative(self.root, scope)
        if not rel:
            return self.store.indexed_paths()
        if (self.root / rel).is_file():
            return [rel] if self.store.get_file(rel) is not None else []
        return self.store.indexed_paths([f"{rel}/**"])

    def _scan_file(
        self,
        path: str,
        name: str,
        pattern: re.Pattern,
        declared_lines: Set[int],
        context: int,
        include_declarations: bool,
    ) -> Tuple[List[ReferenceHit], bool]:
        content = self._read_text(path)
        if content is None or name not in content:
            return [], False

        lines = content.split("\n")
        masked_lines = mask_source(content).split("\n")
        limit = self.config.max_matches_per_file
        hits: List[ReferenceHit] = []
        for index, masked in enumerate(masked_lines):
            for m in pattern.finditer(masked):
                line_no = index + 1
                is_declaration = line_no in declared_lines
                if is_declaration and not include_declarations:
                    continue
                if len(hits) >= limit:
                    return hits, True
                hits.append(
                    ReferenceHit(
                        path=path,
                        line=line_no,
                        column=m.start() + 1,
                        text=self._trim(lines[index].rstrip("\r").strip()),
                        snippet=self._snippet(lines, index, context) if context > 0 else None,
                        is_declaration=is_declaration,
                    )
                )
        return hits, False

    # ------------------------------------------------------------------
    # File content helpers
    # ------------------------------------------------------------------

    def _read_text(self, path: str) -> Optional[str]:
        file_path = self.root / path
        try:
            if file_path.stat().st_size > self.config.max_file_bytes:
                logger.debug(f"Skipping {path}: larger than {self.config.max_file_bytes} bytes")
                return None
            return file_path.read_bytes().decode("utf-8", errors="replace")
        except OSError as e:
            logger.debug(f"Cannot read {path}: {e}")
            return None

    def _read_lines(self, path: str) -> Optional[List[str]]:
        content = self._read_text(path)
        return content.split("\n") if content is not None else None

    def _snippet(self, lines: List[str], index: int, context: int) -> Optional[str]:
        if not 0 <= index < len(lines):
            return None
        start = max(0, index - context)
        end = min(len(lines), index + context + 1)
        return self._trim("\n".join(line.rstrip("\r") for line in lines[start:end]))

    def _trim(self, text: str) -> str:
        limit = self.config.max_snippet_chars
        return text if len(text) <= limit else text[: limit - 3] + "..."
