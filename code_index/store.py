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

"""SQLite-backed index store.

Holds every durable piece of index state in a single database file:
- ``files``: one row per indexed source file (path, signature, error flag)
- ``symbols``: declared symbols, owned by a file row (ON DELETE CASCADE)
- ``meta``: schema version and build timestamps

Writes go through one writer connection guarded by a lock, each file in
its own short transaction (delete old symbols, upsert the file row, insert
the new symbols), so readers never observe a half-written file. Readers
borrow read-only connections from a small pool; WAL mode gives each read
the latest committed snapshot without blocking the writer.

Usage:
    store = IndexStore(Path(".code-index/index.db")).open()
    store.commit_file(FileRecord("src/A.cs", 120, mtime_ns), symbols)
    matches = store.find_symbols("Foo", kind="class", exact=True)
"""

import logging
import re
import sqlite3
import threading
import time
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from code_index.errors import IndexStoreError, StoreCorruption
from code_index.ignore_patterns import matches_any
from code_index.models import ExtractedSymbol, FileRecord, FileSignature, SymbolRecord

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DELETE_BATCH_SIZE = 500
_QUERY_CHUNK = 500
MAX_IDLE_READERS = 4
PATTERN_TYPES = ("auto", "substring", "glob", "regex")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS files (
    path TEXT PRIMARY KEY,
    size INTEGER NOT NULL,
    mtime_ns INTEGER NOT NULL,
    indexed_at REAL NOT NULL,
    has_errors INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    symbol_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS symbols (
    id INTEGER PRIMARY KEY,
    path TEXT NOT NULL REFERENCES files(path) ON DELETE CASCADE,
    ordinal INTEGER NOT NULL,
    name TEXT NOT NULL,
    kind TEXT NOT NULL,
    start_line INTEGER NOT NULL,
    end_line INTEGER NOT NULL,
    col INTEGER NOT NULL DEFAULT 1,
    container TEXT,
    namespace TEXT
);

CREATE INDEX IF NOT EXISTS idx_symbols_name ON symbols(name);
CREATE INDEX IF NOT EXISTS idx_symbols_name_nocase ON symbols(name COLLATE NOCASE);
CREATE INDEX IF NOT EXISTS idx_symbols_path ON symbols(path, ordinal);
CREATE INDEX IF NOT EXISTS idx_symbols_kind ON symbols(kind);
"""

_SYMBOL_COLUMNS = (
    "s.id, s.path, s.name, s.kind, s.start_line, s.end_line, s.col, s.container, s.namespace"
)

_UPSERT_FILE = """
INSERT INTO files (path, size, mtime_ns, indexed_at, has_errors, error, symbol_count)
VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(path) DO UPDATE SET
    size = excluded.size,
    mtime_ns = excluded.mtime_ns,
    indexed_at = excluded.indexed_at,
    has_errors = excluded.has_errors,
    error = excluded.error,
    symbol_count = excluded.symbol_count
"""

_INSERT_SYMBOL = """
INSERT INTO symbols (path, ordinal, name, kind, start_line, end_line, col, container, namespace)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_CORRUPTION_MARKERS = ("malformed", "not a database", "file is encrypted", "corrupt")


def _store_error(action: str, error: sqlite3.Error) -> IndexStoreError:
    message = f"{action}: {error}"
    if any(marker in str(error).lower() for marker in _CORRUPTION_MARKERS):
        return StoreCorruption(message)
    return IndexStoreError(message)


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def name_pattern_to_like(pattern: str, pattern_type: str = "auto") -> str:
    """Translate a name pattern to a LIKE expression.

    With ``auto``, ``*`` and ``?`` are wildcards and a pattern without
    wildcards matches as a substring. ``substring`` takes the pattern
    literally; ``glob`` anchors it to the whole name.
    """
    if not pattern:
        return "%"
    if pattern_type == "substring":
        return f"%{_escape_like(pattern)}%"
    if pattern_type == "auto" and not any(c in pattern for c in "*?"):
        return f"%{_escape_like(pattern)}%"
    return _escape_like(pattern).replace("*", "%").replace("?", "_")


@lru_cache(maxsize=64)
def _compile_regex(pattern: str, flags: int) -> "re.Pattern[str]":
    return re.compile(pattern, flags)


def _glob_filter(path: str, patterns: str) -> int:
    return 1 if matches_any(path, patterns.split("\n")) else 0


def _regex_match(pattern: str, flags: int, value: str) -> int:
    return 1 if _compile_regex(pattern, flags).search(value) else 0


def find_symbols_sql(exact: bool, with_kind: bool) -> str:
    """SQL for IndexStore.find_symbols (named parameters)."""
    if exact:
        where = "s.name = :name"
        rank = "0"
    else:
        where = "s.name LIKE :substring ESCAPE '\\'"
        rank = (
            "CASE WHEN s.name = :name THEN 0 "
            "WHEN s.name = :name COLLATE NOCASE THEN 1 "
            "WHEN s.name LIKE :prefix ESCAPE '\\' THEN 2 "
            "ELSE 3 END"
        )
    if with_kind:
        # Unary + keeps the planner on the name index for exact lookups.
        where += " AND +s.kind = :kind" if exact else " AND s.kind = :kind"
    return (
        f"SELECT {_SYMBOL_COLUMNS}, {rank} AS rank "
        "FROM symbols s JOIN files f ON f.path = s.path "
        f"WHERE {where} "
        "ORDER BY rank, s.path, s.start_line, s.ordinal LIMIT :limit"
    )


def _row_to_symbol(row: Sequence) -> SymbolRecord:
    return SymbolRecord(
        id=row[0],
        path=row[1],
        name=row[2],
        kind=row[3],
        start_line=row[4],
        end_line=row[5],
        column=row[6],
        container=row[7],
        namespace=row[8],
    )


def _chunks(items: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class IndexStore:
    """Transactional store for file and symbol records."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path).absolute()
        self.schema_reset = False
        self._writer: Optional[sqlite3.Connection] = None
        self._write_lock = threading.RLock()
        self._idle_readers: List[sqlite3.Connection] = []
        self._readers: List[sqlite3.Connection] = []
        self._readers_lock = threading.Lock()
        self._generation = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "IndexStore":
        """Open (creating if needed) the store file.

        A schema version mismatch drops all tables; the index is then empty
        and ``schema_reset`` is set so the caller can schedule a full build.

        Raises:
            StoreCorruption: If the file is not a readable SQLite database
            IndexStoreError: For other SQLite failures while opening
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, isolation_level=None)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA busy_timeout=5000")
            self._init_schema(conn)
        except sqlite3.DatabaseError as e:
            if conn is not None:
                conn.close()
            raise _store_error(f"Cannot open index store {self.db_path}", e) from e

        self._writer = conn
        self._generation += 1
        logger.debug(f"Opened index store {self.db_path}")
        return self

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        version: Optional[str] = None
        if "meta" in tables:
            row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
            version = row[0] if row else None

        if tables and version != str(SCHEMA_VERSION):
            logger.warning(
                f"Index store schema version {version} != {SCHEMA_VERSION}, "
                f"discarding {self.db_path} contents; a full rebuild is required"
            )
            conn.execute("BEGIN IMMEDIATE")
            for table in ("symbols", "files", "meta"):
                conn.execute(f"DROP TABLE IF EXISTS {table}")
            conn.execute("COMMIT")
            self.schema_reset = True

        conn.executescript(_SCHEMA)
        conn.execute(
            "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )

    def close(self) -> None:
        # Readers checked out right now are closed when they are returned.
        with self._readers_lock:
            idle, self._idle_readers = self._idle_readers, []
            self._readers = [conn for conn in self._readers if conn not in idle]
            self._generation += 1
        for conn in idle:
            conn.close()
        with self._write_lock:
            if self._writer is not None:
                self._writer.close()
                self._writer = None

    def recreate(self) -> "IndexStore":
        """Delete the store file (and its WAL/SHM companions) and open a fresh one."""
        self.close()
        for suffix in ("", "-wal", "-shm", "-journal"):
            Path(f"{self.db_path}{suffix}").unlink(missing_ok=True)
        logger.warning(f"Recreated index store {self.db_path}")
        self.schema_reset = False
        return self.open()

    @property
    def is_open(self) -> bool:
        return self._writer is not None

    # ------------------------------------------------------------------
    # Connections and transactions
    # ------------------------------------------------------------------

    def _checkout_reader(self) -> Tuple[sqlite3.Connection, int]:
        with self._readers_lock:
            if self._writer is None:
                raise IndexStoreError("Index store is closed")
            generation = self._generation
            if self._idle_readers:
                return self._idle_readers.pop(), generation

        try:
            conn = sqlite3.connect(
                f"{self.db_path.as_uri()}?mode=ro",
                uri=True,
                check_same_thread=False,
                isolation_level=None,
            )
            conn.execute("PRAGMA busy_timeout=5000")
        except sqlite3.Error as e:
            raise _store_error("Cannot open read connection", e) from e
        conn.create_function("glob_filter", 2, _glob_filter, deterministic=True)
        conn.create_function("regex_match", 3, _regex_match, deterministic=True)

        with self._readers_lock:
            self._readers.append(conn)
        return conn, generation

    def _checkin_reader(self, conn: sqlite3.Connection, generation: int) -> None:
        with self._readers_lock:
            if (
                generation == self._generation
                and not conn.in_transaction
                and len(self._idle_readers) < MAX_IDLE_READERS
            ):
                self._idle_readers.append(conn)
                return
            if conn in self._readers:
                self._readers.remove(conn)
        conn.close()

    @contextmanager
    def _snapshot(self) -> Iterator[sqlite3.Connection]:
        """Read transaction: all statements inside see one committed state.

        Read connections come from a small pool shared by all threads; at
        most MAX_IDLE_READERS stay open between reads.
        """
        conn, generation = self._checkout_reader()
        try:
            conn.execute("BEGIN")
            try:
                yield conn
            finally:
                if conn.in_transaction:
                    conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise _store_error("Index read failed", e) from e
        finally:
            self._checkin_reader(conn, generation)

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            if self._writer is None:
                raise IndexStoreError("Index store is closed")
            conn = self._writer
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                raise _store_error(action, e) from e

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def commit_file(self, record: FileRecord, symbols: List[ExtractedSymbol]) -> None:
        """Atomically replace one file's record and its whole symbol set."""
        record.symbol_count = len(symbols)
        rows = [
            (
                record.path,
                ordinal,
                s.name,
                s.kind.value,
                s.start_line,
                s.end_line,
                s.column,
                s.container,
                s.namespace,
            )
            for ordinal, s in enumerate(symbols)
        ]
        with self._transaction(f"Failed to commit {record.path}") as conn:
            conn.execute("DELETE FROM symbols WHERE path = ?", (record.path,))
            conn.execute(
                _UPSERT_FILE,
                (
                    record.path,
                    record.size,
                    record.mtime_ns,
                    record.indexed_at,
                    int(record.has_errors),
                    record.error,
                    record.symbol_count,
                ),
            )
            conn.executemany(_INSERT_SYMBOL, rows)

    def delete_files(self, paths: Iterable[str]) -> int:
        """Remove file records and their symbols, in batches.

        Returns:
            Number of file records removed
        """
        removed = 0
        ordered = sorted(set(paths))
        for batch in _chunks(ordered, DELETE_BATCH_SIZE):
            placeholders = ",".join("?" * len(batch))
            with self._transaction("Failed to delete file records") as conn:
                conn.execute(f"DELETE FROM symbols WHERE path IN ({placeholders})", batch)
                cursor = conn.execute(f"DELETE FROM files WHERE path IN ({placeholders})", batch)
                removed += cursor.rowcount
        return removed

    def mark_build(self, full: bool, finished_at: Optional[float] = None) -> None:
        finished_at = finished_at if finished_at is not None else time.time()
        keys = ["last_build_at"] + (["last_full_build_at"] if full else [])
        with self._transaction("Failed to record build metadata") as conn:
            conn.executemany(
                "INSERT INTO meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                [(key, repr(finished_at)) for key in keys],
            )

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def get_meta(self, key: str) -> Optional[str]:
        with self._snapshot() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def get_timestamp(self, key: str) -> Optional[float]:
        value = self.get_meta(key)
        return float(value) if value is not None else None

    @property
    def is_ready(self) -> bool:
        """A full build has completed into this store."""
        return self.get_meta("last_full_build_at") is not None

    def get_signatures(self, paths: Sequence[str]) -> Dict[str, FileSignature]:
        result: Dict[str, FileSignature] = {}
        unique = list(dict.fromkeys(paths))
        with self._snapshot() as conn:
            for chunk in _chunks(unique, _QUERY_CHUNK):
                placeholders = ",".join("?" * len(chunk))
                for path, size, mtime_ns in conn.execute(
                    f"SELECT path, size, mtime_ns FROM files WHERE path IN ({placeholders})",
                    chunk,
                ):
                    result[path] = FileSignature(size, mtime_ns)
        return result

    def all_signatures(self) -> Dict[str, FileSignature]:
        with self._snapshot() as conn:
            return {
                path: FileSignature(size, mtime_ns)
                for path, size, mtime_ns in conn.execute("SELECT path, size, mtime_ns FROM files")
            }

    def get_file(self, path: str) -> Optional[FileRecord]:
        with self._snapshot() as conn:
            row = conn.execute(
                "SELECT path, size, mtime_ns, indexed_at, has_errors, error, symbol_count "
                "FROM files WHERE path = ?",
                (path,),
            ).fetchone()
        if row is None:
            return None
        return FileRecord(
            path=row[0],
            size=row[1],
            mtime_ns=row[2],
            indexed_at=row[3],
            has_errors=bool(row[4]),
            error=row[5],
            symbol_count=row[6],
        )

    def indexed_paths(self, include: Optional[List[str]] = None) -> List[str]:
        """All indexed paths in path order, optionally narrowed by globs."""
        with self._snapshot() as conn:
            if include:
                rows = conn.execute(
                    "SELECT path FROM files WHERE glob_filter(path, ?) ORDER BY path",
                    ("\n".join(include),),
                )
            else:
                rows = conn.execute("SELECT path FROM files ORDER BY path")
            return [row[0] for row in rows]

    def list_symbols(self, path: str) -> List[SymbolRecord]:
        with self._snapshot() as conn:
            rows = conn.execute(
                f"SELECT {_SYMBOL_COLUMNS} FROM symbols s JOIN files f ON f.path = s.path "
                f"WHERE s.path = ? ORDER BY s.ordinal",
                (path,),
            ).fetchall()
        return [_row_to_symbol(row) for row in rows]

    def find_symbols(
        self,
        name: str,
        kind: Optional[str] = None,
        exact: bool = False,
        limit: int = 100,
    ) -> List[Tuple[SymbolRecord, int]]:
        """Ranked lookup by name.

        Rank 0 is an exact match, 1 a case-insensitive exact match, 2 a
        prefix match and 3 a substring match. Ties are broken by path and
        line. With ``exact`` only case-sensitive equal names (rank 0) are
        returned, through the name index.
        """
        params: Dict[str, object] = {
            "name": name,
            "prefix": f"{_escape_like(name)}%",
            "substring": f"%{_escape_like(name)}%",
            "kind": kind,
            "limit": limit,
        }
        with self._snapshot() as conn:
            rows = conn.execute(find_symbols_sql(exact, bool(kind)), params).fetchall()
        return [(_row_to_symbol(row), row[9]) for row in rows]

    def find_in_containers(
        self, name: str, container: str, kind: Optional[str] = None, limit: int = 100
    ) -> List[SymbolRecord]:
        """Symbols named ``name`` whose container is ``container`` (or ends with it)."""
        params: Dict[str, object] = {
            "name": name,
            "container": container,
            "suffix": f"%.{_escape_like(container)}",
            "kind": kind,
            "limit": limit,
        }
        kind_clause = " AND s.kind = :kind" if kind else ""
        sql = (
            f"SELECT {_SYMBOL_COLUMNS} FROM symbols s JOIN files f ON f.path = s.path "
            "WHERE s.name = :name COLLATE NOCASE "
            "AND (s.container = :container COLLATE NOCASE "
            "OR s.container LIKE :suffix ESCAPE '\\')"
            f"{kind_clause} ORDER BY s.path, s.start_line LIMIT :limit"
        )
        with self._snapshot() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_symbol(row) for row in rows]

    def search(
        self,
        pattern: str,
        kind: Optional[str] = None,
        include: Optional[List[str]] = None,
        exclude: Optional[List[str]] = None,
        offset: int = 0,
        limit: int = 20,
        pattern_type: str = "auto",
        regex_flags: int = 0,
    ) -> Tuple[List[SymbolRecord], int]:
        """Paginated name-pattern search.

        Args:
            pattern_type: ``auto``, ``substring``, ``glob`` or ``regex``
            regex_flags: ``re`` flags for regex patterns

        Returns:
            Tuple of (records for the requested page, total match count)

        Raises:
            ValueError: For an unknown pattern type or an invalid regex
        """
        if pattern_type not in PATTERN_TYPES:
            raise ValueError(
                f"Unknown pattern type '{pattern_type}'. Valid types: {', '.join(PATTERN_TYPES)}"
            )
        if pattern_type == "regex":
            try:
                _compile_regex(pattern, regex_flags)
            except re.error as e:
                raise ValueError(f"Invalid regex '{pattern}': {e}") from None
            clauses = ["regex_match(:pattern, :flags, s.name)"]
        else:
            clauses = ["s.name LIKE :pattern ESCAPE '\\'"]
        params: Dict[str, object] = {
            "pattern": (
                pattern if pattern_type == "regex" else name_pattern_to_like(pattern, pattern_type)
            ),
            "flags": regex_flags,
            "kind": kind,
            "include": "\n".join(include or []),
            "exclude": "\n".join(exclude or []),
            "offset": offset,
            "limit": limit,
        }
        if kind:
            clauses.append("s.kind = :kind")
        if include:
            clauses.append("glob_filter(s.path, :include)")
        if exclude:
            clauses.append("NOT glob_filter(s.path, :exclude)")
        where = " AND ".join(clauses)
        base = f"FROM symbols s JOIN files f ON f.path = s.path WHERE {where}"

        with self._snapshot() as conn:
            total = conn.execute(f"SELECT COUNT(*) {base}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT {_SYMBOL_COLUMNS} {base} "
                "ORDER BY s.path, s.ordinal LIMIT :limit OFFSET :offset",
                params,
            ).fetchall()
        return [_row_to_symbol(row) for row in rows], total

    def declaration_lines(self, name: str) -> Dict[str, Set[int]]:
        """Start lines of every symbol named ``name``, keyed by path."""
        result: Dict[str, Set[int]] = {}
        with self._snapshot() as conn:
            for path, line in conn.execute(
                "SELECT path, start_line FROM symbols WHERE name = ?", (name,)
            ):
                result.setdefault(path, set()).add(line)
        return result

    def stats(self) -> Dict[str, float]:
        with self._snapshot() as conn:
            total, indexed, failed = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(symbol_count > 0), 0), "
                "COALESCE(SUM(has_errors), 0) FROM files"
            ).fetchone()
            symbols = conn.execute("SELECT COUNT(*) FROM symbols").fetchone()[0]
        return {
            "total_files": total,
            "indexed_files": indexed,
            "failed_files": failed,
            "symbols": symbols,
            "coverage": (indexed / total) if total else 0.0,
        }

    def verify(self) -> Dict[str, float]:
        """Check store integrity.

        Raises:
            StoreCorruption: If SQLite reports damage or orphaned symbols exist
        """
        with self._snapshot() as conn:
            check = conn.execute("PRAGMA quick_check").fetchone()[0]
            orphans = conn.execute(
                "SELECT COUNT(*) FROM symbols s LEFT JOIN files f ON f.path = s.path "
                "WHERE f.path IS NULL"
            ).fetchone()[0]
        if check != "ok":
            raise StoreCorruption(f"Integrity check failed for {self.db_path}: {check}")
        if orphans:
            raise StoreCorruption(f"{orphans} orphaned symbols in {self.db_path}")
        return self.stats()
