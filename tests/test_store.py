# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.

"""Tests for the SQLite index store."""

import re
import sqlite3
import threading
import time

import pytest

from code_index.errors import IndexStoreError, StoreCorruption
from code_index.models import ExtractedSymbol, FileRecord, FileSignature, SymbolKind
from code_index.store import (
    MAX_IDLE_READERS,
    IndexStore,
    find_symbols_sql,
    name_pattern_to_like,
)


@pytest.fixture
def store(tmp_path):
    store = IndexStore(tmp_path / "index.db").open()
    yield store
    store.close()


def sym(name, kind=SymbolKind.CLASS, line=1, container=None, namespace=None):
    return ExtractedSymbol(
        name=name,
        kind=kind,
        start_line=line,
        end_line=line,
        container=container,
        namespace=namespace,
    )


def commit(store, path, *symbols, size=10, mtime_ns=1, error=None):
    store.commit_file(
        FileRecord(path=path, size=size, mtime_ns=mtime_ns, has_errors=error is not None, error=error),
        list(symbols),
    )


class TestIndexStoreWrites:
    def test_commit_and_list(self, store):
        commit(store, "A.cs", sym("Foo"), sym("Bar", SymbolKind.METHOD, 2, container="Foo"))

        symbols = store.list_symbols("A.cs")

        assert [(s.name, s.kind, s.container) for s in symbols] == [
            ("Foo", "class", None),
            ("Bar", "method", "Foo"),
        ]
        record = store.get_file("A.cs")
        assert record.symbol_count == 2
        assert record.signature == FileSignature(10, 1)

    def test_commit_replaces_whole_symbol_set(self, store):
        commit(store, "A.cs", sym("Old"), sym("Shared"))
        commit(store, "A.cs", sym("Shared"), sym("New"), size=12, mtime_ns=2)

        assert [s.name for s in store.list_symbols("A.cs")] == ["Shared", "New"]
        assert store.find_symbols("Old") == []
        assert store.get_file("A.cs").signature == FileSignature(12, 2)

    def test_failed_file_is_recorded_without_symbols(self, store):
        commit(store, "Bad.cs", error="unbalanced '}' at line 3")

        record = store.get_file("Bad.cs")
        assert record.has_errors
        assert record.error == "unbalanced '}' at line 3"
        assert store.stats()["failed_files"] == 1

    def test_delete_files_removes_symbols(self, store):
        commit(store, "A.cs", sym("Foo"))
        commit(store, "B.cs", sym("Bar"))

        removed = store.delete_files(["A.cs", "Missing.cs"])

        assert removed == 1
        assert store.get_file("A.cs") is None
        assert store.list_symbols("A.cs") == []
        assert [s.name for s, _ in store.find_symbols("Bar")] == ["Bar"]
        store.verify()

    def test_delete_files_in_batches(self, store):
        paths = [f"src/F{i:04d}.cs" for i in range(1203)]
        for path in paths:
            commit(store, path, sym("X"))

        assert store.delete_files(paths) == 1203
        assert store.stats()["total_files"] == 0
        assert store.stats()["symbols"] == 0

    def test_mark_build_sets_readiness(self, store):
        assert not store.is_ready
        store.mark_build(full=False, finished_at=100.0)
        assert not store.is_ready
        assert store.get_timestamp("last_build_at") == 100.0

        store.mark_build(full=True, finished_at=200.0)

        assert store.is_ready
        assert store.get_timestamp("last_full_build_at") == 200.0

    def test_closed_store_raises(self, tmp_path):
        store = IndexStore(tmp_path / "index.db").open()
        store.close()

        with pytest.raises(IndexStoreError):
            commit(store, "A.cs", sym("Foo"))


class TestIndexStoreReads:
    def test_find_symbols_ranking(self, store):
        commit(
            store,
            "A.cs",
            sym("player", line=1),
            sym("Player", line=2),
            sym("PlayerController", line=3),
            sym("BasePlayer", line=4),
            sym("Enemy", line=5),
        )

        results = [(s.name, rank) for s, rank in store.find_symbols("Player")]

        assert results == [
            ("Player", 0),
            ("player", 1),
            ("PlayerController", 2),
            ("BasePlayer", 3),
        ]

    def test_find_symbols_exact_and_kind(self, store):
        commit(
            store,
            "A.cs",
            sym("Player"),
            sym("Player", SymbolKind.CONSTRUCTOR, 3, container="Player"),
            sym("PlayerController"),
        )

        exact = store.find_symbols("Player", exact=True)
        ctor = store.find_symbols("Player", kind="constructor", exact=True)

        assert {s.kind for s, _ in exact} == {"class", "constructor"}
        assert [(s.container, s.start_line) for s, _ in ctor] == [("Player", 3)]

    def test_exact_lookup_is_case_sensitive(self, store):
        commit(store, "A.cs", sym("Foo"))
        commit(store, "B.cs", sym("foo"))

        exact = store.find_symbols("Foo", kind="class", exact=True)
        ranked = store.find_symbols("Foo")

        assert [(s.path, s.name, rank) for s, rank in exact] == [("A.cs", "Foo", 0)]
        assert store.find_symbols("FOO", exact=True) == []
        assert [(s.name, rank) for s, rank in ranked] == [("Foo", 0), ("foo", 1)]

    def test_like_wildcards_are_escaped(self, store):
        commit(store, "A.cs", sym("my_field"), sym("myXfield"))

        assert [s.name for s, _ in store.find_symbols("my_")] == ["my_field"]

    def test_find_in_containers(self, store):
        commit(store, "A.cs", sym("Inner", container="Outer"), sym("Inner", container="Other"))
        commit(store, "B.cs", sym("Inner", container="Ns.Outer"))

        records = store.find_in_containers("Inner", "Outer")

        assert [(r.path, r.container) for r in records] == [("A.cs", "Outer"), ("B.cs", "Ns.Outer")]

    def test_search_paginates_and_filters(self, store):
        for i in range(5):
            commit(store, f"src/Game/C{i}.cs", sym(f"GameThing{i}"))
        commit(store, "tests/GameTest.cs", sym("GameThingTest"))

        records, total = store.search("GameThing*", offset=2, limit=2)
        assert total == 6
        assert [r.name for r in records] == ["GameThing2", "GameThing3"]

        _, included = store.search("GameThing", include=["src/**"])
        assert included == 5

        records, excluded = store.search("Game*", exclude=["tests/**"])
        assert excluded == 5
        assert all(r.path.startswith("src/") for r in records)

    def test_search_pattern_types(self, store):
        commit(store, "A.cs", sym("GameThing1"), sym("GameThing22"), sym("Game*Star"), sym("MyGame"))

        _, substring = store.search("Game*", pattern_type="substring")
        _, glob = store.search("Game", pattern_type="glob")
        records, _ = store.search(r"^GameThing\d$", pattern_type="regex")
        _, case_sensitive = store.search("^game", pattern_type="regex")
        _, ignore_case = store.search("^game", pattern_type="regex", regex_flags=re.IGNORECASE)

        assert substring == 1
        assert glob == 0
        assert [r.name for r in records] == ["GameThing1"]
        assert case_sensitive == 0
        assert ignore_case == 3

    def test_search_rejects_bad_patterns(self, store):
        with pytest.raises(ValueError, match="Invalid regex"):
            store.search("Game(", pattern_type="regex")
        with pytest.raises(ValueError, match="Unknown pattern type"):
            store.search("Game", pattern_type="fuzzy")

    def test_indexed_paths_with_globs(self, store):
        for path in ("src/A.cs", "src/sub/B.cs", "lib/C.cs"):
            commit(store, path, sym("X"))

        assert store.indexed_paths() == ["lib/C.cs", "src/A.cs", "src/sub/B.cs"]
        assert store.indexed_paths(["src/**"]) == ["src/A.cs", "src/sub/B.cs"]

    def test_signatures(self, store):
        commit(store, "A.cs", size=5, mtime_ns=7)
        commit(store, "B.cs", size=6, mtime_ns=8)

        assert store.get_signatures(["A.cs", "Z.cs"]) == {"A.cs": FileSignature(5, 7)}
        assert set(store.all_signatures()) == {"A.cs", "B.cs"}

    def test_declaration_lines(self, store):
        commit(store, "A.cs", sym("Foo", line=3), sym("Foo", SymbolKind.CONSTRUCTOR, 5))
        commit(store, "B.cs", sym("Bar", line=1))

        assert store.declaration_lines("Foo") == {"A.cs": {3, 5}}

    def test_stats_coverage(self, store):
        commit(store, "A.cs", sym("Foo"))
        commit(store, "B.cs", sym("Bar"))
        commit(store, "Empty.cs")

        stats = store.stats()

        assert stats["total_files"] == 3
        assert stats["indexed_files"] == 2
        assert stats["symbols"] == 2
        assert stats["coverage"] == pytest.approx(2 / 3)

    def test_reads_from_other_threads(self, store):
        commit(store, "A.cs", sym("Foo"))
        results = []

        thread = threading.Thread(target=lambda: results.append(store.find_symbols("Foo")))
        thread.start()
        thread.join()

        assert [s.name for s, _ in results[0]] == ["Foo"]

    def test_reader_connections_stay_bounded(self, store):
        commit(store, "A.cs", sym("Foo"))

        for _ in range(50):
            thread = threading.Thread(target=lambda: (store.is_ready, store.find_symbols("Foo")))
            thread.start()
            thread.join()

        assert len(store._readers) <= MAX_IDLE_READERS

    def test_concurrent_readers_are_returned_to_pool(self, store):
        commit(store, "A.cs", sym("Foo"))
        barrier = threading.Barrier(8)
        results = []

        def read():
            barrier.wait()
            results.append(len(store.find_symbols("Foo")))

        threads = [threading.Thread(target=read) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results == [1] * 8
        assert len(store._readers) <= MAX_IDLE_READERS

    def test_close_releases_reader_connections(self, tmp_path):
        store = IndexStore(tmp_path / "index.db").open()
        commit(store, "A.cs", sym("Foo"))
        store.find_symbols("Foo")

        store.close()

        assert store._readers == []


class TestIndexStoreLifecycle:
    def test_persists_across_reopen(self, tmp_path):
        db = tmp_path / "index.db"
        store = IndexStore(db).open()
        commit(store, "A.cs", sym("Foo"))
        store.mark_build(full=True)
        store.close()

        reopened = IndexStore(db).open()
        try:
            assert reopened.is_ready
            assert [s.name for s in reopened.list_symbols("A.cs")] == ["Foo"]
            assert not reopened.schema_reset
        finally:
            reopened.close()

    def test_schema_version_mismatch_resets(self, tmp_path):
        db = tmp_path / "index.db"
        store = IndexStore(db).open()
        commit(store, "A.cs", sym("Foo"))
        store.mark_build(full=True)
        store.close()

        conn = sqlite3.connect(str(db))
        conn.execute("UPDATE meta SET value = '0' WHERE key = 'schema_version'")
        conn.commit()
        conn.close()

        reopened = IndexStore(db).open()
        try:
            assert reopened.schema_reset
            assert not reopened.is_ready
            assert reopened.stats()["total_files"] == 0
        finally:
            reopened.close()

    def test_corrupt_file_raises_store_corruption(self, tmp_path):
        db = tmp_path / "index.db"
        db.write_bytes(b"this is definitely not a sqlite database" * 100)

        with pytest.raises(StoreCorruption):
            IndexStore(db).open()

    def test_recreate_discards_contents(self, tmp_path):
        db = tmp_path / "index.db"
        db.write_bytes(b"garbage" * 500)
        store = IndexStore(db)

        store.recreate()
        try:
            assert store.is_open
            assert store.stats()["total_files"] == 0
            commit(store, "A.cs", sym("Foo"))
            assert [s.name for s in store.list_symbols("A.cs")] == ["Foo"]
        finally:
            store.close()

    def test_verify_detects_orphans(self, store):
        commit(store, "A.cs", sym("Foo"))
        store.verify()

        # A plain connection has foreign keys off, so the cascade does not run.
        conn = sqlite3.connect(str(store.db_path))
        conn.execute("DELETE FROM files WHERE path = 'A.cs'")
        conn.commit()
        conn.close()

        with pytest.raises(StoreCorruption):
            store.verify()


class TestNamePatterns:
    def test_plain_text_is_substring(self):
        assert name_pattern_to_like("Foo") == "%Foo%"

    def test_wildcards(self):
        assert name_pattern_to_like("Get*By?d") == "Get%By_d"

    def test_empty_matches_everything(self):
        assert name_pattern_to_like("") == "%"

    def test_explicit_pattern_types(self):
        assert name_pattern_to_like("Get*", "substring") == "%Get*%"
        assert name_pattern_to_like("Player", "glob") == "Player"


class TestLargeIndex:
    FILES = 2000
    SYMBOLS_PER_FILE = 50

    @pytest.fixture(scope="class")
    def large_store(self, tmp_path_factory):
        store = IndexStore(tmp_path_factory.mktemp("large") / "index.db").open()
        for f in range(self.FILES):
            symbols = [
                sym(f"Type{f * self.SYMBOLS_PER_FILE + i}", line=i + 1)
                for i in range(self.SYMBOLS_PER_FILE)
            ]
            commit(store, f"src/Dir{f % 40}/File{f}.cs", *symbols)
        yield store
        store.close()

    def test_exact_lookup_on_100k_symbols(self, large_store):
        assert large_store.stats()["symbols"] == self.FILES * self.SYMBOLS_PER_FILE
        large_store.find_symbols("Type0", exact=True)

        started = time.perf_counter()
        results = large_store.find_symbols("Type54321", kind="class", exact=True)
        elapsed = time.perf_counter() - started

        assert [(s.path, s.start_line) for s, _ in results] == [("src/Dir6/File1086.cs", 22)]
        assert elapsed < 0.5

    @pytest.mark.parametrize("with_kind", [False, True])
    def test_exact_lookup_uses_name_index(self, large_store, with_kind):
        conn = sqlite3.connect(str(large_store.db_path))
        try:
            plan = conn.execute(
                "EXPLAIN QUERY PLAN " + find_symbols_sql(exact=True, with_kind=with_kind),
                {"name": "Type1", "kind": "class", "limit": 100},
            ).fetchall()
        finally:
            conn.close()

        details = " | ".join(row[-1] for row in plan)
        assert re.search(r"INDEX idx_symbols_name\b", details), details
