# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.

"""Tests for symbol search and reference scanning."""

import pytest

PLAYER = """namespace Game
{
    public class Player
    {
        public int Health { get; set; }

        public void Damage(int amount)
        {
            // Health is reduced here
            Health -= amount;
            Log("Health changed");
        }
    }
}
"""

ENEMY = """namespace Game
{
    public class Enemy
    {
        public void Attack(Player target)
        {
            target.Health -= 10;
            target.Damage(5);
        }
    }
}
"""


@pytest.fixture
def service(write, make_service, run_build):
    write("src/Player.cs", PLAYER)
    write("src/Enemy.cs", ENEMY)
    write("tests/PlayerTests.cs", "class PlayerTests { void HealthStartsFull() {} }")
    service = make_service()
    run_build(service, "full")
    return service


class TestFindSymbol:
    def test_ranked_results(self, service):
        matches = service.find_symbol("Player")

        assert [(m.name, m.rank) for m in matches] == [("Player", 0), ("PlayerTests", 2)]
        assert matches[0].namespace == "Game"

    def test_kind_filter_is_validated(self, service):
        assert [m.name for m in service.find_symbol("Health", kind="PROPERTY")] == ["Health"]
        with pytest.raises(ValueError):
            service.find_symbol("Health", kind="widget")

    def test_container_path_lookup(self, service):
        matches = service.find_symbol("Player/Damage")

        assert [(m.name, m.container) for m in matches] == [("Damage", "Player")]
        assert service.find_symbol("Enemy.Damage") == []

    def test_get_symbols_accepts_absolute_paths(self, service, repo):
        symbols = service.get_symbols(str(repo / "src" / "Enemy.cs"))

        assert [s.name for s in symbols] == ["Game", "Enemy", "Attack"]
        assert service.get_symbols("src/Unknown.cs") == []
        assert service.get_symbols("/outside/root.cs") == []


class TestSearch:
    def test_pattern_search_with_snippets(self, service):
        page = service.search("Dam*", snippet_context=1)

        assert page.total == 1
        item = page.items[0]
        assert item.name == "Damage"
        assert "public void Damage(int amount)" in item.snippet
        assert item.snippet.count("\n") == 2

    def test_pagination(self, service):
        first = service.search("*", page=1, page_size=3, snippet_context=0)
        last = service.search("*", page=3, page_size=3, snippet_context=0)

        assert first.total == 9
        assert first.has_more
        assert [i.snippet for i in first.items] == [None, None, None]
        assert len(last.items) == 3
        assert not last.has_more
        assert service.search("*", page=4, page_size=3).items == []

    def test_include_and_exclude(self, service):
        included = service.search("Health*", include=["tests/**"])
        excluded = service.search("Health*", exclude=["tests/**"])

        assert [i.name for i in included.items] == ["HealthStartsFull"]
        assert [i.name for i in excluded.items] == ["Health"]

    def test_snippets_are_trimmed(self, write, make_service, run_build):
        write("Long.cs", "class Long { void " + "X" * 600 + "() {} }")
        service = make_service(max_snippet_chars=50)
        run_build(service, "full")

        item = service.search("Long", snippet_context=1).items[0]

        assert len(item.snippet) == 50
        assert item.snippet.endswith("...")

    def test_regex_pattern_type(self, service):
        page = service.search(r"^(Attack|Damage)$", pattern_type="regex", snippet_context=0)

        assert [(i.path, i.name) for i in page.items] == [
            ("src/Enemy.cs", "Attack"),
            ("src/Player.cs", "Damage"),
        ]

    def test_regex_flags(self, service):
        sensitive = service.search("^health", pattern_type="regex")
        insensitive = service.search("^health", pattern_type="regex", flags=["i"])

        assert sensitive.total == 0
        assert [i.name for i in insensitive.items] == ["Health", "HealthStartsFull"]

    def test_invalid_regex_and_flags(self, service):
        with pytest.raises(ValueError, match="Invalid regex"):
            service.search("Health(", pattern_type="regex")
        with pytest.raises(ValueError, match="Unsupported regex flag"):
            service.search("Health", pattern_type="regex", flags=["x"])


class TestFindReferences:
    def test_ignores_comments_and_strings(self, service):
        page = service.find_references("Health")

        hits = [(h.path, h.line) for h in page.items]
        assert hits == [
            ("src/Enemy.cs", 7),
            ("src/Player.cs", 5),
            ("src/Player.cs", 10),
        ]
        assert not page.truncated

    def test_identifier_boundaries(self, service):
        page = service.find_references("Play")

        assert page.items == []

    def test_declarations_are_flagged(self, service):
        page = service.find_references("Damage")

        flags = {(h.path, h.line): h.is_declaration for h in page.items}
        assert flags == {("src/Enemy.cs", 8): False, ("src/Player.cs", 7): True}

    def test_scope_prefix_and_glob(self, service):
        by_prefix = service.find_references("Player", scope="src")
        by_glob = service.find_references("Player", scope="tests/**")

        assert {h.path for h in by_prefix.items} == {"src/Enemy.cs", "src/Player.cs"}
        assert by_glob.items == []

    def test_file_scope_matches_only_that_file(self, repo, write, make_service, run_build):
        write("A.cs", "class A { void Run() { Helper(); } }")
        write("sub/A.cs", "class B { void Go() { Helper(); } }")
        service = make_service()
        run_build(service, "full")

        root_file = service.find_references("Helper", scope="A.cs")
        nested = service.find_references("Helper", scope="sub/A.cs")
        absolute = service.find_references("Helper", scope=str(repo / "A.cs"))

        assert [h.path for h in root_file.items] == ["A.cs"]
        assert [h.path for h in nested.items] == ["sub/A.cs"]
        assert [h.path for h in absolute.items] == ["A.cs"]
        assert root_file.files_scanned == 1

    def test_pagination_and_per_file_cap(self, write, make_service, run_build):
        body = "\n".join(f"    int f{i} = Value;" for i in range(8))
        write("A.cs", "class A {\n" + body + "\n}\n")
        write("B.cs", "class B { int x = Value; }")
        write("C.cs", "class C { int y = Value; }")
        service = make_service(max_matches_per_file=5)
        run_build(service, "full")

        first = service.find_references("Value", page=1, page_size=4)
        second = service.find_references("Value", page=2, page_size=4)

        assert first.truncated
        assert len(first.items) == 4
        assert first.has_more
        assert [(h.path, h.line) for h in second.items] == [
            ("A.cs", 6),
            ("B.cs", 1),
            ("C.cs", 1),
        ]
        assert not second.has_more

    def test_column_and_text(self, service):
        hit = service.find_references("Attack").items[0]

        assert hit.line == 5
        assert hit.column == 21
        assert hit.text == "public void Attack(Player target)"
