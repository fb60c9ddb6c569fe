# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.

"""Tests for the language-server backed extractor (with a fake client)."""

from pathlib import Path

import pytest

from code_index.config import IndexConfiguration
from code_index.errors import BackendUnavailable
from code_index.extractors import SemanticExtractor, StructuralExtractor, create_extractor
from code_index.lsp.config import LANGUAGE_SERVERS, resolve_server_config
from code_index.models import SymbolKind


def _range(start_line, end_line, start_char=0):
    return {
        "start": {"line": start_line, "character": start_char},
        "end": {"line": end_line, "character": 1},
    }


class FakeClient:
    def __init__(self, result=None, start_ok=True, error=None):
        self.result = result or []
        self.start_ok = start_ok
        self.error = error
        self.started = 0
        self.stopped = False
        self.is_running = True
        self.requests = []

    def start(self, timeout=30.0):
        self.started += 1
        return self.start_ok

    def stop(self):
        self.stopped = True

    def document_symbols(self, uri, text, timeout):
        self.requests.append(uri)
        if self.error is not None:
            raise self.error
        return self.result


def make_extractor(tmp_path: Path, client: FakeClient) -> SemanticExtractor:
    return SemanticExtractor(
        root=tmp_path,
        server_config=LANGUAGE_SERVERS["csharp"],
        timeout=1.0,
        fallback=StructuralExtractor(),
        client_factory=lambda: client,
    )


DOCUMENT_SYMBOLS = [
    {
        "name": "Game",
        "kind": 3,
        "range": _range(0, 9),
        "selectionRange": _range(0, 0, 10),
        "children": [
            {
                "name": "Player",
                "kind": 5,
                "range": _range(2, 8),
                "selectionRange": _range(2, 2, 17),
                "children": [
                    {
                        "name": "Move(int, int)",
                        "kind": 6,
                        "range": _range(4, 6),
                        "selectionRange": _range(4, 4, 20),
                    },
                    {
                        "name": "Speed",
                        "kind": 7,
                        "range": _range(7, 7),
                        "selectionRange": _range(7, 7, 19),
                    },
                    {"name": "T", "kind": 26, "range": _range(2, 2)},
                ],
            }
        ],
    }
]


class TestSemanticExtractor:
    def test_flattens_document_symbols(self, tmp_path):
        client = FakeClient(result=DOCUMENT_SYMBOLS)
        extractor = make_extractor(tmp_path, client)

        symbols = extractor.extract("src/Player.cs", "ignored")

        assert [(s.name, s.kind) for s in symbols] == [
            ("Game", SymbolKind.NAMESPACE),
            ("Player", SymbolKind.CLASS),
            ("Move", SymbolKind.METHOD),
            ("Speed", SymbolKind.PROPERTY),
        ]
        player, move = symbols[1], symbols[2]
        assert player.namespace == "Game"
        assert player.container is None
        assert (player.start_line, player.end_line) == (3, 9)
        assert player.column == 18
        assert move.container == "Game.Player"
        assert move.namespace == "Game"
        assert client.requests == [(tmp_path / "src/Player.cs").as_uri()]

    def test_flattens_symbol_information(self, tmp_path):
        client = FakeClient(
            result=[
                {
                    "name": "Run",
                    "kind": 6,
                    "containerName": "Worker",
                    "location": {"uri": "file:///x", "range": _range(3, 5, 4)},
                }
            ]
        )
        symbols = make_extractor(tmp_path, client).extract("W.cs", "")

        assert len(symbols) == 1
        assert symbols[0].container == "Worker"
        assert (symbols[0].start_line, symbols[0].end_line, symbols[0].column) == (4, 6, 5)

    def test_falls_back_when_server_does_not_start(self, tmp_path):
        client = FakeClient(start_ok=False)
        extractor = make_extractor(tmp_path, client)

        first = extractor.extract("A.cs", "class Foo { void Bar() {} }")
        second = extractor.extract("B.cs", "class Baz { }")

        assert [s.name for s in first] == ["Foo", "Bar"]
        assert [s.name for s in second] == ["Baz"]
        assert client.started == 1
        assert client.requests == []

    def test_falls_back_on_timeout(self, tmp_path):
        client = FakeClient(error=TimeoutError())
        symbols = make_extractor(tmp_path, client).extract("A.cs", "class Foo { }")

        assert [s.name for s in symbols] == ["Foo"]

    def test_falls_back_when_server_exits(self, tmp_path):
        client = FakeClient(result=DOCUMENT_SYMBOLS)
        extractor = make_extractor(tmp_path, client)
        extractor.extract("A.cs", "class Foo { }")

        client.is_running = False
        symbols = extractor.extract("A.cs", "class Foo { }")

        assert [s.name for s in symbols] == ["Foo"]
        assert len(client.requests) == 1

    def test_falls_back_on_pipe_failure(self, tmp_path):
        client = FakeClient(error=BackendUnavailable("pipe closed"))
        symbols = make_extractor(tmp_path, client).extract("A.cs", "struct S { }")

        assert [s.kind for s in symbols] == [SymbolKind.STRUCT]

    def test_close_stops_client(self, tmp_path):
        client = FakeClient()
        extractor = make_extractor(tmp_path, client)
        extractor.extract("A.cs", "")

        extractor.close()

        assert client.stopped


class TestExtractorSelection:
    def test_structural_by_default(self, tmp_path):
        extractor = create_extractor(IndexConfiguration(root=tmp_path))
        assert isinstance(extractor, StructuralExtractor)

    def test_semantic_with_command_override(self, tmp_path):
        config = IndexConfiguration(
            root=tmp_path, extractor="semantic", lsp_command=["my-ls", "--stdio"]
        )
        extractor = create_extractor(config)

        assert isinstance(extractor, SemanticExtractor)
        assert extractor.server_config.command == ["my-ls", "--stdio"]
        assert extractor.server_config.language_id == "csharp"

    def test_unknown_server_raises(self, tmp_path):
        config = IndexConfiguration.model_construct(
            root=tmp_path, lsp_server="nope", lsp_command=None
        )
        with pytest.raises(ValueError, match="Unknown language server 'nope'"):
            resolve_server_config(config)

    def test_unknown_server_with_command_override(self, tmp_path):
        config = IndexConfiguration(root=tmp_path, lsp_server="custom", lsp_command=["my-ls"])

        assert resolve_server_config(config).command == ["my-ls"]
