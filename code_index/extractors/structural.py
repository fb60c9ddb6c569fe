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

"""Structural C# symbol extractor.

Works offline on raw text, no compiler or language server needed:

1. Comments, string/char literals and preprocessor lines are blanked out
   (replaced by spaces, newlines kept) so offsets stay valid and braces
   inside literals never count.
2. The masked text is split on ``{``, ``}`` and ``;``. The text between two
   delimiters is a declaration header, classified with regular expressions
   according to the enclosing scope (namespace, type, enum, or an opaque
   block such as a method body).
3. A scope stack tracks nesting; a symbol's end line is the line of the
   brace or semicolon that closes it, or the last line for unclosed scopes.

Recovered kinds: namespace (block and file-scoped), class/record, struct,
interface, enum (+ members as fields), delegate, event, method, constructor,
property (including indexers) and field (including multi-declarators).
"""

import re
from bisect import bisect_left
from dataclasses import dataclass
from typing import List, Optional, Tuple

from code_index.errors import ExtractionError
from code_index.extractors.base import SymbolExtractor
from code_index.models import ExtractedSymbol, SymbolKind

_MASK_RE = re.compile(
    r"""
      //[^\n]*                                      # line comment
    | /\*[\s\S]*?(?:\*/|\Z)                         # block comment
    | ^[ \t]*\#[^\n]*                               # preprocessor directive
    | \$*(?P<raw>"{3,})[\s\S]*?(?:(?P=raw)|\Z)      # raw string literal
    | (?:\$@|@\$|@)"(?:[^"]|"")*(?:"|\Z)            # verbatim string
    | \$?"(?:[^"\\\n]|\\.)*"?                       # regular / interpolated string
    | '(?:[^'\\\n]|\\.)+'                           # char literal
    """,
    re.MULTILINE | re.VERBOSE,
)
_NOT_NEWLINE_RE = re.compile(r"[^\n]")
_DELIM_RE = re.compile(r"[{};]")

MODIFIERS = frozenset(
    {
        "public",
        "private",
        "protected",
        "internal",
        "static",
        "abstract",
        "sealed",
        "partial",
        "unsafe",
        "readonly",
        "ref",
        "new",
        "file",
        "extern",
        "virtual",
        "override",
        "async",
        "const",
        "volatile",
        "required",
        "fixed",
        "implicit",
        "explicit",
        "scoped",
    }
)
_KEYWORDS = frozenset(
    {
        "if",
        "for",
        "foreach",
        "while",
        "switch",
        "catch",
        "using",
        "lock",
        "return",
        "new",
        "typeof",
        "sizeof",
        "nameof",
        "base",
        "this",
        "default",
        "checked",
        "unchecked",
        "throw",
        "await",
    }
)
_MODS = r"(?:(?:" + "|".join(sorted(MODIFIERS)) + r")\s+)*"

_TYPE_RE = re.compile(
    _MODS
    + r"(?P<kw>record\s+struct|record\s+class|record|class|struct|interface|enum)"
    + r"\s+(?P<name>@?[A-Za-z_]\w*)"
)
_NAMESPACE_RE = re.compile(r"namespace\s+(?P<name>@?[A-Za-z_][\w.@]*)\s*$")
_DELEGATE_RE = re.compile(_MODS + r"delegate\s+(?P<rest>.*)$", re.S)
_EVENT_RE = re.compile(_MODS + r"event\s+(?P<rest>.*)$", re.S)
_OPERATOR_RE = re.compile(r"\boperator\b\s*(?P<op>[^\s(]+)\s*\(")
_INDEXER_RE = re.compile(r"\bthis\s*\[")
_NAME_AT_END_RE = re.compile(r"(?<![\w@])(?P<name>@?[A-Za-z_]\w*)\s*$")
_CALLABLE_NAME_RE = re.compile(
    r"(?<![\w@~])(?P<name>~?@?[A-Za-z_]\w*)\s*(?:<[^()<>]*(?:<[^()<>]*>[^()<>]*)*>)?\s*$"
)
_LEADING_RE = re.compile(r"(?:\s*\[[^\[\]]*(?:\[[^\[\]]*\][^\[\]]*)*\])*\s*")
_WORD_RE = re.compile(r"@?[A-Za-z_]\w*")

_TYPE_KEYWORDS = {
    "class": SymbolKind.CLASS,
    "record": SymbolKind.CLASS,
    "record class": SymbolKind.CLASS,
    "record struct": SymbolKind.STRUCT,
    "struct": SymbolKind.STRUCT,
    "interface": SymbolKind.INTERFACE,
    "enum": SymbolKind.ENUM,
}


def mask_source(content: str) -> str:
    """Blank out comments, literals and preprocessor lines, keeping offsets."""
    return _MASK_RE.sub(lambda m: _NOT_NEWLINE_RE.sub(" ", m.group()), content)


def _strip_modifiers(text: str) -> str:
    words = text.split()
    while words and words[0] in MODIFIERS:
        words.pop(0)
    return " ".join(words)


def _scan_top_level(header: str) -> Tuple[List[int], int, int]:
    """Find top-level '(' positions before the first '=>' or assignment.

    Returns:
        Tuple of (paren offsets, arrow offset or -1, assignment offset or -1)
    """
    parens: List[int] = []
    depth = angle = 0
    arrow = assign = -1
    i, n = 0, len(header)
    while i < n:
        c = header[i]
        if c in "([{":
            if c == "(" and depth == 0 and angle == 0:
                parens.append(i)
            depth += 1
        elif c in ")]}":
            depth = max(0, depth - 1)
        elif depth == 0:
            if c == "<":
                angle += 1
            elif c == ">":
                angle = max(0, angle - 1)
            elif c == "=":
                nxt = header[i + 1 : i + 2]
                if nxt == ">":
                    arrow = i
                    break
                if nxt == "=":
                    i += 1
                elif header[i - 1 : i] not in ("!", "<", ">"):
                    assign = i
                    break
        i += 1
    return parens, arrow, assign


def _split_top_level(text: str) -> List[Tuple[int, int]]:
    """Split on top-level commas; generic arguments are respected until the
    first '=' (initializer expressions may contain comparisons)."""
    pieces: List[Tuple[int, int]] = []
    depth = angle = 0
    seen_assign = False
    start = 0
    for i, c in enumerate(text):
        if c in "([{":
            depth += 1
        elif c in ")]}":
            depth = max(0, depth - 1)
        elif depth == 0:
            if c == "=":
                seen_assign = True
            elif c == "<" and not seen_assign:
                angle += 1
            elif c == ">" and not seen_assign:
                angle = max(0, angle - 1)
            elif c == "," and angle == 0:
                pieces.append((start, i))
                start = i + 1
    pieces.append((start, len(text)))
    return pieces


def _typed_name(decl: str) -> Optional[Tuple[str, int]]:
    """Name at the end of ``<modifiers> <type> <name>``, with its offset."""
    m = _NAME_AT_END_RE.search(decl)
    if not m or m.group("name") in _KEYWORDS:
        return None
    if not _strip_modifiers(decl[: m.start()]):
        return None
    return m.group("name"), m.start("name")


def _declarators(text: str) -> List[Tuple[str, int]]:
    """Names declared by ``<type> a = 1, b, c = f(x)``."""
    names: List[Tuple[str, int]] = []
    for index, (start, end) in enumerate(_split_top_level(text)):
        piece = text[start:end]
        eq = piece.find("=")
        decl = piece[:eq] if eq >= 0 else piece
        if index == 0:
            named = _typed_name(decl)
            if named is None:
                return []
            names.append((named[0], start + named[1]))
            continue
        m = _NAME_AT_END_RE.search(decl)
        if m and not decl[: m.start()].strip():
            names.append((m.group("name"), start + m.start("name")))
    return names


def _callable_name(header: str, paren: int) -> Optional[re.Match]:
    m = _CALLABLE_NAME_RE.search(header, 0, paren)
    if m is None:
        return None
    name = m.group("name").lstrip("@")
    if name in MODIFIERS or name in _KEYWORDS:
        return None
    return m


@dataclass
class _Scope:
    kind: str  # namespace, type, enum, block
    name: Optional[str] = None
    namespace: Optional[str] = None
    symbol: Optional[ExtractedSymbol] = None
    file_scoped: bool = False


class _Scan:
    """Single-use scanning state for one file."""

    def __init__(self, path: str, content: str):
        self.path = path
        if content.startswith("\ufeff"):
            content = " " + content[1:]
        self.text = mask_source(content)
        self.newlines = [m.start() for m in re.finditer("\n", self.text)]
        self.stack: List[_Scope] = []
        self.symbols: List[ExtractedSymbol] = []

    def line_of(self, offset: int) -> int:
        return bisect_left(self.newlines, offset) + 1

    def _column_of(self, offset: int, line: int) -> int:
        line_start = self.newlines[line - 2] + 1 if line > 1 else 0
        return offset - line_start + 1

    def run(self) -> List[ExtractedSymbol]:
        seg_start = 0
        for m in _DELIM_RE.finditer(self.text):
            pos = m.start()
            ch = m.group()
            top = self.stack[-1] if self.stack else None
            if top is not None and top.kind == "block":
                if ch == "{":
                    self.stack.append(_Scope("block", namespace=top.namespace))
                elif ch == "}":
                    self._close(pos)
            else:
                segment = self.text[seg_start:pos]
                if ch == "{":
                    self._open(segment, seg_start, top)
                elif ch == ";":
                    self._statement(segment, seg_start, pos, top)
                else:
                    if top is not None and top.kind == "enum":
                        self._enum_members(segment, seg_start, top)
                    self._close(pos)
            seg_start = pos + 1

        stripped = len(self.text.rstrip())
        eof_line = self.line_of(stripped - 1) if stripped else 1
        for scope in self.stack:
            if scope.symbol is not None:
                scope.symbol.end_line = eof_line
        return self.symbols

    def _close(self, pos: int) -> None:
        if not self.stack or self.stack[-1].file_scoped:
            raise ExtractionError(self.path, f"unbalanced '}}' at line {self.line_of(pos)}")
        scope = self.stack.pop()
        if scope.symbol is not None:
            scope.symbol.end_line = self.line_of(pos)

    def _emit(
        self,
        kind: SymbolKind,
        name: str,
        offset: int,
        container: Optional[str],
        namespace: Optional[str],
    ) -> ExtractedSymbol:
        line = self.line_of(offset)
        symbol = ExtractedSymbol(
            name=name.lstrip("@"),
            kind=kind,
            start_line=line,
            end_line=line,
            column=self._column_of(offset, line),
            container=container,
            namespace=namespace,
        )
        self.symbols.append(symbol)
        return symbol

    @staticmethod
    def _header(segment: str, seg_start: int) -> Tuple[str, int]:
        lead = _LEADING_RE.match(segment).end()
        return segment[lead:].rstrip(), seg_start + lead

    def _emit_type(self, m: re.Match, base: int, top: Optional[_Scope]) -> ExtractedSymbol:
        kind = _TYPE_KEYWORDS[" ".join(m.group("kw").split())]
        container = top.name if top is not None and top.kind == "type" else None
        namespace = top.namespace if top is not None else None
        return self._emit(kind, m.group("name"), base + m.start("name"), container, namespace)

    def _open(self, segment: str, seg_start: int, top: Optional[_Scope]) -> None:
        header, base = self._header(segment, seg_start)
        namespace = top.namespace if top is not None else None

        if top is None or top.kind == "namespace":
            m = _NAMESPACE_RE.match(header)
            if m:
                name = m.group("name")
                full = f"{namespace}.{name}" if namespace else name
                symbol = self._emit(
                    SymbolKind.NAMESPACE, name, base + m.start("name"), None, namespace
                )
                self.stack.append(_Scope("namespace", full, full, symbol))
                return

        if top is None or top.kind in ("namespace", "type"):
            m = _TYPE_RE.match(header)
            if m:
                symbol = self._emit_type(m, base, top)
                kind = "enum" if symbol.kind == SymbolKind.ENUM else "type"
                self.stack.append(_Scope(kind, symbol.name, namespace, symbol))
                return

        symbol = None
        if top is not None and top.kind == "type":
            members = self._members(header, base, top, "{")
            symbol = members[-1] if members else None
        self.stack.append(_Scope("block", namespace=namespace, symbol=symbol))

    def _statement(self, segment: str, seg_start: int, pos: int, top: Optional[_Scope]) -> None:
        header, base = self._header(segment, seg_start)
        if not header:
            return
        namespace = top.namespace if top is not None else None
        end_line = self.line_of(pos)

        if top is None:
            m = _NAMESPACE_RE.match(header)
            if m:
                name = m.group("name")
                symbol = self._emit(SymbolKind.NAMESPACE, name, base + m.start("name"), None, None)
                self.stack.append(_Scope("namespace", name, name, symbol, file_scoped=True))
                return

        if top is None or top.kind in ("namespace", "type"):
            m = _TYPE_RE.match(header)
            if m:
                self._emit_type(m, base, top).end_line = end_line
                return

        if top is None or top.kind == "namespace":
            m = _DELEGATE_RE.match(header)
            if m:
                for symbol in self._delegate(m, base, None, namespace):
                    symbol.end_line = end_line
            return

        if top.kind == "type":
            for symbol in self._members(header, base, top, ";"):
                symbol.end_line = end_line

    def _delegate(
        self, m: re.Match, base: int, container: Optional[str], namespace: Optional[str]
    ) -> List[ExtractedSymbol]:
        rest = m.group("rest")
        rest_base = base + m.start("rest")
        parens, _, _ = _scan_top_level(rest)
        for paren in parens:
            named = _callable_name(rest, paren)
            if named:
                return [
                    self._emit(
                        SymbolKind.DELEGATE,
                        named.group("name"),
                        rest_base + named.start("name"),
                        container,
                        namespace,
                    )
                ]
        return []

    def _members(
        self, header: str, base: int, scope: _Scope, terminator: str
    ) -> List[ExtractedSymbol]:
        """Classify a member declaration inside a type body."""
        container = scope.name
        namespace = scope.namespace

        def emit(kind: SymbolKind, name: str, offset: int) -> ExtractedSymbol:
            return self._emit(kind, name, base + offset, container, namespace)

        m = _DELEGATE_RE.match(header)
        if m:
            return self._delegate(m, base, container, namespace)

        m = _EVENT_RE.match(header)
        if m:
            rest_start = m.start("rest")
            return [
                emit(SymbolKind.EVENT, name, rest_start + offset)
                for name, offset in _declarators(m.group("rest"))
            ]

        m = _OPERATOR_RE.search(header)
        if m:
            return [emit(SymbolKind.METHOD, f"operator {m.group('op')}", m.start())]

        parens, arrow, assign = _scan_top_level(header)
        for paren in parens:
            named = _callable_name(header, paren)
            if named is None:
                continue
            name = named.group("name")
            if _strip_modifiers(header[: named.start()]) or name.startswith("~"):
                kind = SymbolKind.METHOD
            elif name.lstrip("@") == container:
                kind = SymbolKind.CONSTRUCTOR
            else:
                kind = SymbolKind.METHOD
            return [emit(kind, name, named.start("name"))]

        end = arrow if arrow >= 0 else assign if assign >= 0 else len(header)
        decl = header[:end]
        m = _INDEXER_RE.search(decl)
        if m:
            return [emit(SymbolKind.PROPERTY, "this", m.start())]

        if arrow >= 0 or (terminator == "{" and assign < 0):
            named_property = _typed_name(decl)
            if named_property is None:
                return []
            return [emit(SymbolKind.PROPERTY, named_property[0], named_property[1])]

        return [emit(SymbolKind.FIELD, name, offset) for name, offset in _declarators(header)]

    def _enum_members(self, segment: str, seg_start: int, scope: _Scope) -> None:
        for start, end in _split_top_level(segment):
            lead = _LEADING_RE.match(segment, start).end()
            if lead >= end:
                continue
            m = _WORD_RE.match(segment, lead)
            if m and m.end() <= end:
                self._emit(
                    SymbolKind.FIELD,
                    m.group(),
                    seg_start + m.start(),
                    scope.name,
                    scope.namespace,
                )


class StructuralExtractor(SymbolExtractor):
    """Regex/brace-structural C# extractor. Always available."""

    name = "structural"

    def extract(self, path: str, content: str) -> List[ExtractedSymbol]:
        if "\x00" in content:
            raise ExtractionError(path, "binary content")
        return _Scan(path, content).run()
