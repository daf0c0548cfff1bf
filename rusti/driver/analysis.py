"""Item recognition over token trees and the typed result of analysis.

``CrateAnalysis`` is the program handle the in-process strategy hands back to
its caller: the items a snippet defines, the crates it links, the paths it
imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Union

from lark import Token, Tree

from rusti.internals import errors as er
from rusti.internals.report import Reporter, Span, span_of

Node = Union[Token, Tree]


class ItemKind(str, Enum):
    FN = "fn"
    STRUCT = "struct"
    ENUM = "enum"
    UNION = "union"
    TRAIT = "trait"
    IMPL = "impl"
    MOD = "mod"
    CONST = "const"
    STATIC = "static"
    TYPE = "type"
    USE = "use"
    EXTERN_CRATE = "extern crate"
    FOREIGN = "extern block"
    MACRO = "macro_rules"

    @property
    def namespace(self) -> Optional[str]:
        if self in (ItemKind.FN, ItemKind.CONST, ItemKind.STATIC):
            return "value"
        if self in (ItemKind.STRUCT, ItemKind.ENUM, ItemKind.UNION, ItemKind.TRAIT,
                    ItemKind.TYPE, ItemKind.MOD):
            return "type"
        if self is ItemKind.MACRO:
            return "macro"
        return None


@dataclass
class Item:
    kind: ItemKind
    name: str
    public: bool = False
    signature: str = ""
    span: Optional[Span] = None
    attributes: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return self.signature or f"{self.kind.value} {self.name}"


@dataclass
class ExternCrate:
    name: str
    alias: Optional[str] = None
    path: Optional[Path] = None
    span: Optional[Span] = None

    @property
    def binding(self) -> str:
        return self.alias or self.name


@dataclass
class Import:
    path: str
    root: Optional[str]
    public: bool = False
    span: Optional[Span] = None


@dataclass
class CrateAnalysis:
    crate_name: str
    crate_type: str
    items: List[Item] = field(default_factory=list)
    externs: List[ExternCrate] = field(default_factory=list)
    imports: List[Import] = field(default_factory=list)
    attributes: List[str] = field(default_factory=list)

    def functions(self) -> List[Item]:
        return [i for i in self.items if i.kind is ItemKind.FN]

    def public_items(self) -> List[Item]:
        return [i for i in self.items if i.public]

    def find(self, name: str) -> Optional[Item]:
        for item in self.items:
            if item.name == name:
                return item
        return None


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

_NO_SPACE_AFTER = {"(", "[", "&", "::", "<", "#", ".", "'"}
_NO_SPACE_BEFORE = {")", "]", ",", ";", ":", "::", ">", "<", ".", "?", "!"}


def _atom(node: Node) -> Optional[str]:
    return str(node) if isinstance(node, Token) else None


def render(nodes: Iterable[Node]) -> str:
    """Render token trees back to compact source text."""
    out: List[str] = []
    prev: Optional[str] = None
    for node in nodes:
        if isinstance(node, Tree):
            inner = render(node.children)
            text = {"paren": f"({inner})", "bracket": f"[{inner}]"}.get(node.data, "{ … }")
            glue = node.data in ("paren", "bracket") and prev is not None and prev not in ("=", "->", ",")
        else:
            text = str(node)
            glue = text in _NO_SPACE_BEFORE
        if out and not glue and prev not in _NO_SPACE_AFTER:
            out.append(" ")
        out.append(text)
        prev = text if isinstance(node, Token) else ")"
    return "".join(out)


# ---------------------------------------------------------------------------
# Item recognition
# ---------------------------------------------------------------------------

_QUALIFIERS = {"unsafe", "async", "default"}
_BLOCK_KINDS = {
    "fn": ItemKind.FN, "struct": ItemKind.STRUCT, "enum": ItemKind.ENUM,
    "union": ItemKind.UNION, "trait": ItemKind.TRAIT, "impl": ItemKind.IMPL,
    "mod": ItemKind.MOD,
}
_SEMI_KINDS = {
    "const": ItemKind.CONST, "static": ItemKind.STATIC, "type": ItemKind.TYPE,
    "use": ItemKind.USE,
}


def _is(node: Node, text: str) -> bool:
    return isinstance(node, Token) and str(node) == text


def _is_group(node: Node, kind: str) -> bool:
    return isinstance(node, Tree) and node.data == kind


class ItemCollector:
    """Walks the top-level token trees and splits them into items.

    Recognition errors are emitted through ``reporter``; the collector keeps
    going so a snippet gets all its diagnostics at once.
    """

    def __init__(self, reporter: Reporter) -> None:
        self.reporter = reporter
        self.items: List[Item] = []
        self.externs: List[ExternCrate] = []
        self.imports: List[Import] = []
        self.crate_attributes: List[str] = []

    def collect(self, nodes: Sequence[Node]) -> None:
        pos = 0
        pending_attrs: List[str] = []
        seen_item = False
        while pos < len(nodes):
            node = nodes[pos]

            if _is(node, "#"):
                inner = pos + 1 < len(nodes) and _is(nodes[pos + 1], "!")
                bracket_at = pos + (2 if inner else 1)
                if bracket_at < len(nodes) and _is_group(nodes[bracket_at], "bracket"):
                    text = render(nodes[bracket_at].children)
                    if inner:
                        if seen_item:
                            er.emit(self.reporter, er.ERR.RW0001, span_of(node))
                        else:
                            self.crate_attributes.append(text)
                    else:
                        pending_attrs.append(text)
                    pos = bracket_at + 1
                    continue

            end = self._item(nodes, pos, pending_attrs)
            pending_attrs = []
            seen_item = True
            if end is None:
                return
            pos = end

    # -- single item ---------------------------------------------------------

    def _item(self, nodes: Sequence[Node], start: int, attrs: List[str]) -> Optional[int]:
        pos = start
        public = False
        if _is(nodes[pos], "pub"):
            public = True
            pos += 1
            if pos < len(nodes) and _is_group(nodes[pos], "paren"):
                pos += 1

        while pos < len(nodes) and _atom(nodes[pos]) in _QUALIFIERS:
            pos += 1
        if pos < len(nodes) and _is(nodes[pos], "const") and pos + 1 < len(nodes) and _is(nodes[pos + 1], "fn"):
            pos += 1

        if pos >= len(nodes):
            self._expected("item", "end of input", nodes[start])
            return None

        head = nodes[pos]
        keyword = _atom(head)

        if keyword == "extern":
            return self._extern(nodes, start, pos, public)
        if keyword == "macro_rules" and pos + 1 < len(nodes) and _is(nodes[pos + 1], "!"):
            return self._macro(nodes, start, pos, attrs)
        if keyword in _BLOCK_KINDS:
            return self._block_item(nodes, start, pos, _BLOCK_KINDS[keyword], public, attrs)
        if keyword in _SEMI_KINDS:
            return self._semi_item(nodes, start, pos, _SEMI_KINDS[keyword], public, attrs)

        self._expected("item", f"`{render([head])}`", head)
        return None

    def _until(self, nodes: Sequence[Node], pos: int, braces: bool) -> Optional[int]:
        """Index one past the `;` (or brace group if ``braces``) ending an item."""
        while pos < len(nodes):
            node = nodes[pos]
            if _is(node, ";"):
                return pos + 1
            if braces and _is_group(node, "brace"):
                return pos + 1
            pos += 1
        return None

    def _unterminated(self, what: str, node: Node) -> None:
        er.emit(self.reporter, er.ERR.RD0002, span_of(node), what=what)

    def _expected(self, expected: str, found: str, node: Node) -> None:
        er.emit(self.reporter, er.ERR.RD0001, span_of(node), expected=expected, found=found)

    def _block_item(self, nodes, start, pos, kind: ItemKind, public: bool, attrs) -> Optional[int]:
        end = self._until(nodes, pos + 1, braces=True)
        if end is None:
            self._unterminated(f"{kind.value} item", nodes[pos])
            return None
        if kind is ItemKind.IMPL:
            header = nodes[pos + 1:end - 1]
            name = render(header)
            signature = render(nodes[start:end - 1])
        else:
            name_node = nodes[pos + 1] if pos + 1 < end else None
            if name_node is None or not (isinstance(name_node, Token) and name_node.type == "IDENT"):
                self._expected("identifier", f"`{render([name_node])}`" if name_node is not None else "end of input",
                               name_node if name_node is not None else nodes[pos])
                return end
            name = str(name_node)
            signature = render(nodes[start:end - 1])
        self.items.append(Item(kind, name, public, signature, span_of(nodes[pos]), list(attrs)))
        return end

    def _semi_item(self, nodes, start, pos, kind: ItemKind, public: bool, attrs) -> Optional[int]:
        end = self._until(nodes, pos + 1, braces=False)
        if end is None:
            self._unterminated(f"{kind.value} item (missing `;`)", nodes[pos])
            return None
        body = nodes[pos + 1:end - 1]
        if kind is ItemKind.USE:
            path = render(body)
            root = None
            if body and isinstance(body[0], Token):
                root = str(body[1]) if _is(body[0], "::") and len(body) > 1 else str(body[0])
            self.imports.append(Import(path, root, public, span_of(nodes[pos])))
            return end
        if kind is ItemKind.STATIC and body and _is(body[0], "mut"):
            body = body[1:]
        if not body or not (isinstance(body[0], Token) and body[0].type == "IDENT"):
            self._expected("identifier", f"`{render(body[:1])}`" if body else "`;`", nodes[pos])
            return end
        signature = render(nodes[start:end - 1])
        if kind in (ItemKind.CONST, ItemKind.STATIC):
            signature = signature.split(" =")[0]
        self.items.append(Item(kind, str(body[0]), public, signature, span_of(nodes[pos]), list(attrs)))
        return end

    def _extern(self, nodes, start, pos, public: bool) -> Optional[int]:
        nxt = nodes[pos + 1] if pos + 1 < len(nodes) else None
        if nxt is not None and _is(nxt, "crate"):
            end = self._until(nodes, pos + 2, braces=False)
            if end is None:
                self._unterminated("extern crate (missing `;`)", nodes[pos])
                return None
            parts = nodes[pos + 2:end - 1]
            if not parts or not isinstance(parts[0], Token):
                self._expected("crate name", "`;`", nodes[pos])
                return end
            alias = str(parts[2]) if len(parts) >= 3 and _is(parts[1], "as") else None
            self.externs.append(ExternCrate(str(parts[0]), alias, span=span_of(parts[0])))
            return end
        if nxt is not None and isinstance(nxt, Token) and nxt.type in ("STRING", "RAW_STRING"):
            after = nodes[pos + 2] if pos + 2 < len(nodes) else None
            if after is not None and (_is(after, "fn") or _atom(after) in _QUALIFIERS):
                fn_at = pos + 2
                while fn_at < len(nodes) and not _is(nodes[fn_at], "fn"):
                    fn_at += 1
                if fn_at >= len(nodes):
                    self._unterminated("extern function", nodes[pos])
                    return None
                return self._block_item(nodes, start, fn_at, ItemKind.FN, public, [])
            end = self._until(nodes, pos + 2, braces=True)
            if end is None:
                self._unterminated("extern block", nodes[pos])
                return None
            self.items.append(Item(ItemKind.FOREIGN, f"extern {nxt}", public, f"extern {nxt}", span_of(nodes[pos])))
            return end
        if nxt is not None and _is(nxt, "fn"):
            return self._block_item(nodes, start, pos + 1, ItemKind.FN, public, [])
        if nxt is not None and _is_group(nxt, "brace"):
            self.items.append(Item(ItemKind.FOREIGN, "extern", public, "extern", span_of(nodes[pos])))
            return pos + 2
        self._expected("`crate`, `fn` or ABI string", f"`{render([nxt])}`" if nxt is not None else "end of input",
                       nxt if nxt is not None else nodes[pos])
        return None

    def _macro(self, nodes, start, pos, attrs) -> Optional[int]:
        name_node = nodes[pos + 2] if pos + 2 < len(nodes) else None
        body_at = pos + 3
        if name_node is None or body_at >= len(nodes) or not isinstance(nodes[body_at], Tree):
            self._unterminated("macro_rules! definition", nodes[pos])
            return None
        end = body_at + 1
        if not _is_group(nodes[body_at], "brace"):
            if end >= len(nodes) or not _is(nodes[end], ";"):
                self._unterminated("macro_rules! definition (missing `;`)", nodes[pos])
                return None
            end += 1
        elif end < len(nodes) and _is(nodes[end], ";"):
            end += 1
        self.items.append(Item(ItemKind.MACRO, str(name_node), False, f"macro_rules! {name_node}",
                               span_of(nodes[pos]), list(attrs)))
        return end


def duplicate_items(items: Iterable[Item]) -> Iterator[Item]:
    """Yield every item whose name was already taken in its namespace."""
    seen: set[tuple[str, str]] = set()
    for item in items:
        ns = item.kind.namespace
        if ns is None:
            continue
        key = (ns, item.name)
        if key in seen:
            yield item
        else:
            seen.add(key)
