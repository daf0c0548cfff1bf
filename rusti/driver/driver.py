"""In-process compiler driver.

A small front end that runs inside the REPL process: it reads the compilation
unit through an injected file loader, parses it into token trees (lark),
recognizes items, resolves crates and imports against the compile options,
and hands the analysis to the caller's ``after_analysis`` callback. It has no
code generator; callers are expected to stop after analysis.

API:
    from rusti.driver.driver import Driver, CompileController, Compilation
    controller = CompileController()
    controller.after_analysis.stop = Compilation.STOP
    controller.after_analysis.callback = lambda state: print(state.analysis)
    Driver().run(options, loader, "<input>.rs", controller)
"""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Callable, Optional

from lark import Lark, UnexpectedInput, UnexpectedCharacters, UnexpectedEOF, UnexpectedToken

from rusti.driver.analysis import CrateAnalysis, ItemCollector, ItemKind, duplicate_items
from rusti.engine.failures import ExplicitBug, FatalError
from rusti.engine.options import CompileOptions
from rusti.internals import errors as er
from rusti.internals.report import Reporter, Span

log = logging.getLogger(__name__)

GRAMMAR_PATH = Path(__file__).with_name("grammar.lark")

# Crates always resolvable without an --extern declaration.
SYSROOT_CRATES = frozenset({"std", "core", "alloc", "proc_macro", "test"})
PATH_ROOTS = frozenset({"crate", "self", "super", "Self"})


class Compilation(Enum):
    STOP = "stop"
    CONTINUE = "continue"


@dataclass
class CompileState:
    phase: str
    options: CompileOptions
    input_path: str
    reporter: Reporter
    analysis: Optional[CrateAnalysis] = None


@dataclass
class PhaseController:
    stop: Compilation = Compilation.CONTINUE
    callback: Optional[Callable[[CompileState], None]] = None

    def fire(self, state: CompileState) -> bool:
        """Run the callback; True when compilation should stop here."""
        if self.callback is not None:
            self.callback(state)
        return self.stop is Compilation.STOP


@dataclass
class CompileController:
    after_parse: PhaseController = field(default_factory=PhaseController)
    after_analysis: PhaseController = field(default_factory=PhaseController)


@lru_cache(maxsize=1)
def _parser() -> Lark:
    return Lark.open(
        str(GRAMMAR_PATH),
        parser="lalr",
        lexer="basic",
        propagate_positions=True,
        maybe_placeholders=False,
    )


def _parse_error_span(e: UnexpectedInput) -> Optional[Span]:
    line = getattr(e, "line", None)
    col = getattr(e, "column", None)
    if line is None or col is None or line < 1:
        return None
    return Span(line, col, line, col)


def report_parse_error(e: UnexpectedInput, reporter: Reporter) -> None:
    """Translate a lark parse failure into a driver diagnostic."""
    span = _parse_error_span(e)
    if isinstance(e, UnexpectedCharacters):
        ch = e.char
        if ch in ('"', "'"):
            er.emit(reporter, er.ERR.RD0002, span, what="string literal" if ch == '"' else "character literal")
        elif ch == "/":
            er.emit(reporter, er.ERR.RD0002, span, what="block comment")
        else:
            er.emit(reporter, er.ERR.RD0001, span, expected="token", found=f"`{ch}`")
    elif isinstance(e, UnexpectedEOF):
        er.emit(reporter, er.ERR.RD0002, span, what="delimiter")
    elif isinstance(e, UnexpectedToken):
        if e.token.type == "$END":
            er.emit(reporter, er.ERR.RD0002, span, what="delimiter")
        else:
            expected = ", ".join(sorted(f"`{t}`" for t in e.expected)) or "delimiter"
            er.emit(reporter, er.ERR.RD0001, span, expected=expected, found=f"`{e.token}`")
    else:
        er.emit(reporter, er.ERR.RD0001, span, expected="item", found="unexpected input")


class Driver:
    """Runs parse, resolution and analysis for one crate."""

    def __init__(self, stream=None) -> None:
        # Resolved at report time so stderr capture sees the redirection.
        self._stream = stream

    def _abort(self, reporter: Reporter) -> None:
        reporter.print(self._stream or sys.stderr)
        raise FatalError(f"aborting due to {sum(1 for d in reporter.items if d.kind != 'warning')} previous error(s)")

    def run(self, options: CompileOptions, file_loader, input_path: str,
            controller: Optional[CompileController] = None) -> Optional[CrateAnalysis]:
        controller = controller or CompileController()
        source = file_loader.read_file(input_path)
        reporter = Reporter(source=source, filename=input_path)
        state = CompileState("parse", options, input_path, reporter)

        log.debug("in-process compile of %s as %s", input_path, options.crate_name)

        try:
            tree = _parser().parse(source)
        except UnexpectedInput as e:
            report_parse_error(e, reporter)
            self._abort(reporter)
        if controller.after_parse.fire(state):
            return None

        state.phase = "analysis"
        collector = ItemCollector(reporter)
        collector.collect(tree.children)
        analysis = CrateAnalysis(
            crate_name=options.crate_name or Path(input_path).stem,
            crate_type=options.crate_type,
            items=collector.items,
            externs=collector.externs,
            imports=collector.imports,
            attributes=collector.crate_attributes,
        )
        self._resolve(analysis, options, file_loader, reporter)
        for dup in duplicate_items(analysis.items):
            er.emit(reporter, er.ERR.E0428, dup.span, name=dup.name)

        if reporter.has_errors:
            self._abort(reporter)
        if reporter.items:
            reporter.print(self._stream or sys.stderr)

        state.analysis = analysis
        if controller.after_analysis.fire(state):
            return analysis

        state.phase = "codegen"
        reporter.bug("RE0900", "the in-process driver cannot generate code; stop after analysis", None)
        reporter.print(self._stream or sys.stderr)
        raise ExplicitBug("codegen requested from the in-process driver")

    @staticmethod
    def _resolve(analysis: CrateAnalysis, options: CompileOptions, file_loader, reporter: Reporter) -> None:
        externs = options.extern_map()
        for krate in analysis.externs:
            if krate.name in SYSROOT_CRATES:
                continue
            path = externs.get(krate.name)
            if path is None or not file_loader.file_exists(path):
                er.emit(reporter, er.ERR.E0463, krate.span, name=krate.name)
                continue
            krate.path = Path(path)

        known_roots = set(SYSROOT_CRATES) | PATH_ROOTS | set(externs)
        known_roots |= {k.binding for k in analysis.externs}
        known_roots |= {i.name for i in analysis.items if i.kind in (ItemKind.MOD, ItemKind.ENUM)}
        for imp in analysis.imports:
            if imp.root is not None and imp.root not in known_roots:
                er.emit(reporter, er.ERR.E0432, imp.span, path=imp.path)
