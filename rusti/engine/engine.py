"""The execution engine: one controller driving serialized evaluations.

API:
    from rusti.config import EngineConfig
    from rusti.engine.engine import ExecutionEngine
    engine = ExecutionEngine(EngineConfig())
    engine.evaluate("fn get() -> i32 { 42 }")
    engine.evaluate('fn show() { println!("{}", get()); }', entry="show")
"""
from __future__ import annotations

import logging
import sys
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from rusti.engine.chain import ArtifactChain, ArtifactRecord
from rusti.engine.failures import RustiError, ToolchainRejected, WorkDirError
from rusti.engine.invoker import (
    AnalysisOutcome,
    ArtifactOutcome,
    Compiler,
    InProcessCompiler,
    LibraryOutcome,
    make_compiler,
)
from rusti.engine.loader import DynamicLoader
from rusti.engine.monitor import FaultMonitor, MonitorResult, MonitorState, make_monitor
from rusti.engine.source import CompilationUnit
from rusti.engine.workdir import WorkDir
from rusti.internals import errors as er
from rusti.internals.report import Reporter
from rusti.toolchain.locator import ToolchainLocator

log = logging.getLogger(__name__)


class EvalStatus(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"      # the compiler refused the snippet
    FAILED = "failed"          # load/symbol failure: an engine invariant broke
    RECOVERED = "recovered"    # abnormal worker termination


@dataclass
class Evaluation:
    status: EvalStatus
    generation: Optional[int] = None
    outcome: Optional[ArtifactOutcome] = None
    failure: Optional[RustiError] = None
    diagnostics: str = ""

    @property
    def ok(self) -> bool:
        return self.status is EvalStatus.SUCCESS


class ExecutionEngine:
    """Compiles, loads and runs snippets on top of a growing artifact chain.

    Construction resolves the toolchain; its errors are fatal and propagate.
    After that, ``evaluate`` never raises for anything the snippet does.
    """

    def __init__(self, config, *, locator: Optional[ToolchainLocator] = None,
                 compiler: Optional[Compiler] = None, loader: Optional[DynamicLoader] = None,
                 monitor: Optional[FaultMonitor] = None, stream=None) -> None:
        self.config = config
        self._stream = stream
        self._lock = threading.RLock()
        self.locator = locator or ToolchainLocator(config.rustc)

        if config.sysroot is not None:
            self._sysroot = Path(config.sysroot)
            rustc_version = "unknown"
        else:
            self._sysroot = self.locator.resolve()
            rustc_version = self.locator.version()
        self.rustc_version = rustc_version

        self.workdir = WorkDir(config.workdir)
        self.workdir.prepare(self._sysroot, rustc_version)

        self._chain = ArtifactChain()
        # failed attempts at the next generation; each gets its own artifact path
        self._attempts = 0
        self.compiler = compiler or make_compiler(config, self._sysroot, self.workdir.path)
        self.loader = loader or DynamicLoader()
        self.monitor = monitor or make_monitor(config, stream)
        self._analyzer = InProcessCompiler(self._sysroot, config.search_paths)

    @property
    def chain(self) -> ArtifactChain:
        return self._chain

    @property
    def sysroot(self) -> Path:
        return self._sysroot

    @property
    def search_paths(self) -> list[Path]:
        return list(self.config.search_paths)

    @property
    def stream(self):
        return self._stream or sys.stderr

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _cycle(self, compiler: Compiler, unit: CompilationUnit) -> ArtifactOutcome:
        """Worker body: compile, then load and call for library outcomes."""
        outcome = compiler.compile(unit)
        if isinstance(outcome, LibraryOutcome):
            self.loader.ensure_loaded(path for _, path in unit.dependencies)
            if unit.exported_symbol:
                self.loader.load_and_call(outcome.path, unit.exported_symbol)
            else:
                self.loader.load(outcome.path)
        return outcome

    def evaluate(self, body: str, entry: Optional[str] = None) -> Evaluation:
        """Run one snippet; ``entry`` names a function of ``body`` to call."""
        with self._lock:
            unit = CompilationUnit.for_chain(self._chain, body, entry, attempt=self._attempts)
            evaluation = self._run(self.compiler, unit)
            self._attempts = 0 if evaluation.generation is not None else self._attempts + 1
            return evaluation

    def analyze(self, body: str) -> Evaluation:
        """Run the in-process driver over a snippet without loading anything."""
        with self._lock:
            unit = CompilationUnit.for_chain(self._chain, body)
            return self._run(self._analyzer, unit)

    def _run(self, compiler: Compiler, unit: CompilationUnit) -> Evaluation:
        log.debug("evaluating generation %d with %s compiler", unit.generation, compiler.name)
        result = self.monitor.run(self._cycle, compiler, unit)
        return self._settle(unit, result)

    def _settle(self, unit: CompilationUnit, result: MonitorResult) -> Evaluation:
        if result.state is MonitorState.RECOVERED:
            return Evaluation(EvalStatus.RECOVERED, diagnostics=result.captured)

        if result.failure is not None:
            return self._report_failure(unit, result)

        outcome: ArtifactOutcome = result.value
        if isinstance(outcome, AnalysisOutcome):
            return Evaluation(EvalStatus.SUCCESS, outcome=outcome, diagnostics=result.captured)

        record = ArtifactRecord.for_generation(unit.generation, outcome.path)
        try:
            self.workdir.record_generation(record)
        except WorkDirError as e:
            return self._report_failure(unit, result, e)
        generation = self._chain.append(record)
        log.debug("generation %d -> %s", generation, outcome.path)
        return Evaluation(EvalStatus.SUCCESS, generation=generation, outcome=outcome,
                          diagnostics=result.captured)

    def _report_failure(self, unit: CompilationUnit, result: MonitorResult,
                        failure: Optional[RustiError] = None) -> Evaluation:
        failure = failure or result.failure
        reporter = Reporter(filename=unit.crate_name)
        parts = [result.captured] if result.captured else []

        if isinstance(failure, ToolchainRejected):
            if failure.output:
                self.stream.write(failure.output)
                parts.append(failure.output)
        er.emit(reporter, er.ERR[failure.code], None, **failure.kwargs)
        reporter.print(self.stream)
        parts.append(reporter.format(use_color=False, use_unicode=False))

        # failures outside the evaluation taxonomy (the manifest) are the engine's own
        status = EvalStatus.FAILED if getattr(failure, "internal", True) else EvalStatus.REJECTED
        return Evaluation(status, failure=failure, diagnostics="\n".join(p for p in parts if p))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def describe_chain(self) -> list[str]:
        return [
            f"{r.generation:>4}  {r.crate_name:<20s} {r.exported_symbol:<20s} {r.artifact_path}"
            for r in self._chain
        ]
