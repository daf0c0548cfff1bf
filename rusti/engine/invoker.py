"""Compiler invocation strategies.

``ExternalProcessCompiler`` runs the compiler binary and produces a loadable
dylib. ``InProcessCompiler`` runs the in-process driver over a virtual file
and returns the typed analysis instead of an artifact. Both build their
arguments with ``CompileOptions.for_unit``.
"""
from __future__ import annotations

import logging
import subprocess
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

from rusti.driver.analysis import CrateAnalysis
from rusti.driver.driver import Compilation, CompileController, CompileState, Driver
from rusti.engine.chain import artifact_filename_for, source_filename_for
from rusti.engine.failures import ArtifactMissing, ExplicitBug, ToolchainNotFound, ToolchainRejected
from rusti.engine.options import CompileOptions
from rusti.engine.source import CompilationUnit, VirtualFileLoader, materialize

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LibraryOutcome:
    path: Path


@dataclass(frozen=True)
class AnalysisOutcome:
    analysis: CrateAnalysis


ArtifactOutcome = Union[LibraryOutcome, AnalysisOutcome]


class Compiler:
    """Contract: compile a unit or raise a ``CompileFailure``."""

    name = "abstract"

    def __init__(self, sysroot: Optional[Path], search_paths: Sequence[Path]) -> None:
        self.sysroot = sysroot
        self.search_paths = list(search_paths)

    def options_for(self, unit: CompilationUnit, **kwargs) -> CompileOptions:
        return CompileOptions.for_unit(unit, self.sysroot, self.search_paths, **kwargs)

    def compile(self, unit: CompilationUnit) -> ArtifactOutcome:
        raise NotImplementedError


class ExternalProcessCompiler(Compiler):
    name = "external"

    def __init__(self, binary: str, sysroot: Optional[Path], search_paths: Sequence[Path],
                 workdir: Path, prefer_dynamic: bool = True) -> None:
        # The working directory holds every generation, so dependencies resolve.
        paths = list(search_paths)
        if workdir not in paths:
            paths.append(workdir)
        super().__init__(sysroot, paths)
        self.binary = binary
        self.workdir = workdir
        self.prefer_dynamic = prefer_dynamic
        # Two sessions in one process must not produce identically mangled symbols.
        self.session_tag = uuid.uuid4().hex[:8]

    def command_for(self, unit: CompilationUnit) -> tuple[list[str], Path, Path]:
        source_path = self.workdir / source_filename_for(unit.generation)
        output = self.workdir / artifact_filename_for(unit.generation, attempt=unit.attempt)
        options = self.options_for(unit, crate_type="dylib", output=output,
                                   prefer_dynamic=self.prefer_dynamic,
                                   metadata=f"{unit.artifact_stem}-{self.session_tag}")
        return [self.binary, *options.to_argv(source_path)], source_path, output

    def compile(self, unit: CompilationUnit) -> LibraryOutcome:
        cmd, source_path, output = self.command_for(unit)
        materialize(unit, source_path)
        # A stale artifact would survive a failed compile and be loaded.
        output.unlink(missing_ok=True)

        log.debug("running %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, errors="replace")
        except OSError as e:
            raise ToolchainNotFound(self.binary, str(e)) from e

        if result.returncode != 0:
            output_text = (result.stderr or "") + (result.stdout or "")
            raise ToolchainRejected(unit.generation, result.returncode, output_text)
        if not output.exists():
            raise ArtifactMissing(output)
        return LibraryOutcome(output)


class _ResultSlot:
    """Holder written by the driver callback and read after the run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value: Optional[CrateAnalysis] = None

    def put(self, value: CrateAnalysis) -> None:
        with self._lock:
            self._value = value

    def take(self) -> Optional[CrateAnalysis]:
        with self._lock:
            value, self._value = self._value, None
            return value


class InProcessCompiler(Compiler):
    name = "in-process"

    def __init__(self, sysroot: Optional[Path], search_paths: Sequence[Path],
                 driver: Optional[Driver] = None) -> None:
        super().__init__(sysroot, search_paths)
        self.driver = driver or Driver()

    def compile(self, unit: CompilationUnit) -> AnalysisOutcome:
        options = self.options_for(unit, crate_type="lib", prefer_dynamic=False)
        loader = VirtualFileLoader.for_unit(unit)
        slot = _ResultSlot()

        def after_analysis(state: CompileState) -> None:
            slot.put(state.analysis)

        controller = CompileController()
        controller.after_analysis.stop = Compilation.STOP
        controller.after_analysis.callback = after_analysis

        self.driver.run(options, loader, unit.virtual_path, controller)
        analysis = slot.take()
        if analysis is None:
            raise ExplicitBug("driver stopped before analysis without reporting an error")
        return AnalysisOutcome(analysis)


def make_compiler(config, sysroot: Optional[Path], workdir: Path) -> Compiler:
    """Build the strategy named by ``config.strategy``."""
    if config.strategy == "external":
        return ExternalProcessCompiler(config.rustc, sysroot, config.search_paths, workdir,
                                       prefer_dynamic=config.prefer_dynamic)
    if config.strategy == "in-process":
        return InProcessCompiler(sysroot, config.search_paths)
    raise ValueError(f"unknown compilation strategy '{config.strategy}'")
