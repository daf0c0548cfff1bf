from __future__ import annotations

import io
import shutil
import subprocess
from pathlib import Path

import pytest

from rusti.config import EngineConfig
from rusti.engine.chain import artifact_filename_for
from rusti.engine.invoker import Compiler, LibraryOutcome
from rusti.engine.loader import DynamicLoader
from rusti.engine.monitor import FaultMonitor


class FakeLocator:
    """Stands in for ``ToolchainLocator`` without running a compiler."""

    def __init__(self, sysroot: Path, version: str = "rustc 1.0.0-fake") -> None:
        self.sysroot = sysroot
        self._version = version
        self.calls = 0

    def resolve(self) -> Path:
        self.calls += 1
        return self.sysroot

    def version(self) -> str:
        return self._version


class ScriptedCompiler(Compiler):
    """Compiler whose outcomes are scripted per call.

    Each step is either ``None`` (write an empty artifact and succeed) or an
    exception instance to raise.
    """

    name = "scripted"

    def __init__(self, workdir: Path, steps=()) -> None:
        super().__init__(None, [])
        self.workdir = workdir
        self.steps = list(steps)
        self.units = []

    def compile(self, unit):
        self.units.append(unit)
        step = self.steps.pop(0) if self.steps else None
        if isinstance(step, BaseException):
            raise step
        path = self.workdir / artifact_filename_for(unit.generation, attempt=unit.attempt)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"")
        return LibraryOutcome(path)


class FakeFunction:
    def __init__(self, status: int = 0, effect=None) -> None:
        self.status = status
        self.effect = effect
        self.argtypes = None
        self.restype = None
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.effect is not None:
            self.effect()
        return self.status


class FakeLibrary:
    def __init__(self, symbols) -> None:
        self.symbols = symbols

    def __getitem__(self, name):
        try:
            return self.symbols[name]
        except KeyError:
            raise AttributeError(name) from None


class FakeLibraryFactory:
    """``ctypes.CDLL`` replacement: every artifact exports ``symbols``."""

    def __init__(self, symbols=None, fail_paths=()) -> None:
        self.symbols = symbols if symbols is not None else {}
        self.fail_paths = {str(p) for p in fail_paths}
        self.opened = []

    def __call__(self, path, mode=0):
        if path in self.fail_paths:
            raise OSError(f"{path}: cannot open shared object file")
        self.opened.append(path)
        return FakeLibrary(self.symbols)


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    return tmp_path / ".rusti"


@pytest.fixture
def config(tmp_path: Path, workdir: Path) -> EngineConfig:
    return EngineConfig(rustc="rustc", sysroot=None, workdir=workdir)


@pytest.fixture
def diagnostics() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def make_engine(tmp_path, config, workdir, diagnostics):
    """Build an ``ExecutionEngine`` over scripted collaborators."""
    from rusti.engine.engine import ExecutionEngine

    def build(steps=(), symbols=None, fail_paths=()):
        factory = FakeLibraryFactory(symbols, fail_paths)
        compiler = ScriptedCompiler(workdir, steps)
        engine = ExecutionEngine(
            config,
            locator=FakeLocator(tmp_path / "sysroot"),
            compiler=compiler,
            loader=DynamicLoader(factory),
            monitor=FaultMonitor(diagnostics),
            stream=diagnostics,
        )
        return engine, compiler, factory

    return build


def _rustc_works() -> bool:
    rustc = shutil.which("rustc")
    if rustc is None:
        return False
    try:
        return subprocess.run([rustc, "--version"], capture_output=True).returncode == 0
    except OSError:
        return False


requires_rustc = pytest.mark.skipif(not _rustc_works(), reason="rustc not available")
requires_cc = pytest.mark.skipif(shutil.which("cc") is None, reason="cc not available")
