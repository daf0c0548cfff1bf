"""Dynamic loading of generation artifacts and entry point invocation.

Loaded libraries are never closed. Code in an artifact may have started
threads or registered destructors that outlive the call, so unloading it is
unsafe; address space grows with the session instead.
"""
from __future__ import annotations

import ctypes
import logging
import os
import threading
from pathlib import Path
from typing import Callable

from rusti.engine.failures import EntryPointPanicked, LoadFailure, SymbolNotFound

log = logging.getLogger(__name__)

# Later generations link against earlier ones by soname; global visibility
# lets the dynamic linker reuse the already-loaded copy.
_LOAD_MODE = getattr(os, "RTLD_GLOBAL", 0) | getattr(os, "RTLD_NOW", 0)


class DynamicLoader:
    """Opens artifacts and calls their engine-generated entry points."""

    def __init__(self, library_factory: Callable[..., ctypes.CDLL] = ctypes.CDLL) -> None:
        self._factory = library_factory
        self._lock = threading.Lock()
        self._loaded: list[tuple[Path, ctypes.CDLL]] = []

    @property
    def loaded(self) -> tuple[Path, ...]:
        """Paths of every artifact opened so far, in load order."""
        with self._lock:
            return tuple(path for path, _ in self._loaded)

    def ensure_loaded(self, artifact_paths) -> None:
        """Open, in order, every path of ``artifact_paths`` not opened yet."""
        already = set(self.loaded)
        for path in artifact_paths:
            if Path(path) not in already:
                self.load(path)

    def load(self, artifact_path: Path) -> ctypes.CDLL:
        try:
            handle = self._factory(str(artifact_path), mode=_LOAD_MODE)
        except OSError as e:
            raise LoadFailure(artifact_path, str(e)) from e
        with self._lock:
            self._loaded.append((Path(artifact_path), handle))
        log.debug("loaded %s", artifact_path)
        return handle

    @staticmethod
    def resolve(handle: ctypes.CDLL, symbol: str, artifact_path: Path):
        try:
            fn = handle[symbol]
        except AttributeError as e:
            raise SymbolNotFound(symbol, artifact_path) from e
        # Only the name and calling convention are checked; a mismatched
        # signature here is undefined behavior.
        fn.argtypes = []
        fn.restype = ctypes.c_int
        return fn

    def load_and_call(self, artifact_path: Path, exported_symbol: str) -> None:
        handle = self.load(artifact_path)
        fn = self.resolve(handle, exported_symbol, artifact_path)
        log.debug("calling %s", exported_symbol)
        status = fn()
        if status != 0:
            raise EntryPointPanicked(exported_symbol, status)
