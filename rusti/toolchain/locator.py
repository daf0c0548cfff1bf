"""Discovery of the external compiler's installation root.

``rustc`` derives its sysroot from the location of its own executable. Since
the engine is not rustc, it asks the binary once and reuses the answer for
every compilation of the session.
"""
from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Optional

from rusti.engine.failures import ToolchainNotFound, ToolchainOutputInvalid

log = logging.getLogger(__name__)


def default_compiler() -> str:
    """Name of the compiler binary, honoring the ``RUSTC`` variable."""
    configured = os.environ.get("RUSTC")
    if configured:
        return configured
    return "rustc.exe" if os.name == "nt" else "rustc"


class ToolchainLocator:
    """Resolves (and caches) the sysroot of one compiler binary."""

    def __init__(self, binary: Optional[str] = None) -> None:
        self.binary = binary or default_compiler()
        self._sysroot: Optional[Path] = None
        self._version: Optional[str] = None

    def _query(self, *request: str) -> str:
        try:
            result = subprocess.run([self.binary, *request], capture_output=True)
        except OSError as e:
            raise ToolchainNotFound(self.binary, str(e)) from e
        try:
            return result.stdout.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ToolchainOutputInvalid(self.binary, " ".join(request)) from e

    def resolve(self) -> Path:
        """Return the sysroot, invoking the compiler on the first call only."""
        if self._sysroot is None:
            out = self._query("--print", "sysroot")
            self._sysroot = Path(out.rstrip("\r\n"))
            log.debug("using sysroot: %s", self._sysroot)
        return self._sysroot

    def version(self) -> str:
        """Return the first line of ``--version``, cached like ``resolve``."""
        if self._version is None:
            lines = self._query("--version").strip().splitlines()
            self._version = lines[0] if lines else "unknown"
        return self._version
