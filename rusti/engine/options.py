"""Compile options shared by the external and in-process strategies.

Both strategies derive their arguments from the same ``CompileOptions`` so a
snippet produces the same diagnostics whichever way it is compiled.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from rusti.engine.chain import crate_name_for
from rusti.engine.source import CompilationUnit

CRATE_TYPES = ("bin", "dylib", "lib")


@dataclass
class CompileOptions:
    sysroot: Optional[Path]
    search_paths: list[Path] = field(default_factory=list)
    crate_name: Optional[str] = None
    crate_type: str = "dylib"
    externs: list[tuple[str, Path]] = field(default_factory=list)
    output: Optional[Path] = None
    prefer_dynamic: bool = True
    # Prefer faster build times
    opt_level: str = "0"
    unstable_features: bool = False
    # `-C metadata`: keeps symbols of different attempts at one crate apart
    metadata: Optional[str] = None

    def __post_init__(self) -> None:
        if self.crate_type not in CRATE_TYPES:
            raise ValueError(f"unknown crate type '{self.crate_type}'")

    @classmethod
    def for_unit(cls, unit: CompilationUnit, sysroot: Optional[Path],
                 search_paths: Sequence[Path], crate_type: str = "dylib",
                 output: Optional[Path] = None, prefer_dynamic: bool = True,
                 metadata: Optional[str] = None) -> "CompileOptions":
        # Most recent dependency first; order only matters for reproducibility.
        externs = [
            (crate_name_for(generation), path)
            for generation, path in sorted(unit.dependencies, key=lambda d: d[0], reverse=True)
        ]
        return cls(
            sysroot=sysroot,
            search_paths=list(search_paths),
            crate_name=unit.crate_name,
            crate_type=crate_type,
            externs=externs,
            output=output,
            prefer_dynamic=prefer_dynamic,
            metadata=metadata,
        )

    def extern_map(self) -> dict[str, Path]:
        return dict(self.externs)

    def to_argv(self, source: Optional[Path] = None) -> list[str]:
        """Render the options as a ``rustc`` command line (without the binary)."""
        argv: list[str] = []
        if self.sysroot is not None:
            argv += ["--sysroot", str(self.sysroot)]
        for path in self.search_paths:
            argv += ["-L", str(path)]
        argv += ["--crate-type", self.crate_type]
        if self.crate_name:
            argv += ["--crate-name", self.crate_name]
        if self.prefer_dynamic:
            # rpath lets the host find libstd and earlier generations at load time
            argv += ["-C", "prefer-dynamic", "-C", "rpath"]
        argv += ["-C", f"opt-level={self.opt_level}"]
        if self.metadata:
            argv += ["-C", f"metadata={self.metadata}"]
        for name, path in self.externs:
            argv += ["--extern", f"{name}={path}"]
        if self.output is not None:
            argv += ["-o", str(self.output)]
        if source is not None:
            argv.append(str(source))
        return argv
