"""The ordered chain of artifacts produced by successful evaluations.

Generation *n* is compiled as a dylib crate named ``rusti_gen_<n>``. Its
prelude imports generation *n-1* only and re-exports it, so every generation
sees the whole history through one direct edge.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from rusti.toolchain.platform_detect import TargetPlatform, get_current_platform

CRATE_PREFIX = "rusti_gen_"
ENTRY_PREFIX = "rusti_entry_"

PRELUDE_ATTRIBUTES = "#![allow(dead_code, unused_imports, unused_features, unused_variables)]"


def crate_name_for(generation: int) -> str:
    return f"{CRATE_PREFIX}{generation}"


def entry_symbol_for(generation: int) -> str:
    return f"{ENTRY_PREFIX}{generation}"


def source_filename_for(generation: int) -> str:
    return f"{crate_name_for(generation)}.rs"


def artifact_stem_for(generation: int, attempt: int = 0) -> str:
    """File stem of one compile attempt at `generation`; the crate name stays the same.

    A library opened by a failed attempt stays loaded, and the dynamic linker
    hands out an already-loaded object for a path it has seen, so a retry
    must not reuse the path.
    """
    stem = crate_name_for(generation)
    return stem if attempt == 0 else f"{stem}_a{attempt}"


def artifact_filename_for(generation: int, platform: Optional[TargetPlatform] = None,
                          attempt: int = 0) -> str:
    platform = platform or get_current_platform()
    return platform.dylib_filename(artifact_stem_for(generation, attempt))


def prelude_for(generation: int) -> str:
    """Generated text placed in front of the user's body for ``generation``."""
    lines = [PRELUDE_ATTRIBUTES]
    if generation > 0:
        previous = crate_name_for(generation - 1)
        lines.append(f"extern crate {previous};")
        lines.append(f"#[allow(unused_imports)] pub use {previous}::*;")
    return "\n".join(lines) + "\n"


@dataclass(frozen=True)
class ArtifactRecord:
    generation: int
    artifact_path: Path
    exported_symbol: str
    crate_name: str

    @classmethod
    def for_generation(cls, generation: int, artifact_path: Path) -> "ArtifactRecord":
        return cls(
            generation=generation,
            artifact_path=artifact_path,
            exported_symbol=entry_symbol_for(generation),
            crate_name=crate_name_for(generation),
        )


class ArtifactChain:
    """Append-only sequence of ``ArtifactRecord``; index == generation."""

    def __init__(self) -> None:
        self._records: list[ArtifactRecord] = []

    def __len__(self) -> int:
        return len(self._records)

    def __getitem__(self, index: int) -> ArtifactRecord:
        return self._records[index]

    def __iter__(self) -> Iterator[ArtifactRecord]:
        return iter(tuple(self._records))

    @property
    def records(self) -> tuple[ArtifactRecord, ...]:
        return tuple(self._records)

    @property
    def next_generation(self) -> int:
        return len(self._records)

    @property
    def latest(self) -> Optional[ArtifactRecord]:
        return self._records[-1] if self._records else None

    def current_dependencies(self) -> list[tuple[int, Path]]:
        return [(r.generation, r.artifact_path) for r in self._records]

    def prelude_for_next(self) -> str:
        return prelude_for(self.next_generation)

    def append(self, record: ArtifactRecord) -> int:
        if record.generation != len(self._records):
            raise ValueError(
                f"generation {record.generation} cannot follow a chain of length {len(self._records)}"
            )
        self._records.append(record)
        return record.generation
