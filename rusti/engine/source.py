"""Compilation units and the two ways of handing them to a compiler."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from rusti.engine.chain import artifact_stem_for, crate_name_for, entry_symbol_for

# Rust's exit status for a panicking program; the entry shim reuses it.
PANIC_STATUS = 101

ENTRY_SHIM = """
#[no_mangle]
pub extern "C" fn {symbol}() -> i32 {{
    match ::std::panic::catch_unwind(|| {{ {entry}(); }}) {{
        Ok(_) => 0,
        Err(_) => {status},
    }}
}}
"""


@dataclass
class CompilationUnit:
    """Everything one compile attempt needs; discarded when it resolves."""
    generation: int
    prelude: str
    body: str
    entry: Optional[str] = None
    dependencies: list[tuple[int, Path]] = field(default_factory=list)
    #: how many earlier attempts at this generation did not make it into the chain
    attempt: int = 0

    @classmethod
    def for_chain(cls, chain, body: str, entry: Optional[str] = None,
                  attempt: int = 0) -> "CompilationUnit":
        return cls(
            generation=chain.next_generation,
            prelude=chain.prelude_for_next(),
            body=body,
            entry=entry,
            dependencies=chain.current_dependencies(),
            attempt=attempt,
        )

    @property
    def crate_name(self) -> str:
        return crate_name_for(self.generation)

    @property
    def artifact_stem(self) -> str:
        return artifact_stem_for(self.generation, self.attempt)

    @property
    def exported_symbol(self) -> Optional[str]:
        return entry_symbol_for(self.generation) if self.entry else None

    def entry_shim(self) -> str:
        if not self.entry:
            return ""
        return ENTRY_SHIM.format(symbol=self.exported_symbol, entry=self.entry, status=PANIC_STATUS)

    @property
    def text(self) -> str:
        body = self.body if self.body.endswith("\n") else self.body + "\n"
        return self.prelude + body + self.entry_shim()

    @property
    def virtual_path(self) -> str:
        return f"<rusti-input-{self.generation}>.rs"


def materialize(unit: CompilationUnit, path: Path) -> Path:
    """Write ``unit`` to ``path`` for the external compiler."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(unit.text, encoding="utf-8")
    return path


class VirtualFileLoader:
    """File provider serving in-memory sources to the in-process driver.

    Paths not registered here fall through to the real file system, so the
    driver can still check that extern artifacts exist.
    """

    def __init__(self, files: Optional[dict[str, str]] = None) -> None:
        self._files: dict[str, str] = dict(files or {})

    @classmethod
    def for_unit(cls, unit: CompilationUnit) -> "VirtualFileLoader":
        return cls({unit.virtual_path: unit.text})

    def add(self, path: str, text: str) -> None:
        self._files[path] = text

    def file_exists(self, path) -> bool:
        return str(path) in self._files or Path(path).exists()

    def read_file(self, path) -> str:
        key = str(path)
        if key in self._files:
            return self._files[key]
        try:
            return Path(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            raise FileNotFoundError(f"no such file: {key}") from None

    def abs_path(self, path) -> Optional[Path]:
        if str(path) in self._files:
            return None
        return Path(path).resolve()
