"""Crate-level translation manifest."""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Iterator, Optional

from rusti.engine.failures import InvalidModuleSet
from rusti.trans.modules import ModuleKind, ModuleTranslation


@dataclass(frozen=True)
class LinkMeta:
    crate_hash: str

    @classmethod
    def for_modules(cls, crate_name: str, ir_texts) -> "LinkMeta":
        h = hashlib.sha256(crate_name.encode("utf-8"))
        for text in ir_texts:
            h.update(text.encode("utf-8"))
        return cls(h.hexdigest()[:16])


@dataclass(frozen=True)
class EncodedMetadata:
    raw_data: bytes = b""

    @classmethod
    def encode(cls, crate_name: str, crate_hash: str, exports: list[str]) -> "EncodedMetadata":
        payload = {"crate": crate_name, "hash": crate_hash, "exports": sorted(exports)}
        return cls(json.dumps(payload, sort_keys=True).encode("utf-8"))

    def decode(self) -> dict:
        return json.loads(self.raw_data.decode("utf-8")) if self.raw_data else {}


@dataclass
class LinkerInfo:
    """Symbols each crate type must export, collected before linking."""
    exports: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class CrateInfo:
    panic_runtime: Optional[str] = None
    compiler_builtins: Optional[str] = None
    native_libraries: dict[str, list[str]] = field(default_factory=dict)
    used_libraries: list[str] = field(default_factory=list)
    link_args: list[str] = field(default_factory=list)
    used_crates_static: list[str] = field(default_factory=list)
    used_crates_dynamic: list[str] = field(default_factory=list)


@dataclass
class CrateTranslation:
    crate_name: str
    modules: list[ModuleTranslation]
    metadata_module: Optional[ModuleTranslation]
    link: LinkMeta
    metadata: EncodedMetadata
    allocator_module: Optional[ModuleTranslation] = None
    windows_subsystem: Optional[str] = None
    linker_info: LinkerInfo = field(default_factory=LinkerInfo)
    crate_info: CrateInfo = field(default_factory=CrateInfo)

    def validate(self) -> None:
        """Exactly one metadata module, at most one allocator module."""
        metadata = [m for m in self.all_modules() if m.kind is ModuleKind.METADATA]
        allocator = [m for m in self.all_modules() if m.kind is ModuleKind.ALLOCATOR]
        if len(metadata) != 1 or self.metadata_module is None:
            raise InvalidModuleSet(self.crate_name,
                                   f"expected one metadata module, found {len(metadata)}")
        if len(allocator) > 1:
            raise InvalidModuleSet(self.crate_name,
                                   f"expected at most one allocator module, found {len(allocator)}")
        if self.allocator_module is not None and self.allocator_module.kind is not ModuleKind.ALLOCATOR:
            raise InvalidModuleSet(self.crate_name,
                                   f"module `{self.allocator_module.name}` is not an allocator module")

    def all_modules(self) -> Iterator[ModuleTranslation]:
        yield from self.modules
        if self.metadata_module is not None:
            yield self.metadata_module
        if self.allocator_module is not None:
            yield self.allocator_module

    def dispose(self) -> None:
        for module in self.all_modules():
            module.dispose()
