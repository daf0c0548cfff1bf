"""Per-module translation state.

A crate is translated as a set of codegen units. Each unit is either freshly
translated into LLVM (``Translated``, owning a ``ModuleLlvm``) or reused from
an earlier session's saved outputs (``Preexisting``, holding a
``WorkProduct``).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import llvmlite.binding as llvm

from rusti.engine.failures import TranslationFailed

log = logging.getLogger(__name__)

_llvm_init = False


def ensure_llvm() -> None:
    """Initialize the native target and assembly printer once."""
    global _llvm_init
    if _llvm_init:
        return
    llvm.initialize_native_target()
    llvm.initialize_native_asmprinter()
    _llvm_init = True


def create_target_machine(triple: Optional[str] = None) -> llvm.TargetMachine:
    """Target machine for ``triple`` (default: host) with a dylib-friendly reloc model."""
    ensure_llvm()
    triple = triple or llvm.get_default_triple()
    target = llvm.Target.from_triple(triple)
    # Shared objects on Linux must be position independent.
    reloc = "pic" if "linux" in triple.lower() else "default"
    return target.create_target_machine(reloc=reloc)


class ModuleKind(str, Enum):
    REGULAR = "regular"
    METADATA = "metadata"
    ALLOCATOR = "allocator"


class OutputType(str, Enum):
    OBJECT = "o"
    BITCODE = "bc"
    BITCODE_COMPRESSED = "bc.z"


@dataclass(frozen=True)
class WorkProduct:
    """Outputs of a codegen unit saved by an earlier compilation."""
    cgu_name: str
    saved_files: tuple[tuple[OutputType, Path], ...] = ()

    def saved(self, output_type: OutputType) -> Optional[Path]:
        for kind, path in self.saved_files:
            if kind is output_type:
                return path
        return None


class ModuleLlvm:
    """Owns an LLVM context, the module parsed in it and a target machine.

    The three handles are released together by ``dispose``; releasing twice
    is a no-op. Accessing a handle after disposal raises ``RuntimeError``.
    """

    def __init__(self, context: llvm.ContextRef, module: llvm.ModuleRef,
                 target_machine: llvm.TargetMachine) -> None:
        self._context = context
        self._module = module
        self._target_machine = target_machine
        self._disposed = False

    @classmethod
    def from_ir(cls, ir_text: str, name: str = "<module>",
                triple: Optional[str] = None) -> "ModuleLlvm":
        tm = create_target_machine(triple)
        context = llvm.create_context()
        try:
            module = llvm.parse_assembly(ir_text, context=context)
            module.verify()
        except RuntimeError as e:
            context.close()
            tm.close()
            raise TranslationFailed(name, str(e).strip()) from e
        module.name = name
        module.triple = triple or llvm.get_default_triple()
        module.data_layout = str(tm.target_data)
        return cls(context, module, tm)

    def _check(self) -> None:
        if self._disposed:
            raise RuntimeError("LLVM module used after disposal")

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def context(self) -> llvm.ContextRef:
        self._check()
        return self._context

    @property
    def module(self) -> llvm.ModuleRef:
        self._check()
        return self._module

    @property
    def target_machine(self) -> llvm.TargetMachine:
        self._check()
        return self._target_machine

    def exported_functions(self) -> list[str]:
        return [
            fn.name for fn in self.module.functions
            if not fn.is_declaration and fn.linkage == llvm.Linkage.external
        ]

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        # The module belongs to the context: release it first.
        self._module.close()
        self._context.close()
        self._target_machine.close()

    def __enter__(self) -> "ModuleLlvm":
        return self

    def __exit__(self, *exc) -> None:
        self.dispose()


@dataclass
class Translated:
    llvm: ModuleLlvm


@dataclass
class Preexisting:
    work_product: WorkProduct


ModuleSource = Union[Translated, Preexisting]


@dataclass
class OutputFilenames:
    out_dir: Path
    crate_stem: str

    def temp_path(self, output_type: OutputType, name: Optional[str] = None) -> Path:
        stem = f"{self.crate_stem}.{name}" if name else self.crate_stem
        return self.out_dir / f"{stem}.{output_type.value}"


@dataclass(frozen=True)
class CompiledModule:
    name: str
    llmod_id: str
    kind: ModuleKind
    pre_existing: bool
    object: Optional[Path] = None
    bytecode: Optional[Path] = None
    bytecode_compressed: Optional[Path] = None


@dataclass
class ModuleTranslation:
    name: str
    llmod_id: str
    source: ModuleSource
    kind: ModuleKind = ModuleKind.REGULAR

    def llvm(self) -> Optional[ModuleLlvm]:
        if isinstance(self.source, Translated):
            return self.source.llvm
        return None

    def into_compiled_module(self, emit_obj: bool, emit_bc: bool, emit_bc_compressed: bool,
                             outputs: OutputFilenames) -> CompiledModule:
        pre_existing = isinstance(self.source, Preexisting)
        return CompiledModule(
            name=self.name,
            llmod_id=self.llmod_id,
            kind=self.kind,
            pre_existing=pre_existing,
            object=outputs.temp_path(OutputType.OBJECT, self.name) if emit_obj else None,
            bytecode=outputs.temp_path(OutputType.BITCODE, self.name) if emit_bc else None,
            bytecode_compressed=(outputs.temp_path(OutputType.BITCODE_COMPRESSED, self.name)
                                 if emit_bc_compressed else None),
        )

    def dispose(self) -> None:
        module = self.llvm()
        if module is not None:
            module.dispose()
