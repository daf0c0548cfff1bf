"""LLVM translation backend.

``LlvmTransCrate`` answers the target queries behind ``rusti --print`` and
turns a set of LLVM IR modules into a linked shared library:

    backend = LlvmTransCrate()
    backend.init()
    trans = backend.trans_crate("demo", {"demo.cgu0": ir_text})
    path = backend.join_trans_and_link(trans, OutputFilenames(out_dir, "demo"))
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Optional

import llvmlite
import llvmlite.binding as llvm

from rusti.toolchain.platform_detect import get_current_platform
from rusti.trans.crate import CrateInfo, CrateTranslation, EncodedMetadata, LinkMeta, LinkerInfo
from rusti.trans.linker import link_binary
from rusti.trans.modules import (
    ModuleKind,
    ModuleLlvm,
    ModuleTranslation,
    OutputFilenames,
    Translated,
    ensure_llvm,
)

log = logging.getLogger(__name__)

RELOCATION_MODELS = ("default", "static", "pic", "dynamic-no-pic", "ropi", "rwpi", "ropi-rwpi")
CODE_MODELS = ("small", "kernel", "medium", "large")
TLS_MODELS = ("global-dynamic", "local-dynamic", "initial-exec", "local-exec")
PRINT_REQUESTS = ("relocation-models", "code-models", "tls-models", "target-cpus")

# Target features that may be passed to `-C target-feature`, per architecture.
_FEATURE_WHITELIST = {
    "x86_64": (
        "aes", "avx", "avx2", "avx512bw", "avx512cd", "avx512dq", "avx512f", "avx512vl",
        "bmi1", "bmi2", "fma", "fxsr", "lzcnt", "pclmulqdq", "popcnt", "rdrand", "rdseed",
        "sha", "sse", "sse2", "sse3", "sse4.1", "sse4.2", "ssse3", "xsave", "xsavec",
        "xsaveopt", "xsaves",
    ),
    "aarch64": ("aes", "crc", "dotprod", "fp16", "lse", "neon", "rcpc", "rdm", "sha2", "sha3", "sve"),
}
_FEATURE_WHITELIST["x86"] = _FEATURE_WHITELIST["x86_64"]
_FEATURE_WHITELIST["i686"] = _FEATURE_WHITELIST["x86_64"]
_FEATURE_WHITELIST["arm64"] = _FEATURE_WHITELIST["aarch64"]


def _escape_ir_bytes(data: bytes) -> str:
    out = []
    for b in data:
        ch = chr(b)
        if 0x20 <= b < 0x7F and ch not in '"\\':
            out.append(ch)
        else:
            out.append(f"\\{b:02X}")
    return "".join(out)


def metadata_ir(crate_name: str, link: LinkMeta, metadata: EncodedMetadata) -> str:
    """IR of the module carrying the crate's encoded metadata."""
    section = "__DATA,.rustc" if get_current_platform().is_darwin else ".rustc"
    data = metadata.raw_data
    return (
        f'@"rust_metadata_{crate_name}_{link.crate_hash}" = constant '
        f'[{len(data)} x i8] c"{_escape_ir_bytes(data)}", section "{section}"\n'
    )


class LlvmTransCrate:
    """Translation backend over llvmlite."""

    def __init__(self, triple: Optional[str] = None) -> None:
        self.triple = triple or llvm.get_default_triple()

    def init(self) -> None:
        ensure_llvm()

    def print(self, request: str) -> str:
        """Text answering one ``--print`` request."""
        self.init()
        if request == "relocation-models":
            return "Available relocation models:\n" + "".join(f"    {m}\n" for m in RELOCATION_MODELS)
        if request == "code-models":
            return "Available code models:\n" + "".join(f"    {m}\n" for m in CODE_MODELS)
        if request == "tls-models":
            return "Available TLS models:\n" + "".join(f"    {m}\n" for m in TLS_MODELS)
        if request == "target-cpus":
            host = llvm.get_host_cpu_name()
            return (
                "Available CPUs for this target:\n"
                f"    native - Select the CPU of the current host (currently {host}).\n"
            )
        raise ValueError(f"unknown print request '{request}'")

    def print_version(self) -> str:
        major, minor, patch = llvm.llvm_version_info
        return f"LLVM version: {major}.{minor}.{patch} (llvmlite {llvmlite.__version__})"

    def target_features(self) -> list[str]:
        """Whitelisted features the host CPU supports."""
        self.init()
        arch = self.triple.split("-", 1)[0]
        whitelist = _FEATURE_WHITELIST.get(arch, ())
        try:
            host = llvm.get_host_cpu_features()
        except RuntimeError:
            log.debug("host CPU features unavailable", exc_info=True)
            return []
        return [f for f in whitelist if host.get(f)]

    def trans_crate(self, crate_name: str, modules_ir: Mapping[str, str],
                    allocator_ir: Optional[str] = None,
                    crate_info: Optional[CrateInfo] = None) -> CrateTranslation:
        """Translate ``{module name: IR text}`` into a validated ``CrateTranslation``."""
        self.init()
        link = LinkMeta.for_modules(crate_name, modules_ir.values())
        modules: list[ModuleTranslation] = []
        created: list[ModuleTranslation] = []

        def translate(name: str, llmod_id: str, ir_text: str,
                      kind: ModuleKind = ModuleKind.REGULAR) -> ModuleTranslation:
            module = ModuleTranslation(name, llmod_id,
                                       Translated(ModuleLlvm.from_ir(ir_text, name, self.triple)), kind)
            created.append(module)
            return module

        try:
            for i, (name, ir_text) in enumerate(modules_ir.items()):
                modules.append(translate(name, f"{crate_name}-cgu.{i}", ir_text))

            exports = [sym for m in modules for sym in m.llvm().exported_functions()]
            metadata = EncodedMetadata.encode(crate_name, link.crate_hash, exports)
            metadata_name = f"{crate_name}.metadata"
            metadata_module = translate(metadata_name, metadata_name,
                                        metadata_ir(crate_name, link, metadata), ModuleKind.METADATA)

            allocator_module = None
            if allocator_ir is not None:
                allocator_name = f"{crate_name}.allocator"
                allocator_module = translate(allocator_name, allocator_name, allocator_ir,
                                             ModuleKind.ALLOCATOR)
        except Exception:
            for module in created:
                module.dispose()
            raise

        trans = CrateTranslation(
            crate_name=crate_name,
            modules=modules,
            metadata_module=metadata_module,
            allocator_module=allocator_module,
            link=link,
            metadata=metadata,
            windows_subsystem=None,
            linker_info=LinkerInfo({"dylib": exports}),
            crate_info=crate_info or CrateInfo(),
        )
        trans.validate()
        log.debug("translated crate %s (%d modules)", crate_name, len(modules))
        return trans

    def join_trans_and_link(self, trans: CrateTranslation, outputs: OutputFilenames,
                            cc: str = "cc") -> Path:
        try:
            return link_binary(trans, outputs, cc)
        finally:
            trans.dispose()
