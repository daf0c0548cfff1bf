"""Linking collaborator: emit objects, then link them into a shared library."""
from __future__ import annotations

import logging
import shutil
import subprocess
import zlib
from pathlib import Path

from rusti.engine.failures import LinkFailure
from rusti.toolchain.platform_detect import get_current_platform
from rusti.trans.crate import CrateTranslation
from rusti.trans.modules import ModuleTranslation, OutputFilenames, OutputType

log = logging.getLogger(__name__)


def emit_module(module: ModuleTranslation, outputs: OutputFilenames,
                emit_bc: bool = False, emit_bc_compressed: bool = False) -> Path:
    """Write the object file of one module and return its path.

    Translated modules are emitted through their target machine and disposed
    afterwards; pre-existing ones have their saved object copied in place.
    """
    compiled = module.into_compiled_module(True, emit_bc, emit_bc_compressed, outputs)
    llvm_module = module.llvm()
    if llvm_module is None:
        saved = module.source.work_product.saved(OutputType.OBJECT)
        if saved is None:
            raise LinkFailure(compiled.object, f"work product `{module.name}` has no saved object")
        if Path(saved) != compiled.object:
            shutil.copyfile(saved, compiled.object)
        return compiled.object

    try:
        tm = llvm_module.target_machine
        compiled.object.write_bytes(tm.emit_object(llvm_module.module))
        if emit_bc or emit_bc_compressed:
            bitcode = llvm_module.module.as_bitcode()
            if emit_bc:
                compiled.bytecode.write_bytes(bitcode)
            if emit_bc_compressed:
                compiled.bytecode_compressed.write_bytes(zlib.compress(bitcode))
    finally:
        module.dispose()
    log.debug("emitted %s", compiled.object)
    return compiled.object


def link_binary(trans: CrateTranslation, outputs: OutputFilenames, cc: str = "cc",
                keep_objects: bool = False) -> Path:
    """Link every module of ``trans`` into ``<out_dir>/<dylib name of crate>``."""
    trans.validate()
    outputs.out_dir.mkdir(parents=True, exist_ok=True)
    out = outputs.out_dir / get_current_platform().dylib_filename(outputs.crate_stem)

    objects: list[Path] = []
    emitted: list[Path] = []
    for module in trans.all_modules():
        translated = module.llvm() is not None
        objects.append(emit_module(module, outputs))
        if translated:
            emitted.append(objects[-1])

    cmd = [cc, "-shared", *map(str, objects)]
    cmd += trans.crate_info.link_args
    cmd += [f"-l{lib}" for lib in trans.crate_info.used_libraries]
    cmd += ["-o", str(out)]
    log.debug("running %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, errors="replace")
    except OSError as e:
        raise LinkFailure(out, str(e)) from e
    if result.returncode != 0:
        raise LinkFailure(out, (result.stderr or result.stdout).strip()
                          or f"exit status {result.returncode}")

    if not keep_objects:
        for obj in emitted:
            obj.unlink(missing_ok=True)
    return out
