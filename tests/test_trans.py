from __future__ import annotations

import ctypes
import zlib

import pytest

from conftest import requires_cc
from rusti.engine.failures import InvalidModuleSet, LinkFailure, TranslationFailed
from rusti.trans.backend import LlvmTransCrate, metadata_ir
from rusti.trans.crate import CrateTranslation, EncodedMetadata, LinkMeta
from rusti.trans.linker import emit_module
from rusti.trans.modules import (
    ModuleKind,
    ModuleLlvm,
    ModuleTranslation,
    OutputFilenames,
    OutputType,
    Preexisting,
    WorkProduct,
)

ANSWER_IR = """\
define i32 @answer() {
  ret i32 42
}

define internal i32 @hidden() {
  ret i32 0
}

declare i32 @external_fn(i32)
"""


def test_module_from_ir_lists_exported_functions():
    with ModuleLlvm.from_ir(ANSWER_IR, "demo.cgu0") as module:
        assert module.exported_functions() == ["answer"]
        assert module.module.name == "demo.cgu0"


def test_dispose_is_idempotent_and_guards_handles():
    module = ModuleLlvm.from_ir(ANSWER_IR)
    module.dispose()
    module.dispose()
    assert module.disposed
    with pytest.raises(RuntimeError):
        module.module
    with pytest.raises(RuntimeError):
        module.target_machine


def test_invalid_ir_raises_translation_failed():
    with pytest.raises(TranslationFailed) as info:
        ModuleLlvm.from_ir("define i32 @broken( {", "bad.cgu0")
    assert info.value.code == "RE0501"
    assert "bad.cgu0" in info.value.message


def test_trans_crate_builds_metadata_and_linker_info():
    backend = LlvmTransCrate()
    trans = backend.trans_crate("demo", {"demo.cgu0": ANSWER_IR})
    try:
        assert [m.kind for m in trans.all_modules()] == [ModuleKind.REGULAR, ModuleKind.METADATA]
        assert trans.metadata_module.name == "demo.metadata"
        assert trans.allocator_module is None
        assert trans.linker_info.exports == {"dylib": ["answer"]}
        decoded = trans.metadata.decode()
        assert decoded["crate"] == "demo"
        assert decoded["exports"] == ["answer"]
        assert decoded["hash"] == trans.link.crate_hash
    finally:
        trans.dispose()
    assert all(m.llvm().disposed for m in trans.all_modules())


def test_trans_crate_with_allocator_module():
    allocator = "define void @__rust_alloc_stub() {\n  ret void\n}\n"
    trans = LlvmTransCrate().trans_crate("demo", {"demo.cgu0": ANSWER_IR}, allocator_ir=allocator)
    try:
        assert trans.allocator_module.kind is ModuleKind.ALLOCATOR
        assert list(trans.all_modules())[-1] is trans.allocator_module
    finally:
        trans.dispose()


def test_failed_module_disposes_the_ones_already_created():
    with pytest.raises(TranslationFailed):
        LlvmTransCrate().trans_crate("demo", {"demo.cgu0": ANSWER_IR, "demo.cgu1": "garbage"})


def test_crate_hash_depends_on_module_text():
    a = LinkMeta.for_modules("demo", [ANSWER_IR])
    b = LinkMeta.for_modules("demo", [ANSWER_IR + "\n"])
    assert a == LinkMeta.for_modules("demo", [ANSWER_IR])
    assert a != b
    assert len(a.crate_hash) == 16


def test_metadata_ir_escapes_payload():
    metadata = EncodedMetadata.encode("demo", "abc", ["answer"])
    ir = metadata_ir("demo", LinkMeta("abc"), metadata)
    assert '@"rust_metadata_demo_abc"' in ir
    assert '\\22' in ir  # the JSON quotes
    with ModuleLlvm.from_ir(ir, "demo.metadata") as module:
        assert module.exported_functions() == []


def _preexisting(name, kind, tmp_path):
    return ModuleTranslation(name, name, Preexisting(WorkProduct(name)), kind)


def _crate(modules, metadata_module, allocator_module=None):
    return CrateTranslation("demo", modules, metadata_module, LinkMeta("0"), EncodedMetadata(),
                            allocator_module=allocator_module)


def test_validate_requires_one_metadata_module(tmp_path):
    regular = _preexisting("demo.cgu0", ModuleKind.REGULAR, tmp_path)
    with pytest.raises(InvalidModuleSet):
        _crate([regular], None).validate()

    stray = _preexisting("demo.extra", ModuleKind.METADATA, tmp_path)
    metadata = _preexisting("demo.metadata", ModuleKind.METADATA, tmp_path)
    with pytest.raises(InvalidModuleSet) as info:
        _crate([regular, stray], metadata).validate()
    assert "found 2" in info.value.message


def test_validate_rejects_a_second_allocator(tmp_path):
    metadata = _preexisting("demo.metadata", ModuleKind.METADATA, tmp_path)
    alloc = _preexisting("demo.allocator", ModuleKind.ALLOCATOR, tmp_path)
    extra = _preexisting("demo.alloc2", ModuleKind.ALLOCATOR, tmp_path)
    _crate([], metadata, alloc).validate()
    with pytest.raises(InvalidModuleSet):
        _crate([extra], metadata, alloc).validate()
    with pytest.raises(InvalidModuleSet):
        _crate([], metadata, _preexisting("demo.x", ModuleKind.REGULAR, tmp_path)).validate()


def test_output_filenames(tmp_path):
    outputs = OutputFilenames(tmp_path, "demo")
    assert outputs.temp_path(OutputType.OBJECT, "cgu0") == tmp_path / "demo.cgu0.o"
    assert outputs.temp_path(OutputType.BITCODE_COMPRESSED) == tmp_path / "demo.bc.z"


def test_into_compiled_module(tmp_path):
    module = _preexisting("demo.cgu0", ModuleKind.REGULAR, tmp_path)
    compiled = module.into_compiled_module(True, False, True, OutputFilenames(tmp_path, "demo"))
    assert compiled.pre_existing
    assert compiled.object == tmp_path / "demo.demo.cgu0.o"
    assert compiled.bytecode is None
    assert compiled.bytecode_compressed.name.endswith(".bc.z")


def test_emit_translated_module_writes_object_and_bitcode(tmp_path):
    trans = LlvmTransCrate().trans_crate("demo", {"cgu0": ANSWER_IR})
    outputs = OutputFilenames(tmp_path, "demo")
    module = trans.modules[0]
    obj = emit_module(module, outputs, emit_bc=True, emit_bc_compressed=True)
    trans.dispose()
    assert obj.stat().st_size > 0
    bitcode = outputs.temp_path(OutputType.BITCODE, "cgu0").read_bytes()
    assert zlib.decompress(outputs.temp_path(OutputType.BITCODE_COMPRESSED, "cgu0").read_bytes()) == bitcode
    assert module.llvm().disposed


def test_emit_preexisting_module_copies_saved_object(tmp_path):
    saved = tmp_path / "saved" / "cgu0.o"
    saved.parent.mkdir()
    saved.write_bytes(b"object")
    module = ModuleTranslation("cgu0", "cgu0",
                               Preexisting(WorkProduct("cgu0", ((OutputType.OBJECT, saved),))))
    obj = emit_module(module, OutputFilenames(tmp_path, "demo"))
    assert obj.read_bytes() == b"object"

    missing = _preexisting("cgu1", ModuleKind.REGULAR, tmp_path)
    with pytest.raises(LinkFailure):
        emit_module(missing, OutputFilenames(tmp_path, "demo"))


def test_print_requests():
    backend = LlvmTransCrate()
    assert backend.print("relocation-models").splitlines()[1].strip() == "default"
    assert "    pic\n" in backend.print("relocation-models")
    assert "large" in backend.print("code-models")
    assert "local-exec" in backend.print("tls-models")
    assert "native" in backend.print("target-cpus")
    with pytest.raises(ValueError):
        backend.print("target-list")


def test_version_and_features():
    backend = LlvmTransCrate()
    assert backend.print_version().startswith("LLVM version: ")
    features = backend.target_features()
    assert all(isinstance(f, str) for f in features)
    assert len(features) == len(set(features))


@requires_cc
def test_link_produces_loadable_library(tmp_path):
    backend = LlvmTransCrate()
    trans = backend.trans_crate("demo", {"demo.cgu0": ANSWER_IR})
    outputs = OutputFilenames(tmp_path, "libdemo_test")

    library = backend.join_trans_and_link(trans, outputs)

    assert library.exists()
    assert not list(tmp_path.glob("*.o"))
    answer = ctypes.CDLL(str(library)).answer
    answer.restype = ctypes.c_int
    assert answer() == 42


def test_link_failure_is_reported(tmp_path):
    trans = LlvmTransCrate().trans_crate("demo", {"demo.cgu0": ANSWER_IR})
    with pytest.raises(LinkFailure):
        LlvmTransCrate().join_trans_and_link(trans, OutputFilenames(tmp_path, "demo"),
                                             cc=str(tmp_path / "no-such-cc"))
