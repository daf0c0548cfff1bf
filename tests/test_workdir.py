from __future__ import annotations

import json
import pickle

import pytest

from rusti.engine.chain import ArtifactRecord
from rusti.engine.failures import LoadFailure, ToolchainRejected, WorkDirError
from rusti.engine.workdir import WorkDir
from rusti.internals import errors as er
from rusti.internals.report import Reporter, Span


def test_prepare_writes_manifest(tmp_path):
    workdir = WorkDir(tmp_path / ".rusti")
    workdir.prepare(tmp_path / "sysroot", "rustc 1.80.0")
    manifest = workdir.read_manifest()
    assert manifest["rustc_version"] == "rustc 1.80.0"
    assert manifest["sysroot"] == str(tmp_path / "sysroot")
    assert manifest["target_triple"]
    assert manifest["chain"] == []


def test_prepare_wipes_previous_generations_only(tmp_path):
    path = tmp_path / ".rusti"
    path.mkdir()
    (path / "librusti_gen_0.so").write_bytes(b"old")
    (path / "rusti_gen_0.rs").write_text("fn old() {}")
    (path / "notes.txt").write_text("keep me")

    workdir = WorkDir(path)
    assert [p.name for p in workdir.stale_files()] == ["librusti_gen_0.so", "rusti_gen_0.rs"]
    workdir.prepare(tmp_path, "rustc")

    assert not (path / "librusti_gen_0.so").exists()
    assert (path / "notes.txt").read_text() == "keep me"


def test_record_generation_appends_to_manifest(tmp_path):
    workdir = WorkDir(tmp_path / ".rusti")
    workdir.prepare(tmp_path, "rustc")
    workdir.record_generation(ArtifactRecord.for_generation(0, workdir / "librusti_gen_0.so"))
    workdir.record_generation(ArtifactRecord.for_generation(1, workdir / "librusti_gen_1.so"))
    chain = json.loads(workdir.manifest_path.read_text())["chain"]
    assert [(g["generation"], g["crate_name"]) for g in chain] == [(0, "rusti_gen_0"), (1, "rusti_gen_1")]


def test_unwritable_location_raises_workdir_error(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("")
    with pytest.raises(WorkDirError) as info:
        WorkDir(blocker / ".rusti").prepare(tmp_path, "rustc")
    assert info.value.code == "RE0100"


def test_reporter_renders_plain_diagnostics():
    reporter = Reporter(source="fn a() {}\nfn a() {}\n", filename="<rusti-input-0>.rs")
    er.emit(reporter, er.ERR.E0428, Span(2, 4, 2, 5), name="a")
    er.emit(reporter, er.ERR.RW0001, None)
    text = reporter.format(use_color=False, use_unicode=False)
    lines = text.splitlines()
    assert lines[0] == "<rusti-input-0>.rs:2:4: error [E0428]: the name `a` is defined multiple times."
    assert lines[1] == "  | fn a() {}"
    assert lines[2] == "  `    ^"
    assert "warning [RW0001]" in lines[3]
    assert reporter.has_errors and reporter.has_warnings


def test_catalog_rejects_missing_parameters():
    with pytest.raises(KeyError):
        er.format_message("RE0300", path="/x")
    assert "RE0900" in er.ERR
    with pytest.raises(AttributeError):
        er.ERR.RE9999


def test_errors_survive_pickling():
    rejected = pickle.loads(pickle.dumps(ToolchainRejected(2, 1, "error: nope")))
    assert rejected.output == "error: nope"
    assert rejected.code == "RE0200"
    assert str(rejected).startswith("RE0200: compilation of generation 2")

    load = pickle.loads(pickle.dumps(LoadFailure("/w/lib.so", "bad ELF")))
    assert load.internal
    assert load.kwargs == {"path": "/w/lib.so", "reason": "bad ELF"}
