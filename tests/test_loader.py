from __future__ import annotations

import ctypes
import ctypes.util
import os
from pathlib import Path

import pytest

from conftest import FakeFunction, FakeLibraryFactory
from rusti.engine.failures import EntryPointPanicked, LoadFailure, SymbolNotFound
from rusti.engine.loader import DynamicLoader


def test_load_and_call_invokes_entry_point():
    entry = FakeFunction(status=0)
    factory = FakeLibraryFactory({"rusti_entry_0": entry})
    loader = DynamicLoader(factory)

    loader.load_and_call(Path("/w/librusti_gen_0.so"), "rusti_entry_0")

    assert entry.calls == 1
    assert entry.argtypes == []
    assert entry.restype is ctypes.c_int
    assert loader.loaded == (Path("/w/librusti_gen_0.so"),)


def test_nonzero_status_means_the_entry_point_panicked():
    factory = FakeLibraryFactory({"rusti_entry_0": FakeFunction(status=101)})
    with pytest.raises(EntryPointPanicked) as info:
        DynamicLoader(factory).load_and_call(Path("/w/librusti_gen_0.so"), "rusti_entry_0")
    assert info.value.status == 101
    assert info.value.symbol == "rusti_entry_0"


def test_missing_symbol_raises_symbol_not_found():
    loader = DynamicLoader(FakeLibraryFactory({}))
    with pytest.raises(SymbolNotFound) as info:
        loader.load_and_call(Path("/w/librusti_gen_0.so"), "rusti_entry_0")
    assert info.value.internal
    assert info.value.code == "RE0301"


def test_unloadable_artifact_raises_load_failure():
    loader = DynamicLoader(FakeLibraryFactory(fail_paths=["/w/librusti_gen_0.so"]))
    with pytest.raises(LoadFailure) as info:
        loader.load(Path("/w/librusti_gen_0.so"))
    assert "cannot open" in info.value.message
    assert loader.loaded == ()


def test_ensure_loaded_opens_each_artifact_once_in_order():
    factory = FakeLibraryFactory()
    loader = DynamicLoader(factory)
    loader.load(Path("/w/a.so"))
    loader.ensure_loaded([Path("/w/a.so"), Path("/w/b.so"), Path("/w/c.so")])
    loader.ensure_loaded([Path("/w/a.so"), Path("/w/b.so")])
    assert factory.opened == ["/w/a.so", "/w/b.so", "/w/c.so"]


def test_real_library_symbol_resolution():
    libc = ctypes.util.find_library("c")
    if libc is None or os.name != "posix":
        pytest.skip("libc not found")
    loader = DynamicLoader()
    handle = loader.load(Path(libc))
    getpid = loader.resolve(handle, "getpid", Path(libc))
    assert getpid() == os.getpid()
    with pytest.raises(SymbolNotFound):
        loader.resolve(handle, "rusti_entry_does_not_exist", Path(libc))


def test_real_missing_file_raises_load_failure(tmp_path):
    with pytest.raises(LoadFailure):
        DynamicLoader().load(tmp_path / "librusti_gen_9.so")
