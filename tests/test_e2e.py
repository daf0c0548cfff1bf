"""Sessions against a real compiler, in both isolation modes.

Every test gets its own work directory. In thread mode the artifacts stay
loaded in the test process for the rest of the run.
"""
from __future__ import annotations

import io
import os

import pytest

from conftest import requires_rustc
from rusti.config import EngineConfig
from rusti.engine.engine import EvalStatus, ExecutionEngine

pytestmark = requires_rustc


ISOLATIONS = [
    "thread",
    pytest.param("process", marks=pytest.mark.skipif(not hasattr(os, "fork"), reason="fork not available")),
]


def _engine(tmp_path, isolation):
    stream = io.StringIO()
    config = EngineConfig.from_env({}, workdir=tmp_path / ".rusti", isolation=isolation)
    return ExecutionEngine(config, stream=stream), stream


@pytest.fixture(params=ISOLATIONS)
def session(tmp_path, request):
    return _engine(tmp_path, request.param)


def test_hello_world(session, capfd):
    engine, _ = session
    evaluation = engine.evaluate('fn hello() { println!("hello from generation 0"); }', entry="hello")
    assert evaluation.status is EvalStatus.SUCCESS
    assert "hello from generation 0" in capfd.readouterr().out
    assert len(engine.chain) == 1
    assert engine.chain[0].artifact_path.exists()


def test_syntax_error_leaves_chain_untouched(session):
    engine, stream = session
    evaluation = engine.evaluate("fn broken( {")
    assert evaluation.status is EvalStatus.REJECTED
    assert len(engine.chain) == 0
    assert "RE0200" in stream.getvalue()
    assert "error" in evaluation.diagnostics


def test_later_generation_calls_earlier_definition(session, capfd):
    engine, _ = session
    assert engine.evaluate("pub fn get() -> i32 { 42 }").ok
    evaluation = engine.evaluate('fn show() { println!("get() = {}", get()); }', entry="show")
    assert evaluation.ok
    assert "get() = 42" in capfd.readouterr().out
    assert [r.crate_name for r in engine.chain] == ["rusti_gen_0", "rusti_gen_1"]


def test_panic_is_recovered_and_session_continues(session, capfd):
    engine, stream = session
    evaluation = engine.evaluate('fn boom() { panic!("boom"); }', entry="boom")
    assert evaluation.status is EvalStatus.RECOVERED
    assert stream.getvalue().count("RE0900") == 1
    assert "boom" in stream.getvalue()

    follow_up = engine.evaluate('fn alive() { println!("still alive"); }', entry="alive")
    assert follow_up.ok
    assert "still alive" in capfd.readouterr().out


def test_definitions_reach_through_several_generations(session, capfd):
    engine, _ = session
    assert engine.evaluate("pub fn base() -> i32 { 40 }").ok
    assert engine.evaluate("pub fn plus_two() -> i32 { base() + 2 }").ok
    assert engine.evaluate('fn report() { println!("{} {}", base(), plus_two()); }', entry="report").ok
    assert "40 42" in capfd.readouterr().out


def test_analysis_sees_the_chain(session):
    engine, _ = session
    assert engine.evaluate("pub fn get() -> i32 { 42 }").ok
    evaluation = engine.analyze("pub fn show() -> i32 { get() }")
    assert evaluation.ok
    assert evaluation.outcome.analysis.externs[0].name == "rusti_gen_0"
    assert len(engine.chain) == 1


def test_retry_after_panic_runs_the_new_code(session, capfd):
    engine, _ = session
    assert engine.evaluate('fn run() { panic!("first attempt"); }', entry="run").status \
        is EvalStatus.RECOVERED
    retried = engine.evaluate('fn run() { println!("second attempt"); }', entry="run")
    assert retried.ok
    out = capfd.readouterr().out
    assert "second attempt" in out

    assert engine.evaluate('fn next() { run(); }', entry="next").ok
    assert "second attempt" in capfd.readouterr().out


def test_state_accumulates_across_generations_in_thread_mode(tmp_path, capfd):
    engine, _ = _engine(tmp_path, "thread")
    counter = (
        "use std::sync::atomic::{AtomicI32, Ordering};\n"
        "pub static COUNTER: AtomicI32 = AtomicI32::new(0);\n"
        "fn bump() { COUNTER.fetch_add(1, Ordering::SeqCst); }\n"
    )
    assert engine.evaluate(counter, entry="bump").ok
    assert engine.evaluate(
        "fn bump_again() { COUNTER.fetch_add(1, std::sync::atomic::Ordering::SeqCst); }",
        entry="bump_again").ok
    assert engine.evaluate(
        'fn read() { println!("counter={}", COUNTER.load(std::sync::atomic::Ordering::SeqCst)); }',
        entry="read").ok
    assert "counter=2" in capfd.readouterr().out
