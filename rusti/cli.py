"""CLI entry point and argument parsing."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Iterable, Optional

from rusti.config import ISOLATIONS, STRATEGIES, EngineConfig, configure_logging
from rusti.engine.failures import RustiError
from rusti.internals import errors as er
from rusti.internals.report import Reporter
from rusti.internals.version import print_banner

SCRIPT_SEPARATOR = "// ---"
ENTRY_MARKER = "// entry:"
PRINT_REQUESTS = (
    "sysroot", "relocation-models", "code-models", "tls-models",
    "target-cpus", "target-features", "version",
)


class _SnippetAction(argparse.Action):
    """``-e SNIPPET`` appends an evaluation; ``--entry NAME`` names the last one's entry."""

    def __call__(self, parser, namespace, values, option_string=None):
        evaluations = getattr(namespace, self.dest, None) or []
        if option_string in ("-e", "--eval"):
            evaluations.append([values, None])
        else:
            if not evaluations:
                parser.error("--entry must follow an -e snippet")
            evaluations[-1][1] = values
        setattr(namespace, self.dest, evaluations)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="rusti", description="Interactive Rust evaluator")
    ap.add_argument("-L", dest="lib_paths", action="append", metavar="PATH",
                    help="Add a library search path (repeatable)")
    ap.add_argument("--sysroot", metavar="PATH", help="Use this sysroot instead of asking rustc")
    ap.add_argument("--rustc", metavar="BIN", help="Compiler binary (default: $RUSTC or rustc)")
    ap.add_argument("--workdir", metavar="DIR", help="Scratch directory (default: ./.rusti)")
    ap.add_argument("--strategy", choices=STRATEGIES,
                    help="Compile with the external rustc or analyze with the in-process driver")
    ap.add_argument("--isolation", choices=ISOLATIONS,
                    help="Run evaluations on a worker thread (default) or a forked worker process; "
                         "a forked worker survives native crashes but does not keep "
                         "state an entry point changes, such as statics")
    ap.add_argument("--print", dest="print_request", choices=PRINT_REQUESTS, metavar="REQUEST",
                    help=f"Print information and exit ({', '.join(PRINT_REQUESTS)})")
    ap.add_argument("-e", "--eval", dest="evaluations", action=_SnippetAction, metavar="SNIPPET",
                    help="Evaluate SNIPPET (repeatable, in order)")
    ap.add_argument("--entry", dest="evaluations", action=_SnippetAction, metavar="NAME",
                    help="Function of the preceding -e snippet to call")
    ap.add_argument("--script", metavar="FILE",
                    help=f"Evaluate the blocks of FILE, separated by '{SCRIPT_SEPARATOR}' lines")
    ap.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    ap.add_argument("--traceback", action="store_true",
                    help="Print full traceback on engine errors (for debugging)")
    return ap


def entry_of(block: str) -> Optional[str]:
    """Entry function named by a ``// entry: NAME`` line of ``block``."""
    for line in block.splitlines():
        stripped = line.strip()
        if stripped.startswith(ENTRY_MARKER):
            name = stripped[len(ENTRY_MARKER):].strip()
            return name or None
    return None


def parse_script(text: str) -> list[tuple[str, Optional[str]]]:
    """Split a session script into ``(body, entry)`` evaluations."""
    blocks: list[list[str]] = [[]]
    for line in text.splitlines(keepends=True):
        if line.strip() == SCRIPT_SEPARATOR:
            blocks.append([])
        else:
            blocks[-1].append(line)
    evaluations = []
    for lines in blocks:
        body = "".join(lines)
        if body.strip():
            evaluations.append((body, entry_of(body)))
    return evaluations


def report_error(e: RustiError, stream=None) -> None:
    reporter = Reporter(filename="<rusti>")
    er.emit(reporter, er.ERR[e.code], None, **e.kwargs)
    reporter.print(stream)


def handle_print(request: str, config: EngineConfig) -> int:
    from rusti.toolchain.locator import ToolchainLocator
    from rusti.trans.backend import LlvmTransCrate

    backend = LlvmTransCrate()
    if request == "sysroot":
        print(config.sysroot or ToolchainLocator(config.rustc).resolve())
    elif request == "version":
        from rusti import __version__
        print(f"rusti {__version__}")
        print(ToolchainLocator(config.rustc).version())
        print(backend.print_version())
    elif request == "target-features":
        for feature in backend.target_features():
            print(feature)
    else:
        print(backend.print(request), end="")
    return 0


def run_batch(engine, evaluations: Iterable[tuple[str, Optional[str]]]) -> int:
    """Evaluate in order; every evaluation runs even after a failure."""
    status = 0
    for body, entry in evaluations:
        if not engine.evaluate(body, entry).ok:
            status = 2
    return status


def _print_items(evaluation) -> None:
    if not evaluation.ok:
        return
    analysis = evaluation.outcome.analysis
    for item in analysis.items:
        if item.kind.namespace is None:
            continue
        print(f"  {item}")


def run_line_loop(engine, stdin=None) -> int:
    """Minimal REPL: an empty line ends a block, dot-commands act on the session."""
    stdin = stdin or sys.stdin
    interactive = stdin.isatty()
    pending: list[str] = []

    def prompt() -> None:
        if interactive:
            print("  ...> " if pending else "rusti> ", end="", flush=True)

    def flush_block() -> None:
        if pending:
            body = "".join(pending)
            pending.clear()
            engine.evaluate(body, entry_of(body))

    prompt()
    for line in stdin:
        command = line.strip()
        if command == ".quit":
            pending.clear()
            break
        if command == ".chain":
            for row in engine.describe_chain():
                print(row)
        elif command == ".items":
            _print_items(engine.analyze("".join(pending)))
            pending.clear()
        elif not command:
            flush_block()
        else:
            pending.append(line)
        prompt()
    flush_block()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    ap = build_parser()
    args = ap.parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = EngineConfig.from_args(args)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    from rusti.engine.engine import ExecutionEngine

    try:
        if args.print_request:
            return handle_print(args.print_request, config)
        engine = ExecutionEngine(config)
    except RustiError as e:
        if config.traceback:
            raise
        report_error(e)
        return 2

    evaluations = [(body, entry) for body, entry in (args.evaluations or [])]
    if args.script:
        try:
            text = Path(args.script).read_text(encoding="utf-8")
        except OSError as e:
            print(f"error: cannot read {args.script}: {e}", file=sys.stderr)
            return 2
        evaluations += parse_script(text)

    if evaluations:
        return run_batch(engine, evaluations)

    print_banner(engine.rustc_version)
    return run_line_loop(engine)


if __name__ == "__main__":
    raise SystemExit(main())
