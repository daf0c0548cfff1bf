# rusti/internals/errors.py
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from rusti.internals.report import Span, Reporter


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    BUG = "bug"


class Category(str, Enum):
    GENERAL   = "general"
    TOOLCHAIN = "toolchain"
    WORKDIR   = "workdir"
    COMPILE   = "compile"
    LOAD      = "load"
    RUNTIME   = "runtime"
    RESOLVE   = "resolve"
    TRANS     = "trans"
    INTERNAL  = "internal"


@dataclass(frozen=True)
class ErrorMessage:
    code: str
    severity: Severity
    text: str
    category: Category = Category.GENERAL
    doc: str = ""


REGISTRY: Dict[str, ErrorMessage] = {}

class _ErrorCatalog:
    def __init__(self, backing: Dict[str, ErrorMessage]) -> None:
        self._registry = backing

    def __getattr__(self, name: str) -> ErrorMessage:
        try:
            return self._registry[name]
        except KeyError as e:
            raise AttributeError(name) from e

    def __getitem__(self, code: str) -> ErrorMessage:
        return self._registry[code]

    def __contains__(self, code: str) -> bool:
        return code in self._registry


ERR = _ErrorCatalog(REGISTRY)

def emit(r: Reporter, em: ErrorMessage, span: Optional[Span], **kwargs) -> None:
    text = _fmt(em.code, **kwargs)
    if em.severity == Severity.ERROR:
        r.error(em.code, text, span)
    elif em.severity == Severity.BUG:
        r.bug(em.code, text, span)
    else:
        r.warn(em.code, text, span)

def format_message(code: str, **kwargs) -> str:
    """Render the catalog text of ``code`` with its format parameters."""
    return _fmt(code, **kwargs)

#
# --- Helpers
#

def _add(msg: ErrorMessage) -> None:
    if msg.code in REGISTRY:
        raise ValueError(f"duplicate error code {REGISTRY[msg.code]} in {msg}")
    REGISTRY[msg.code] = msg

def _get(code: str) -> ErrorMessage:
    try:
        return REGISTRY[code]
    except KeyError:
        raise KeyError(f"unknown error code: {code}")

def _fmt(code: str, **kwargs) -> str:
    msg = _get(code)
    try:
        return msg.text.format(**kwargs)
    except KeyError as key_error:
        missing = key_error.args[0]
        raise KeyError(f"missing text key '{missing}' for {code} "
                       f"(needed by: {msg.text!r})") from None

#
# --- Registry population
#

# Toolchain discovery - RE00xx (fatal at engine construction)
_add(ErrorMessage("RE0001", Severity.ERROR,
    "failed to run '{binary}': {reason}",
    Category.TOOLCHAIN, "The compiler binary could not be launched. Check RUSTC or --rustc."))

_add(ErrorMessage("RE0002", Severity.ERROR,
    "output of '{binary} {request}' is not valid UTF-8",
    Category.TOOLCHAIN, "The compiler printed something that is not a path."))

# Working directory - RE01xx
_add(ErrorMessage("RE0100", Severity.ERROR,
    "cannot prepare working directory '{path}': {reason}",
    Category.WORKDIR, "Artifacts are written to the working directory; it must be writable."))

# Compilation - RE02xx (user errors)
_add(ErrorMessage("RE0200", Severity.ERROR,
    "compilation of generation {generation} failed (exit status {status})",
    Category.COMPILE, "The compiler rejected the snippet. The chain is unchanged; fix and retry."))

_add(ErrorMessage("RE0201", Severity.ERROR,
    "compiler reported success but produced no artifact at '{path}'",
    Category.COMPILE, "The output file is missing after a zero exit status."))

# Loading and invocation - RE03xx (internal invariant breaches)
_add(ErrorMessage("RE0300", Severity.BUG,
    "failed to load artifact '{path}': {reason}",
    Category.LOAD, "A freshly compiled artifact could not be opened. A previous artifact may have been removed."))

_add(ErrorMessage("RE0301", Severity.BUG,
    "symbol '{symbol}' not found in '{path}'",
    Category.LOAD, "The engine-generated entry point is missing from the artifact."))

# Runtime - RE04xx
_add(ErrorMessage("RE0400", Severity.ERROR,
    "entry point '{symbol}' panicked (status {status})",
    Category.RUNTIME, "The invoked function panicked; its message was captured above."))

# Crate translation and linking - RE05xx
_add(ErrorMessage("RE0500", Severity.ERROR,
    "invalid module set for crate `{crate}`: {reason}",
    Category.TRANS, "A crate needs exactly one metadata module and at most one allocator module."))

_add(ErrorMessage("RE0501", Severity.ERROR,
    "cannot translate module `{module}`: {reason}",
    Category.TRANS, "The module's LLVM IR failed to parse or verify."))

_add(ErrorMessage("RE0502", Severity.ERROR,
    "linking `{output}` failed: {reason}",
    Category.TRANS, "The system linker rejected the emitted objects."))

# Fault monitor - RE09xx
_add(ErrorMessage("RE0900", Severity.BUG,
    "unexpected panic: {detail}",
    Category.INTERNAL, "An unrecognized fault escaped the evaluation worker."))

_add(ErrorMessage("RE0901", Severity.BUG,
    "evaluation worker terminated by signal {signal}",
    Category.INTERNAL, "A native fault killed the isolated worker process."))

# In-process driver diagnostics
_add(ErrorMessage("RD0001", Severity.ERROR,
    "expected {expected}, found {found}",
    Category.COMPILE, "The snippet does not parse as a sequence of Rust items."))

_add(ErrorMessage("RD0002", Severity.ERROR,
    "unterminated {what}",
    Category.COMPILE, "A literal, comment or delimiter is not closed before end of input."))

_add(ErrorMessage("E0463", Severity.ERROR,
    "can't find crate for `{name}`",
    Category.RESOLVE, "An `extern crate` has no matching --extern declaration or its artifact is missing."))

_add(ErrorMessage("E0428", Severity.ERROR,
    "the name `{name}` is defined multiple times",
    Category.RESOLVE, "Two items of the same namespace share a name."))

_add(ErrorMessage("E0432", Severity.ERROR,
    "unresolved import `{path}`",
    Category.RESOLVE, "A `use` path does not start with a known crate or module."))

_add(ErrorMessage("RW0001", Severity.WARNING,
    "crate-level attribute should be in the root module",
    Category.COMPILE, "Inner attributes after the first item are ignored."))
