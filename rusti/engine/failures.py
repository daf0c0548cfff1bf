"""Failure taxonomy of the execution engine.

Toolchain errors are fatal and surface from ``ExecutionEngine.__init__``.
``EvaluationError`` subclasses are reported failures: the fault monitor
completes normally and the chain is left untouched. Everything else that
escapes an evaluation worker is an abnormal termination.
"""
from __future__ import annotations

from rusti.internals.errors import format_message


class RustiError(Exception):
    """Base exception carrying a catalog code and its format parameters."""

    def __init__(self, code: str, **kwargs):
        self.code = code
        self.kwargs = kwargs
        self.message = format_message(code, **kwargs)
        super().__init__(f"{code}: {self.message}")

    def __reduce__(self):
        # Catalog-backed errors travel across the process-isolation pipe.
        return (_rebuild, (type(self), self.code, self.kwargs, self.__dict__))


def _rebuild(cls, code, kwargs, state):
    obj = cls.__new__(cls)
    RustiError.__init__(obj, code, **kwargs)
    obj.__dict__.update(state)
    return obj


# -- toolchain discovery ------------------------------------------------------

class ToolchainError(RustiError):
    """The external compiler is unusable; the engine cannot be constructed."""


class ToolchainNotFound(ToolchainError):
    def __init__(self, binary: str, reason: str):
        super().__init__("RE0001", binary=binary, reason=reason)


class ToolchainOutputInvalid(ToolchainError):
    def __init__(self, binary: str, request: str):
        super().__init__("RE0002", binary=binary, request=request)


class WorkDirError(RustiError):
    def __init__(self, path, reason: str):
        super().__init__("RE0100", path=path, reason=reason)


# -- reported, per-evaluation failures ----------------------------------------

class EvaluationError(RustiError):
    """A failure reported through the normal channel; no chain mutation."""

    #: True for failures that mean the engine itself is broken
    internal = False


class CompileFailure(EvaluationError):
    pass


class ToolchainRejected(CompileFailure):
    """Nonzero exit status of the compiler; ``output`` holds its diagnostics."""

    def __init__(self, generation: int, status: int, output: str):
        self.output = output
        super().__init__("RE0200", generation=generation, status=status)


class ArtifactMissing(CompileFailure):
    def __init__(self, path):
        super().__init__("RE0201", path=path)


class InvocationFailure(EvaluationError):
    internal = True


class LoadFailure(InvocationFailure):
    def __init__(self, path, reason: str):
        super().__init__("RE0300", path=path, reason=reason)


class SymbolNotFound(InvocationFailure):
    def __init__(self, symbol: str, path):
        super().__init__("RE0301", symbol=symbol, path=path)


# -- crate translation ---------------------------------------------------------

class TransError(RustiError):
    """Crate translation or linking could not complete."""


class InvalidModuleSet(TransError):
    def __init__(self, crate: str, reason: str):
        super().__init__("RE0500", crate=crate, reason=reason)


class TranslationFailed(TransError):
    def __init__(self, module: str, reason: str):
        super().__init__("RE0501", module=module, reason=reason)


class LinkFailure(TransError):
    def __init__(self, output, reason: str):
        super().__init__("RE0502", output=output, reason=reason)


# -- abnormal worker termination ----------------------------------------------

class EntryPointPanicked(RustiError):
    """The invoked entry point unwound; raised out of the worker."""

    def __init__(self, symbol: str, status: int):
        self.symbol = symbol
        self.status = status
        super().__init__("RE0400", symbol=symbol, status=status)


class FatalError(Exception):
    """Compilation stopped after its diagnostics were already emitted."""


class ExplicitBug(Exception):
    """An internal bug that was already reported before unwinding."""


#: Abnormal termination payloads whose diagnostic has already been shown.
ALREADY_REPORTED = (FatalError, ExplicitBug)
