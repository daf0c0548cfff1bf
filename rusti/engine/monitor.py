"""Fault containment for one evaluation.

The monitor runs a compile-load-invoke cycle on a dedicated worker while the
process's standard error (both ``sys.stderr`` and file descriptor 2, so that
native output is included) is redirected into an in-memory buffer. Whatever
happens in the worker, the controller gets a ``MonitorResult`` back and the
redirection is undone.
"""
from __future__ import annotations

import io
import logging
import os
import signal
import sys
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from rusti.engine.failures import ALREADY_REPORTED, EvaluationError
from rusti.internals import errors as er
from rusti.internals.report import Reporter

log = logging.getLogger(__name__)

STDERR_FD = 2


class MonitorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    RECOVERED = "recovered"


class SyncBuf:
    """Byte buffer shared between the worker and the controller."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data = bytearray()

    def write(self, data) -> int:
        if isinstance(data, str):
            data = data.encode("utf-8", "replace")
        with self._lock:
            self._data.extend(data)
        return len(data)

    def flush(self) -> None:
        pass

    def getvalue(self) -> bytes:
        with self._lock:
            return bytes(self._data)

    def text(self) -> str:
        return self.getvalue().decode("utf-8", "replace")


class _FdTextWriter(io.TextIOBase):
    """Text stream writing straight to a file descriptor.

    Installed as ``sys.stderr`` during capture so Python and native output
    land in the same place, in order.
    """

    def __init__(self, fd: int) -> None:
        self._fd = fd

    def writable(self) -> bool:
        return True

    def write(self, s: str) -> int:
        data = s.encode("utf-8", "replace")
        while data:
            written = os.write(self._fd, data)
            data = data[written:]
        return len(s)

    def fileno(self) -> int:
        return self._fd

    def isatty(self) -> bool:
        return False


def _debug_passthrough() -> bool:
    return logging.getLogger("rusti").isEnabledFor(logging.DEBUG)


@contextmanager
def capture_stderr(sink: SyncBuf):
    """Redirect process-wide stderr into ``sink`` for the duration of the block."""
    if _debug_passthrough():
        yield sink
        return

    saved_stream = sys.stderr
    if saved_stream is not None:
        saved_stream.flush()
    saved_fd = os.dup(STDERR_FD)
    with tempfile.TemporaryFile() as spool:
        os.dup2(spool.fileno(), STDERR_FD)
        sys.stderr = _FdTextWriter(STDERR_FD)
        try:
            yield sink
        finally:
            sys.stderr = saved_stream
            os.dup2(saved_fd, STDERR_FD)
            os.close(saved_fd)
            spool.seek(0)
            sink.write(spool.read())


@dataclass
class MonitorResult:
    state: MonitorState
    value: Any = None
    failure: Optional[EvaluationError] = None
    fault: Optional[BaseException] = None
    captured: str = ""

    @property
    def ok(self) -> bool:
        return self.state is MonitorState.COMPLETED and self.failure is None


class FaultMonitor:
    """Runs one evaluation on a worker thread and classifies how it ended."""

    worker_name = "compile_input"

    def __init__(self, stream=None) -> None:
        self._stream = stream
        self.state = MonitorState.IDLE

    @property
    def stream(self):
        return self._stream or sys.stderr

    def run(self, fn: Callable[..., Any], *args) -> MonitorResult:
        self.state = MonitorState.RUNNING
        sink = SyncBuf()
        outcome: dict[str, Any] = {}

        def worker() -> None:
            try:
                outcome["value"] = fn(*args)
            except BaseException as e:  # the worker's unwinding payload
                outcome["error"] = e

        with capture_stderr(sink):
            thread = threading.Thread(target=worker, name=self.worker_name)
            thread.start()
            thread.join()

        return self._classify(outcome, sink.text())

    def _classify(self, outcome: dict, captured: str) -> MonitorResult:
        error = outcome.get("error")
        if error is None:
            self.state = MonitorState.COMPLETED
            self._flush(captured)
            return MonitorResult(self.state, value=outcome.get("value"), captured=captured)

        if isinstance(error, EvaluationError):
            self.state = MonitorState.COMPLETED
            self._flush(captured)
            return MonitorResult(self.state, failure=error, captured=captured)

        self.state = MonitorState.RECOVERED
        if not isinstance(error, ALREADY_REPORTED):
            detail = str(error) or type(error).__name__
            self.report("RE0900", detail=detail)
        log.debug("worker fault", exc_info=error)
        self._flush(captured)
        return MonitorResult(self.state, fault=error, captured=captured)

    def report(self, code: str, **kwargs) -> None:
        reporter = Reporter(filename="<rusti>")
        er.emit(reporter, er.ERR[code], None, **kwargs)
        reporter.print(self.stream)

    def _flush(self, captured: str) -> None:
        if captured:
            stream = self.stream
            stream.write(captured)
            stream.flush()


def _process_worker(conn, spool_fd: int, fn: Callable[..., Any], args: tuple) -> None:
    os.dup2(spool_fd, STDERR_FD)
    sys.stderr = _FdTextWriter(STDERR_FD)
    try:
        message = ("value", fn(*args))
    except BaseException as e:  # the worker's unwinding payload
        message = ("error", e)
    try:
        conn.send(message)
    except Exception as e:  # unpicklable payload
        conn.send(("error", RuntimeError(f"{type(message[1]).__name__}: {message[1]} ({e})")))
    finally:
        conn.close()


class ProcessFaultMonitor(FaultMonitor):
    """Same contract as ``FaultMonitor`` with a forked worker process.

    A thread cannot survive a segfault or ``abort`` in native code; a child
    process can. Anything the evaluation loads lives and dies with the child,
    so process-wide state does not accumulate across evaluations.
    """

    def __init__(self, stream=None) -> None:
        super().__init__(stream)
        import multiprocessing
        self._ctx = multiprocessing.get_context("fork")

    def run(self, fn: Callable[..., Any], *args) -> MonitorResult:
        self.state = MonitorState.RUNNING
        if sys.stderr is not None:
            sys.stderr.flush()
        receiver, sender = self._ctx.Pipe(duplex=False)
        with tempfile.TemporaryFile() as spool:
            proc = self._ctx.Process(target=_process_worker, name=self.worker_name,
                                     args=(sender, spool.fileno(), fn, args))
            proc.start()
            sender.close()
            try:
                kind, payload = receiver.recv()
            except EOFError:
                kind, payload = None, None
            finally:
                receiver.close()
            proc.join()
            spool.seek(0)
            captured = spool.read().decode("utf-8", "replace")

        if kind is None:
            self.state = MonitorState.RECOVERED
            code = proc.exitcode or 0
            if code < 0:
                try:
                    name = signal.Signals(-code).name
                except ValueError:
                    name = str(-code)
                self.report("RE0901", signal=name)
            else:
                self.report("RE0900", detail=f"worker exited with status {code}")
            self._flush(captured)
            return MonitorResult(self.state, captured=captured)

        return self._classify({kind: payload}, captured)


def make_monitor(config, stream=None) -> FaultMonitor:
    if config.isolation == "thread":
        return FaultMonitor(stream)
    if config.isolation == "process":
        return ProcessFaultMonitor(stream)
    raise ValueError(f"unknown isolation mode '{config.isolation}'")
