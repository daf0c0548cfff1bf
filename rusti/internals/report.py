from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Any

from lark import Token

class C:
    """ANSI color/style escape codes."""
    RESET = "\x1b[0m"
    BOLD  = "\x1b[1m"
    DIM   = "\x1b[2m"
    RED   = "\x1b[31m"
    YELLOW = "\x1b[33m"
    MAGENTA = "\x1b[35m"
    CYAN  = "\x1b[36m"
    GRAY  = "\x1b[90m"

_KIND_COLOR = {"error": C.RED, "warning": C.YELLOW, "bug": C.MAGENTA}

@dataclass
class Span:
    line: int
    col: int
    end_line: int
    end_col: int

@dataclass
class Diagnostic:
    kind: str
    code: str
    message: str
    span: Optional[Span] = None
    filename: Optional[str] = None

def span_of(t: Any) -> Optional[Span]:
    m = getattr(t, "meta", None)
    if m is not None and not getattr(m, "empty", True):
        return Span(m.line, m.column, m.end_line, m.end_column)
    if isinstance(t, Token):
        line = getattr(t, "line", None)
        col = getattr(t, "column", None)
        end_line = getattr(t, "end_line", None)
        end_col = getattr(t, "end_column", None)
        if line is not None and col is not None:
            return Span(line, col, end_line or line, end_col or col)
    return None


class Reporter:
    """Collects diagnostics for one compilation unit and renders them.

    ``source`` is the text the spans point into. For the in-process driver this
    is the virtual compilation unit, which never exists on disk, so the
    renderer never tries to re-read ``filename``.
    """

    def __init__(self, source: Optional[str] = None, filename: str = "<input>") -> None:
        self.source = source
        self.filename = filename
        self.items: List[Diagnostic] = []

    def error(self, code: str, msg: str, span: Optional[Span]):
        self.items.append(Diagnostic("error", code, msg, span, filename=self.filename))

    def warn(self, code: str, msg: str, span: Optional[Span]):
        self.items.append(Diagnostic("warning", code, msg, span, filename=self.filename))

    def bug(self, code: str, msg: str, span: Optional[Span]):
        self.items.append(Diagnostic("bug", code, msg, span, filename=self.filename))

    @property
    def has_errors(self) -> bool:
        return any(d.kind in ("error", "bug") for d in self.items)

    @property
    def has_warnings(self) -> bool:
        return any(d.kind == "warning" for d in self.items)

    def clear(self) -> None:
        self.items.clear()

    def _display_name(self, filename: str) -> str:
        if filename.startswith("<"):
            return filename
        try:
            rel_path = Path(filename).resolve().relative_to(Path.cwd())
            return f"./{rel_path}"
        except ValueError:
            return Path(filename).name

    def format(self, use_color: bool = True, use_unicode: bool = True) -> str:
        """Render all diagnostics.

        use_color   → ANSI colorize location/kind/guide/markers
        use_unicode → use │ / ╰ / ╯ and a separate caret line above the guide
        """
        out: List[str] = []
        src_lines = self.source.splitlines() if self.source else None

        for d in self.items:
            filename = self._display_name(d.filename or self.filename)
            loc = f"{filename}:{d.span.line}:{d.span.col}" if d.span else filename

            message = d.message if d.message.endswith('.') else f"{d.message}."

            if use_color:
                color = _KIND_COLOR.get(d.kind, C.RED)
                kind = f"{C.BOLD}{color}{d.kind}{C.RESET}"
                head = f"{C.CYAN}{loc}{C.RESET}: {kind} [{C.DIM}{d.code}{C.RESET}]: {message}"
            else:
                head = f"{loc}: {d.kind} [{d.code}]: {message}"

            if d.span is None or src_lines is None:
                out.append(head)
                continue

            line_idx = d.span.line - 1
            line_text = src_lines[line_idx] if 0 <= line_idx < len(src_lines) else ""
            start = max(1, d.span.col)

            if use_unicode:
                gray = (lambda s: f"{C.GRAY}{s}{C.RESET}") if use_color else (lambda s: s)
                marker_color = _KIND_COLOR.get(d.kind, C.RED) if use_color else ""
                reset = C.RESET if use_color else ""

                out.append(f"{gray('  ╭──┤ ')}{head}")
                out.append(f"{gray('  │')}  {line_text}")
                out.append(f"{gray('  │')}  {marker_color}{' ' * (start - 1)}┯{reset}")
                out.append(f"{gray('  ╰')}{gray('─' * (start + 1))}{marker_color}╯{reset}")
            else:
                out.append(head)
                out.append(f"  | {line_text}")
                out.append(f"  ` {' ' * (start - 1) + '^'}")

        return "\n".join(out)

    def print(self, stream=None, use_color: Optional[bool] = None, use_unicode: Optional[bool] = None) -> None:
        """Print diagnostics to `stream` (default: sys.stderr).

        Color is auto-enabled for TTY unless NO_COLOR or TERM=dumb.
        Unicode prefixes (│ / ╰) are auto-enabled for TTY unless NO_UNICODE or TERM=dumb.
        """
        import os, sys
        stream = stream or sys.stderr

        if use_color is None:
            is_tty = getattr(stream, "isatty", lambda: False)()
            no_color = os.getenv("NO_COLOR") is not None
            dumb = os.getenv("TERM") == "dumb"
            use_color = bool(is_tty and not no_color and not dumb)

        if use_unicode is None:
            is_tty = getattr(stream, "isatty", lambda: False)()
            no_unicode = os.getenv("NO_UNICODE") is not None
            dumb = os.getenv("TERM") == "dumb"
            use_unicode = bool(is_tty and not no_unicode and not dumb)

        text = self.format(use_color=use_color, use_unicode=use_unicode)
        if text:
            print(text, file=stream)
