from __future__ import annotations
import sys, platform, datetime
from typing import Optional

import llvmlite
from llvmlite import binding as llvm

from rusti import __version__


def _ensure_utf8_stdout() -> None:
    reconfigure = getattr(sys.stdout, "reconfigure", None)
    if reconfigure is not None:
        reconfigure(encoding="utf-8")

def get_versions(rustc_version: Optional[str] = None) -> dict[str, str]:
    return {
        "app": __version__,
        "python": platform.python_version(),
        "llvmlite": llvmlite.__version__,
        "llvm": ".".join(map(str, llvm.llvm_version_info)),
        "rustc": rustc_version or "unknown",
    }

def print_banner(rustc_version: Optional[str] = None) -> None:
    _ensure_utf8_stdout()
    v = get_versions(rustc_version)
    today = datetime.date.today().isoformat()

    # ANSI styling only for an interactive terminal
    use_ansi = sys.stdout.isatty()

    if use_ansi:
        BOLD, DIM, RESET = "\x1b[1m", "\x1b[2m", "\x1b[0m"
    else:
        BOLD, DIM, RESET = "", "", ""

    print(
        f"{BOLD} 🦀 rusti interactive Rust{RESET} • {v['app']}\n"
        f"{DIM}{v['rustc']} • Python {v['python']} • llvmlite {v['llvmlite']} • LLVM {v['llvm']} • {today}{RESET}\n"
    )
