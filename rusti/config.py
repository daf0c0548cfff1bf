"""Engine configuration from command-line arguments and the environment.

Environment variables (overridden by the matching command-line flags):

    RUSTC             compiler binary (default: rustc)
    RUSTI_SYSROOT     skip sysroot discovery and use this path
    RUSTI_LIB_PATH    extra library search paths, os.pathsep separated
    RUSTI_WORKDIR     scratch directory for sources and artifacts
    RUSTI_STRATEGY    external | in-process
    RUSTI_ISOLATION   thread | process
    RUSTI_LOG         logging level for the ``rusti`` logger (e.g. debug)
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Optional

from rusti.toolchain.locator import default_compiler

STRATEGIES = ("external", "in-process")
ISOLATIONS = ("thread", "process")


def _split_paths(value: Optional[str]) -> list[Path]:
    if not value:
        return []
    return [Path(p).expanduser() for p in value.split(os.pathsep) if p.strip()]


def _dedupe(paths: Iterable[Path]) -> list[Path]:
    seen: set[Path] = set()
    ordered: list[Path] = []
    for path in paths:
        if path not in seen:
            seen.add(path)
            ordered.append(path)
    return ordered


@dataclass
class EngineConfig:
    rustc: str = field(default_factory=default_compiler)
    sysroot: Optional[Path] = None
    search_paths: list[Path] = field(default_factory=list)
    workdir: Optional[Path] = None
    strategy: str = "external"
    # "process" survives native crashes; statics an entry point changes die with the worker
    isolation: str = "thread"
    prefer_dynamic: bool = True
    traceback: bool = False

    def __post_init__(self) -> None:
        if self.strategy not in STRATEGIES:
            raise ValueError(f"strategy must be one of {', '.join(STRATEGIES)}, got '{self.strategy}'")
        if self.isolation not in ISOLATIONS:
            raise ValueError(f"isolation must be one of {', '.join(ISOLATIONS)}, got '{self.isolation}'")
        self.search_paths = _dedupe(Path(p) for p in self.search_paths)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides) -> "EngineConfig":
        env = os.environ if env is None else env
        values = dict(
            rustc=env.get("RUSTC") or default_compiler(),
            sysroot=Path(env["RUSTI_SYSROOT"]) if env.get("RUSTI_SYSROOT") else None,
            search_paths=_split_paths(env.get("RUSTI_LIB_PATH")),
            workdir=Path(env["RUSTI_WORKDIR"]) if env.get("RUSTI_WORKDIR") else None,
            strategy=env.get("RUSTI_STRATEGY") or "external",
            isolation=env.get("RUSTI_ISOLATION") or "thread",
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @classmethod
    def from_args(cls, args, env: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """Layer parsed ``argparse`` flags over the environment."""
        env = os.environ if env is None else env
        search_paths = [Path(p) for p in (getattr(args, "lib_paths", None) or [])]
        search_paths += _split_paths(env.get("RUSTI_LIB_PATH"))
        return cls.from_env(
            env,
            rustc=getattr(args, "rustc", None),
            sysroot=Path(args.sysroot) if getattr(args, "sysroot", None) else None,
            search_paths=search_paths,
            workdir=Path(args.workdir) if getattr(args, "workdir", None) else None,
            strategy=getattr(args, "strategy", None),
            isolation=getattr(args, "isolation", None),
            traceback=bool(getattr(args, "traceback", False)),
        )


def configure_logging(verbose: bool = False, env: Optional[Mapping[str, str]] = None) -> None:
    env = os.environ if env is None else env
    level_name = "DEBUG" if verbose else (env.get("RUSTI_LOG") or "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    logger = logging.getLogger("rusti")
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[%(levelname)s %(name)s] %(message)s"))
        logger.addHandler(handler)
