"""Scratch directory holding a session's sources and artifacts.

Artifacts are not meant to outlive a session: generation numbers restart at
zero, and a leftover ``librusti_gen_0.so`` from an earlier session would be
picked up by the dynamic linker instead of the new one. ``prepare`` wipes
them and records what produced the new ones.

Directory layout::

    .rusti/
        session.json            -- rusti/rustc versions, sysroot, target, accepted generations
        rusti_gen_0.rs          -- materialized compilation units
        librusti_gen_0.so       -- generation artifacts
"""
from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Optional

from llvmlite import binding as llvm

from rusti import __version__ as rusti_version
from rusti.engine.chain import CRATE_PREFIX, ArtifactRecord
from rusti.engine.failures import WorkDirError

WORKDIR_NAME = ".rusti"
MANIFEST_NAME = "session.json"


class WorkDir:
    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else Path.cwd() / WORKDIR_NAME
        self._target_triple = llvm.get_default_triple()

    def __truediv__(self, name: str) -> Path:
        return self.path / name

    @property
    def manifest_path(self) -> Path:
        return self.path / MANIFEST_NAME

    def stale_files(self) -> list[Path]:
        """Generation sources and artifacts left by an earlier session."""
        if not self.path.exists():
            return []
        return sorted(p for p in self.path.iterdir() if CRATE_PREFIX in p.name)

    def wipe(self) -> None:
        for stale in self.stale_files():
            if stale.is_dir():
                shutil.rmtree(stale)
            else:
                stale.unlink()

    def prepare(self, sysroot: Path, rustc_version: str) -> Path:
        """Create the directory, drop stale generations, write the manifest."""
        try:
            self.path.mkdir(parents=True, exist_ok=True)
            self.wipe()
            manifest = {
                "rusti_version": rusti_version,
                "rustc_version": rustc_version,
                "sysroot": str(sysroot),
                "target_triple": self._target_triple,
                "chain": [],
            }
            self.manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        except OSError as e:
            raise WorkDirError(self.path, str(e)) from e
        return self.path

    def read_manifest(self) -> Optional[dict]:
        try:
            return json.loads(self.manifest_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return None

    def record_generation(self, record: ArtifactRecord) -> None:
        """Add an accepted generation to the manifest's ``chain`` list."""
        manifest = self.read_manifest() or {}
        manifest.setdefault("chain", []).append({
            "generation": record.generation,
            "crate_name": record.crate_name,
            "artifact": str(record.artifact_path),
        })
        try:
            self.manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        except OSError as e:
            raise WorkDirError(self.path, str(e)) from e
