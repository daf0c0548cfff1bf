"""
Platform detection and target triple parsing for rusti.

Artifact file names depend on the host's dynamic library convention, so the
chain asks this module how a crate's dylib is called on the current target.
"""
from __future__ import annotations
from dataclasses import dataclass
from functools import lru_cache

from llvmlite import binding as llvm


@dataclass
class TargetPlatform:
    """Represents a compilation target platform."""
    arch: str      # arm64, x86_64, riscv64, etc.
    vendor: str    # apple, pc, unknown, etc.
    os: str        # darwin, linux, windows, etc.
    abi: str       # (empty), gnu, musl, etc.

    @property
    def is_unix(self) -> bool:
        """Returns True if target is Unix-like (macOS, Linux, BSD)."""
        return self.os in {'darwin', 'linux', 'freebsd', 'openbsd', 'netbsd'}

    @property
    def is_darwin(self) -> bool:
        """Returns True if target is macOS."""
        return self.os == 'darwin'

    @property
    def is_linux(self) -> bool:
        """Returns True if target is Linux."""
        return self.os == 'linux'

    @property
    def is_windows(self) -> bool:
        """Returns True if target is Windows."""
        return self.os == 'windows'

    @property
    def triple(self) -> str:
        """Reconstruct the target triple string."""
        parts = [self.arch, self.vendor, self.os]
        if self.abi:
            parts.append(self.abi)
        return '-'.join(parts)

    @property
    def dylib_prefix(self) -> str:
        return '' if self.is_windows else 'lib'

    @property
    def dylib_suffix(self) -> str:
        if self.is_windows:
            return '.dll'
        if self.is_darwin:
            return '.dylib'
        return '.so'

    def dylib_filename(self, crate_name: str) -> str:
        """File name rustc gives a `dylib` crate, e.g. ``librusti_gen_0.so``."""
        return f"{self.dylib_prefix}{crate_name}{self.dylib_suffix}"


def parse_triple(triple: str) -> TargetPlatform:
    """
    Parse an LLVM target triple into components.

    Examples:
        arm64-apple-darwin25.0.0 -> TargetPlatform(arm64, apple, darwin, '')
        x86_64-pc-linux-gnu -> TargetPlatform(x86_64, pc, linux, gnu)
        x86_64-pc-windows-msvc -> TargetPlatform(x86_64, pc, windows, msvc)
    """
    parts = triple.split('-')

    os_part = parts[2] if len(parts) > 2 else 'unknown'
    if os_part.startswith('darwin') or os_part.startswith('macos'):
        os_part = 'darwin'
    elif os_part.startswith('win32'):
        os_part = 'windows'
    elif '.' in os_part:
        os_part = os_part.split('.')[0]

    return TargetPlatform(
        arch=parts[0] if len(parts) > 0 else 'unknown',
        vendor=parts[1] if len(parts) > 1 else 'unknown',
        os=os_part,
        abi=parts[3] if len(parts) > 3 else '',
    )


@lru_cache(maxsize=1)
def get_current_platform() -> TargetPlatform:
    """Get the platform of the running host."""
    return parse_triple(llvm.get_default_triple())
