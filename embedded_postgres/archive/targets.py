"""Detect the platform target used to select archives and key the cache."""

from __future__ import annotations

import logging
import platform
import sys
from dataclasses import dataclass
from pathlib import Path

from embedded_postgres.errors import NotFound


_LOGGER = logging.getLogger(__name__)

SUPPORTED_TARGETS = (
    "x86_64-unknown-linux-gnu",
    "x86_64-unknown-linux-musl",
    "aarch64-unknown-linux-gnu",
    "aarch64-unknown-linux-musl",
    "x86_64-apple-darwin",
    "aarch64-apple-darwin",
    "x86_64-pc-windows-msvc",
)

_ARCH_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
    "armv8": "aarch64",
}


@dataclass(frozen=True)
class PlatformTarget:
    """Operating system, architecture and the archive target triple."""

    os_name: str
    arch: str
    triple: str

    @classmethod
    def from_triple(cls, triple: str) -> "PlatformTarget":
        normalised = triple.strip().lower()
        if normalised not in SUPPORTED_TARGETS:
            raise NotFound(f"Unsupported target triple: {triple}")
        arch = normalised.split("-", 1)[0]
        if "linux" in normalised:
            os_name = "linux"
        elif "darwin" in normalised:
            os_name = "macos"
        else:
            os_name = "windows"
        return cls(os_name=os_name, arch=arch, triple=normalised)

    @classmethod
    def detect(cls) -> "PlatformTarget":
        """Return the target describing the running interpreter's host."""

        machine = platform.machine().lower()
        arch = _ARCH_ALIASES.get(machine)
        if arch is None:
            raise NotFound(f"Unsupported machine architecture: {machine or 'unknown'}")

        if sys.platform.startswith("linux"):
            libc = "musl" if _is_musl() else "gnu"
            triple = f"{arch}-unknown-linux-{libc}"
        elif sys.platform == "darwin":
            triple = f"{arch}-apple-darwin"
        elif sys.platform.startswith("win"):
            triple = f"{arch}-pc-windows-msvc"
        else:
            raise NotFound(f"Unsupported operating system: {sys.platform}")

        target = cls.from_triple(triple)
        _LOGGER.debug("Detected platform target %s", target.triple)
        return target


def _is_musl() -> bool:
    libc, _version = platform.libc_ver()
    if libc:
        return libc != "glibc"
    # libc_ver() reports nothing on musl hosts; look for the musl loader.
    lib = Path("/lib")
    return lib.is_dir() and any(lib.glob("ld-musl-*.so.1"))


__all__ = ["PlatformTarget", "SUPPORTED_TARGETS"]
