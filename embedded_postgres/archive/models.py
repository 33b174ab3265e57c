"""Data models used by the archive catalog, fetcher and installation cache."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from packaging.version import Version

from embedded_postgres.archive.constants import ARCHIVE_FORMAT, INSTALL_MARKER_NAME


_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReleaseDescriptor:
    """Resolved identity of one downloadable server archive."""

    version: Version
    target: str
    asset_name: str
    url: str
    checksum: str | None = None
    checksum_url: str | None = None
    archive_format: str = ARCHIVE_FORMAT

    @property
    def platform(self) -> str:
        return _triple_os(self.target)

    @property
    def architecture(self) -> str:
        return self.target.split("-", 1)[0]

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.platform, self.architecture, str(self.version))


def _triple_os(triple: str) -> str:
    parts = triple.split("-")
    if "linux" in parts:
        return "linux"
    if "darwin" in parts:
        return "macos"
    if "windows" in parts:
        return "windows"
    return parts[2] if len(parts) > 2 else "unknown"


@dataclass
class InstalledArchive:
    """Verified archive bytes on disk plus the digest used to verify them.

    The payload lives in a temporary file owned by this object; leaving the
    context manager (or calling :meth:`discard`) removes it.
    """

    descriptor: ReleaseDescriptor
    path: Path
    sha256: str
    size: int
    attempts: int = 1

    def discard(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            _LOGGER.warning("Could not remove temporary archive %s: %s", self.path, exc)
            return
        parent = self.path.parent
        try:
            parent.rmdir()
        except OSError:
            pass

    def __enter__(self) -> "InstalledArchive":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.discard()


_EXECUTABLE_SUFFIX = ".exe" if os.name == "nt" else ""


@dataclass(frozen=True)
class Installation:
    """A committed, extracted server installation inside the cache."""

    root: Path
    version: Version
    target: str
    sha256: str = ""
    installed_at: str = ""
    executable_suffix: str = field(default=_EXECUTABLE_SUFFIX, compare=False)

    @property
    def bin_dir(self) -> Path:
        return self.root / "bin"

    @property
    def marker_path(self) -> Path:
        return self.root / INSTALL_MARKER_NAME

    def executable(self, name: str) -> Path:
        return self.bin_dir / f"{name}{self.executable_suffix}"

    @property
    def executables(self) -> dict[str, Path]:
        names = ("initdb", "postgres", "pg_ctl", "pg_isready", "psql")
        return {name: self.executable(name) for name in names}

    def marker_payload(self) -> dict[str, str]:
        return {
            "version": str(self.version),
            "target": self.target,
            "sha256": self.sha256,
            "installed_at": self.installed_at,
        }

    @classmethod
    def from_marker(cls, root: Path) -> "Installation | None":
        """Load the installation committed at ``root`` or ``None`` if absent."""

        marker = root / INSTALL_MARKER_NAME
        try:
            data = json.loads(marker.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            _LOGGER.warning("Ignoring unreadable install marker %s: %s", marker, exc)
            return None
        if not isinstance(data, Mapping):
            return None
        try:
            version = Version(str(data["version"]))
        except (KeyError, ValueError):
            _LOGGER.warning("Install marker %s does not name a valid version", marker)
            return None
        return cls(
            root=root,
            version=version,
            target=str(data.get("target", "")),
            sha256=str(data.get("sha256", "")),
            installed_at=str(data.get("installed_at", "")),
        )


__all__ = ["InstalledArchive", "Installation", "ReleaseDescriptor"]
