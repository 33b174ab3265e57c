"""Safe extraction of release tarballs."""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
import stat
import tarfile
from pathlib import Path, PurePosixPath
from typing import Iterable

from embedded_postgres.archive import constants
from embedded_postgres.errors import ExtractionError


_LOGGER = logging.getLogger(__name__)

__all__ = ["extract_tarball", "find_missing_executables"]


def extract_tarball(archive_path: Path, target_dir: Path) -> int:
    """Extract ``archive_path`` into ``target_dir`` and return the entry count.

    A single top-level directory shared by every entry is stripped so the
    installation root directly contains ``bin/``, ``lib/`` and ``share/``.
    """

    _LOGGER.info("Extracting %s into %s", archive_path.name, target_dir)
    try:
        with tarfile.open(archive_path, mode="r:*") as archive:
            members = archive.getmembers()
            prefix = _common_prefix(member.name for member in members)
            return _extract_members(archive, members, prefix, target_dir)
    except (OSError, tarfile.TarError, EOFError) as exc:
        raise ExtractionError(f"Failed to extract {archive_path.name}: {exc}") from exc


def _common_prefix(names: Iterable[str]) -> str:
    heads: set[str] = set()
    has_nested = False
    for name in names:
        parts = [part for part in PurePosixPath(name).parts if part not in {"", "."}]
        if not parts:
            continue
        heads.add(parts[0])
        if len(parts) > 1:
            has_nested = True
        if len(heads) > 1:
            return ""
    if len(heads) == 1 and has_nested:
        head = heads.pop()
        return "" if head in {"..", "/"} else head
    return ""


def _relative_parts(name: str, prefix: str) -> list[str]:
    path = PurePosixPath(name.replace("\\", "/"))
    if path.is_absolute() or (name[1:3] == ":/" or name[1:3] == ":\\"):
        raise ExtractionError(f"Archive contained an absolute path entry: {name}")
    parts = [part for part in path.parts if part not in {"", "."}]
    if prefix and parts and parts[0] == prefix:
        parts = parts[1:]
    if ".." in parts:
        raise ExtractionError(f"Archive contained an unsafe relative path: {name}")
    return parts


def _extract_members(
    archive: tarfile.TarFile,
    members: list[tarfile.TarInfo],
    prefix: str,
    target_dir: Path,
) -> int:
    root = target_dir.resolve()
    root.mkdir(parents=True, exist_ok=True)
    total_bytes = 0
    processed = 0
    deferred_links: list[tuple[tarfile.TarInfo, Path, list[str]]] = []

    for member in members:
        processed += 1
        if processed > constants.MAX_ARCHIVE_ENTRIES:
            _LOGGER.error("Archive entry count exceeded limit %s", constants.MAX_ARCHIVE_ENTRIES)
            raise ExtractionError("Archive contained too many entries")
        parts = _relative_parts(member.name, prefix)
        if not parts:
            continue
        destination = root.joinpath(*parts)

        if member.isdir():
            destination.mkdir(parents=True, exist_ok=True)
            continue
        if member.issym() or member.islnk():
            deferred_links.append((member, destination, parts))
            continue
        if not member.isfile():
            raise ExtractionError(f"Archive contained an unsupported entry type: {member.name}")
        if member.size > constants.MAX_ARCHIVE_FILE_SIZE:
            _LOGGER.error(
                "Archive member %s exceeded file size limit (%s > %s)",
                member.name,
                member.size,
                constants.MAX_ARCHIVE_FILE_SIZE,
            )
            raise ExtractionError("Archive contained an oversized file")
        total_bytes += member.size
        if total_bytes > constants.MAX_ARCHIVE_TOTAL_BYTES:
            _LOGGER.error(
                "Archive expanded to %s bytes which exceeds limit %s",
                total_bytes,
                constants.MAX_ARCHIVE_TOTAL_BYTES,
            )
            raise ExtractionError("Archive expanded beyond safe limits")

        destination.parent.mkdir(parents=True, exist_ok=True)
        source = archive.extractfile(member)
        if source is None:
            raise ExtractionError(f"Archive member could not be read: {member.name}")
        with source, destination.open("wb") as target:
            shutil.copyfileobj(source, target)
        _apply_mode(destination, member.mode)

    for member, destination, parts in deferred_links:
        _extract_link(member, destination, parts, prefix, root)

    _LOGGER.info("Extracted %s entries totalling %s bytes", processed, total_bytes)
    return processed


def _apply_mode(path: Path, mode: int) -> None:
    # Keep permission bits only; setuid/setgid/sticky and group/other write are dropped.
    safe_mode = mode & 0o755
    if safe_mode & stat.S_IRUSR == 0:
        safe_mode |= stat.S_IRUSR | stat.S_IWUSR
    try:
        os.chmod(path, safe_mode)
    except OSError as exc:  # pragma: no cover - chmod is best effort on Windows
        _LOGGER.debug("Could not set mode %o on %s: %s", safe_mode, path, exc)


def _extract_link(
    member: tarfile.TarInfo,
    destination: Path,
    parts: list[str],
    prefix: str,
    root: Path,
) -> None:
    linkname = member.linkname.replace("\\", "/")
    if member.issym():
        if posixpath.isabs(linkname):
            raise ExtractionError(f"Archive symlink points outside the archive: {member.name}")
        resolved = posixpath.normpath(posixpath.join(*parts[:-1], linkname) if len(parts) > 1 else linkname)
    else:
        link_parts = _relative_parts(member.linkname, prefix)
        resolved = posixpath.join(*link_parts) if link_parts else ""
    if not resolved or resolved == ".." or resolved.startswith("../"):
        raise ExtractionError(f"Archive link points outside the archive: {member.name}")

    source = root.joinpath(*resolved.split("/"))
    destination.parent.mkdir(parents=True, exist_ok=True)
    if destination.exists() or destination.is_symlink():
        destination.unlink()
    if member.issym():
        try:
            os.symlink(linkname, destination)
            return
        except (OSError, NotImplementedError):
            _LOGGER.debug("Symlinks unavailable; copying %s for %s", resolved, member.name)
    if not source.is_file():
        raise ExtractionError(f"Archive link target is missing: {member.name} -> {member.linkname}")
    shutil.copy2(source, destination)


def find_missing_executables(root: Path, names: Iterable[str], suffix: str = "") -> list[str]:
    """Return the executables from ``names`` that are absent from ``root/bin``."""

    missing: list[str] = []
    for name in names:
        candidate = root / "bin" / f"{name}{suffix}"
        if not candidate.is_file():
            missing.append(name)
    return missing
