"""On-disk cache of extracted PostgreSQL installations."""

from __future__ import annotations

import asyncio
import datetime
import json
import logging
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Awaitable, Callable

from embedded_postgres.archive.constants import (
    DEFAULT_LOCK_TIMEOUT,
    INSTALL_MARKER_NAME,
    LOCK_DIR_NAME,
    REQUIRED_EXECUTABLES,
    STAGING_PREFIX,
)
from embedded_postgres.archive.extraction import extract_tarball, find_missing_executables
from embedded_postgres.archive.locking import exclusive_scope, lock_name
from embedded_postgres.archive.models import InstalledArchive, Installation, ReleaseDescriptor
from embedded_postgres.errors import ExtractionError, InUse


_LOGGER = logging.getLogger(__name__)

ArchiveProvider = Callable[[ReleaseDescriptor], Awaitable[InstalledArchive]]

__all__ = ["ArchiveProvider", "InstallationCache"]


class InstallationCache:
    """Materialise release archives under ``root/<target>/<version>``.

    A directory only counts as an installation once it carries the install
    marker; the marker is written into a staging directory which is then
    renamed into place, so readers never observe a partial extraction.
    """

    def __init__(
        self,
        root: Path,
        *,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        lock_poll_interval: float = 0.05,
    ) -> None:
        self._root = Path(root).expanduser()
        self._lock_timeout = lock_timeout
        self._lock_poll_interval = lock_poll_interval
        self._leases: dict[Path, int] = {}
        self._leases_lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, descriptor: ReleaseDescriptor) -> Path:
        return (self._root / descriptor.target / str(descriptor.version)).absolute()

    def lookup(self, descriptor: ReleaseDescriptor) -> Installation | None:
        """Return the committed installation for ``descriptor`` if present."""

        return Installation.from_marker(self.path_for(descriptor))

    def installations(self) -> list[Installation]:
        found: list[Installation] = []
        if not self._root.is_dir():
            return found
        for marker in sorted(self._root.glob(f"*/*/{INSTALL_MARKER_NAME}")):
            if marker.parent.name.startswith(STAGING_PREFIX):
                continue
            installation = Installation.from_marker(marker.parent)
            if installation is not None:
                found.append(installation)
        return found

    async def ensure_installed(
        self,
        descriptor: ReleaseDescriptor,
        provider: ArchiveProvider,
    ) -> Installation:
        """Return the installation for ``descriptor``, installing it on a miss.

        ``provider`` is awaited only when no committed installation exists.
        Concurrent callers for the same key wait on a per-key lock and then
        observe the installation committed by whichever caller got there
        first.
        """

        existing = self.lookup(descriptor)
        if existing is not None:
            _LOGGER.debug("Installation cache hit for %s at %s", descriptor.version, existing.root)
            return existing

        async with self._scope(descriptor):
            existing = self.lookup(descriptor)
            if existing is not None:
                _LOGGER.debug("Installation for %s committed while waiting", descriptor.version)
                return existing
            final = self.path_for(descriptor)
            self._sweep(final)
            archive = await provider(descriptor)
            with archive:
                return await self._install(descriptor, archive, final)

    async def _install(
        self,
        descriptor: ReleaseDescriptor,
        archive: InstalledArchive,
        final: Path,
    ) -> Installation:
        final.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=f"{STAGING_PREFIX}{final.name}-", dir=final.parent))
        try:
            await _run_to_completion(extract_tarball, archive.path, staging)
            installation = Installation(
                root=final,
                version=descriptor.version,
                target=descriptor.target,
                sha256=archive.sha256,
                installed_at=datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds"),
            )
            missing = find_missing_executables(
                staging, REQUIRED_EXECUTABLES, installation.executable_suffix
            )
            if missing:
                raise ExtractionError(
                    f"Archive {descriptor.asset_name} is missing executables: {', '.join(missing)}"
                )
            (staging / INSTALL_MARKER_NAME).write_text(
                json.dumps(installation.marker_payload(), indent=2), encoding="utf-8"
            )
            staging.rename(final)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        _LOGGER.info("Installed PostgreSQL %s at %s", descriptor.version, final)
        return installation

    def _sweep(self, final: Path) -> None:
        """Remove leftovers of interrupted installs of ``final``."""

        if final.exists():
            _LOGGER.warning("Removing uncommitted installation directory %s", final)
            shutil.rmtree(final)
        if not final.parent.is_dir():
            return
        for stale in final.parent.glob(f"{STAGING_PREFIX}{final.name}-*"):
            _LOGGER.info("Removing stale staging directory %s", stale)
            shutil.rmtree(stale, ignore_errors=True)

    async def remove(self, descriptor: ReleaseDescriptor) -> bool:
        """Delete the committed installation for ``descriptor``.

        Returns ``False`` when nothing was installed. Raises :class:`InUse`
        while any server instance holds a lease on the installation.
        """

        async with self._scope(descriptor):
            final = self.path_for(descriptor)
            leases = self.leases(final)
            if leases:
                raise InUse(f"Installation {final} is used by {leases} live instance(s)")
            if not final.exists():
                return False
            (final / INSTALL_MARKER_NAME).unlink(missing_ok=True)
            shutil.rmtree(final)
        _LOGGER.info("Removed installation %s", final)
        return True

    def acquire(self, installation: Installation) -> None:
        key = installation.root.absolute()
        with self._leases_lock:
            self._leases[key] = self._leases.get(key, 0) + 1

    def release(self, installation: Installation) -> None:
        key = installation.root.absolute()
        with self._leases_lock:
            count = self._leases.get(key, 0) - 1
            if count > 0:
                self._leases[key] = count
            else:
                self._leases.pop(key, None)

    def leases(self, root: Path) -> int:
        with self._leases_lock:
            return self._leases.get(Path(root).absolute(), 0)

    def _scope(self, descriptor: ReleaseDescriptor):
        lock_path = self._root / LOCK_DIR_NAME / lock_name(descriptor.target, str(descriptor.version))
        return exclusive_scope(lock_path, timeout=self._lock_timeout, poll_interval=self._lock_poll_interval)


async def _run_to_completion(func: Callable[..., object], *args: object) -> None:
    """Run ``func`` in a worker thread that a cancellation waits out.

    The thread cannot be interrupted, so a cancelled caller only resumes
    once it has stopped touching the filesystem.
    """

    work = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        await asyncio.shield(work)
    except asyncio.CancelledError:
        await asyncio.wait([work])
        if not work.cancelled() and work.exception() is not None:
            _LOGGER.debug("Worker failed after cancellation: %s", work.exception())
        raise
