"""Named exclusive scopes backed by lock files."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, BinaryIO

try:  # pragma: no cover - platform specific availability
    import fcntl  # type: ignore
except ImportError:  # pragma: no cover - windows
    fcntl = None  # type: ignore[assignment]

try:  # pragma: no cover - platform specific availability
    import msvcrt  # type: ignore
except ImportError:  # pragma: no cover - non-windows
    msvcrt = None  # type: ignore[assignment]

from embedded_postgres.errors import EmbeddedPostgresError


_LOGGER = logging.getLogger(__name__)

__all__ = ["LockTimeout", "exclusive_scope", "lock_name"]


class LockTimeout(EmbeddedPostgresError):
    """The exclusive scope could not be entered before the deadline."""


def lock_name(*components: str) -> str:
    """Return a filesystem-safe lock file name built from ``components``."""

    tokens = []
    for value in components:
        sanitized = re.sub(r"[^A-Za-z0-9._-]", "_", value).strip("._") or "lock"
        tokens.append(sanitized)
    return "__".join(tokens) + ".lock"


def _try_lock(handle: BinaryIO) -> bool:
    if fcntl is not None:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except (BlockingIOError, PermissionError):
            return False
        return True
    if msvcrt is not None:
        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError:
            return False
        return True
    return True  # pragma: no cover - no locking backend available


def _unlock(handle: BinaryIO) -> None:
    if fcntl is not None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    elif msvcrt is not None:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)


@asynccontextmanager
async def exclusive_scope(
    lock_path: Path,
    *,
    timeout: float,
    poll_interval: float = 0.05,
) -> AsyncIterator[None]:
    """Hold an inter-process lock on ``lock_path`` for the body of the block.

    The lock is polled without blocking so waiting never stalls the event
    loop, and waiters give up with :class:`LockTimeout` after ``timeout``.
    Each entry opens its own file handle, which also serialises threads of
    the same process.
    """

    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+b") as handle:
        handle.seek(0, os.SEEK_END)
        if handle.tell() == 0:
            handle.write(b"0")
            handle.flush()

        deadline = time.monotonic() + timeout
        waited = False
        while not _try_lock(handle):
            if not waited:
                _LOGGER.debug("Waiting for lock %s", lock_path)
                waited = True
            if time.monotonic() >= deadline:
                raise LockTimeout(f"Timed out after {timeout:.0f}s waiting for {lock_path}")
            await asyncio.sleep(poll_interval)

        _LOGGER.debug("Acquired lock %s", lock_path)
        try:
            yield
        finally:
            _unlock(handle)
            _LOGGER.debug("Released lock %s", lock_path)
