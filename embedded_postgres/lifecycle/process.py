"""Spawn and supervise PostgreSQL executables."""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from embedded_postgres.commands.base import Invocation
from embedded_postgres.errors import tail_lines


_LOGGER = logging.getLogger(__name__)

KILL_TIMEOUT = 5.0

__all__ = [
    "CompletedCommand",
    "KILL_TIMEOUT",
    "await_exit",
    "kill_process",
    "read_log_tail",
    "run_invocation",
    "spawn",
    "terminate_process",
]


@dataclass(frozen=True)
class CompletedCommand:
    """Exit status and captured output of a finished executable."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def stderr_tail(self) -> str:
        return tail_lines(self.stderr) or tail_lines(self.stdout)


def _popen_kwargs() -> dict[str, Any]:
    kwargs: dict[str, Any] = {"stdin": subprocess.DEVNULL}
    if os.name == "nt":  # pragma: no cover - exercised on Windows
        kwargs["creationflags"] = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0) | getattr(
            subprocess, "CREATE_NO_WINDOW", 0
        )
    else:
        kwargs["start_new_session"] = True
    return kwargs


async def run_invocation(invocation: Invocation, *, timeout: float) -> CompletedCommand:
    """Run ``invocation`` to completion and capture its output.

    Raises :class:`asyncio.TimeoutError` after ``timeout`` seconds; the child
    is killed before the error (or a cancellation) propagates.
    """

    _LOGGER.debug("Running %s", invocation.to_command_string())
    process = await asyncio.create_subprocess_exec(
        *invocation.argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=invocation.environment(),
        **_popen_kwargs(),
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except BaseException:
        await kill_process(process)
        raise
    result = CompletedCommand(
        argv=tuple(invocation.argv),
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    _LOGGER.debug("%s exited with %s", invocation.program.name, result.returncode)
    return result


async def spawn(invocation: Invocation, *, log_path: Path) -> asyncio.subprocess.Process:
    """Start a long-running executable with its output appended to ``log_path``."""

    _LOGGER.debug("Spawning %s (log: %s)", invocation.to_command_string(), log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("ab") as log_file:
        process = await asyncio.create_subprocess_exec(
            *invocation.argv,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            env=invocation.environment(),
            **_popen_kwargs(),
        )
    _LOGGER.info("Started %s with pid %s", invocation.program.name, process.pid)
    return process


async def terminate_process(process: asyncio.subprocess.Process, *, timeout: float) -> int | None:
    """Ask ``process`` to exit, escalating to a kill after ``timeout``.

    Returns the exit code, or ``None`` when the process could not be
    confirmed as exited even after the kill.
    """

    if process.returncode is not None:
        return process.returncode
    try:
        process.terminate()
    except ProcessLookupError:
        pass
    return await await_exit(process, timeout=timeout)


async def await_exit(process: asyncio.subprocess.Process, *, timeout: float) -> int | None:
    """Wait up to ``timeout`` for ``process`` to exit on its own, then kill it."""

    try:
        return await asyncio.wait_for(process.wait(), timeout)
    except asyncio.TimeoutError:
        _LOGGER.warning("Process %s still running after %.1fs; killing it", process.pid, timeout)
    return await kill_process(process)


async def kill_process(process: asyncio.subprocess.Process) -> int | None:
    if process.returncode is not None:
        return process.returncode
    try:
        process.kill()
    except ProcessLookupError:
        pass
    try:
        return await asyncio.wait_for(process.wait(), KILL_TIMEOUT)
    except asyncio.TimeoutError:
        _LOGGER.error("Process %s did not exit after being killed", process.pid)
        return None


def read_log_tail(path: Path) -> str:
    """Return the last lines of a server log, or ``""`` when it is unreadable."""

    try:
        with path.open("rb") as handle:
            handle.seek(0, os.SEEK_END)
            size = handle.tell()
            handle.seek(max(0, size - 16384))
            return tail_lines(handle.read())
    except OSError:
        return ""
