from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from embedded_postgres.commands import Invocation
from embedded_postgres.errors import tail_lines
from embedded_postgres.lifecycle import (
    InstanceConfiguration,
    LifecycleState,
    TcpConnectProbe,
    can_transition,
    find_free_port,
    run_invocation,
    spawn,
    terminate_process,
)
from embedded_postgres.lifecycle.process import read_log_tail

from tests.unit.fake_postgres_utils import requires_posix


def _python(code: str) -> Invocation:
    return Invocation(program=Path(sys.executable), args=("-c", code))


@pytest.mark.parametrize(
    ("current", "new", "allowed"),
    [
        (LifecycleState.UNINITIALIZED, LifecycleState.INITIALIZING, True),
        (LifecycleState.INITIALIZED, LifecycleState.STARTING, True),
        (LifecycleState.STARTING, LifecycleState.READY, True),
        (LifecycleState.READY, LifecycleState.STOPPING, True),
        (LifecycleState.STOPPED, LifecycleState.STARTING, True),
        (LifecycleState.FAILED, LifecycleState.INITIALIZING, True),
        (LifecycleState.UNINITIALIZED, LifecycleState.STARTING, False),
        (LifecycleState.READY, LifecycleState.STARTING, False),
        (LifecycleState.STOPPED, LifecycleState.READY, False),
        (LifecycleState.FAILED, LifecycleState.READY, False),
    ],
)
def test_lifecycle_transitions(current: LifecycleState, new: LifecycleState, allowed: bool) -> None:
    assert can_transition(current, new) is allowed


def test_tail_lines_keeps_last_non_empty_lines() -> None:
    text = "\n".join(f"line {index}" for index in range(30)) + "\n\n"

    tail = tail_lines(text, limit=3)

    assert tail == "line 27\nline 28\nline 29"
    assert tail_lines(b"only\n") == "only"
    assert tail_lines(None) == ""


def test_read_log_tail_handles_missing_file(tmp_path: Path) -> None:
    log_path = tmp_path / "server.log"
    assert read_log_tail(log_path) == ""

    log_path.write_text("LOG:  starting\nFATAL:  lock file exists\n", encoding="utf-8")

    assert read_log_tail(log_path).endswith("FATAL:  lock file exists")


def test_run_invocation_captures_output_and_environment() -> None:
    invocation = Invocation(
        program=Path(sys.executable),
        args=("-c", "import os, sys; print(os.environ['PGPASSWORD']); sys.stderr.write('warn\\n'); sys.exit(4)"),
        env={"PGPASSWORD": "secret"},
    )

    result = asyncio.run(run_invocation(invocation, timeout=30))

    assert result.returncode == 4
    assert not result.ok
    assert result.stdout.strip() == "secret"
    assert result.stderr_tail == "warn"


def test_run_invocation_times_out() -> None:
    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(run_invocation(_python("import time; time.sleep(30)"), timeout=0.2))


@requires_posix
def test_spawn_appends_output_and_terminates(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "server.log"
    code = "import sys, time; print('booting', flush=True); sys.stderr.write('to stderr\\n'); sys.stderr.flush(); time.sleep(30)"

    async def scenario() -> int | None:
        process = await spawn(_python(code), log_path=log_path)
        for _ in range(200):
            if "to stderr" in log_path.read_text(encoding="utf-8"):
                break
            await asyncio.sleep(0.02)
        return await terminate_process(process, timeout=5)

    returncode = asyncio.run(scenario())

    assert returncode is not None
    contents = log_path.read_text(encoding="utf-8")
    assert "booting" in contents
    assert "to stderr" in contents


def test_tcp_probe_reports_listening_port() -> None:
    async def scenario() -> tuple[bool, bool]:
        server = await asyncio.start_server(lambda reader, writer: writer.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        config = InstanceConfiguration(host="127.0.0.1", port=port, password="pw")
        probe = TcpConnectProbe(attempt_timeout=1.0)
        try:
            listening = await probe.check(None, config)
        finally:
            server.close()
            await server.wait_closed()
        closed = await probe.check(None, config)
        return listening, closed

    listening, closed = asyncio.run(scenario())

    assert listening is True
    assert closed is False


def test_find_free_port_returns_bindable_port() -> None:
    port = find_free_port("127.0.0.1")

    assert 0 < port < 65536
