from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path

import httpx
import pytest

from embedded_postgres.archive.hashing import calculate_sha256, normalise_digest, parse_hash_text, verify_digest
from embedded_postgres.archive.http import RetryExhausted, RetryPolicy, retrying
from embedded_postgres.archive.locking import LockTimeout, exclusive_scope, lock_name
from embedded_postgres.archive.targets import PlatformTarget
from embedded_postgres.errors import IntegrityError, NotFound

DIGEST = hashlib.sha256(b"payload").hexdigest()


def _status_error(status: int, headers: dict[str, str] | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://downloads.example.test/archive.tar.gz")
    response = httpx.Response(status, headers=headers, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


@pytest.mark.parametrize(
    ("triple", "os_name", "arch"),
    [
        ("x86_64-unknown-linux-gnu", "linux", "x86_64"),
        ("aarch64-apple-darwin", "macos", "aarch64"),
        ("X86_64-PC-WINDOWS-MSVC", "windows", "x86_64"),
    ],
)
def test_target_from_triple(triple: str, os_name: str, arch: str) -> None:
    target = PlatformTarget.from_triple(triple)

    assert (target.os_name, target.arch, target.triple) == (os_name, arch, triple.lower())


def test_unknown_target_is_rejected() -> None:
    with pytest.raises(NotFound):
        PlatformTarget.from_triple("sparc-sun-solaris")


def test_detect_maps_machine_aliases(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("platform.machine", lambda: "arm64")
    monkeypatch.setattr("sys.platform", "darwin")

    assert PlatformTarget.detect().triple == "aarch64-apple-darwin"


def test_detect_rejects_unknown_architecture(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("platform.machine", lambda: "riscv64")

    with pytest.raises(NotFound):
        PlatformTarget.detect()


def test_calculate_sha256(tmp_path: Path) -> None:
    path = tmp_path / "payload.bin"
    path.write_bytes(b"payload")

    assert calculate_sha256(path) == DIGEST


@pytest.mark.parametrize("value", [DIGEST, DIGEST.upper(), f"sha256:{DIGEST}", f"SHA256={DIGEST}", f"  {DIGEST}\n"])
def test_normalise_digest_accepts_published_forms(value: str) -> None:
    assert normalise_digest(value) == DIGEST


@pytest.mark.parametrize("value", ["md5:abc", "sha256:xyz", "1234"])
def test_normalise_digest_rejects_other_values(value: str) -> None:
    with pytest.raises(IntegrityError):
        normalise_digest(value)


def test_parse_hash_text_reads_sha256sum_format() -> None:
    assert parse_hash_text(f"{DIGEST}  postgresql-16.4.0.tar.gz\n") == DIGEST
    with pytest.raises(IntegrityError):
        parse_hash_text("   \n")


def test_verify_digest_reports_both_values() -> None:
    with pytest.raises(IntegrityError) as excinfo:
        verify_digest(DIGEST, "0" * 64)

    assert excinfo.value.expected == DIGEST
    assert excinfo.value.actual == "0" * 64


def test_retry_policy_classifies_errors() -> None:
    policy = RetryPolicy()

    assert policy.should_retry(_status_error(503))
    assert policy.should_retry(_status_error(429))
    assert not policy.should_retry(_status_error(404))
    assert policy.should_retry(httpx.ConnectError("refused"))
    assert policy.should_retry(httpx.ReadTimeout("slow"))


def test_retry_policy_backoff_and_retry_after() -> None:
    policy = RetryPolicy(backoff_initial=0.5, backoff_max=3.0)

    assert [policy.delay(attempt, _status_error(503)) for attempt in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 3.0]
    assert policy.delay(1, _status_error(503, {"Retry-After": "2"})) == 2.0
    assert policy.delay(1, _status_error(503, {"Retry-After": "120"})) == 3.0
    assert policy.delay(1, _status_error(503, {"Retry-After": "soon"})) == 0.5


def test_retrying_stops_on_permanent_errors() -> None:
    attempts: list[int] = []

    async def operation(number: int) -> None:
        attempts.append(number)
        raise _status_error(404)

    with pytest.raises(RetryExhausted) as excinfo:
        asyncio.run(retrying(operation, RetryPolicy(max_attempts=5), description="GET archive"))

    assert attempts == [1]
    assert excinfo.value.retryable is False
    assert "HTTP 404" in str(excinfo.value)


def test_lock_name_is_filesystem_safe() -> None:
    assert lock_name("x86_64-unknown-linux-gnu", "16.4.0") == "x86_64-unknown-linux-gnu__16.4.0.lock"
    assert lock_name("../etc", "a/b") == "etc__a_b.lock"


def test_exclusive_scope_blocks_second_holder(tmp_path: Path) -> None:
    lock_path = tmp_path / "locks" / "install.lock"

    async def scenario() -> None:
        async with exclusive_scope(lock_path, timeout=1.0):
            with pytest.raises(LockTimeout):
                async with exclusive_scope(lock_path, timeout=0.1, poll_interval=0.02):
                    pass
        async with exclusive_scope(lock_path, timeout=0.1):
            pass

    asyncio.run(scenario())

    assert lock_path.is_file()
