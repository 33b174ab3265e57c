from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path

import httpx
import pytest
from packaging.version import Version

from embedded_postgres.archive.fetcher import ArchiveFetcher
from embedded_postgres.archive.http import RetryPolicy
from embedded_postgres.archive.models import ReleaseDescriptor
from embedded_postgres.errors import DownloadFailed, IntegrityError

from tests.unit.fake_postgres_utils import TARGET, build_fake_archive, descriptor_for

PAYLOAD = b"postgresql archive bytes" * 1024
PAYLOAD_SHA256 = hashlib.sha256(PAYLOAD).hexdigest()
ARCHIVE_URL = "https://downloads.example.test/postgresql-16.4.0.tar.gz"


class _Server:
    def __init__(self, responses: dict[str, list[httpx.Response]]) -> None:
        self.responses = {url: list(items) for url, items in responses.items()}
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        return self.responses[url].pop(0)

    def factory(self, timeout: httpx.Timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self), timeout=timeout, follow_redirects=True)


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _descriptor(checksum: str | None = PAYLOAD_SHA256, checksum_url: str | None = None) -> ReleaseDescriptor:
    return ReleaseDescriptor(
        version=Version("16.4.0"),
        target=TARGET.triple,
        asset_name="postgresql-16.4.0.tar.gz",
        url=ARCHIVE_URL,
        checksum=checksum,
        checksum_url=checksum_url,
    )


def _fetcher(server: _Server, tmp_path: Path, sleep: _RecordingSleep | None = None, **kwargs) -> ArchiveFetcher:
    return ArchiveFetcher(
        client_factory=server.factory,
        temp_dir=tmp_path,
        sleep=sleep or _RecordingSleep(),
        **kwargs,
    )


def test_fetch_streams_and_verifies_archive(tmp_path: Path) -> None:
    server = _Server({ARCHIVE_URL: [httpx.Response(200, content=PAYLOAD)]})

    archive = asyncio.run(_fetcher(server, tmp_path).fetch(_descriptor()))

    with archive:
        assert archive.path.read_bytes() == PAYLOAD
        assert archive.sha256 == PAYLOAD_SHA256
        assert archive.size == len(PAYLOAD)
        assert archive.attempts == 1
        archive_path = archive.path
    assert not archive_path.exists()


def test_fetch_retries_transient_status_and_records_attempts(tmp_path: Path) -> None:
    server = _Server(
        {
            ARCHIVE_URL: [
                httpx.Response(503),
                httpx.Response(503, headers={"Retry-After": "2"}),
                httpx.Response(200, content=PAYLOAD),
            ]
        }
    )
    sleep = _RecordingSleep()

    archive = asyncio.run(_fetcher(server, tmp_path, sleep).fetch(_descriptor()))

    with archive:
        assert archive.attempts == 3
    assert len(server.requests) == 3
    assert sleep.delays == [0.5, 2.0]


def test_fetch_does_not_retry_client_errors(tmp_path: Path) -> None:
    server = _Server({ARCHIVE_URL: [httpx.Response(404)]})

    with pytest.raises(DownloadFailed) as excinfo:
        asyncio.run(_fetcher(server, tmp_path).fetch(_descriptor()))

    assert len(server.requests) == 1
    assert excinfo.value.attempts == 1
    assert excinfo.value.url == ARCHIVE_URL


def test_fetch_gives_up_after_max_attempts(tmp_path: Path) -> None:
    server = _Server({ARCHIVE_URL: [httpx.Response(500) for _ in range(2)]})

    with pytest.raises(DownloadFailed) as excinfo:
        asyncio.run(_fetcher(server, tmp_path, retry_policy=RetryPolicy(max_attempts=2)).fetch(_descriptor()))

    assert excinfo.value.attempts == 2
    assert list(tmp_path.iterdir()) == []


def test_fetch_rejects_checksum_mismatch_without_retrying(tmp_path: Path) -> None:
    server = _Server({ARCHIVE_URL: [httpx.Response(200, content=PAYLOAD)]})

    with pytest.raises(IntegrityError) as excinfo:
        asyncio.run(_fetcher(server, tmp_path).fetch(_descriptor(checksum="0" * 64)))

    assert excinfo.value.actual == PAYLOAD_SHA256
    assert len(server.requests) == 1
    assert list(tmp_path.iterdir()) == []


def test_fetch_downloads_companion_checksum(tmp_path: Path) -> None:
    hash_url = f"{ARCHIVE_URL}.sha256"
    server = _Server(
        {
            hash_url: [httpx.Response(200, text=f"{PAYLOAD_SHA256}  postgresql-16.4.0.tar.gz\n")],
            ARCHIVE_URL: [httpx.Response(200, content=PAYLOAD)],
        }
    )

    archive = asyncio.run(_fetcher(server, tmp_path).fetch(_descriptor(checksum=None, checksum_url=hash_url)))

    with archive:
        assert archive.sha256 == PAYLOAD_SHA256
    assert server.requests == [hash_url, ARCHIVE_URL]


def test_fetch_requires_a_published_checksum(tmp_path: Path) -> None:
    server = _Server({})

    with pytest.raises(IntegrityError):
        asyncio.run(_fetcher(server, tmp_path).fetch(_descriptor(checksum=None)))
    assert server.requests == []


def test_fetch_copies_local_archives(tmp_path: Path) -> None:
    archive_path = build_fake_archive(tmp_path / "catalog")
    fetcher = ArchiveFetcher(temp_dir=tmp_path)

    archive = asyncio.run(fetcher.fetch(descriptor_for(archive_path)))

    with archive:
        assert archive.path != archive_path
        assert archive.path.read_bytes() == archive_path.read_bytes()


def test_fetch_honours_overall_timeout(tmp_path: Path) -> None:
    async def slow(_request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, content=PAYLOAD)

    def factory(timeout: httpx.Timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(slow), timeout=timeout)

    fetcher = ArchiveFetcher(client_factory=factory, temp_dir=tmp_path, timeout=0.2)

    with pytest.raises(DownloadFailed):
        asyncio.run(fetcher.fetch(_descriptor()))
    assert list(tmp_path.iterdir()) == []


def test_cancelled_download_removes_partial_file(tmp_path: Path) -> None:
    async def scenario() -> None:
        streaming = asyncio.Event()

        async def body():
            yield PAYLOAD[:1024]
            streaming.set()
            await asyncio.sleep(30)
            yield PAYLOAD[1024:]

        async def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body())

        def factory(timeout: httpx.Timeout) -> httpx.AsyncClient:
            return httpx.AsyncClient(transport=httpx.MockTransport(handler), timeout=timeout)

        fetcher = ArchiveFetcher(client_factory=factory, temp_dir=tmp_path)
        fetch = asyncio.ensure_future(fetcher.fetch(_descriptor()))
        await streaming.wait()
        fetch.cancel()
        with pytest.raises(asyncio.CancelledError):
            await fetch

    asyncio.run(scenario())

    assert list(tmp_path.iterdir()) == []
