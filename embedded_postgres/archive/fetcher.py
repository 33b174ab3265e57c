"""Download and verify release archives."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import shutil
import tempfile
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from embedded_postgres.archive.constants import DEFAULT_DOWNLOAD_TIMEOUT, DOWNLOAD_CHUNK_SIZE
from embedded_postgres.archive.hashing import calculate_sha256, parse_hash_text, verify_digest
from embedded_postgres.archive.http import (
    ClientFactory,
    RetryExhausted,
    RetryPolicy,
    Sleeper,
    default_client_factory,
    retrying,
)
from embedded_postgres.archive.models import InstalledArchive, ReleaseDescriptor
from embedded_postgres.errors import DownloadFailed, IntegrityError


_LOGGER = logging.getLogger(__name__)

__all__ = ["ArchiveFetcher", "file_url_path", "is_file_url"]


class ArchiveFetcher:
    """Obtain the archive for a release and verify it against its checksum.

    Archives are streamed into a private temporary directory while the
    SHA-256 digest is computed, so large downloads never sit in memory. The
    returned :class:`InstalledArchive` owns that file; bytes that fail
    verification are removed before the error propagates.
    """

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        client_factory: ClientFactory | None = None,
        temp_dir: Path | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._retry_policy = retry_policy or RetryPolicy()
        self._timeout = timeout
        self._client_factory = client_factory or default_client_factory
        self._temp_dir = temp_dir
        self._sleep = sleep

    async def fetch(self, descriptor: ReleaseDescriptor) -> InstalledArchive:
        _LOGGER.info("Fetching PostgreSQL %s for %s", descriptor.version, descriptor.target)
        try:
            return await asyncio.wait_for(self._fetch(descriptor), self._timeout)
        except asyncio.TimeoutError as exc:
            raise DownloadFailed(
                f"Download of {descriptor.asset_name} exceeded {self._timeout:.0f}s",
                url=descriptor.url,
            ) from exc

    async def _fetch(self, descriptor: ReleaseDescriptor) -> InstalledArchive:
        expected = await self._expected_checksum(descriptor)
        work_dir = Path(tempfile.mkdtemp(prefix="embedded-postgres-", dir=self._temp_dir))
        target = work_dir / _safe_name(descriptor.asset_name)
        try:
            if is_file_url(descriptor.url):
                digest, size = await asyncio.to_thread(_copy_local, file_url_path(descriptor.url), target)
                attempts = 1
            else:
                digest, size, attempts = await self._download(descriptor.url, target)
            verify_digest(expected, digest)
        except BaseException as exc:
            shutil.rmtree(work_dir, ignore_errors=True)
            if isinstance(exc, IntegrityError):
                _LOGGER.error("Discarding %s: %s", descriptor.asset_name, exc)
            raise

        _LOGGER.info(
            "Verified %s (%s bytes, sha256=%s) after %s attempt(s)",
            descriptor.asset_name,
            size,
            digest,
            attempts,
        )
        return InstalledArchive(descriptor, target, digest, size, attempts)

    async def _download(self, url: str, target: Path) -> tuple[str, int, int]:
        attempts = 0

        async def attempt(number: int) -> tuple[str, int]:
            nonlocal attempts
            attempts = number
            _LOGGER.debug("Downloading %s (attempt %s)", url, number)
            digest = hashlib.sha256()
            size = 0
            try:
                async with self._client_factory(self._retry_policy.timeout()) as client:
                    async with client.stream("GET", url) as response:
                        response.raise_for_status()
                        with target.open("wb") as destination:
                            async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                                destination.write(chunk)
                                digest.update(chunk)
                                size += len(chunk)
            except httpx.HTTPError:
                target.unlink(missing_ok=True)
                raise
            return digest.hexdigest(), size

        try:
            digest, size = await retrying(attempt, self._retry_policy, description=f"GET {url}", sleep=self._sleep)
        except RetryExhausted as exc:
            raise DownloadFailed(str(exc), url=url, attempts=exc.attempts) from exc
        except OSError as exc:
            raise DownloadFailed(f"Failed to write download to {target}: {exc}", url=url, attempts=attempts) from exc
        return digest, size, attempts

    async def _expected_checksum(self, descriptor: ReleaseDescriptor) -> str:
        if descriptor.checksum:
            _LOGGER.debug("Using published digest for %s", descriptor.asset_name)
            return descriptor.checksum
        if descriptor.checksum_url is None:
            raise IntegrityError(f"Release {descriptor.version} has no published checksum")

        url = descriptor.checksum_url
        _LOGGER.debug("Downloading checksum for %s from %s", descriptor.asset_name, url)
        if is_file_url(url):
            try:
                return parse_hash_text(file_url_path(url).read_text(encoding="utf-8"))
            except OSError as exc:
                raise DownloadFailed(f"Failed to read checksum file: {exc}", url=url) from exc

        async def attempt(_number: int) -> str:
            async with self._client_factory(self._retry_policy.timeout()) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.text

        try:
            text = await retrying(attempt, self._retry_policy, description=f"GET {url}", sleep=self._sleep)
        except RetryExhausted as exc:
            raise DownloadFailed(str(exc), url=url, attempts=exc.attempts) from exc
        return parse_hash_text(text)


def _copy_local(source: Path, target: Path) -> tuple[str, int]:
    try:
        shutil.copyfile(source, target)
    except OSError as exc:
        raise DownloadFailed(f"Failed to copy archive from {source}: {exc}", url=source.as_uri()) from exc
    return calculate_sha256(target), target.stat().st_size


def is_file_url(url: str) -> bool:
    return url.startswith("file:")


def file_url_path(url: str) -> Path:
    parsed = urlparse(url)
    path = unquote(parsed.path)
    if parsed.netloc:
        path = f"//{parsed.netloc}{path}"
    if len(path) > 2 and path[0] == "/" and path[2] == ":":
        path = path[1:]
    return Path(path)


def _safe_name(name: str) -> str:
    cleaned = Path(name.replace("\\", "/")).name
    return cleaned or "archive.tar.gz"
