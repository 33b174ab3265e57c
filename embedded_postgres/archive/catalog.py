"""Release catalog sources and the resolving catalog client."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

import httpx
from packaging.version import InvalidVersion, Version

from embedded_postgres.archive.constants import (
    ARCHIVE_EXTENSIONS,
    DEFAULT_CATALOG_TIMEOUT,
    DEFAULT_CATALOG_TTL,
    HASH_SUFFIX,
    MAX_RELEASE_PAGES,
    RELEASES_PAGE_SIZE,
    RELEASES_URL,
)
from embedded_postgres.archive.hashing import normalise_digest
from embedded_postgres.archive.http import (
    ClientFactory,
    RetryExhausted,
    RetryPolicy,
    Sleeper,
    default_client_factory,
    retrying,
)
from embedded_postgres.archive.models import ReleaseDescriptor
from embedded_postgres.archive.targets import PlatformTarget
from embedded_postgres.archive.versioning import VersionRequirement, select_highest
from embedded_postgres.errors import CatalogUnavailable, IntegrityError, NotFound


_LOGGER = logging.getLogger(__name__)


class ReleaseCatalog(Protocol):
    """Protocol describing a source of published server archives."""

    @property
    def identity(self) -> str:
        """Stable name used to key cached listings."""

    async def list_releases(self, target: PlatformTarget) -> list[ReleaseDescriptor]:
        """Return every release published for ``target``."""


class GitHubReleaseCatalog:
    """List PostgreSQL archives attached to GitHub releases."""

    def __init__(
        self,
        releases_url: str = RELEASES_URL,
        *,
        retry_policy: RetryPolicy | None = None,
        timeout: float = DEFAULT_CATALOG_TIMEOUT,
        client_factory: ClientFactory | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._releases_url = releases_url
        self._retry_policy = retry_policy or RetryPolicy()
        self._timeout = timeout
        self._client_factory = client_factory or default_client_factory
        self._sleep = sleep

    @property
    def identity(self) -> str:
        return self._releases_url

    async def list_releases(self, target: PlatformTarget) -> list[ReleaseDescriptor]:
        try:
            payloads = await asyncio.wait_for(self._fetch_all_pages(), self._timeout)
        except asyncio.TimeoutError as exc:
            raise CatalogUnavailable(
                f"Timed out after {self._timeout:.0f}s listing releases from {self._releases_url}"
            ) from exc

        descriptors: list[ReleaseDescriptor] = []
        for release in payloads:
            descriptor = self._build_descriptor(release, target)
            if descriptor is not None:
                descriptors.append(descriptor)
        _LOGGER.info(
            "Catalog %s lists %s release(s) for %s",
            self._releases_url,
            len(descriptors),
            target.triple,
        )
        return descriptors

    async def _fetch_all_pages(self) -> list[dict]:
        releases: list[dict] = []
        async with self._client_factory(self._retry_policy.timeout()) as client:
            for page in range(1, MAX_RELEASE_PAGES + 1):
                entries = await self._fetch_page(client, page)
                releases.extend(entry for entry in entries if isinstance(entry, dict))
                if len(entries) < RELEASES_PAGE_SIZE:
                    break
        return releases

    async def _fetch_page(self, client: httpx.AsyncClient, page: int) -> list[Any]:
        params = {"per_page": str(RELEASES_PAGE_SIZE), "page": str(page)}

        async def attempt(number: int) -> Any:
            _LOGGER.debug("Requesting release page %s from %s (attempt %s)", page, self._releases_url, number)
            response = await client.get(self._releases_url, params=params)
            response.raise_for_status()
            return response.json()

        try:
            payload = await retrying(
                attempt, self._retry_policy, description=f"GET {self._releases_url}", sleep=self._sleep
            )
        except RetryExhausted as exc:
            raise CatalogUnavailable(str(exc)) from exc
        except (json.JSONDecodeError, ValueError) as exc:
            raise CatalogUnavailable(f"Release catalog returned invalid JSON: {exc}") from exc
        if not isinstance(payload, list):
            raise CatalogUnavailable("Release catalog did not return a list of releases")
        return payload

    def _build_descriptor(self, release: dict, target: PlatformTarget) -> ReleaseDescriptor | None:
        if release.get("draft") or release.get("prerelease"):
            return None
        raw_version = str(release.get("tag_name") or release.get("name") or "").strip()
        try:
            version = Version(raw_version.lstrip("v"))
        except InvalidVersion:
            _LOGGER.debug("Skipping release with unparsable tag %r", raw_version)
            return None

        assets = [asset for asset in release.get("assets") or [] if isinstance(asset, dict)]
        archive = self._select_archive(assets, version, target)
        if archive is None:
            return None
        url = str(archive.get("browser_download_url") or "").strip()
        if not url:
            return None

        checksum = _asset_digest(archive)
        checksum_url: str | None = None
        if checksum is None:
            companion = _find_companion_hash_asset(archive, assets)
            if companion is None:
                _LOGGER.error(
                    "Release asset %s has no SHA-256 digest or companion hash; skipping %s",
                    archive.get("name"),
                    version,
                )
                return None
            checksum_url = str(companion.get("browser_download_url") or "").strip() or None
            if checksum_url is None:
                return None

        return ReleaseDescriptor(
            version=version,
            target=target.triple,
            asset_name=str(archive.get("name")),
            url=url,
            checksum=checksum,
            checksum_url=checksum_url,
        )

    def _select_archive(
        self, assets: Iterable[dict], version: Version, target: PlatformTarget
    ) -> dict | None:
        expected = {f"postgresql-{version}-{target.triple}{suffix}" for suffix in ARCHIVE_EXTENSIONS}
        fallback: dict | None = None
        for asset in assets:
            name = str(asset.get("name") or "").strip().lower()
            if name in expected:
                return asset
            if fallback is None and target.triple in name and name.endswith(ARCHIVE_EXTENSIONS):
                fallback = asset
        return fallback


class LocalFolderCatalog:
    """Serve releases from a directory holding ``releases.json`` and archives."""

    def __init__(self, folder: Path) -> None:
        self._folder = Path(folder)

    @property
    def identity(self) -> str:
        return str(self._folder.resolve())

    async def list_releases(self, target: PlatformTarget) -> list[ReleaseDescriptor]:
        metadata_path = self._folder / "releases.json"
        try:
            data = json.loads(metadata_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise CatalogUnavailable(f"Failed to read local catalog {metadata_path}: {exc}") from exc
        if not isinstance(data, list):
            raise CatalogUnavailable(f"Local catalog {metadata_path} must contain a list")

        descriptors: list[ReleaseDescriptor] = []
        for entry in data:
            if not isinstance(entry, dict) or entry.get("target") != target.triple:
                continue
            try:
                version = Version(str(entry.get("version", "")))
            except InvalidVersion:
                _LOGGER.debug("Local catalog entry has invalid version: %s", entry)
                continue
            archive_name = str(entry.get("archive") or "").strip()
            archive_path = self._folder / archive_name
            if not archive_name or not archive_path.is_file():
                _LOGGER.debug("Local archive missing for %s: %s", version, archive_path)
                continue
            checksum = entry.get("sha256")
            descriptors.append(
                ReleaseDescriptor(
                    version=version,
                    target=target.triple,
                    asset_name=archive_name,
                    url=archive_path.resolve().as_uri(),
                    checksum=str(checksum) if checksum else None,
                    checksum_url=_local_hash_uri(archive_path),
                )
            )
        return descriptors


def _local_hash_uri(archive_path: Path) -> str | None:
    hash_path = archive_path.with_name(archive_path.name + HASH_SUFFIX)
    if hash_path.is_file():
        return hash_path.resolve().as_uri()
    return None


class CatalogCache:
    """Time-limited memo of catalog listings keyed by catalog and target."""

    def __init__(self, ttl: float = DEFAULT_CATALOG_TTL, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[tuple[str, str], tuple[float, list[ReleaseDescriptor]]] = {}

    def get(self, key: tuple[str, str]) -> list[ReleaseDescriptor] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, releases = entry
        if self._clock() - stored_at > self._ttl:
            del self._entries[key]
            return None
        return list(releases)

    def put(self, key: tuple[str, str], releases: list[ReleaseDescriptor]) -> None:
        self._entries[key] = (self._clock(), list(releases))

    def invalidate(self) -> None:
        self._entries.clear()


class CatalogClient:
    """Resolve version requirements against a release catalog."""

    def __init__(self, catalog: ReleaseCatalog, *, cache: CatalogCache | None = None) -> None:
        self._catalog = catalog
        self._cache = cache if cache is not None else CatalogCache()

    async def releases(self, target: PlatformTarget) -> list[ReleaseDescriptor]:
        key = (self._catalog.identity, target.triple)
        cached = self._cache.get(key)
        if cached is not None:
            _LOGGER.debug("Using cached catalog listing for %s", target.triple)
            return cached
        releases = await self._catalog.list_releases(target)
        self._cache.put(key, releases)
        return releases

    async def resolve(
        self,
        requirement: "VersionRequirement | str",
        target: PlatformTarget,
    ) -> ReleaseDescriptor:
        """Return the highest release satisfying ``requirement`` for ``target``."""

        parsed = VersionRequirement.parse(requirement)
        releases = await self.releases(target)
        selected = select_highest(parsed, releases, version_of=lambda release: release.version)
        if selected is None:
            raise NotFound(f"No release matching {parsed} is published for {target.triple}")
        _LOGGER.info("Resolved version requirement %s to %s (%s)", parsed, selected.version, target.triple)
        return selected


def _asset_digest(asset: dict) -> str | None:
    digest = asset.get("digest")
    if not isinstance(digest, str) or not digest.strip():
        return None
    try:
        return normalise_digest(digest)
    except IntegrityError:
        _LOGGER.debug("Ignoring unusable digest %r on asset %s", digest, asset.get("name"))
        return None


def _find_companion_hash_asset(archive: dict, assets: Iterable[dict]) -> dict | None:
    archive_name = str(archive.get("name") or "").strip().lower()
    if not archive_name:
        return None
    expected = f"{archive_name}{HASH_SUFFIX}"
    for asset in assets:
        if str(asset.get("name") or "").strip().lower() == expected:
            return asset
    return None


__all__ = [
    "CatalogCache",
    "CatalogClient",
    "GitHubReleaseCatalog",
    "LocalFolderCatalog",
    "ReleaseCatalog",
]
