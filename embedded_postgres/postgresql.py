"""High level entry point tying catalog, fetcher, cache and lifecycle together."""

from __future__ import annotations

import logging
from pathlib import Path

from embedded_postgres.archive.cache import InstallationCache
from embedded_postgres.archive.catalog import (
    CatalogCache,
    CatalogClient,
    GitHubReleaseCatalog,
    LocalFolderCatalog,
    ReleaseCatalog,
)
from embedded_postgres.archive.fetcher import ArchiveFetcher, file_url_path, is_file_url
from embedded_postgres.archive.http import RetryPolicy
from embedded_postgres.archive.models import Installation, ReleaseDescriptor
from embedded_postgres.archive.targets import PlatformTarget
from embedded_postgres.lifecycle.config import DEFAULT_DATABASE
from embedded_postgres.lifecycle.instance import ServerInstance
from embedded_postgres.lifecycle.readiness import ReadinessProbe
from embedded_postgres.lifecycle.state import LifecycleState
from embedded_postgres.settings import Settings


_LOGGER = logging.getLogger(__name__)

__all__ = ["EmbeddedPostgres", "build_catalog"]


def build_catalog(settings: Settings) -> ReleaseCatalog:
    """Choose the catalog source named by ``settings.releases_url``.

    ``file://`` URLs and plain directory paths select a local folder
    catalog; anything else is treated as a GitHub releases API endpoint.
    """

    url = settings.releases_url
    if is_file_url(url):
        return LocalFolderCatalog(file_url_path(url))
    if "://" not in url and Path(url).expanduser().is_dir():
        return LocalFolderCatalog(Path(url).expanduser())
    return GitHubReleaseCatalog(
        url,
        retry_policy=RetryPolicy(max_attempts=settings.download_attempts),
        timeout=settings.catalog_timeout,
    )


class EmbeddedPostgres:
    """Provision, run and tear down one embedded PostgreSQL server.

    Components are built from ``settings`` unless injected, which keeps
    tests free to substitute a local catalog or an offline fetcher.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        catalog: ReleaseCatalog | CatalogClient | None = None,
        fetcher: ArchiveFetcher | None = None,
        cache: InstallationCache | None = None,
        target: PlatformTarget | None = None,
        probe: ReadinessProbe | None = None,
    ) -> None:
        self._settings = settings or Settings()
        if isinstance(catalog, CatalogClient):
            self._catalog = catalog
        else:
            self._catalog = CatalogClient(
                catalog if catalog is not None else build_catalog(self._settings),
                cache=CatalogCache(self._settings.catalog_ttl),
            )
        self._fetcher = fetcher or ArchiveFetcher(
            retry_policy=RetryPolicy(max_attempts=self._settings.download_attempts),
            timeout=self._settings.download_timeout,
        )
        self._cache = cache or InstallationCache(self._settings.cache_dir)
        self._target = target
        self._probe = probe
        self._descriptor: ReleaseDescriptor | None = None
        self._installation: Installation | None = None
        self._instance: ServerInstance | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def target(self) -> PlatformTarget:
        if self._target is None:
            self._target = PlatformTarget.detect()
        return self._target

    @property
    def cache(self) -> InstallationCache:
        return self._cache

    @property
    def installation(self) -> Installation | None:
        return self._installation

    @property
    def instance(self) -> ServerInstance | None:
        return self._instance

    @property
    def status(self) -> LifecycleState:
        if self._instance is None:
            return LifecycleState.UNINITIALIZED
        return self._instance.status

    def url(self, database: str = DEFAULT_DATABASE) -> str:
        if self._instance is not None:
            return self._instance.url(database)
        return self._settings.url(database)

    async def resolve(self) -> ReleaseDescriptor:
        """Resolve the configured version requirement to one release."""

        if self._descriptor is None:
            self._descriptor = await self._catalog.resolve(self._settings.version_requirement, self.target)
        return self._descriptor

    async def install(self) -> Installation:
        """Make sure the resolved release is extracted in the cache."""

        descriptor = await self.resolve()
        self._installation = await self._cache.ensure_installed(descriptor, self._fetcher.fetch)
        return self._installation

    async def setup(self) -> ServerInstance:
        """Resolve, install and initialise the data directory."""

        if self._instance is not None and not self._instance.destroyed:
            if self._instance.status in (LifecycleState.UNINITIALIZED, LifecycleState.FAILED):
                await self._instance.init()
            return self._instance
        installation = await self.install()
        instance = ServerInstance(
            installation,
            self._settings.instance,
            cache=self._cache,
            probe=self._probe,
        )
        self._instance = instance
        await instance.init()
        _LOGGER.info("PostgreSQL %s set up in %s", installation.version, instance.data_dir)
        return instance

    async def start(self) -> ServerInstance:
        instance = await self.setup()
        await instance.start()
        return instance

    async def stop(self) -> None:
        if self._instance is not None:
            await self._instance.stop()

    async def destroy(self) -> None:
        """Stop the server if needed and discard the instance."""

        instance = self._instance
        if instance is None:
            return
        await instance.destroy()
        self._instance = None

    async def __aenter__(self) -> "EmbeddedPostgres":
        try:
            await self.start()
        except BaseException:
            await self.destroy()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.destroy()
