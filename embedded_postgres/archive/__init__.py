"""Public API for resolving, downloading and caching server archives."""

from __future__ import annotations

from embedded_postgres.archive.cache import ArchiveProvider, InstallationCache
from embedded_postgres.archive.catalog import (
    CatalogCache,
    CatalogClient,
    GitHubReleaseCatalog,
    LocalFolderCatalog,
    ReleaseCatalog,
)
from embedded_postgres.archive.constants import (
    DEFAULT_CACHE_DIR,
    INSTALL_MARKER_NAME,
    RELEASES_URL,
    REQUIRED_EXECUTABLES,
)
from embedded_postgres.archive.fetcher import ArchiveFetcher
from embedded_postgres.archive.http import RetryPolicy
from embedded_postgres.archive.locking import LockTimeout, exclusive_scope
from embedded_postgres.archive.models import InstalledArchive, Installation, ReleaseDescriptor
from embedded_postgres.archive.targets import SUPPORTED_TARGETS, PlatformTarget
from embedded_postgres.archive.versioning import RequirementKind, VersionRequirement

__all__ = [
    "DEFAULT_CACHE_DIR",
    "INSTALL_MARKER_NAME",
    "RELEASES_URL",
    "REQUIRED_EXECUTABLES",
    "SUPPORTED_TARGETS",
    "ArchiveFetcher",
    "ArchiveProvider",
    "CatalogCache",
    "CatalogClient",
    "GitHubReleaseCatalog",
    "InstallationCache",
    "InstalledArchive",
    "Installation",
    "LocalFolderCatalog",
    "LockTimeout",
    "PlatformTarget",
    "ReleaseCatalog",
    "ReleaseDescriptor",
    "RequirementKind",
    "RetryPolicy",
    "VersionRequirement",
    "exclusive_scope",
]
