"""Provision throwaway PostgreSQL servers from published binary archives."""

from __future__ import annotations

from embedded_postgres.archive import (
    ArchiveFetcher,
    CatalogCache,
    CatalogClient,
    GitHubReleaseCatalog,
    InstallationCache,
    Installation,
    LocalFolderCatalog,
    PlatformTarget,
    ReleaseDescriptor,
    RetryPolicy,
    VersionRequirement,
)
from embedded_postgres.errors import (
    AlreadyRunning,
    CatalogUnavailable,
    CommandFailed,
    DownloadFailed,
    EmbeddedPostgresError,
    ExtractionError,
    InitializationError,
    IntegrityError,
    InUse,
    InvalidConfiguration,
    InvalidStateError,
    NotFound,
    ProcessExited,
    ShutdownFailed,
    StartupAborted,
    StartupTimeout,
)
from embedded_postgres.lifecycle import (
    InstanceConfiguration,
    LifecycleState,
    PgIsReadyProbe,
    ServerInstance,
    TcpConnectProbe,
)
from embedded_postgres.postgresql import EmbeddedPostgres
from embedded_postgres.settings import Settings, load_settings

__version__ = "0.1.0"

__all__ = [
    "AlreadyRunning",
    "ArchiveFetcher",
    "CatalogCache",
    "CatalogClient",
    "CatalogUnavailable",
    "CommandFailed",
    "DownloadFailed",
    "EmbeddedPostgres",
    "EmbeddedPostgresError",
    "ExtractionError",
    "GitHubReleaseCatalog",
    "InUse",
    "InitializationError",
    "InstanceConfiguration",
    "Installation",
    "InstallationCache",
    "IntegrityError",
    "InvalidConfiguration",
    "InvalidStateError",
    "LifecycleState",
    "LocalFolderCatalog",
    "NotFound",
    "PgIsReadyProbe",
    "PlatformTarget",
    "ProcessExited",
    "ReleaseDescriptor",
    "RetryPolicy",
    "ServerInstance",
    "Settings",
    "ShutdownFailed",
    "StartupAborted",
    "StartupTimeout",
    "TcpConnectProbe",
    "VersionRequirement",
    "load_settings",
]
