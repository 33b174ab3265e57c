from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from embedded_postgres import (
    EmbeddedPostgres,
    GitHubReleaseCatalog,
    InstanceConfiguration,
    LifecycleState,
    LocalFolderCatalog,
    NotFound,
    Settings,
)
from embedded_postgres.postgresql import build_catalog

from tests.unit.fake_postgres_utils import TARGET, requires_posix, write_local_catalog


@pytest.fixture
def releases(tmp_path: Path) -> Path:
    return write_local_catalog(tmp_path / "releases")


def _settings(tmp_path: Path, releases: Path, **overrides) -> Settings:
    values = {
        "releases_url": str(releases),
        "cache_dir": tmp_path / "cache",
        "instance": InstanceConfiguration(poll_interval=0.05, startup_timeout=10.0),
    }
    values.update(overrides)
    return Settings(**values)


def test_build_catalog_selects_source(tmp_path: Path, releases: Path) -> None:
    assert isinstance(build_catalog(_settings(tmp_path, releases)), LocalFolderCatalog)
    assert isinstance(build_catalog(_settings(tmp_path, releases, releases_url=releases.as_uri())), LocalFolderCatalog)
    assert isinstance(build_catalog(Settings()), GitHubReleaseCatalog)


@pytest.mark.parametrize(("requirement", "expected"), [("latest", "16.4.0"), ("15", "15.8.0"), ("=16.4.0", "16.4.0")])
def test_resolve_picks_matching_release(tmp_path: Path, releases: Path, requirement: str, expected: str) -> None:
    postgres = EmbeddedPostgres(_settings(tmp_path, releases, version=requirement), target=TARGET)

    descriptor = asyncio.run(postgres.resolve())

    assert str(descriptor.version) == expected
    assert descriptor.target == TARGET.triple


def test_resolve_reports_missing_version(tmp_path: Path, releases: Path) -> None:
    postgres = EmbeddedPostgres(_settings(tmp_path, releases, version="14"), target=TARGET)

    with pytest.raises(NotFound):
        asyncio.run(postgres.resolve())


def test_install_reuses_cached_installation(tmp_path: Path, releases: Path) -> None:
    settings = _settings(tmp_path, releases)
    first = asyncio.run(EmbeddedPostgres(settings, target=TARGET).install())

    sentinel = first.root / "sentinel"
    sentinel.write_text("kept", encoding="utf-8")
    second = asyncio.run(EmbeddedPostgres(settings, target=TARGET).install())

    assert second == first
    assert sentinel.is_file()


@requires_posix
def test_full_lifecycle_through_facade(tmp_path: Path, releases: Path) -> None:
    postgres = EmbeddedPostgres(_settings(tmp_path, releases), target=TARGET)
    observed: list[LifecycleState] = []

    async def scenario() -> Path:
        observed.append(postgres.status)
        instance = await postgres.setup()
        observed.append(postgres.status)
        await postgres.start()
        observed.append(postgres.status)
        await instance.create_database("orders")
        assert await instance.database_exists("orders")
        await postgres.stop()
        observed.append(postgres.status)
        await postgres.destroy()
        observed.append(postgres.status)
        return instance.data_dir

    data_dir = asyncio.run(scenario())

    assert observed == [
        LifecycleState.UNINITIALIZED,
        LifecycleState.INITIALIZED,
        LifecycleState.READY,
        LifecycleState.STOPPED,
        LifecycleState.UNINITIALIZED,
    ]
    assert not data_dir.exists()
    assert postgres.instance is None
    assert postgres.installation is not None
    assert postgres.cache.leases(postgres.installation.root) == 0


@requires_posix
def test_context_manager_exposes_connection_url(tmp_path: Path, releases: Path) -> None:
    postgres = EmbeddedPostgres(_settings(tmp_path, releases), target=TARGET)

    async def scenario() -> str:
        async with postgres as running:
            assert running.status is LifecycleState.READY
            return running.url("app")

    url = asyncio.run(scenario())

    assert url.startswith("postgresql://postgres:")
    assert url.endswith("/app")
    assert postgres.status is LifecycleState.UNINITIALIZED


def test_url_before_setup_uses_settings(tmp_path: Path, releases: Path) -> None:
    settings = _settings(
        tmp_path,
        releases,
        instance=InstanceConfiguration(port=5999, password="pw"),
    )

    assert EmbeddedPostgres(settings, target=TARGET).url() == "postgresql://postgres:pw@localhost:5999/postgres"


def test_stop_and_destroy_without_instance_are_noops(tmp_path: Path, releases: Path) -> None:
    postgres = EmbeddedPostgres(_settings(tmp_path, releases), target=TARGET)

    async def scenario() -> None:
        await postgres.stop()
        await postgres.destroy()

    asyncio.run(scenario())

    assert postgres.status is LifecycleState.UNINITIALIZED
