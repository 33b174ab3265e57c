from __future__ import annotations

import asyncio
import os
import socket

import pytest
from pytest_bdd import given, parsers, then, when

from embedded_postgres import LifecycleState, StartupTimeout

from tests.e2e.provisioning_fixtures import ProvisioningWorld


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


async def _start(world: ProvisioningWorld, version: str) -> None:
    world.postgres = world.build(version)
    start = world.loop.create_task(world.postgres.start())
    while not start.done():
        instance = world.postgres.instance
        if instance is not None and instance.pid is not None and instance.pid not in world.pids:
            world.pids.append(instance.pid)
        await asyncio.sleep(0.01)
    instance = world.postgres.instance
    if instance is not None:
        world.data_dir = instance.data_dir
    await start


@given(parsers.parse('a release server publishing PostgreSQL "{first}" and "{second}"'))
def publish_releases(provisioning: ProvisioningWorld, first: str, second: str) -> None:
    provisioning.server.publish(first)
    provisioning.server.publish(second)


@given(parsers.parse("the archive download fails {times:d} times with status {status:d}"))
def failing_downloads(provisioning: ProvisioningWorld, times: int, status: int) -> None:
    provisioning.server.fail_downloads(times, status)


@given(parsers.parse('PostgreSQL "{version}" was installed earlier'))
def preinstalled(provisioning: ProvisioningWorld, version: str) -> None:
    provisioning.run(provisioning.build(version).install())


@given("the server will never accept connections")
def never_ready(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FAKE_POSTGRES_NEVER_READY", "1")


@given(parsers.parse("the startup timeout is {seconds:g} seconds"))
def startup_timeout(provisioning: ProvisioningWorld, seconds: float) -> None:
    provisioning.configure_instance(startup_timeout=seconds)


@when(parsers.parse('the application starts PostgreSQL "{version}"'))
def start_postgres(provisioning: ProvisioningWorld, version: str) -> None:
    provisioning.run(_start(provisioning, version))


@when(parsers.parse('the application tries to start PostgreSQL "{version}"'))
def try_start_postgres(provisioning: ProvisioningWorld, version: str) -> None:
    try:
        provisioning.run(_start(provisioning, version))
    except Exception as exc:
        provisioning.error = exc


@when("the server is stopped")
def stop_server(provisioning: ProvisioningWorld) -> None:
    assert provisioning.postgres is not None
    provisioning.run(provisioning.postgres.stop())


@when("the server is destroyed")
def destroy_server(provisioning: ProvisioningWorld) -> None:
    assert provisioning.postgres is not None
    provisioning.run(provisioning.postgres.destroy())


@then(parsers.parse('the installed version is "{version}"'))
def installed_version(provisioning: ProvisioningWorld, version: str) -> None:
    assert provisioning.postgres is not None
    installation = provisioning.postgres.installation
    assert installation is not None
    assert str(installation.version) == version
    assert installation.executable("postgres").is_file()


@then(parsers.parse('the server is "{state}"'))
def server_state(provisioning: ProvisioningWorld, state: str) -> None:
    assert provisioning.postgres is not None
    assert provisioning.postgres.status is LifecycleState(state)


@then("the server accepts connections")
def accepts_connections(provisioning: ProvisioningWorld) -> None:
    assert provisioning.postgres is not None
    instance = provisioning.postgres.instance
    assert instance is not None
    socket.create_connection(("127.0.0.1", instance.configuration.port), timeout=2).close()
    assert provisioning.postgres.url().startswith("postgresql://postgres:")


@then(parsers.parse("the archive was requested {count:d} times"))
def archive_requests(provisioning: ProvisioningWorld, count: int) -> None:
    assert provisioning.server.download_count() == count


@then("startup fails with a timeout")
def startup_failed(provisioning: ProvisioningWorld) -> None:
    assert isinstance(provisioning.error, StartupTimeout)
    assert provisioning.pids


@then("no server process remains")
def no_process(provisioning: ProvisioningWorld) -> None:
    assert provisioning.pids
    assert not any(_process_alive(pid) for pid in provisioning.pids)


@then("the data directory has been removed")
def data_removed(provisioning: ProvisioningWorld) -> None:
    assert provisioning.data_dir is not None
    assert not provisioning.data_dir.exists()
