"""Supervision of one PostgreSQL server instance."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path

from embedded_postgres.archive.cache import InstallationCache
from embedded_postgres.archive.models import Installation
from embedded_postgres.commands.client import PsqlCommand
from embedded_postgres.commands.server import InitDbCommand, PgCtlCommand, PostgresCommand
from embedded_postgres.errors import (
    AlreadyRunning,
    CommandFailed,
    InitializationError,
    InvalidStateError,
    ProcessExited,
    ShutdownFailed,
    StartupAborted,
    StartupTimeout,
)
from embedded_postgres.lifecycle.config import DEFAULT_DATABASE, InstanceConfiguration
from embedded_postgres.lifecycle.process import (
    CompletedCommand,
    await_exit,
    read_log_tail,
    run_invocation,
    spawn,
    terminate_process,
)
from embedded_postgres.lifecycle.readiness import PgIsReadyProbe, ReadinessProbe
from embedded_postgres.lifecycle.state import LifecycleState, can_transition


_LOGGER = logging.getLogger(__name__)

SERVER_LOG_NAME = "server.log"
CLIENT_COMMAND_TIMEOUT = 60.0

__all__ = ["CLIENT_COMMAND_TIMEOUT", "SERVER_LOG_NAME", "ServerInstance"]


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class ServerInstance:
    """State machine around one data directory and its ``postgres`` process.

    ``init`` creates the cluster, ``start`` spawns the server and polls the
    readiness probe, ``stop`` shuts it down gracefully with escalation and
    ``destroy`` guarantees nothing keeps running. While the instance is
    alive it holds a lease on its installation in ``cache`` so the files
    cannot be removed underneath the server.
    """

    def __init__(
        self,
        installation: Installation,
        configuration: InstanceConfiguration | None = None,
        *,
        cache: InstallationCache | None = None,
        probe: ReadinessProbe | None = None,
    ) -> None:
        self._installation = installation
        self._configuration = (configuration or InstanceConfiguration()).resolved()
        self._cache = cache
        self._probe: ReadinessProbe = probe or PgIsReadyProbe()
        self._state = LifecycleState.UNINITIALIZED
        self._process: asyncio.subprocess.Process | None = None
        self._readiness: asyncio.Future[None] | None = None
        self._watcher: asyncio.Future[None] | None = None
        self._initdb: asyncio.Future[None] | None = None
        self._failure: ProcessExited | None = None
        self._stop_requested = False
        self._destroying = False
        self._destroyed = False
        if cache is not None:
            cache.acquire(installation)

    @property
    def installation(self) -> Installation:
        return self._installation

    @property
    def configuration(self) -> InstanceConfiguration:
        return self._configuration

    @property
    def status(self) -> LifecycleState:
        return self._state

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def failure(self) -> ProcessExited | None:
        """Why the server stopped on its own after it became ready, if it did."""

        return self._failure

    @property
    def data_dir(self) -> Path:
        assert self._configuration.data_dir is not None
        return self._configuration.data_dir

    @property
    def log_path(self) -> Path:
        return self.data_dir / SERVER_LOG_NAME

    @property
    def pid(self) -> int | None:
        if self._process is None or self._process.returncode is not None:
            return None
        return self._process.pid

    def url(self, database: str = DEFAULT_DATABASE) -> str:
        return self._configuration.url(database)

    def _transition(self, new: LifecycleState) -> None:
        if not can_transition(self._state, new):
            raise InvalidStateError(f"move to {new.value}", self._state)
        _LOGGER.debug("Instance %s: %s -> %s", self.data_dir, self._state.value, new.value)
        self._state = new

    def _ensure_alive(self, operation: str) -> None:
        if self._destroyed:
            raise InvalidStateError(operation, "destroyed")

    async def init(self) -> None:
        """Create the database cluster unless the data directory already holds one."""

        self._ensure_alive("init")
        if self._state not in (LifecycleState.UNINITIALIZED, LifecycleState.FAILED):
            raise InvalidStateError("init", self._state)
        if (self.data_dir / "PG_VERSION").is_file():
            _LOGGER.info("Reusing existing cluster in %s", self.data_dir)
            self._transition(LifecycleState.INITIALIZED)
            return

        self._transition(LifecycleState.INITIALIZING)
        self._initdb = asyncio.ensure_future(self._run_initdb())
        try:
            await self._initdb
        except asyncio.CancelledError:
            if self._destroying and self._initdb.cancelled():
                raise InvalidStateError("init", "destroyed") from None
            raise
        finally:
            self._initdb = None

    async def _run_initdb(self) -> None:
        config = self._configuration
        # initdb reads the superuser password from a file so it never shows up in argv.
        secrets_dir = Path(tempfile.mkdtemp(prefix="embedded-postgres-pw-"))
        try:
            self.data_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            password_file = secrets_dir / "pwfile"
            password_file.write_text(f"{config.password}\n", encoding="utf-8")
            os.chmod(password_file, 0o600)
            command = InitDbCommand(
                pgdata=self.data_dir,
                username=config.username,
                pwfile=password_file,
                auth=config.auth_method,
                encoding=config.encoding,
                locale=config.locale,
            )
            _LOGGER.info("Initializing cluster in %s", self.data_dir)
            result = await run_invocation(command.build(self._installation), timeout=config.init_timeout)
        except asyncio.TimeoutError as exc:
            self._transition(LifecycleState.FAILED)
            raise InitializationError(f"initdb did not finish within {config.init_timeout:g}s") from exc
        except OSError as exc:
            self._transition(LifecycleState.FAILED)
            raise InitializationError(f"Could not run initdb: {exc}") from exc
        except BaseException:
            self._transition(LifecycleState.FAILED)
            raise
        finally:
            shutil.rmtree(secrets_dir, ignore_errors=True)

        if not result.ok:
            self._transition(LifecycleState.FAILED)
            raise InitializationError(
                "initdb failed",
                returncode=result.returncode,
                stderr_tail=result.stderr_tail,
            )
        self._transition(LifecycleState.INITIALIZED)

    async def start(self) -> None:
        """Spawn the server and wait until the readiness probe reports healthy."""

        self._ensure_alive("start")
        if self._state in (LifecycleState.STARTING, LifecycleState.READY):
            raise AlreadyRunning(self._state)
        if self._state not in (LifecycleState.INITIALIZED, LifecycleState.STOPPED):
            raise InvalidStateError("start", self._state)

        config = self._configuration
        self._transition(LifecycleState.STARTING)
        self._stop_requested = False
        self._failure = None
        command = PostgresCommand(
            data_dir=self.data_dir,
            port=config.port,
            listen_addresses=config.host,
            socket_dir=config.socket_dir,
            parameters=config.parameters,
        )
        try:
            process = await spawn(command.build(self._installation), log_path=self.log_path)
        except OSError as exc:
            self._transition(LifecycleState.FAILED)
            raise ProcessExited(f"Could not start postgres: {exc}") from exc
        self._process = process

        self._readiness = asyncio.ensure_future(self._wait_until_ready(process))
        try:
            await self._readiness
        except asyncio.CancelledError:
            if self._stop_requested:
                raise StartupAborted(
                    "Startup was interrupted by a stop request",
                    stderr_tail=read_log_tail(self.log_path),
                ) from None
            _LOGGER.warning("Startup of %s cancelled; terminating the server", self.data_dir)
            await self._abandon(process)
            raise
        except Exception as exc:
            if self._stop_requested:
                raise StartupAborted("Startup was interrupted by a stop request") from exc
            await self._abandon(process)
            raise
        finally:
            self._readiness = None
        if self._stop_requested:
            raise StartupAborted("Startup was interrupted by a stop request")
        self._transition(LifecycleState.READY)
        self._watcher = asyncio.ensure_future(self._watch(process))
        _LOGGER.info("PostgreSQL ready on %s:%s", config.host, config.port)

    async def _wait_until_ready(self, process: asyncio.subprocess.Process) -> None:
        config = self._configuration
        loop = asyncio.get_running_loop()
        deadline = loop.time() + config.startup_timeout
        while True:
            if process.returncode is not None:
                raise ProcessExited(
                    "postgres exited before accepting connections",
                    returncode=process.returncode,
                    stderr_tail=read_log_tail(self.log_path),
                )
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise StartupTimeout(
                    f"postgres did not become ready within {config.startup_timeout:g}s",
                    stderr_tail=read_log_tail(self.log_path),
                )
            if await self._check_ready(remaining):
                if process.returncode is None:
                    return
                continue
            remaining = deadline - loop.time()
            if remaining > 0:
                await asyncio.sleep(min(config.poll_interval, remaining))

    async def _check_ready(self, budget: float) -> bool:
        """Run one probe, counting it as not ready when it outlives ``budget``."""

        try:
            return await asyncio.wait_for(self._probe.check(self._installation, self._configuration), budget)
        except asyncio.TimeoutError:
            _LOGGER.debug("Readiness check did not answer within the remaining %.2fs", budget)
            return False

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if self._state is not LifecycleState.READY or self._process is not process:
            return
        self._failure = ProcessExited(
            "postgres exited unexpectedly",
            returncode=returncode,
            stderr_tail=read_log_tail(self.log_path),
        )
        _LOGGER.error(
            "PostgreSQL in %s exited with code %s while ready: %s",
            self.data_dir,
            returncode,
            self._failure.stderr_tail,
        )
        self._process = None
        self._transition(LifecycleState.FAILED)

    def _stop_watching(self) -> None:
        if self._watcher is not None and not self._watcher.done():
            self._watcher.cancel()
        self._watcher = None

    async def _abandon(self, process: asyncio.subprocess.Process) -> None:
        returncode = await terminate_process(process, timeout=self._configuration.stop_timeout)
        if returncode is not None:
            self._process = None
        self._transition(LifecycleState.FAILED)

    async def stop(self) -> None:
        """Shut the server down, escalating to a kill after ``stop_timeout``.

        Stopping an instance that is not running is a no-op once it has been
        started; it is an error before it ever was.
        """

        self._ensure_alive("stop")
        if self._state in (LifecycleState.STOPPED, LifecycleState.STOPPING):
            return
        if self._state is LifecycleState.FAILED:
            await self._reap()
            return
        if self._state not in (LifecycleState.STARTING, LifecycleState.READY):
            raise InvalidStateError("stop", self._state)
        self._interrupt_startup()
        self._stop_watching()
        self._transition(LifecycleState.STOPPING)
        await self._shutdown()

    def _interrupt_startup(self) -> None:
        if self._state is not LifecycleState.STARTING:
            return
        self._stop_requested = True
        if self._readiness is not None and not self._readiness.done():
            self._readiness.cancel()

    async def _shutdown(self) -> None:
        config = self._configuration
        process = self._process
        if process is None or process.returncode is not None:
            self._process = None
            self._transition(LifecycleState.STOPPED)
            return

        if not await self._request_graceful_shutdown():
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        returncode = await await_exit(process, timeout=config.stop_timeout)
        if returncode is None:
            self._transition(LifecycleState.FAILED)
            raise ShutdownFailed(
                f"postgres (pid {process.pid}) could not be confirmed as exited",
                stderr_tail=read_log_tail(self.log_path),
            )
        self._process = None
        self._transition(LifecycleState.STOPPED)
        _LOGGER.info("PostgreSQL in %s stopped (exit code %s)", self.data_dir, returncode)

    async def _request_graceful_shutdown(self) -> bool:
        config = self._configuration
        command = PgCtlCommand.stop(self.data_dir, mode=config.shutdown_mode)
        try:
            result = await run_invocation(command.build(self._installation), timeout=config.stop_timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            _LOGGER.warning("pg_ctl stop could not be run: %s", exc or type(exc).__name__)
            return False
        if not result.ok:
            _LOGGER.warning("pg_ctl stop failed (exit code %s): %s", result.returncode, result.stderr_tail)
            return False
        return True

    async def _reap(self) -> None:
        process = self._process
        if process is None:
            return
        returncode = await terminate_process(process, timeout=self._configuration.stop_timeout)
        if returncode is None:
            raise ShutdownFailed(f"postgres (pid {process.pid}) could not be confirmed as exited")
        self._process = None

    async def destroy(self) -> None:
        """Make sure no server process remains and release the instance.

        Removes the data directory when the configuration marks it as
        temporary. Calling it again is a no-op.
        """

        if self._destroyed:
            return
        self._destroying = True
        await self._cancel_initdb()
        if self._state in (LifecycleState.STARTING, LifecycleState.READY):
            self._interrupt_startup()
            self._stop_watching()
            self._transition(LifecycleState.STOPPING)
            await self._shutdown()
        else:
            await self._reap()
        if self._configuration.remove_data_on_destroy:
            _LOGGER.info("Removing data directory %s", self.data_dir)
            await asyncio.to_thread(shutil.rmtree, self.data_dir, True)
        self._destroyed = True
        if self._cache is not None:
            self._cache.release(self._installation)

    async def _cancel_initdb(self) -> None:
        initdb = self._initdb
        if initdb is None or initdb.done():
            return
        _LOGGER.info("Cancelling initdb for %s", self.data_dir)
        initdb.cancel()
        await asyncio.wait([initdb])

    async def execute(
        self,
        sql: str,
        *,
        database: str = DEFAULT_DATABASE,
        timeout: float = CLIENT_COMMAND_TIMEOUT,
    ) -> CompletedCommand:
        """Run ``sql`` through ``psql`` and return its unaligned tuples output."""

        self._ensure_alive("execute SQL")
        if self._state is not LifecycleState.READY:
            raise InvalidStateError("execute SQL", self._state)
        command = PsqlCommand.from_configuration(
            self._configuration,
            command=sql,
            dbname=database,
            no_password=True,
            tuples_only=True,
            no_align=True,
            quiet=True,
        )
        invocation = command.build(self._installation)
        try:
            result = await run_invocation(invocation, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise CommandFailed(f"psql did not finish within {timeout:g}s", argv=invocation.argv) from exc
        if not result.ok:
            raise CommandFailed(
                "psql failed",
                argv=result.argv,
                returncode=result.returncode,
                stderr_tail=result.stderr_tail,
            )
        return result

    async def create_database(self, name: str) -> None:
        await self.execute(f"CREATE DATABASE {quote_identifier(name)}")
        _LOGGER.info("Created database %s", name)

    async def database_exists(self, name: str) -> bool:
        result = await self.execute(f"SELECT 1 FROM pg_database WHERE datname = {quote_literal(name)}")
        return result.stdout.strip() == "1"

    async def drop_database(self, name: str) -> None:
        await self.execute(f"DROP DATABASE IF EXISTS {quote_identifier(name)}")
        _LOGGER.info("Dropped database %s", name)

    async def __aenter__(self) -> "ServerInstance":
        try:
            if self._state in (LifecycleState.UNINITIALIZED, LifecycleState.FAILED):
                await self.init()
            await self.start()
        except BaseException:
            await self.destroy()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.destroy()

    def __repr__(self) -> str:
        return f"ServerInstance(data_dir={str(self.data_dir)!r}, port={self._configuration.port}, state={self._state.value})"
