"""Builders for the server-side executables: initdb, postgres and pg_ctl."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping

from embedded_postgres.commands.base import (
    CommandBuilder,
    absolute,
    flag,
    join_arguments,
    option,
    settings_arguments,
)
from embedded_postgres.errors import InvalidConfiguration


__all__ = [
    "InitDbCommand",
    "PgCtlAction",
    "PgCtlCommand",
    "PostgresCommand",
    "ShutdownMode",
]


class ShutdownMode(str, Enum):
    """Server shutdown modes understood by ``pg_ctl stop``."""

    SMART = "smart"
    FAST = "fast"
    IMMEDIATE = "immediate"


class PgCtlAction(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    RELOAD = "reload"
    STATUS = "status"


@dataclass(frozen=True)
class InitDbCommand(CommandBuilder):
    """``initdb`` creates a new database cluster."""

    program_name = "initdb"
    exclusive_options = (("locale", "no_locale"), ("pwfile", "pwprompt"))

    pgdata: Path | None = None
    username: str | None = None
    pwfile: Path | None = None
    pwprompt: bool = False
    auth: str | None = None
    auth_host: str | None = None
    auth_local: str | None = None
    encoding: str | None = None
    locale: str | None = None
    no_locale: bool = False
    data_checksums: bool = False
    waldir: Path | None = None
    allow_group_access: bool = False
    no_sync: bool = False
    no_instructions: bool = False

    def validate(self) -> None:
        super().validate()
        if self.pgdata is None:
            raise InvalidConfiguration("initdb: a data directory is required")

    def arguments(self) -> list[str]:
        args: list[str] = []
        option(args, "--pgdata", self.pgdata)
        option(args, "--username", self.username)
        option(args, "--pwfile", self.pwfile)
        flag(args, self.pwprompt, "--pwprompt")
        option(args, "--auth", self.auth)
        option(args, "--auth-host", self.auth_host)
        option(args, "--auth-local", self.auth_local)
        option(args, "--encoding", self.encoding)
        option(args, "--locale", self.locale)
        flag(args, self.no_locale, "--no-locale")
        flag(args, self.data_checksums, "--data-checksums")
        option(args, "--waldir", self.waldir)
        flag(args, self.allow_group_access, "--allow-group-access")
        flag(args, self.no_sync, "--no-sync")
        flag(args, self.no_instructions, "--no-instructions")
        return args


@dataclass(frozen=True)
class PostgresCommand(CommandBuilder):
    """The ``postgres`` server process attached to one data directory."""

    program_name = "postgres"

    data_dir: Path | None = None
    port: int | None = None
    listen_addresses: str | None = None
    socket_dir: Path | None = None
    parameters: Mapping[str, object] = field(default_factory=dict)

    def validate(self) -> None:
        super().validate()
        if self.data_dir is None:
            raise InvalidConfiguration("postgres: a data directory is required")
        if self.port is not None and not 0 < self.port < 65536:
            raise InvalidConfiguration(f"postgres: invalid port {self.port}")

    def arguments(self) -> list[str]:
        args: list[str] = []
        option(args, "-D", self.data_dir)
        option(args, "-p", self.port)
        option(args, "-h", self.listen_addresses)
        option(args, "-k", self.socket_dir)
        args.extend(settings_arguments("-c", self.parameters))
        return args


@dataclass(frozen=True)
class PgCtlCommand(CommandBuilder):
    """``pg_ctl`` starts, stops and inspects a server."""

    program_name = "pg_ctl"
    exclusive_options = (("wait", "no_wait"),)

    action: PgCtlAction = PgCtlAction.STATUS
    pgdata: Path | None = None
    log_file: Path | None = None
    server_options: tuple[str, ...] = ()
    mode: ShutdownMode | None = None
    wait: bool = False
    no_wait: bool = False
    timeout: int | None = None
    silent: bool = False

    def validate(self) -> None:
        super().validate()
        action = PgCtlAction(self.action)
        if self.pgdata is None:
            raise InvalidConfiguration("pg_ctl: a data directory is required")
        if self.mode is not None and action not in (PgCtlAction.STOP, PgCtlAction.RESTART):
            raise InvalidConfiguration(f"pg_ctl: a shutdown mode is not valid for '{action.value}'")
        if self.server_options and action not in (PgCtlAction.START, PgCtlAction.RESTART):
            raise InvalidConfiguration(f"pg_ctl: server options are not valid for '{action.value}'")
        if self.timeout is not None and self.timeout <= 0:
            raise InvalidConfiguration("pg_ctl: timeout must be positive")

    def arguments(self) -> list[str]:
        args: list[str] = [PgCtlAction(self.action).value]
        option(args, "--pgdata", self.pgdata)
        option(args, "--log", self.log_file)
        if self.server_options:
            args.extend(("-o", join_arguments(self.server_options)))
        if self.mode is not None:
            args.extend(("--mode", ShutdownMode(self.mode).value))
        flag(args, self.wait, "--wait")
        flag(args, self.no_wait, "--no-wait")
        option(args, "--timeout", self.timeout)
        flag(args, self.silent, "--silent")
        return args

    @classmethod
    def stop(
        cls,
        pgdata: Path,
        *,
        mode: ShutdownMode = ShutdownMode.FAST,
        timeout: int | None = None,
    ) -> "PgCtlCommand":
        return cls(
            action=PgCtlAction.STOP,
            pgdata=Path(absolute(pgdata)),
            mode=mode,
            wait=timeout is not None,
            no_wait=timeout is None,
            timeout=timeout,
            silent=True,
        )
