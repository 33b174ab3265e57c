"""Builders for the client executables."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from embedded_postgres.commands.base import (
    CommandBuilder,
    ConnectionOptions,
    flag,
    option,
    settings_arguments,
)
from embedded_postgres.errors import InvalidConfiguration


__all__ = ["PgDumpCommand", "PgIsReadyCommand", "PgRestoreCommand", "PsqlCommand", "VacuumLoCommand"]

_PASSWORD_EXCLUSION = (("no_password", "force_password_prompt"),)
_DUMP_FORMATS = {"p", "plain", "c", "custom", "d", "directory", "t", "tar"}


@dataclass(frozen=True)
class PgIsReadyCommand(CommandBuilder, ConnectionOptions):
    """``pg_isready`` checks the connection status of a server.

    Exit codes: 0 accepting connections, 1 rejecting (e.g. starting up),
    2 no response, 3 no attempt made.
    """

    program_name = "pg_isready"
    exclusive_options = _PASSWORD_EXCLUSION

    dbname: str | None = None
    timeout: int | None = None
    quiet: bool = True

    def arguments(self) -> list[str]:
        args: list[str] = []
        option(args, "--dbname", self.dbname)
        args.extend(self.connection_arguments())
        option(args, "--timeout", self.timeout)
        flag(args, self.quiet, "--quiet")
        return args

    def environment(self) -> dict[str, str]:
        return self.connection_environment()


@dataclass(frozen=True)
class PsqlCommand(CommandBuilder, ConnectionOptions):
    """``psql`` runs SQL against a server."""

    program_name = "psql"
    exclusive_options = (("command", "file"), *_PASSWORD_EXCLUSION)

    command: str | None = None
    file: Path | None = None
    dbname: str | None = None
    variables: Mapping[str, object] = field(default_factory=dict)
    tuples_only: bool = False
    no_align: bool = False
    quiet: bool = False
    no_psqlrc: bool = True
    on_error_stop: bool = True

    def arguments(self) -> list[str]:
        args: list[str] = []
        option(args, "--command", self.command)
        option(args, "--file", self.file)
        option(args, "--dbname", self.dbname)
        args.extend(self.connection_arguments())
        variables = dict(self.variables)
        if self.on_error_stop:
            variables.setdefault("ON_ERROR_STOP", 1)
        args.extend(settings_arguments("--set", variables))
        flag(args, self.tuples_only, "--tuples-only")
        flag(args, self.no_align, "--no-align")
        flag(args, self.quiet, "--quiet")
        flag(args, self.no_psqlrc, "--no-psqlrc")
        return args

    def environment(self) -> dict[str, str]:
        return self.connection_environment()


@dataclass(frozen=True)
class PgDumpCommand(CommandBuilder, ConnectionOptions):
    """``pg_dump`` extracts a database into a script or archive file."""

    program_name = "pg_dump"
    exclusive_options = (("data_only", "schema_only"), *_PASSWORD_EXCLUSION)

    dbname: str | None = None
    file: Path | None = None
    format: str | None = None
    jobs: int | None = None
    data_only: bool = False
    schema_only: bool = False
    clean: bool = False
    create: bool = False
    if_exists: bool = False
    schema: str | None = None
    table: str | None = None
    no_owner: bool = False
    no_privileges: bool = False

    def validate(self) -> None:
        super().validate()
        if self.format is not None and self.format.lower() not in _DUMP_FORMATS:
            raise InvalidConfiguration(f"pg_dump: unknown format {self.format!r}")
        if self.if_exists and not self.clean:
            raise InvalidConfiguration("pg_dump: 'if_exists' requires 'clean'")

    def arguments(self) -> list[str]:
        args: list[str] = []
        option(args, "--dbname", self.dbname)
        option(args, "--file", self.file)
        option(args, "--format", self.format)
        option(args, "--jobs", self.jobs)
        flag(args, self.data_only, "--data-only")
        flag(args, self.schema_only, "--schema-only")
        flag(args, self.clean, "--clean")
        flag(args, self.create, "--create")
        flag(args, self.if_exists, "--if-exists")
        option(args, "--schema", self.schema)
        option(args, "--table", self.table)
        flag(args, self.no_owner, "--no-owner")
        flag(args, self.no_privileges, "--no-privileges")
        args.extend(self.connection_arguments())
        return args

    def environment(self) -> dict[str, str]:
        return self.connection_environment()


@dataclass(frozen=True)
class PgRestoreCommand(CommandBuilder, ConnectionOptions):
    """``pg_restore`` restores a database from a ``pg_dump`` archive."""

    program_name = "pg_restore"
    exclusive_options = (
        ("data_only", "schema_only"),
        ("single_transaction", "jobs"),
        *_PASSWORD_EXCLUSION,
    )

    input_file: Path | None = None
    dbname: str | None = None
    output_file: Path | None = None
    format: str | None = None
    jobs: int | None = None
    data_only: bool = False
    schema_only: bool = False
    clean: bool = False
    create: bool = False
    if_exists: bool = False
    exit_on_error: bool = False
    single_transaction: bool = False
    schema: str | None = None
    table: str | None = None
    no_owner: bool = False
    no_privileges: bool = False
    role: str | None = None

    def validate(self) -> None:
        super().validate()
        if self.dbname is None and self.output_file is None:
            raise InvalidConfiguration("pg_restore: either 'dbname' or 'output_file' is required")
        if self.dbname is not None and self.output_file is not None:
            raise InvalidConfiguration("pg_restore: options 'dbname' and 'output_file' are mutually exclusive")
        if self.format is not None and self.format.lower() not in _DUMP_FORMATS - {"p", "plain"}:
            raise InvalidConfiguration(f"pg_restore: unknown format {self.format!r}")

    def arguments(self) -> list[str]:
        args: list[str] = []
        option(args, "--dbname", self.dbname)
        option(args, "--file", self.output_file)
        option(args, "--format", self.format)
        option(args, "--jobs", self.jobs)
        flag(args, self.data_only, "--data-only")
        flag(args, self.schema_only, "--schema-only")
        flag(args, self.clean, "--clean")
        flag(args, self.create, "--create")
        flag(args, self.if_exists, "--if-exists")
        flag(args, self.exit_on_error, "--exit-on-error")
        flag(args, self.single_transaction, "--single-transaction")
        option(args, "--schema", self.schema)
        option(args, "--table", self.table)
        flag(args, self.no_owner, "--no-owner")
        flag(args, self.no_privileges, "--no-privileges")
        args.extend(self.connection_arguments())
        option(args, "--role", self.role)
        if self.input_file is not None:
            args.append(str(Path(self.input_file).expanduser().absolute()))
        return args

    def environment(self) -> dict[str, str]:
        return self.connection_environment()


@dataclass(frozen=True)
class VacuumLoCommand(CommandBuilder, ConnectionOptions):
    """``vacuumlo`` removes orphaned large objects from databases."""

    program_name = "vacuumlo"
    exclusive_options = _PASSWORD_EXCLUSION

    databases: tuple[str, ...] = ()
    limit: int | None = None
    dry_run: bool = False
    verbose: bool = False

    def validate(self) -> None:
        super().validate()
        if not self.databases:
            raise InvalidConfiguration("vacuumlo: at least one database is required")
        if self.limit is not None and self.limit < 0:
            raise InvalidConfiguration("vacuumlo: 'limit' must not be negative")

    def arguments(self) -> list[str]:
        args: list[str] = []
        option(args, "--limit", self.limit)
        flag(args, self.dry_run, "--dry-run")
        flag(args, self.verbose, "--verbose")
        args.extend(self.connection_arguments())
        args.extend(self.databases)
        return args

    def environment(self) -> dict[str, str]:
        return self.connection_environment()
