"""Typed, side-effect free builders for PostgreSQL executable invocations."""

from __future__ import annotations

from embedded_postgres.commands.base import (
    CommandBuilder,
    ConnectionOptions,
    Invocation,
    join_arguments,
)
from embedded_postgres.commands.client import (
    PgDumpCommand,
    PgIsReadyCommand,
    PgRestoreCommand,
    PsqlCommand,
    VacuumLoCommand,
)
from embedded_postgres.commands.server import (
    InitDbCommand,
    PgCtlAction,
    PgCtlCommand,
    PostgresCommand,
    ShutdownMode,
)

__all__ = [
    "CommandBuilder",
    "ConnectionOptions",
    "InitDbCommand",
    "Invocation",
    "PgCtlAction",
    "PgCtlCommand",
    "PgDumpCommand",
    "PgIsReadyCommand",
    "PgRestoreCommand",
    "PostgresCommand",
    "PsqlCommand",
    "ShutdownMode",
    "VacuumLoCommand",
    "join_arguments",
]
