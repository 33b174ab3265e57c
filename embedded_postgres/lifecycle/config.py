"""Caller supplied settings for one server instance."""

from __future__ import annotations

import dataclasses
import logging
import secrets
import socket
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping
from urllib.parse import quote

from embedded_postgres.commands.server import ShutdownMode
from embedded_postgres.errors import InvalidConfiguration


_LOGGER = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_USERNAME = "postgres"
DEFAULT_DATABASE = "postgres"
AUTH_METHODS = {"trust", "password", "md5", "scram-sha-256"}


@dataclass(frozen=True)
class InstanceConfiguration:
    """Immutable settings for a single server instance.

    ``port=0`` and a missing ``password`` or ``data_dir`` are placeholders
    filled in by :meth:`resolved` when the instance is created.
    """

    data_dir: Path | None = None
    host: str = DEFAULT_HOST
    port: int = 0
    socket_dir: Path | None = None
    username: str = DEFAULT_USERNAME
    password: str | None = None
    auth_method: str = "password"
    encoding: str = "UTF8"
    locale: str | None = None
    startup_timeout: float = 30.0
    stop_timeout: float = 10.0
    init_timeout: float = 120.0
    poll_interval: float = 0.1
    shutdown_mode: ShutdownMode = ShutdownMode.FAST
    parameters: Mapping[str, object] = field(default_factory=dict)
    temporary: bool | None = None

    def __post_init__(self) -> None:
        if not 0 <= int(self.port) < 65536:
            raise InvalidConfiguration(f"Invalid port: {self.port}")
        if not self.username:
            raise InvalidConfiguration("A superuser name is required")
        if not self.host:
            raise InvalidConfiguration("A listen host is required")
        if self.auth_method not in AUTH_METHODS:
            raise InvalidConfiguration(f"Unsupported authentication method: {self.auth_method}")
        for name in ("startup_timeout", "stop_timeout", "init_timeout", "poll_interval"):
            if float(getattr(self, name)) <= 0:
                raise InvalidConfiguration(f"{name} must be positive")
        if self.data_dir is not None:
            object.__setattr__(self, "data_dir", Path(self.data_dir).expanduser().absolute())
        if self.socket_dir is not None:
            object.__setattr__(self, "socket_dir", Path(self.socket_dir).expanduser().absolute())
        object.__setattr__(self, "shutdown_mode", ShutdownMode(self.shutdown_mode))
        object.__setattr__(self, "parameters", dict(self.parameters))

    @property
    def is_resolved(self) -> bool:
        return self.data_dir is not None and self.port != 0 and self.password is not None

    def resolved(self) -> "InstanceConfiguration":
        """Return a copy with the data directory, port and password filled in."""

        if self.is_resolved:
            return self
        changes: dict[str, object] = {}
        if self.data_dir is None:
            changes["data_dir"] = Path(tempfile.mkdtemp(prefix="embedded-postgres-data-"))
            if self.temporary is None:
                changes["temporary"] = True
        if self.port == 0:
            changes["port"] = find_free_port(self.host)
        if self.password is None:
            changes["password"] = secrets.token_urlsafe(16)
        resolved = dataclasses.replace(self, **changes)
        _LOGGER.debug("Resolved instance data_dir=%s port=%s", resolved.data_dir, resolved.port)
        return resolved

    @property
    def remove_data_on_destroy(self) -> bool:
        return bool(self.temporary)

    def url(self, database: str = DEFAULT_DATABASE) -> str:
        """Render a ``postgresql://`` connection URL for ``database``."""

        credentials = quote(self.username, safe="")
        if self.password is not None:
            credentials = f"{credentials}:{quote(self.password, safe='')}"
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"postgresql://{credentials}@{host}:{self.port}/{quote(database, safe='')}"


def find_free_port(host: str = DEFAULT_HOST) -> int:
    """Ask the operating system for a currently unused TCP port on ``host``."""

    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
            probe.bind((_bind_address(host), 0))
            return int(probe.getsockname()[1])
    except OSError as exc:
        raise InvalidConfiguration(f"Could not allocate a free port on {host}: {exc}") from exc


def _bind_address(host: str) -> str:
    if host in {"localhost", "*", "0.0.0.0", ""}:
        return "127.0.0.1"
    return host


__all__ = [
    "AUTH_METHODS",
    "DEFAULT_DATABASE",
    "DEFAULT_HOST",
    "DEFAULT_USERNAME",
    "InstanceConfiguration",
    "find_free_port",
]
