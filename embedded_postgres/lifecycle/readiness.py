"""Strategies for deciding whether a started server accepts connections."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from embedded_postgres.archive.models import Installation
from embedded_postgres.commands.client import PgIsReadyCommand
from embedded_postgres.lifecycle.config import DEFAULT_DATABASE, InstanceConfiguration
from embedded_postgres.lifecycle.process import run_invocation


_LOGGER = logging.getLogger(__name__)

__all__ = ["PgIsReadyProbe", "ReadinessProbe", "TcpConnectProbe"]


class ReadinessProbe(Protocol):
    """Protocol describing one readiness check."""

    async def check(self, installation: Installation, configuration: InstanceConfiguration) -> bool:
        """Return ``True`` once the server accepts client connections."""


class PgIsReadyProbe:
    """Run ``pg_isready`` against the configured host and port."""

    def __init__(self, *, attempt_timeout: int = 2) -> None:
        self._attempt_timeout = attempt_timeout

    async def check(self, installation: Installation, configuration: InstanceConfiguration) -> bool:
        command = PgIsReadyCommand.from_configuration(
            configuration,
            dbname=DEFAULT_DATABASE,
            timeout=self._attempt_timeout,
        )
        try:
            result = await run_invocation(command.build(installation), timeout=self._attempt_timeout + 1)
        except asyncio.TimeoutError:
            _LOGGER.debug("pg_isready did not answer within %ss", self._attempt_timeout + 1)
            return False
        except OSError as exc:
            _LOGGER.warning("Could not run pg_isready: %s", exc)
            return False
        return result.ok


class TcpConnectProbe:
    """Consider the server ready once its TCP port accepts a connection."""

    def __init__(self, *, attempt_timeout: float = 1.0) -> None:
        self._attempt_timeout = attempt_timeout

    async def check(self, installation: Installation, configuration: InstanceConfiguration) -> bool:
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(configuration.host, configuration.port),
                self._attempt_timeout,
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True
