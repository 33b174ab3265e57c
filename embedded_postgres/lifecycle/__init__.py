"""Initialisation, startup, shutdown and teardown of server instances."""

from __future__ import annotations

from embedded_postgres.lifecycle.config import (
    DEFAULT_DATABASE,
    DEFAULT_HOST,
    DEFAULT_USERNAME,
    InstanceConfiguration,
    find_free_port,
)
from embedded_postgres.lifecycle.instance import ServerInstance
from embedded_postgres.lifecycle.process import CompletedCommand, run_invocation, spawn, terminate_process
from embedded_postgres.lifecycle.readiness import PgIsReadyProbe, ReadinessProbe, TcpConnectProbe
from embedded_postgres.lifecycle.state import LifecycleState, can_transition

__all__ = [
    "CompletedCommand",
    "DEFAULT_DATABASE",
    "DEFAULT_HOST",
    "DEFAULT_USERNAME",
    "InstanceConfiguration",
    "LifecycleState",
    "PgIsReadyProbe",
    "ReadinessProbe",
    "ServerInstance",
    "TcpConnectProbe",
    "can_transition",
    "find_free_port",
    "run_invocation",
    "spawn",
    "terminate_process",
]
