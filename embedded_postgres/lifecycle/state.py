"""Lifecycle states of a supervised server instance."""

from __future__ import annotations

from enum import Enum


class LifecycleState(str, Enum):
    """States a server instance moves through."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.UNINITIALIZED: frozenset({LifecycleState.INITIALIZING, LifecycleState.INITIALIZED}),
    LifecycleState.INITIALIZING: frozenset({LifecycleState.INITIALIZED, LifecycleState.FAILED}),
    LifecycleState.INITIALIZED: frozenset({LifecycleState.STARTING}),
    LifecycleState.STARTING: frozenset(
        {LifecycleState.READY, LifecycleState.STOPPING, LifecycleState.FAILED}
    ),
    LifecycleState.READY: frozenset({LifecycleState.STOPPING, LifecycleState.FAILED}),
    LifecycleState.STOPPING: frozenset({LifecycleState.STOPPED, LifecycleState.FAILED}),
    LifecycleState.STOPPED: frozenset({LifecycleState.STARTING}),
    LifecycleState.FAILED: frozenset({LifecycleState.INITIALIZING, LifecycleState.INITIALIZED}),
}


def can_transition(current: LifecycleState, new: LifecycleState) -> bool:
    return new in TRANSITIONS[current]


__all__ = ["LifecycleState", "TRANSITIONS", "can_transition"]
